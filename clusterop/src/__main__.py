from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from clusterop.src.config import OperatorConfig, load_config
from clusterop.src.control import ClientControl
from clusterop.src.controller import Operator, build_operator
from clusterop.src.health import start_health_server
from clusterop.src.kube import ApiClients, build_clients, load_kube_configuration
from clusterop.src.leader import LeaseLeaderElector
from clusterop.src.metrics import METRICS
from clusterop.src.tracing import configure_tracing

LOGGER = logging.getLogger(__name__)

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)(-----BEGIN [A-Z ]*PRIVATE KEY-----)(.*?)(-----END [A-Z ]*PRIVATE KEY-----)", re.S),
        r"\1[REDACTED]\3",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level_name: str) -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, level_name.upper(), logging.INFO))


def run_with_leader_election(
    config: OperatorConfig,
    apis: ApiClients,
    control: ClientControl,
    synced: threading.Event,
    leader_ready: threading.Event,
    shutdown_event: threading.Event,
) -> None:
    """Run a fresh operator for every leadership term until shutdown."""
    election = config.leader_election
    elector = LeaseLeaderElector(
        coordination_api=apis.coordination,
        namespace=election.namespace,
        lease_name=election.lease_name,
        identity=election.identity,
        lease_duration_seconds=election.lease_duration_seconds,
        renew_deadline_seconds=election.renew_deadline_seconds,
        retry_period_seconds=election.retry_period_seconds,
    )

    operator: Operator | None = None
    operator_thread: threading.Thread | None = None
    state_lock = threading.Lock()

    def on_started_leading() -> None:
        nonlocal operator, operator_thread
        with state_lock:
            if shutdown_event.is_set():
                return
            if operator_thread is not None and operator_thread.is_alive():
                LOGGER.error(
                    "Refusing to start new workers while the previous operator is still running"
                )
                shutdown_event.set()
                return

            current = build_operator(config, apis, control, ready=synced)
            operator = current
            leader_ready.set()

            def _run_operator() -> None:
                unexpected_exit = False
                try:
                    unexpected_exit = not current.run_forever(shutdown_event=shutdown_event)
                    if unexpected_exit:
                        LOGGER.error("Operator exited without a stop signal; terminating process")
                except Exception:
                    unexpected_exit = True
                    LOGGER.exception("Operator thread crashed")
                finally:
                    if unexpected_exit:
                        shutdown_event.set()

            operator_thread = threading.Thread(target=_run_operator, name="operator", daemon=True)
            operator_thread.start()

    def on_stopped_leading() -> None:
        nonlocal operator, operator_thread
        with state_lock:
            leader_ready.clear()
            if operator is not None:
                operator.request_stop()
            if operator_thread is None:
                return

            operator_thread.join(timeout=election.stop_timeout_seconds)
            if operator_thread.is_alive():
                LOGGER.error(
                    "Operator did not stop within %ss during leadership handoff; "
                    "forcing process shutdown",
                    election.stop_timeout_seconds,
                )
                shutdown_event.set()
                return
            operator = None
            operator_thread = None

    elector.run(
        on_started_leading=on_started_leading,
        on_stopped_leading=on_stopped_leading,
        stop_event=shutdown_event,
    )
    on_stopped_leading()


def main() -> None:
    """Operator entrypoint: configure logging, start leader election, and run the controllers."""
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    config = load_config()
    configure_tracing(config.otel_enabled)
    load_kube_configuration()
    apis = build_clients()
    control = ClientControl(apis.core, timeout=config.control_timeout_seconds)

    synced = threading.Event()
    leader_ready = threading.Event() if config.leader_election.enabled else None
    health_server = start_health_server(ready=synced, port=config.health_port, leader=leader_ready)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        if leader_ready is not None:
            run_with_leader_election(config, apis, control, synced, leader_ready, shutdown_event)
        elif not build_operator(config, apis, control, ready=synced).run_forever(
            shutdown_event=shutdown_event
        ):
            LOGGER.error("Operator exited without a stop signal")
    finally:
        control.close()
        health_server.shutdown()
    LOGGER.info("Operator stopped")


if __name__ == "__main__":
    main()
