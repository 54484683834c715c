from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)

Reply = tuple[int, bytes, str | None]


@dataclass(frozen=True)
class OperatorProbes:
    """Process signals exposed over HTTP.

    ``synced`` is set once every informer finished its initial list.
    ``leader`` is ``None`` without leader election, which counts as leading.
    """

    synced: threading.Event
    leader: threading.Event | None = None

    def leading(self) -> bool:
        return self.leader is None or self.leader.is_set()

    def liveness(self) -> Reply:
        return 200, b"ok", None

    def leadership(self) -> Reply:
        if self.leading():
            return 200, b"ok", None
        return 503, b"not leader", None

    def readiness(self) -> Reply:
        synced = self.synced.is_set()
        leading = self.leading()
        body = f"synced={str(synced).lower()} leader={str(leading).lower()}".encode()
        return (200 if synced and leading else 503), body, None

    def metrics(self) -> Reply:
        return 200, generate_latest(), CONTENT_TYPE_LATEST

    def routes(self) -> dict[str, Callable[[], Reply]]:
        return {
            "/healthz": self.liveness,
            "/leadz": self.leadership,
            "/readyz": self.readiness,
            "/metrics": self.metrics,
        }


class _ProbeHandler(BaseHTTPRequestHandler):
    probes: OperatorProbes

    def do_GET(self) -> None:
        route = self.probes.routes().get(self.path)
        status, body, content_type = route() if route else (404, b"", None)
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def start_health_server(
    ready: threading.Event, port: int, leader: threading.Event | None = None
) -> ThreadingHTTPServer:
    """Serve ``/healthz``, ``/readyz``, ``/leadz`` and ``/metrics`` from a daemon thread."""
    handler_class = type("ProbeHandler", (_ProbeHandler,), {"probes": OperatorProbes(ready, leader)})
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health", daemon=True).start()
    LOGGER.info("Health server listening on :%d", port)
    return server
