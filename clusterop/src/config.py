from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from clusterop.src.leader import default_identity


class ConfigError(ValueError):
    """Raised when the operator configuration is invalid."""


@dataclass(frozen=True)
class LeaderElectionConfig:
    enabled: bool = True
    namespace: str = "default"
    lease_name: str = "clusterop-controller-leader"
    identity: str = "unknown"
    lease_duration_seconds: int = 15
    renew_deadline_seconds: int = 10
    retry_period_seconds: int = 2
    stop_timeout_seconds: int = 45


@dataclass(frozen=True)
class OperatorConfig:
    """Immutable operator configuration loaded once at startup.

    Attributes:
        watch_namespace: Namespace to watch; empty watches every namespace.
        workers: Worker threads per controller.
        health_port: Port of the health and metrics server.
        control_timeout_seconds: Per-request timeout towards the control service.
        update_retry_steps: Attempt budget of a guaranteed update.
        resync_seconds: Delay before a synced key is processed again; 0 disables it.
        managed_by_selector: Labels an owned object must carry to be routed
            to its controller.
    """

    watch_namespace: str = ""
    workers: int = 4
    health_port: int = 8080
    control_timeout_seconds: float = 5.0
    update_retry_steps: int = 5
    resync_seconds: float = 30.0
    managed_by_selector: Mapping[str, str] = field(
        default_factory=lambda: {"app.kubernetes.io/managed-by": "tidb-operator"}
    )
    otel_enabled: bool = False
    leader_election: LeaderElectionConfig = field(default_factory=LeaderElectionConfig)


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_selector(selector: str) -> dict[str, str]:
    """Parse a label selector string (``k=v,k2=v2``) into a dict."""
    result: dict[str, str] = {}
    for part in selector.split(","):
        part = part.strip()
        if not part:
            continue
        if "=" not in part:
            raise ConfigError(f"label selector clause must be key=value, got: {part!r}")
        key, value = part.split("=", 1)
        result[key.strip()] = value.strip()
    return result


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> OperatorConfig:
    """Load operator config from the environment, failing fast on invalid values."""
    values = env if env is not None else os.environ

    watch_namespace = values.get("WATCH_NAMESPACE", "").strip()

    lease_duration = env_int(values, "LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1)
    renew_deadline = env_int(values, "LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1)
    retry_period = env_int(values, "LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1)
    if renew_deadline >= lease_duration:
        raise ConfigError(
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS must be smaller than "
            "LEADER_ELECTION_LEASE_DURATION_SECONDS"
        )
    if retry_period >= renew_deadline:
        raise ConfigError(
            "LEADER_ELECTION_RETRY_PERIOD_SECONDS must be smaller than "
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS"
        )

    leader_election = LeaderElectionConfig(
        enabled=parse_bool(values.get("LEADER_ELECTION_ENABLED"), default=True),
        namespace=values.get("LEADER_ELECTION_NAMESPACE") or watch_namespace or "default",
        lease_name=values.get("LEADER_ELECTION_LEASE_NAME", "clusterop-controller-leader"),
        identity=values.get("LEADER_ELECTION_IDENTITY") or default_identity(),
        lease_duration_seconds=lease_duration,
        renew_deadline_seconds=renew_deadline,
        retry_period_seconds=retry_period,
        stop_timeout_seconds=env_int(
            values, "LEADER_ELECTION_CONTROLLER_STOP_TIMEOUT_SECONDS", 45, minimum=1
        ),
    )

    return OperatorConfig(
        watch_namespace=watch_namespace,
        workers=env_int(values, "WORKERS", 4, minimum=1, maximum=64),
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
        control_timeout_seconds=float(
            env_int(values, "CONTROL_TIMEOUT_SECONDS", 5, minimum=1, maximum=300)
        ),
        update_retry_steps=env_int(values, "UPDATE_RETRY_STEPS", 5, minimum=1, maximum=100),
        resync_seconds=float(env_int(values, "RESYNC_PERIOD_SECONDS", 30, minimum=0)),
        managed_by_selector=parse_selector(
            values.get("MANAGED_BY_SELECTOR", "app.kubernetes.io/managed-by=tidb-operator")
        ),
        otel_enabled=parse_bool(values.get("OTEL_ENABLED")),
        leader_election=leader_election,
    )
