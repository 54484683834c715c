from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from clusterop.src.errors import IgnoreError, RetryExhaustedError, is_conflict, is_not_found
from clusterop.src.kube import ObjectKey
from clusterop.src.metrics import METRICS
from clusterop.src.update import ModelStore, RetryPolicy, guaranteed_update

LOGGER = logging.getLogger(__name__)

# Attempts per election cycle; the next cycle retries anyway.
LEASE_UPDATE_POLICY = RetryPolicy(steps=3)


def _aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo else moment.replace(tzinfo=UTC)


def lease_is_live(spec: V1LeaseSpec, now: datetime, default_duration: int) -> bool:
    """Whether the recorded holder renewed within its lease duration."""
    if not spec.holder_identity or spec.renew_time is None:
        return False
    duration = spec.lease_duration_seconds or default_duration
    return (now - _aware(spec.renew_time)).total_seconds() < duration


def claim_lease(lease: V1Lease, identity: str, duration: int, now: datetime) -> None:
    """Record *identity* as holder of *lease*.

    Raises :class:`IgnoreError` while another holder's lease is live. The
    acquire time only moves when the holder changes.
    """
    spec = lease.spec = lease.spec or V1LeaseSpec()
    if spec.holder_identity != identity and lease_is_live(spec, now, duration):
        raise IgnoreError(f"lease {lease.metadata.name} is held by {spec.holder_identity}")
    if spec.holder_identity != identity or spec.acquire_time is None:
        spec.acquire_time = now
    spec.holder_identity = identity
    spec.renew_time = now
    spec.lease_duration_seconds = duration


class LeaseLeaderElector:
    """Single-active-replica election on a ``coordination.k8s.io/v1`` Lease.

    Every ``retry_period_seconds`` the elector claims the Lease through a
    guaranteed update (creating it on ``404``). A claim fails while another
    replica's lease is live. A leader that cannot renew for
    ``renew_deadline_seconds`` steps down; on shutdown the Lease is released
    so a standby can take over without waiting for expiry.
    """

    def __init__(
        self,
        coordination_api: CoordinationV1Api,
        namespace: str,
        lease_name: str,
        identity: str,
        lease_duration_seconds: int = 15,
        renew_deadline_seconds: int = 10,
        retry_period_seconds: int = 2,
    ) -> None:
        if renew_deadline_seconds < 1:
            raise ValueError("renew_deadline_seconds must be >= 1")
        if retry_period_seconds < 0:
            raise ValueError("retry_period_seconds must be >= 0")
        if renew_deadline_seconds >= lease_duration_seconds:
            raise ValueError("renew_deadline_seconds must be smaller than lease_duration_seconds")
        if retry_period_seconds >= renew_deadline_seconds:
            raise ValueError("retry_period_seconds must be smaller than renew_deadline_seconds")

        self.coordination_api = coordination_api
        self.lease_key = ObjectKey(namespace, lease_name)
        self.identity = identity
        self.lease_duration_seconds = lease_duration_seconds
        self.renew_deadline_seconds = renew_deadline_seconds
        self.retry_period_seconds = retry_period_seconds
        self._store = ModelStore(
            coordination_api.read_namespaced_lease,
            coordination_api.replace_namespaced_lease,
        )
        self._is_leader = False

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    def _claim(self, lease: V1Lease) -> None:
        claim_lease(lease, self.identity, self.lease_duration_seconds, datetime.now(UTC))

    def _try_acquire_or_renew(self) -> bool:
        try:
            guaranteed_update(self._store, self.lease_key, self._claim, policy=LEASE_UPDATE_POLICY)
        except IgnoreError as exc:
            LOGGER.debug("Not leading: %s", exc)
            return False
        except RetryExhaustedError:
            LOGGER.debug("Lease %s kept changing under us", self.lease_key)
            return False
        except ApiException as exc:
            if is_not_found(exc):
                return self._create_lease()
            LOGGER.warning("Failed to claim lease %s: %s", self.lease_key, exc.reason)
            return False
        return True

    def _create_lease(self) -> bool:
        lease = V1Lease(
            metadata=V1ObjectMeta(name=self.lease_key.name, namespace=self.lease_key.namespace)
        )
        self._claim(lease)
        try:
            self.coordination_api.create_namespaced_lease(
                namespace=self.lease_key.namespace, body=lease
            )
        except ApiException as exc:
            if is_conflict(exc):
                LOGGER.debug("Lease %s was created concurrently", self.lease_key)
            else:
                LOGGER.warning("Failed to create lease %s: %s", self.lease_key, exc.reason)
            return False
        LOGGER.info("Created leader lease %s", self.lease_key)
        return True

    def _release_lease(self) -> None:
        def release(lease: V1Lease) -> None:
            if lease.spec is not None and lease.spec.holder_identity == self.identity:
                lease.spec.holder_identity = None

        try:
            guaranteed_update(self._store, self.lease_key, release, policy=LEASE_UPDATE_POLICY)
        except Exception:
            LOGGER.warning("Failed to release leader lease %s", self.lease_key, exc_info=True)
            return
        LOGGER.info("Released leader lease %s", self.lease_key)

    def _cycle(self) -> bool:
        try:
            return self._try_acquire_or_renew()
        except Exception:
            LOGGER.exception("Unexpected error in leader election cycle")
            return False

    def _step_down(self) -> None:
        self._is_leader = False
        METRICS.leader_state.set(0)
        METRICS.leader_transitions_total.labels(transition="lost").inc()

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
    ) -> None:
        """Campaign until *stop_event* is set, invoking the callbacks on every transition."""
        LOGGER.info("Campaigning for lease %s as %s", self.lease_key, self.identity)
        campaign_started = time.monotonic()
        renewed_at = campaign_started
        METRICS.leader_state.set(0)

        while not stop_event.is_set():
            if self._cycle():
                renewed_at = time.monotonic()
                if not self._is_leader:
                    self._is_leader = True
                    LOGGER.info("Became leader of %s", self.lease_key)
                    METRICS.leader_state.set(1)
                    METRICS.leader_transitions_total.labels(transition="acquired").inc()
                    METRICS.leader_acquire_latency_seconds.observe(renewed_at - campaign_started)
                    on_started_leading()
            elif self._is_leader:
                stale_for = time.monotonic() - renewed_at
                if stale_for < self.renew_deadline_seconds:
                    LOGGER.warning(
                        "Lease renewal failed %.2fs ago; still leading until %ss",
                        stale_for,
                        self.renew_deadline_seconds,
                    )
                else:
                    LOGGER.warning("Stepping down after %.2fs without a renewal", stale_for)
                    self._step_down()
                    campaign_started = time.monotonic()
                    on_stopped_leading()
            stop_event.wait(timeout=self.retry_period_seconds)

        if self._is_leader:
            self._release_lease()
            self._step_down()
            on_stopped_leading()


def default_identity() -> str:
    """Return this replica's election identity, the pod hostname by default."""
    return os.getenv("HOSTNAME", os.getenv("POD_NAME", "unknown"))
