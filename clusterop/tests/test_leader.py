from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from clusterop.src.errors import IgnoreError
from clusterop.src.leader import LeaseLeaderElector, claim_lease, default_identity, lease_is_live
from clusterop.src.metrics import METRICS

NOT_FOUND = ApiException(status=404, reason="Not Found")


def _make_elector(
    coordination_api: Any = None,
    identity: str = "op-1",
    lease_duration_seconds: int = 15,
    renew_deadline_seconds: int = 10,
    retry_period_seconds: int = 0,
) -> LeaseLeaderElector:
    return LeaseLeaderElector(
        coordination_api=coordination_api or MagicMock(),
        namespace="db-operator",
        lease_name="test-lease",
        identity=identity,
        lease_duration_seconds=lease_duration_seconds,
        renew_deadline_seconds=renew_deadline_seconds,
        retry_period_seconds=retry_period_seconds,
    )


def _lease(holder: str | None, renewed_ago: float, acquired_ago: float = 30.0) -> V1Lease:
    now = datetime.now(UTC)
    return V1Lease(
        metadata=V1ObjectMeta(name="test-lease", namespace="db-operator", resource_version="5"),
        spec=V1LeaseSpec(
            holder_identity=holder,
            lease_duration_seconds=15,
            renew_time=now - timedelta(seconds=renewed_ago),
            acquire_time=now - timedelta(seconds=acquired_ago),
        ),
    )


def _replaced_body(api: MagicMock) -> V1Lease:
    return api.replace_namespaced_lease.call_args.kwargs["body"]


def test_creates_lease_when_not_found() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = NOT_FOUND

    result = _make_elector(coordination_api=api)._try_acquire_or_renew()

    assert result is True
    api.create_namespaced_lease.assert_called_once()
    body = api.create_namespaced_lease.call_args.kwargs["body"]
    assert body.spec.holder_identity == "op-1"
    assert body.metadata.namespace == "db-operator"


def test_lost_create_race_returns_false() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = NOT_FOUND
    api.create_namespaced_lease.side_effect = ApiException(status=409, reason="Conflict")

    assert _make_elector(coordination_api=api)._try_acquire_or_renew() is False


def test_renewal_keeps_acquire_time() -> None:
    existing = _lease("op-1", renewed_ago=5)
    original_acquire = existing.spec.acquire_time
    api = MagicMock()
    api.read_namespaced_lease.return_value = existing

    result = _make_elector(coordination_api=api)._try_acquire_or_renew()

    assert result is True
    api.read_namespaced_lease.assert_called_once_with(name="test-lease", namespace="db-operator")
    body = _replaced_body(api)
    assert body.spec.acquire_time == original_acquire
    assert body.spec.renew_time > original_acquire


def test_active_lease_of_another_holder_is_left_alone() -> None:
    api = MagicMock()
    api.read_namespaced_lease.return_value = _lease("op-2", renewed_ago=2)

    result = _make_elector(coordination_api=api)._try_acquire_or_renew()

    assert result is False
    api.replace_namespaced_lease.assert_not_called()


def test_takeover_of_expired_lease_refreshes_acquire_time() -> None:
    existing = _lease("op-2", renewed_ago=60, acquired_ago=120)
    old_acquire = existing.spec.acquire_time
    api = MagicMock()
    api.read_namespaced_lease.return_value = existing

    result = _make_elector(coordination_api=api)._try_acquire_or_renew()

    assert result is True
    body = _replaced_body(api)
    assert body.spec.holder_identity == "op-1"
    assert body.spec.acquire_time != old_acquire
    assert body.spec.lease_duration_seconds == 15


def test_released_lease_is_taken_over() -> None:
    api = MagicMock()
    api.read_namespaced_lease.return_value = _lease(None, renewed_ago=1)

    assert _make_elector(coordination_api=api)._try_acquire_or_renew() is True
    assert _replaced_body(api).spec.holder_identity == "op-1"


def test_conflicting_renewal_rereads_the_lease() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = [_lease("op-1", 5), _lease("op-1", 4)]
    api.replace_namespaced_lease.side_effect = [ApiException(status=409, reason="Conflict"), None]

    result = _make_elector(coordination_api=api)._try_acquire_or_renew()

    assert result is True
    assert api.read_namespaced_lease.call_count == 2
    assert api.replace_namespaced_lease.call_count == 2


def test_takeover_race_lost_to_active_holder() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = [_lease("op-2", 60), _lease("op-3", 0)]
    api.replace_namespaced_lease.side_effect = ApiException(status=409, reason="Conflict")

    result = _make_elector(coordination_api=api)._try_acquire_or_renew()

    assert result is False
    assert api.replace_namespaced_lease.call_count == 1


def test_persistent_conflicts_give_up_for_the_cycle() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = lambda **kwargs: _lease("op-1", 5)
    api.replace_namespaced_lease.side_effect = ApiException(status=409, reason="Conflict")

    result = _make_elector(coordination_api=api)._try_acquire_or_renew()

    assert result is False
    assert api.replace_namespaced_lease.call_count == 3


def test_server_error_does_not_claim_leadership() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = ApiException(status=500, reason="boom")

    assert _make_elector(coordination_api=api)._try_acquire_or_renew() is False
    api.create_namespaced_lease.assert_not_called()


def test_run_calls_on_started_leading() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = NOT_FOUND
    elector = _make_elector(coordination_api=api)
    stop = threading.Event()
    started = threading.Event()

    def on_started() -> None:
        started.set()
        stop.set()

    elector.run(on_started_leading=on_started, on_stopped_leading=lambda: None, stop_event=stop)

    assert started.is_set()
    assert not elector.is_leader


def test_unexpected_error_does_not_crash_election_loop() -> None:
    api = MagicMock()
    reads = 0

    def flaky_read(**kwargs: Any) -> Any:
        nonlocal reads
        reads += 1
        if reads == 1:
            raise ConnectionError("network blip")
        raise NOT_FOUND

    api.read_namespaced_lease.side_effect = flaky_read
    elector = _make_elector(coordination_api=api)
    stop = threading.Event()

    elector.run(on_started_leading=stop.set, on_stopped_leading=lambda: None, stop_event=stop)

    assert reads >= 2
    api.create_namespaced_lease.assert_called_once()


def test_shutdown_releases_lease() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = [_lease("op-1", 0), _lease("op-1", 0)]
    elector = _make_elector(coordination_api=api)
    stop = threading.Event()

    elector.run(on_started_leading=stop.set, on_stopped_leading=lambda: None, stop_event=stop)

    released = api.replace_namespaced_lease.call_args_list[-1].kwargs["body"]
    assert released.spec.holder_identity is None


def test_release_leaves_lease_of_new_holder_alone() -> None:
    api = MagicMock()
    api.read_namespaced_lease.return_value = _lease("op-2", 0)

    _make_elector(coordination_api=api)._release_lease()

    api.replace_namespaced_lease.assert_not_called()


def test_default_identity_uses_hostname(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HOSTNAME", "clusterop-7d9f")
    monkeypatch.delenv("POD_NAME", raising=False)

    assert default_identity() == "clusterop-7d9f"


def test_default_identity_falls_back_to_pod_name(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("HOSTNAME", raising=False)
    monkeypatch.setenv("POD_NAME", "clusterop-0")

    assert default_identity() == "clusterop-0"


def test_constructor_rejects_invalid_timing_relationships() -> None:
    with pytest.raises(ValueError, match="renew_deadline_seconds must be smaller"):
        _make_elector(lease_duration_seconds=10, renew_deadline_seconds=10)

    with pytest.raises(ValueError, match="retry_period_seconds must be smaller"):
        _make_elector(lease_duration_seconds=15, renew_deadline_seconds=5, retry_period_seconds=5)


def test_loses_leadership_after_renew_deadline_expires() -> None:
    elector = _make_elector(renew_deadline_seconds=1)
    stop = threading.Event()
    stopped_calls = 0

    def on_stopped() -> None:
        nonlocal stopped_calls
        stopped_calls += 1
        stop.set()

    with (
        pytest.MonkeyPatch.context() as mp,
        patch.object(elector, "_try_acquire_or_renew", side_effect=[True, False]),
        patch.object(elector, "_release_lease") as release_mock,
    ):
        mp.setattr(
            "clusterop.src.leader.time.monotonic",
            MagicMock(side_effect=[0.0, 0.1, 1.5, 1.6]),
        )
        elector.run(on_started_leading=lambda: None, on_stopped_leading=on_stopped, stop_event=stop)

    assert stopped_calls == 1
    release_mock.assert_not_called()


def test_keeps_leadership_when_failure_is_within_renew_deadline() -> None:
    elector = _make_elector(renew_deadline_seconds=3)
    stop = threading.Event()
    stopped_calls = 0
    cycles = 0

    def on_stopped() -> None:
        nonlocal stopped_calls
        stopped_calls += 1

    def try_cycle() -> bool:
        nonlocal cycles
        cycles += 1
        if cycles == 1:
            return True
        stop.set()
        return False

    with (
        pytest.MonkeyPatch.context() as mp,
        patch.object(elector, "_try_acquire_or_renew", side_effect=try_cycle),
        patch.object(elector, "_release_lease") as release_mock,
    ):
        mp.setattr("clusterop.src.leader.time.monotonic", MagicMock(side_effect=[0.0, 0.1, 0.5]))
        elector.run(on_started_leading=lambda: None, on_stopped_leading=on_stopped, stop_event=stop)

    assert stopped_calls == 1
    release_mock.assert_called_once()


def test_leader_metrics_track_acquire_latency_and_transitions() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = NOT_FOUND
    elector = _make_elector(coordination_api=api)
    stop = threading.Event()

    acquired_before = METRICS.leader_transitions_total.labels(transition="acquired")._value.get()
    lost_before = METRICS.leader_transitions_total.labels(transition="lost")._value.get()
    latency_sum_before = METRICS.leader_acquire_latency_seconds._sum.get()

    with pytest.MonkeyPatch.context() as mp:
        mp.setattr("clusterop.src.leader.time.monotonic", MagicMock(side_effect=[10.0, 14.0]))
        elector.run(on_started_leading=stop.set, on_stopped_leading=lambda: None, stop_event=stop)

    assert METRICS.leader_transitions_total.labels(transition="acquired")._value.get() - acquired_before == 1
    assert METRICS.leader_transitions_total.labels(transition="lost")._value.get() - lost_before == 1
    assert METRICS.leader_acquire_latency_seconds._sum.get() - latency_sum_before == pytest.approx(4.0)
    assert METRICS.leader_state._value.get() == 0


def test_lease_liveness_uses_recorded_duration() -> None:
    now = datetime.now(UTC)
    spec = V1LeaseSpec(holder_identity="op-2", renew_time=now - timedelta(seconds=20), lease_duration_seconds=30)

    assert lease_is_live(spec, now, default_duration=15)
    spec.lease_duration_seconds = None
    assert not lease_is_live(spec, now, default_duration=15)


def test_lease_without_renewal_or_holder_is_not_live() -> None:
    now = datetime.now(UTC)

    assert not lease_is_live(V1LeaseSpec(holder_identity="op-2"), now, 15)
    assert not lease_is_live(V1LeaseSpec(renew_time=now), now, 15)


def test_naive_renew_time_is_treated_as_utc() -> None:
    now = datetime.now(UTC)
    spec = V1LeaseSpec(holder_identity="op-2", renew_time=(now - timedelta(seconds=2)).replace(tzinfo=None))

    assert lease_is_live(spec, now, 15)


def test_claim_fills_an_empty_lease() -> None:
    now = datetime.now(UTC)
    lease = V1Lease(metadata=V1ObjectMeta(name="test-lease"))

    claim_lease(lease, "op-1", 15, now)

    assert lease.spec.holder_identity == "op-1"
    assert lease.spec.acquire_time == now
    assert lease.spec.renew_time == now
    assert lease.spec.lease_duration_seconds == 15


def test_claim_refuses_live_lease_of_another_holder() -> None:
    lease = _lease("op-2", renewed_ago=1)

    with pytest.raises(IgnoreError, match="held by op-2"):
        claim_lease(lease, "op-1", 15, datetime.now(UTC))

    assert lease.spec.holder_identity == "op-2"
