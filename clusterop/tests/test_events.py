from __future__ import annotations

import threading
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException, V1ObjectMeta, V1OwnerReference, V1StatefulSet

from clusterop.src.errors import NotFoundError
from clusterop.src.events import EventHandler, Informer, watch_for_controller, watch_for_object
from clusterop.src.identity import KindError, cluster_owner_ref
from clusterop.src.kube import DeletedFinalStateUnknown
from clusterop.src.resources import TidbCluster
from clusterop.src.workqueue import WorkQueue


class FakeSource:
    def __init__(self) -> None:
        self.handlers: list[EventHandler] = []

    def add_event_handler(self, handler: EventHandler) -> None:
        self.handlers.append(handler)

    def add(self, obj: Any) -> None:
        for handler in self.handlers:
            handler.on_add(obj)

    def update(self, old: Any, cur: Any) -> None:
        for handler in self.handlers:
            handler.on_update(old, cur)

    def delete(self, obj: Any) -> None:
        for handler in self.handlers:
            handler.on_delete(obj)


def _drain(queue: WorkQueue) -> list[object]:
    items = []
    while (item := queue.get(timeout=0)) is not None:
        items.append(item)
        queue.done(item)
    return items


def make_cluster(name: str = "demo", namespace: str = "ns", uid: str = "uid-1") -> TidbCluster:
    return TidbCluster({"metadata": {"name": name, "namespace": namespace, "uid": uid}})


def make_owned(
    owner: V1OwnerReference | None,
    name: str = "demo-pd",
    labels: dict[str, str] | None = None,
) -> V1StatefulSet:
    return V1StatefulSet(
        metadata=V1ObjectMeta(
            name=name,
            namespace="ns",
            labels=labels,
            owner_references=[owner] if owner is not None else None,
        )
    )


class TestWatchForObject:
    def test_every_event_enqueues_own_key(self) -> None:
        source, queue = FakeSource(), WorkQueue("test")
        watch_for_object(source, queue)
        cluster = make_cluster()

        source.add(cluster)
        source.update(cluster, cluster)
        source.delete(DeletedFinalStateUnknown(key="ns/gone", obj=None))

        assert _drain(queue) == ["ns/demo", "ns/gone"]

    def test_objects_without_key_are_skipped(self) -> None:
        source, queue = FakeSource(), WorkQueue("test")
        watch_for_object(source, queue)

        source.add(SimpleNamespace())

        assert _drain(queue) == []


class TestWatchForController:
    def _setup(
        self, get_controller: Any, label_filter: dict[str, str] | None = None
    ) -> tuple[FakeSource, WorkQueue]:
        source, queue = FakeSource(), WorkQueue("test")
        watch_for_controller(source, queue, get_controller, label_filter)
        return source, queue

    def test_enqueues_owner_key(self) -> None:
        cluster = make_cluster()
        source, queue = self._setup(lambda namespace, name: cluster)

        source.add(make_owned(cluster_owner_ref(cluster)))

        assert _drain(queue) == ["ns/demo"]

    def test_object_without_controller_is_ignored(self) -> None:
        get_controller = MagicMock()
        source, queue = self._setup(get_controller)
        non_controlling = V1OwnerReference(
            api_version="pingcap.com/v1alpha1", kind="TidbCluster", name="demo", uid="u"
        )

        source.add(make_owned(None))
        source.add(make_owned(non_controlling))

        assert _drain(queue) == []
        get_controller.assert_not_called()

    def test_kind_mismatch_is_ignored(self) -> None:
        cluster = make_cluster()
        source, queue = self._setup(lambda namespace, name: cluster)
        ref = cluster_owner_ref(cluster)
        ref.kind = "DMCluster"

        source.add(make_owned(ref))

        assert _drain(queue) == []

    def test_group_mismatch_is_ignored(self) -> None:
        cluster = make_cluster()
        source, queue = self._setup(lambda namespace, name: cluster)
        ref = cluster_owner_ref(cluster)
        ref.api_version = "example.com/v1"

        source.add(make_owned(ref))

        assert _drain(queue) == []

    def test_controller_type_resolved_through_registry(self) -> None:
        owner = V1StatefulSet(metadata=V1ObjectMeta(name="owner", namespace="ns"))
        source, queue = self._setup(lambda namespace, name: owner)
        ref = V1OwnerReference(
            api_version="apps/v1", kind="StatefulSet", name="owner", uid="u", controller=True
        )

        source.add(make_owned(ref))

        assert _drain(queue) == ["ns/owner"]

    def test_unregistered_controller_type_propagates(self) -> None:
        owner = SimpleNamespace(metadata=SimpleNamespace(name="owner", namespace="ns"))
        source, _queue = self._setup(lambda namespace, name: owner)
        ref = V1OwnerReference(api_version="v1", kind="Thing", name="owner", uid="u", controller=True)

        with pytest.raises(KindError):
            source.add(make_owned(ref))

    def test_duplicate_events_enqueue_once(self) -> None:
        cluster = make_cluster()
        source, queue = self._setup(lambda namespace, name: cluster)
        owned = make_owned(cluster_owner_ref(cluster))

        source.add(owned)
        source.update(owned, owned)
        source.add(make_owned(cluster_owner_ref(cluster), name="demo-tikv"))

        assert _drain(queue) == ["ns/demo"]

    def test_label_filter_requires_every_pair(self) -> None:
        cluster = make_cluster()
        source, queue = self._setup(
            lambda namespace, name: cluster,
            label_filter={"app.kubernetes.io/managed-by": "tidb-operator"},
        )
        ref = cluster_owner_ref(cluster)

        source.add(make_owned(ref, labels={"app.kubernetes.io/managed-by": "someone-else"}))
        source.add(make_owned(ref, labels=None))

        assert _drain(queue) == []

        source.add(make_owned(ref, labels={"app.kubernetes.io/managed-by": "tidb-operator"}))

        assert _drain(queue) == ["ns/demo"]

    def test_missing_controller_is_skipped_quietly(self) -> None:
        def get_controller(namespace: str, name: str) -> Any:
            raise NotFoundError(namespace, name)

        source, queue = self._setup(get_controller)

        source.add(make_owned(cluster_owner_ref(make_cluster())))

        assert _drain(queue) == []

    def test_controller_lookup_error_is_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        def get_controller(namespace: str, name: str) -> Any:
            raise ApiException(status=500, reason="boom")

        source, queue = self._setup(get_controller)

        source.add(make_owned(cluster_owner_ref(make_cluster())))

        assert _drain(queue) == []
        assert "Cannot get controller ns/demo" in caplog.text

    def test_malformed_api_version_is_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        get_controller = MagicMock()
        source, queue = self._setup(get_controller)
        ref = V1OwnerReference(api_version="a/b/c", kind="TidbCluster", name="demo", uid="u", controller=True)

        source.add(make_owned(ref))

        assert _drain(queue) == []
        get_controller.assert_not_called()
        assert "Cannot parse group version" in caplog.text

    def test_tombstones_route_to_owner(self) -> None:
        cluster = make_cluster()
        source, queue = self._setup(lambda namespace, name: cluster)
        owned = make_owned(cluster_owner_ref(cluster))

        source.delete(DeletedFinalStateUnknown(key="ns/demo-pd", obj=owned))

        assert _drain(queue) == ["ns/demo"]

    def test_empty_tombstone_is_skipped(self) -> None:
        source, queue = self._setup(MagicMock())

        source.delete(DeletedFinalStateUnknown(key="ns/demo-pd", obj=None))

        assert _drain(queue) == []


# ---------------------------------------------------------------------------
# Informer tests
# ---------------------------------------------------------------------------


def _listing(resource_version: str, *clusters: TidbCluster) -> dict[str, Any]:
    return {
        "metadata": {"resourceVersion": resource_version},
        "items": [cluster.to_dict() for cluster in clusters],
    }


def _versioned(name: str, resource_version: str) -> TidbCluster:
    cluster = make_cluster(name=name)
    cluster.metadata["resourceVersion"] = resource_version
    return cluster


class Recorder:
    def __init__(self) -> None:
        self.events: list[tuple[str, str]] = []

    def handler(self) -> EventHandler:
        return EventHandler(
            on_add=lambda obj: self.events.append(("add", obj.name)),
            on_update=lambda old, cur: self.events.append(("update", cur.name)),
            on_delete=lambda obj: self.events.append(("delete", self._name(obj))),
        )

    @staticmethod
    def _name(obj: Any) -> str:
        if isinstance(obj, DeletedFinalStateUnknown):
            return f"tombstone:{obj.key}"
        return obj.name


def _informer(list_fn: Any) -> tuple[Informer, Recorder]:
    informer = Informer(list_fn, name="tidbclusters", decode=TidbCluster.from_dict)
    recorder = Recorder()
    informer.add_event_handler(recorder.handler())
    return informer, recorder


def test_informer_watches_from_list_resource_version() -> None:
    shutdown_event = threading.Event()
    informer, recorder = _informer(lambda **kwargs: _listing("100", _versioned("a", "90")))
    mock_watcher = MagicMock()
    seen_versions: list[Any] = []

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        seen_versions.append(kwargs.get("resource_version"))
        shutdown_event.set()
        return iter(
            [
                {"type": "MODIFIED", "object": _versioned("a", "101").to_dict()},
                {"type": "ADDED", "object": _versioned("b", "102").to_dict()},
            ]
        )

    mock_watcher.stream.side_effect = patched_stream

    with patch("clusterop.src.events.watch.Watch", return_value=mock_watcher):
        informer.run_forever(shutdown_event=shutdown_event)

    assert seen_versions == ["100"]
    assert recorder.events == [("add", "a")]
    assert not informer.ready.is_set()


def test_informer_cache_serves_lookups() -> None:
    shutdown_event = threading.Event()
    informer, recorder = _informer(lambda **kwargs: _listing("100", _versioned("a", "90")))
    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        yield {"type": "ADDED", "object": _versioned("b", "101").to_dict()}
        yield {"type": "BOOKMARK", "object": {"metadata": {"resourceVersion": "150"}}}
        yield {"type": "DELETED", "object": _versioned("a", "151").to_dict()}
        shutdown_event.set()

    mock_watcher.stream.side_effect = patched_stream

    with patch("clusterop.src.events.watch.Watch", return_value=mock_watcher):
        informer.run_forever(shutdown_event=shutdown_event)

    assert informer.get("ns", "b").name == "b"
    with pytest.raises(NotFoundError):
        informer.get("ns", "a")
    assert [obj.name for obj in informer.list()] == ["b"]
    assert recorder.events == [("add", "a"), ("add", "b"), ("delete", "a")]


def test_informer_relists_on_410_and_emits_tombstones() -> None:
    listings = iter(
        [
            _listing("100", _versioned("a", "90"), _versioned("b", "91")),
            _listing("200", _versioned("a", "150")),
        ]
    )
    shutdown_event = threading.Event()
    informer, recorder = _informer(lambda **kwargs: next(listings))
    mock_watcher = MagicMock()
    seen_versions: list[Any] = []

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        seen_versions.append(kwargs.get("resource_version"))
        if len(seen_versions) == 1:
            raise ApiException(status=410, reason="Gone")
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("clusterop.src.events.watch.Watch", return_value=mock_watcher):
        informer.run_forever(shutdown_event=shutdown_event)

    assert seen_versions == ["100", "200"]
    assert recorder.events == [
        ("add", "a"),
        ("add", "b"),
        ("update", "a"),
        ("delete", "tombstone:ns/b"),
    ]


def test_informer_treats_error_events_like_api_errors() -> None:
    listings = iter([_listing("100"), _listing("300")])
    shutdown_event = threading.Event()
    informer, _recorder = _informer(lambda **kwargs: next(listings))
    mock_watcher = MagicMock()
    seen_versions: list[Any] = []

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        seen_versions.append(kwargs.get("resource_version"))
        if len(seen_versions) == 1:
            return iter([{"type": "ERROR", "object": {"code": 410, "message": "too old"}}])
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("clusterop.src.events.watch.Watch", return_value=mock_watcher):
        informer.run_forever(shutdown_event=shutdown_event)

    assert seen_versions == ["100", "300"]


def test_informer_retries_initial_list_with_backoff() -> None:
    shutdown_event = threading.Event()
    wait_values: list[float] = []
    attempts = 0

    def fake_list(**kwargs: Any) -> dict[str, Any]:
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise ApiException(status=500, reason="temporary startup failure")
        return _listing("100")

    informer, _recorder = _informer(fake_list)
    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    def fake_wait(timeout: float | None = None) -> bool:
        if timeout is not None:
            wait_values.append(timeout)
        return False

    with (
        patch("clusterop.src.events.watch.Watch", return_value=mock_watcher),
        patch("clusterop.src.events.threading.Event.wait", side_effect=fake_wait),
        patch("clusterop.src.events.random.random", return_value=0.5),
    ):
        informer.run_forever(shutdown_event=shutdown_event)

    assert attempts == 2
    assert wait_values == [pytest.approx(1.0)]


def test_informer_exits_fast_on_startup_rbac_denied() -> None:
    def fake_list(**kwargs: Any) -> dict[str, Any]:
        raise ApiException(status=403, reason="forbidden")

    informer, _recorder = _informer(fake_list)
    watch_factory = MagicMock()

    with patch("clusterop.src.events.watch.Watch", watch_factory):
        informer.run_forever(shutdown_event=threading.Event())

    watch_factory.assert_not_called()
    assert not informer.ready.is_set()


def test_informer_exits_fast_on_watch_rbac_denied() -> None:
    wait_values: list[float] = []
    informer, _recorder = _informer(lambda **kwargs: _listing("100"))
    mock_watcher = MagicMock()
    mock_watcher.stream.side_effect = ApiException(status=401, reason="unauthorized")

    def fake_wait(timeout: float | None = None) -> bool:
        if timeout is not None:
            wait_values.append(timeout)
        return False

    with (
        patch("clusterop.src.events.watch.Watch", return_value=mock_watcher),
        patch("clusterop.src.events.threading.Event.wait", side_effect=fake_wait),
    ):
        informer.run_forever(shutdown_event=threading.Event())

    assert wait_values == []
    assert not informer.ready.is_set()


def test_informer_applies_exponential_backoff_on_api_error() -> None:
    shutdown_event = threading.Event()
    wait_values: list[float] = []
    informer, _recorder = _informer(lambda **kwargs: _listing("100"))
    mock_watcher = MagicMock()
    call_count = 0

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal call_count
        call_count += 1
        if call_count <= 3:
            raise ApiException(status=500, reason="Internal Server Error")
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    def fake_wait(timeout: float | None = None) -> bool:
        if timeout is not None:
            wait_values.append(timeout)
        return False

    with (
        patch("clusterop.src.events.watch.Watch", return_value=mock_watcher),
        patch("clusterop.src.events.threading.Event.wait", side_effect=fake_wait),
        patch("clusterop.src.events.random.random", return_value=0.5),
    ):
        informer.run_forever(shutdown_event=shutdown_event)

    assert wait_values == [pytest.approx(1.0), pytest.approx(2.0), pytest.approx(4.0)]


def test_informer_handler_failure_does_not_stop_dispatch(caplog: pytest.LogCaptureFixture) -> None:
    informer = Informer(lambda **kwargs: _listing("1"), name="tidbclusters", decode=TidbCluster.from_dict)
    seen: list[str] = []

    def broken(obj: Any) -> None:
        raise RuntimeError("handler bug")

    informer.add_event_handler(EventHandler(on_add=broken))
    informer.add_event_handler(EventHandler(on_add=lambda obj: seen.append(obj.name)))

    informer.handle_event("ADDED", _versioned("a", "1").to_dict())

    assert seen == ["a"]
    assert "Event handler failed" in caplog.text


def test_informer_shutdown_before_start_skips_everything() -> None:
    shutdown_event = threading.Event()
    shutdown_event.set()
    list_fn = MagicMock()
    informer, _recorder = _informer(list_fn)

    with patch("clusterop.src.events.watch.Watch") as watch_factory:
        informer.run_forever(shutdown_event=shutdown_event)

    list_fn.assert_not_called()
    watch_factory.assert_not_called()
