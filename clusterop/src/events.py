from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from kubernetes import watch
from kubernetes.client import ApiException

from clusterop.src.errors import NotFoundError, is_not_found
from clusterop.src.identity import KindRegistry, controller_of, parse_group_version
from clusterop.src.kube import DeletedFinalStateUnknown, ObjectKey, meta_namespace_key, meta_of, type_meta_of
from clusterop.src.metrics import METRICS
from clusterop.src.resources import SCHEME
from clusterop.src.workqueue import WorkQueue

LOGGER = logging.getLogger(__name__)

GetControllerFn = Callable[[str, str], Any]


@dataclass(frozen=True)
class EventHandler:
    on_add: Callable[[Any], None] | None = None
    on_update: Callable[[Any, Any], None] | None = None
    on_delete: Callable[[Any], None] | None = None


class EventSource(Protocol):
    def add_event_handler(self, handler: EventHandler) -> None: ...


def _same_handler_for_all(enqueue: Callable[[Any], None]) -> EventHandler:
    return EventHandler(
        on_add=enqueue,
        on_update=lambda _old, cur: enqueue(cur),
        on_delete=enqueue,
    )


def watch_for_object(source: EventSource, queue: WorkQueue) -> None:
    """Enqueue the key of every object *source* reports as added, updated or deleted."""

    def enqueue(obj: Any) -> None:
        try:
            key = meta_namespace_key(obj)
        except (TypeError, ValueError):
            LOGGER.error("Couldn't get key for object %r", obj)
            METRICS.event_skips_total.labels(reason="no_key").inc()
            return
        queue.add(key)

    source.add_event_handler(_same_handler_for_all(enqueue))


def _matches_kind(obj: Any, group: str, kind: str, registry: KindRegistry) -> bool:
    api_version, obj_kind = type_meta_of(obj)
    if obj_kind:
        obj_group, _ = parse_group_version(api_version)
        return obj_kind == kind and obj_group == group
    gvk = registry.infer_kind(obj)
    return gvk.kind == kind and gvk.group == group


def watch_for_controller(
    source: EventSource,
    queue: WorkQueue,
    get_controller: GetControllerFn,
    label_filter: Mapping[str, str] | None = None,
    registry: KindRegistry | None = None,
) -> None:
    """Route events on owned objects to the key of their controlling owner.

    An object is skipped unless it carries every ``label_filter`` pair and a
    controller owner reference. The owner is fetched with
    ``get_controller(namespace, name)``, normally a cache lookup, and only
    enqueued when its kind and API group match the reference, so a stale
    reference to a deleted and recreated object of another type is ignored.

    Kind lookups on objects without recorded type information go through
    *registry* (the default scheme when omitted); an unregistered or
    ambiguous type propagates as a :class:`~clusterop.src.identity.KindError`.
    """
    kinds = registry or SCHEME

    def enqueue(obj: Any) -> None:
        if isinstance(obj, DeletedFinalStateUnknown):
            obj = obj.obj
        try:
            meta = meta_of(obj)
        except TypeError:
            LOGGER.error("%r is not an object with metadata, cannot get its controller", obj)
            METRICS.event_skips_total.labels(reason="no_metadata").inc()
            return

        if label_filter and any(meta.labels.get(k) != v for k, v in label_filter.items()):
            METRICS.event_skips_total.labels(reason="label_filter").inc()
            return

        ref = controller_of(obj)
        if ref is None:
            METRICS.event_skips_total.labels(reason="no_controller").inc()
            return

        try:
            group, _ = parse_group_version(ref.api_version or "")
        except ValueError:
            LOGGER.error(
                "Cannot parse group version of controller %s of %s/%s",
                ref.api_version,
                meta.namespace,
                meta.name,
            )
            METRICS.event_errors_total.inc()
            return

        try:
            controller = get_controller(meta.namespace, ref.name)
        except Exception as exc:
            if is_not_found(exc):
                LOGGER.debug(
                    "Controller %s/%s of %s not found, ignoring", meta.namespace, ref.name, meta.name
                )
                METRICS.event_skips_total.labels(reason="controller_not_found").inc()
            else:
                LOGGER.error(
                    "Cannot get controller %s/%s of %s: %s", meta.namespace, ref.name, meta.name, exc
                )
                METRICS.event_errors_total.inc()
            return

        if not _matches_kind(controller, group, ref.kind, kinds):
            METRICS.event_skips_total.labels(reason="kind_mismatch").inc()
            return

        try:
            key = meta_namespace_key(controller)
        except (TypeError, ValueError):
            LOGGER.error("Couldn't get key for controller %r", controller)
            METRICS.event_skips_total.labels(reason="no_key").inc()
            return
        queue.add(key)

    source.add_event_handler(_same_handler_for_all(enqueue))


def _list_items(result: Any) -> list[Any]:
    if isinstance(result, Mapping):
        return list(result.get("items") or [])
    return list(getattr(result, "items", None) or [])


def _list_resource_version(result: Any) -> str | None:
    if isinstance(result, Mapping):
        return (result.get("metadata") or {}).get("resourceVersion")
    return getattr(getattr(result, "metadata", None), "resource_version", None)


class Informer:
    """List-then-watch cache of one resource type that feeds event handlers.

    Lists once to seed the cache (dispatching adds), then streams a watch
    from the list's ``resourceVersion``. A ``410 Gone`` re-lists and
    reconciles the cache, dispatching updates for changed objects and
    :class:`DeletedFinalStateUnknown` tombstones for vanished ones. The cache
    doubles as the lister owner lookups read from.

    ``list_fn`` is any ``list_*`` call of the Kubernetes client; typed and
    custom-object (dict) responses are both understood. ``decode`` turns a
    raw item into the object stored and dispatched.
    """

    def __init__(
        self,
        list_fn: Callable[..., Any],
        *,
        name: str,
        list_kwargs: Mapping[str, Any] | None = None,
        decode: Callable[[Any], Any] | None = None,
    ) -> None:
        self.list_fn = list_fn
        self.name = name
        self.list_kwargs = dict(list_kwargs or {})
        self.decode = decode or (lambda item: item)
        self.ready = threading.Event()
        self._handlers: list[EventHandler] = []
        self._cache: dict[str, Any] = {}
        self._cache_lock = threading.Lock()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def add_event_handler(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def get(self, namespace: str, name: str) -> Any:
        key = str(ObjectKey(namespace, name))
        with self._cache_lock:
            obj = self._cache.get(key)
        if obj is None:
            raise NotFoundError(namespace, name)
        return obj

    def list(self) -> list[Any]:
        with self._cache_lock:
            return list(self._cache.values())

    def _dispatch(self, event: str, *args: Any) -> None:
        for handler in self._handlers:
            callback = getattr(handler, f"on_{event}")
            if callback is None:
                continue
            try:
                callback(*args)
            except Exception:
                LOGGER.exception("Event handler failed on %s event in informer %s", event, self.name)

    def _replace(self, result: Any) -> str | None:
        """Reconcile the cache with a full listing and dispatch the differences."""
        fresh: dict[str, Any] = {}
        for item in _list_items(result):
            obj = self.decode(item)
            try:
                fresh[meta_namespace_key(obj)] = obj
            except (TypeError, ValueError):
                LOGGER.error("Informer %s skipped an item without a key", self.name)

        with self._cache_lock:
            previous = self._cache
            self._cache = dict(fresh)

        for key, obj in fresh.items():
            old = previous.get(key)
            if old is None:
                self._dispatch("add", obj)
            elif meta_of(old).resource_version != meta_of(obj).resource_version:
                self._dispatch("update", old, obj)
        for key, old in previous.items():
            if key not in fresh:
                self._dispatch("delete", DeletedFinalStateUnknown(key=key, obj=old))
        return _list_resource_version(result)

    def handle_event(self, event_type: str, raw: Any) -> None:
        obj = self.decode(raw)
        try:
            key = meta_namespace_key(obj)
        except (TypeError, ValueError):
            LOGGER.error("Informer %s skipped a %s event without a key", self.name, event_type)
            return
        with self._cache_lock:
            old = self._cache.get(key)
            if event_type == "DELETED":
                self._cache.pop(key, None)
            else:
                self._cache[key] = obj

        if event_type == "DELETED":
            self._dispatch("delete", obj)
        elif old is None:
            self._dispatch("add", obj)
        else:
            self._dispatch("update", old, obj)

    def request_stop(self) -> None:
        """Request a cooperative stop and interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _access_denied(self, status: int | None, phase: str) -> bool:
        if status not in {401, 403}:
            return False
        LOGGER.error(
            "Kubernetes API access denied during %s for informer %s (status=%s). "
            "Check operator RBAC and service account permissions.",
            phase,
            self.name,
            status,
        )
        METRICS.watch_errors_total.labels(informer=self.name).inc()
        self.ready.clear()
        return True

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """List-then-watch until shutdown.

        The initial list is retried with exponential backoff and jitter
        (capped at 30 s); ``ready`` is set once it succeeds. Watch errors
        back off the same way, ``410 Gone`` re-lists, and ``401`` / ``403``
        end the loop since retrying cannot fix RBAC.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._replace(self.list_fn(**self.list_kwargs))
                self.ready.set()
                LOGGER.info(
                    "Informer %s synced; watching from resourceVersion %s",
                    self.name,
                    resource_version,
                )
                break
            except ApiException as exc:
                if self._access_denied(exc.status, "initial list"):
                    return
                LOGGER.exception("Initial list failed for informer %s", self.name)
                METRICS.watch_errors_total.labels(informer=self.name).inc()
            except Exception:
                LOGGER.exception("Unexpected error during initial list for informer %s", self.name)
                METRICS.watch_errors_total.labels(informer=self.name).inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        backoff_seconds = 1
        watch_stream_count = 0
        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(informer=self.name).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=30,
                    **self.list_kwargs,
                )
                for event in stream:
                    if self._should_stop(stop):
                        break
                    event_type = str(event.get("type", ""))
                    raw = event.get("object")
                    if event_type == "ERROR":
                        code = raw.get("code") if isinstance(raw, Mapping) else None
                        raise ApiException(status=code, reason="watch error event")
                    if raw is None:
                        continue
                    if event_type == "BOOKMARK":
                        resource_version = meta_of(raw).resource_version or resource_version
                        continue
                    self.handle_event(event_type, raw)
                    resource_version = meta_of(raw).resource_version or resource_version
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    LOGGER.warning("Watch resource version expired for informer %s, re-listing", self.name)
                    try:
                        resource_version = self._replace(self.list_fn(**self.list_kwargs))
                    except ApiException as relist_exc:
                        if self._access_denied(relist_exc.status, "410 re-list"):
                            return
                        LOGGER.exception("Failed to re-list after 410 for informer %s", self.name)
                        METRICS.watch_errors_total.labels(informer=self.name).inc()
                        resource_version = None
                    continue

                if self._access_denied(exc.status, "watch"):
                    return

                LOGGER.exception("Kubernetes API watch error in informer %s", self.name)
                METRICS.watch_errors_total.labels(informer=self.name).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                LOGGER.exception("Unexpected watch error in informer %s", self.name)
                METRICS.watch_errors_total.labels(informer=self.name).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.ready.clear()
