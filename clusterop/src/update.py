from __future__ import annotations

import copy
import logging
import random
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

from kubernetes.client import CustomObjectsApi
from opentelemetry import trace

from clusterop.src.errors import RetryExhaustedError, is_conflict
from clusterop.src.kube import ObjectKey, object_key, semantic_equal, split_meta_namespace_key
from clusterop.src.metrics import METRICS
from clusterop.src.resources import CustomResource

LOGGER = logging.getLogger(__name__)
TRACER = trace.get_tracer(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded backoff between conflict retries.

    ``steps`` is the total attempt budget; the n-th wait is
    ``duration * factor**n`` stretched by up to ``jitter`` of itself and
    clamped to ``cap`` when one is set.
    """

    steps: int = 5
    duration: float = 0.01
    factor: float = 1.0
    jitter: float = 0.1
    cap: float | None = None

    def __post_init__(self) -> None:
        if self.steps < 1:
            raise ValueError(f"steps must be >= 1, got: {self.steps}")

    def delays(self) -> Iterator[float]:
        duration = self.duration
        for _ in range(self.steps - 1):
            delay = duration
            if self.jitter > 0:
                delay += random.random() * self.jitter * duration  # noqa: S311
            if self.cap is not None:
                delay = min(delay, self.cap)
            yield delay
            duration *= self.factor


DEFAULT_RETRY = RetryPolicy()


def retry_on_conflict(
    fn: Callable[[], T],
    policy: RetryPolicy = DEFAULT_RETRY,
    *,
    key: object = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call *fn* until it stops raising HTTP 409 conflicts or the budget runs out.

    Any other exception propagates on the spot. Exhaustion raises
    :class:`RetryExhaustedError` chained to the last conflict.
    """
    delays = policy.delays()
    last_conflict: BaseException | None = None
    for attempt in range(1, policy.steps + 1):
        try:
            return fn()
        except Exception as exc:
            if not is_conflict(exc):
                raise
            last_conflict = exc
            METRICS.update_conflicts_total.inc()
            LOGGER.debug("Conflict updating %s (attempt %d/%d)", key, attempt, policy.steps)
        if attempt < policy.steps:
            sleep(next(delays))
    raise RetryExhaustedError(key, policy.steps) from last_conflict


class RecordStore(Protocol):
    """Persistent store with optimistic concurrency.

    ``update`` raises ``ApiException(status=409)`` when the object's
    resource version is stale and ``status=404`` when it is gone.
    """

    def get(self, key: ObjectKey) -> Any: ...

    def update(self, obj: Any) -> Any: ...


def _key_of(obj_or_key: Any) -> ObjectKey:
    if isinstance(obj_or_key, ObjectKey):
        return obj_or_key
    if isinstance(obj_or_key, str):
        return split_meta_namespace_key(obj_or_key)
    return object_key(obj_or_key)


def guaranteed_update(
    store: RecordStore,
    obj_or_key: Any,
    mutate: Callable[[Any], Any],
    *,
    policy: RetryPolicy = DEFAULT_RETRY,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """Apply *mutate* to the latest stored version of a record and persist it.

    Every attempt re-reads the record, so *mutate* always sees the newest
    state and may run more than once; it must be repeatable. It may change
    the object in place or return a replacement of the same type; any other
    return value is ignored. When the result is semantically equal to what
    was read, nothing is written. Errors from *mutate* or non-conflict store
    errors abort without retry.

    Returns the persisted object, or the unchanged one for a no-op.
    """
    key = _key_of(obj_or_key)

    def attempt() -> Any:
        current = store.get(key)
        snapshot = copy.deepcopy(current)
        replacement = mutate(current)
        if type(replacement) is type(current):
            current = replacement
        if semantic_equal(current, snapshot):
            METRICS.update_total.labels(outcome="noop").inc()
            return current
        updated = store.update(current)
        METRICS.update_total.labels(outcome="updated").inc()
        return updated

    with TRACER.start_as_current_span("guaranteed_update") as span:
        span.set_attribute("key", str(key))
        try:
            return retry_on_conflict(attempt, policy, key=key, sleep=sleep)
        except RetryExhaustedError:
            METRICS.update_total.labels(outcome="exhausted").inc()
            LOGGER.warning("Gave up updating %s after %d conflicting attempts", key, policy.steps)
            raise


class CustomObjectStore:
    """:class:`RecordStore` over the custom objects API for one typed custom resource.

    With ``subresource="status"`` writes go to the status subresource, so
    spec changes made by ``mutate`` are ignored by the API server.
    """

    def __init__(
        self,
        api: CustomObjectsApi,
        resource_cls: type[CustomResource],
        *,
        subresource: str | None = None,
    ) -> None:
        if subresource not in (None, "status"):
            raise ValueError(f"unsupported subresource: {subresource!r}")
        self.api = api
        self.resource_cls = resource_cls
        self.subresource = subresource

    def get(self, key: ObjectKey) -> CustomResource:
        gvk = self.resource_cls.GVK
        body = self.api.get_namespaced_custom_object(
            group=gvk.group,
            version=gvk.version,
            namespace=key.namespace,
            plural=self.resource_cls.PLURAL,
            name=key.name,
        )
        return self.resource_cls.from_dict(body)

    def update(self, obj: CustomResource) -> CustomResource:
        gvk = self.resource_cls.GVK
        replace = (
            self.api.replace_namespaced_custom_object_status
            if self.subresource == "status"
            else self.api.replace_namespaced_custom_object
        )
        body = replace(
            group=gvk.group,
            version=gvk.version,
            namespace=obj.namespace,
            plural=self.resource_cls.PLURAL,
            name=obj.name,
            body=obj.to_dict(),
        )
        return self.resource_cls.from_dict(body)


class ModelStore:
    """:class:`RecordStore` over a ``read_namespaced_*`` / ``replace_namespaced_*`` pair.

    Example::

        ModelStore(apps.read_namespaced_stateful_set, apps.replace_namespaced_stateful_set)
    """

    def __init__(self, read: Callable[..., Any], replace: Callable[..., Any]) -> None:
        self._read = read
        self._replace = replace

    def get(self, key: ObjectKey) -> Any:
        return self._read(name=key.name, namespace=key.namespace)

    def update(self, obj: Any) -> Any:
        key = object_key(obj)
        return self._replace(name=key.name, namespace=key.namespace, body=obj)
