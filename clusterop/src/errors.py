from __future__ import annotations

import enum

from kubernetes.client.exceptions import ApiException


class ErrorKind(enum.Enum):
    """How the work-queue driver treats an error raised by a sync function."""

    REQUEUE = "requeue"
    IGNORE = "ignore"
    FAILURE = "failure"


class ControlError(Exception):
    """Base class for errors that steer the reconcile loop rather than report a fault."""

    kind: ErrorKind = ErrorKind.FAILURE


class RequeueError(ControlError):
    """The item should be retried later; the condition is expected to resolve itself.

    Not a real failure: the driver re-enqueues with rate-limited backoff and
    does not log a traceback.
    """

    kind = ErrorKind.REQUEUE


class IgnoreError(ControlError):
    """The item is no longer applicable and must neither be retried nor reported."""

    kind = ErrorKind.IGNORE


class NotFoundError(LookupError):
    """Raised by local caches when a namespaced object is not present."""

    def __init__(self, namespace: str, name: str) -> None:
        self.namespace = namespace
        self.name = name
        super().__init__(f"{namespace}/{name} not found" if namespace else f"{name} not found")


class RetryExhaustedError(RuntimeError):
    """A conflict-retry loop used its whole attempt budget without succeeding."""

    def __init__(self, key: object, attempts: int) -> None:
        self.key = key
        self.attempts = attempts
        super().__init__(f"update of {key} still conflicting after {attempts} attempts")


def classify(exc: BaseException | None) -> ErrorKind | None:
    """Return the :class:`ErrorKind` of *exc*, or ``None`` for success.

    Follows ``__cause__`` links so that ``raise X from RequeueError(...)``
    keeps its requeue semantics.
    """
    if exc is None:
        return None
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, ControlError) and current.kind is not ErrorKind.FAILURE:
            return current.kind
        current = current.__cause__
    return ErrorKind.FAILURE


def is_requeue_error(exc: BaseException | None) -> bool:
    return classify(exc) is ErrorKind.REQUEUE


def is_ignore_error(exc: BaseException | None) -> bool:
    return classify(exc) is ErrorKind.IGNORE


def is_conflict(exc: BaseException) -> bool:
    """Return True for an optimistic-concurrency conflict (HTTP 409)."""
    return isinstance(exc, ApiException) and exc.status == 409


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, NotFoundError) or (
        isinstance(exc, ApiException) and exc.status == 404
    )
