from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Hashable

from clusterop.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class ItemExponentialRateLimiter:
    """Per-item exponential backoff: ``base_delay * 2**failures``, capped at ``max_delay``."""

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            exponent = self._failures.get(item, 0)
            self._failures[item] = exponent + 1
        if exponent > 62:
            return self.max_delay
        return min(self.base_delay * (2**exponent), self.max_delay)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)


class WorkQueue:
    """Deduplicating FIFO of reconcile keys shared by informer handlers and workers.

    A key is held at most once while waiting. A key added while a worker is
    processing it is marked dirty and only handed out again after
    :meth:`done`, so the same key is never processed by two workers at once.

    Key internal state:
        ``_dirty``
            Keys that need processing: everything waiting plus keys re-added
            while in flight.
        ``_processing``
            Keys handed out by :meth:`get` and not yet released by :meth:`done`.
    """

    def __init__(self, name: str, rate_limiter: ItemExponentialRateLimiter | None = None) -> None:
        self.name = name
        self.rate_limiter = rate_limiter or ItemExponentialRateLimiter()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._waiting: dict[Hashable, float] = {}
        self._heap: list[tuple[float, int, Hashable]] = []
        self._sequence = itertools.count()
        self._waiter: threading.Thread | None = None
        self._delay_cond = threading.Condition()
        self._shutting_down = False
        self._cond = threading.Condition()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def _update_depth(self) -> None:
        METRICS.workqueue_depth.labels(queue=self.name).set(len(self._queue))

    def add(self, item: Hashable) -> None:
        with self._cond:
            if self._shutting_down:
                return
            METRICS.workqueue_adds_total.labels(queue=self.name).inc()
            if item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            self._update_depth()
            self._cond.notify()

    def get(self, timeout: float | None = None) -> Hashable | None:
        """Block until a key is available and mark it as processing.

        Returns ``None`` once the queue is shutting down and drained, or when
        *timeout* elapses first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._queue and not self._shutting_down:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return None
                self._cond.wait(timeout=remaining)
            if not self._queue:
                return None
            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            self._update_depth()
            return item

    def done(self, item: Hashable) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._update_depth()
                self._cond.notify()

    def add_after(self, item: Hashable, delay: float) -> None:
        """Add *item* once *delay* seconds have passed.

        Each item has at most one pending delayed add; when it already has
        one, the earlier deadline wins.
        """
        if delay <= 0:
            self.add(item)
            return

        deadline = time.monotonic() + delay
        with self._delay_cond:
            if self._shutting_down:
                return
            pending = self._waiting.get(item)
            if pending is not None and pending <= deadline:
                return
            self._waiting[item] = deadline
            heapq.heappush(self._heap, (deadline, next(self._sequence), item))
            if self._waiter is None:
                self._waiter = threading.Thread(
                    target=self._run_waiter, name=f"{self.name}-delayed", daemon=True
                )
                self._waiter.start()
            self._delay_cond.notify()

    def _next_due(self) -> Hashable | None:
        """Block until a delayed item is due and pop it; ``None`` on shutdown."""
        with self._delay_cond:
            while not self._shutting_down:
                if not self._heap:
                    self._delay_cond.wait()
                    continue
                deadline, _, item = self._heap[0]
                if self._waiting.get(item) != deadline:
                    # Superseded by an earlier deadline for the same item.
                    heapq.heappop(self._heap)
                    continue
                remaining = deadline - time.monotonic()
                if remaining > 0:
                    self._delay_cond.wait(timeout=remaining)
                    continue
                heapq.heappop(self._heap)
                del self._waiting[item]
                return item
            return None

    def _run_waiter(self) -> None:
        while True:
            item = self._next_due()
            if item is None:
                return
            self.add(item)

    def pending_delayed(self) -> int:
        with self._delay_cond:
            return len(self._waiting)

    def add_rate_limited(self, item: Hashable) -> None:
        METRICS.workqueue_retries_total.labels(queue=self.name).inc()
        self.add_after(item, self.rate_limiter.when(item))

    def forget(self, item: Hashable) -> None:
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)

    def shut_down(self) -> None:
        """Stop accepting keys, drop delayed adds and wake every blocked worker."""
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
        with self._delay_cond:
            dropped = len(self._waiting)
            self._waiting.clear()
            self._heap.clear()
            self._delay_cond.notify_all()
        LOGGER.debug("Work queue %s shut down with %d pending delayed adds", self.name, dropped)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down
