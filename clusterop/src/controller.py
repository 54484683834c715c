from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Hashable, Sequence
from typing import Any

from clusterop.src.config import OperatorConfig
from clusterop.src.control import ClientControl
from clusterop.src.errors import ErrorKind, classify
from clusterop.src.events import Informer, watch_for_controller, watch_for_object
from clusterop.src.kube import ApiClients
from clusterop.src.metrics import METRICS
from clusterop.src.resources import TidbCluster
from clusterop.src.status import ClusterStatusSyncer
from clusterop.src.update import CustomObjectStore, RetryPolicy
from clusterop.src.workqueue import WorkQueue

LOGGER = logging.getLogger(__name__)

SyncFn = Callable[[str], None]


class Controller:
    """Drains one work queue with a pool of worker threads.

    The outcome of ``sync(key)`` decides what happens to the key:

    * success: the key's backoff is forgotten, and it is re-added after
      ``resync_seconds`` when set;
    * :class:`~clusterop.src.errors.RequeueError`: re-added with rate-limited
      backoff, logged without a traceback;
    * :class:`~clusterop.src.errors.IgnoreError`: dropped silently;
    * anything else: logged with its traceback and re-added with backoff.
    """

    def __init__(
        self,
        name: str,
        queue: WorkQueue,
        sync: SyncFn,
        *,
        workers: int = 1,
        resync_seconds: float | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.name = name
        self.queue = queue
        self.sync = sync
        self.workers = workers
        self.resync_seconds = resync_seconds

    def _handle_error(self, key: Hashable, exc: Exception) -> str:
        kind = classify(exc)
        if kind is ErrorKind.REQUEUE:
            LOGGER.info("%s: requeuing %s: %s", self.name, key, exc)
            self.queue.add_rate_limited(key)
            return "requeue"
        if kind is ErrorKind.IGNORE:
            LOGGER.debug("%s: ignoring %s: %s", self.name, key, exc)
            self.queue.forget(key)
            return "ignore"
        LOGGER.error("%s: failed to sync %s", self.name, key, exc_info=exc)
        self.queue.add_rate_limited(key)
        return "error"

    def process_next_item(self, timeout: float | None = None) -> bool:
        """Process one key. Returns False once the queue has shut down."""
        key = self.queue.get(timeout=timeout)
        if key is None:
            return not self.queue.shutting_down

        started = time.monotonic()
        try:
            self.sync(str(key))
        except Exception as exc:
            result = self._handle_error(key, exc)
        else:
            result = "success"
            self.queue.forget(key)
            if self.resync_seconds:
                self.queue.add_after(key, self.resync_seconds)
        finally:
            self.queue.done(key)
            METRICS.reconcile_duration_seconds.labels(controller=self.name).observe(
                time.monotonic() - started
            )
        METRICS.reconcile_total.labels(controller=self.name, result=result).inc()
        return True

    def _worker(self, stop: threading.Event) -> None:
        while not stop.is_set():
            if not self.process_next_item(timeout=0.5):
                return

    def run(self, stop: threading.Event) -> None:
        """Run the workers until *stop* is set, then shut the queue down and join them."""
        threads = [
            threading.Thread(
                target=self._worker,
                args=(stop,),
                name=f"{self.name}-worker-{index}",
                daemon=True,
            )
            for index in range(self.workers)
        ]
        for thread in threads:
            thread.start()
        LOGGER.info("Controller %s started with %d workers", self.name, self.workers)
        stop.wait()
        self.queue.shut_down()
        for thread in threads:
            thread.join(timeout=30)
        LOGGER.info("Controller %s stopped", self.name)


class Operator:
    """Runs a set of informers and the controllers they feed as one unit.

    ``ready`` is set while every informer has synced its cache. When an
    informer exits on its own (RBAC denial), the operator stops everything
    and returns so the caller can terminate the process.
    """

    def __init__(
        self,
        informers: Sequence[Informer],
        controllers: Sequence[Controller],
        ready: threading.Event | None = None,
    ) -> None:
        self.informers = list(informers)
        self.controllers = list(controllers)
        self.ready = ready or threading.Event()
        self._stop = threading.Event()

    def request_stop(self) -> None:
        self._stop.set()
        for informer in self.informers:
            informer.request_stop()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> bool:
        """Run until stopped. Returns False when an informer exited on its own."""
        stop = self._stop
        clean = True
        informer_threads = [
            threading.Thread(
                target=informer.run_forever,
                args=(stop,),
                name=f"informer-{informer.name}",
                daemon=True,
            )
            for informer in self.informers
        ]
        controller_threads = [
            threading.Thread(
                target=controller.run,
                args=(stop,),
                name=f"controller-{controller.name}",
                daemon=True,
            )
            for controller in self.controllers
        ]
        for thread in (*informer_threads, *controller_threads):
            thread.start()

        while not stop.is_set():
            if shutdown_event is not None and shutdown_event.is_set():
                break
            if not all(thread.is_alive() for thread in informer_threads):
                LOGGER.error("An informer stopped unexpectedly; stopping the operator")
                clean = False
                break
            if all(informer.ready.is_set() for informer in self.informers):
                self.ready.set()
            else:
                self.ready.clear()
            stop.wait(timeout=0.5)

        self.request_stop()
        self.ready.clear()
        for thread in (*informer_threads, *controller_threads):
            thread.join(timeout=35)
        return clean


def _cluster_informer(apis: ApiClients, namespace: str) -> Informer:
    gvk = TidbCluster.GVK
    kwargs: dict[str, Any] = {"group": gvk.group, "version": gvk.version, "plural": TidbCluster.PLURAL}
    if namespace:
        kwargs["namespace"] = namespace
        list_fn = apis.custom_objects.list_namespaced_custom_object
    else:
        list_fn = apis.custom_objects.list_cluster_custom_object
    return Informer(list_fn, name=TidbCluster.PLURAL, list_kwargs=kwargs, decode=TidbCluster.from_dict)


def _stateful_set_informer(apis: ApiClients, namespace: str) -> Informer:
    if namespace:
        return Informer(
            apis.apps.list_namespaced_stateful_set,
            name="statefulsets",
            list_kwargs={"namespace": namespace},
        )
    return Informer(apis.apps.list_stateful_set_for_all_namespaces, name="statefulsets")


def build_operator(
    config: OperatorConfig,
    apis: ApiClients,
    control: ClientControl,
    ready: threading.Event | None = None,
) -> Operator:
    """Wire the cluster status pipeline.

    Cluster events are routed directly; events on StatefulSets carrying the
    managed-by labels are routed to their owning cluster. Both feed a single
    queue drained by :class:`ClusterStatusSyncer`.
    """
    clusters = _cluster_informer(apis, config.watch_namespace)
    stateful_sets = _stateful_set_informer(apis, config.watch_namespace)

    queue = WorkQueue(TidbCluster.PLURAL)
    watch_for_object(clusters, queue)
    watch_for_controller(stateful_sets, queue, clusters.get, config.managed_by_selector)

    syncer = ClusterStatusSyncer(
        clusters,
        control,
        CustomObjectStore(apis.custom_objects, TidbCluster, subresource="status"),
        policy=RetryPolicy(steps=config.update_retry_steps),
    )
    controller = Controller(
        "tidbcluster-status",
        queue,
        syncer.sync,
        workers=config.workers,
        resync_seconds=config.resync_seconds,
    )
    return Operator([clusters, stateful_sets], [controller], ready=ready)
