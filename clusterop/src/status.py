from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any, Protocol

from clusterop.src.control import ClientControl, ControlServiceError
from clusterop.src.errors import IgnoreError, NotFoundError, RequeueError
from clusterop.src.kube import ObjectKey, meta_of, split_meta_namespace_key
from clusterop.src.resolver import ClusterDescriptor, resolve_control_client
from clusterop.src.update import DEFAULT_RETRY, RecordStore, RetryPolicy, guaranteed_update

LOGGER = logging.getLogger(__name__)


class Lister(Protocol):
    def get(self, namespace: str, name: str) -> Any: ...


def _member_status(report: dict[str, Any]) -> dict[str, Any]:
    client_urls = report.get("client_urls") or []
    return {
        "name": report.get("name", ""),
        "id": str(report.get("member_id", "")),
        "clientURL": client_urls[0] if client_urls else "",
        "health": bool(report.get("health")),
    }


def has_quorum(members: Iterable[dict[str, Any]]) -> bool:
    """Whether more than half of the reported members are healthy."""
    statuses = list(members)
    return sum(1 for status in statuses if status["health"]) * 2 > len(statuses)


class ClusterStatusSyncer:
    """Mirror control-service health into ``status.pd`` of each cluster.

    A reconcile pass reads the cluster from the informer cache, resolves a
    working control client, and records the members' health through a
    guaranteed update of the status subresource. The cluster is healthy
    while a majority of members report healthy. An unreachable control
    service or a lost quorum is recorded as ``healthy: false`` and the key
    is requeued.
    """

    def __init__(
        self,
        lister: Lister,
        control: ClientControl,
        store: RecordStore,
        *,
        policy: RetryPolicy = DEFAULT_RETRY,
    ) -> None:
        self.lister = lister
        self.control = control
        self.store = store
        self.policy = policy

    def _write(self, key: ObjectKey, healthy: bool, members: dict[str, Any] | None) -> None:
        def mutate(cluster: Any) -> None:
            pd = cluster.status.setdefault("pd", {})
            pd["healthy"] = healthy
            if members is not None:
                pd["members"] = members

        guaranteed_update(self.store, key, mutate, policy=self.policy)

    def sync(self, key: str) -> None:
        object_key = split_meta_namespace_key(key)
        try:
            cluster = self.lister.get(object_key.namespace, object_key.name)
        except NotFoundError as exc:
            raise IgnoreError(f"cluster {key} no longer exists") from exc
        if meta_of(cluster).deletion_timestamp is not None:
            LOGGER.debug("Cluster %s is being deleted, skipping status sync", key)
            return

        descriptor = ClusterDescriptor.from_resource(cluster)
        client = resolve_control_client(self.control, descriptor)
        try:
            reports = client.get_health()
        except ControlServiceError as exc:
            self._write(object_key, False, None)
            raise RequeueError(f"control service of cluster {key} is unavailable") from exc
        finally:
            if client.pinned_member is not None:
                client.close()

        members = {
            status["name"]: status for status in (_member_status(report) for report in reports)
        }
        healthy = has_quorum(members.values())
        self._write(object_key, healthy, members)
        if not healthy:
            down = sorted(name for name, status in members.items() if not status["health"])
            raise RequeueError(
                f"control service of cluster {key} has no healthy quorum (down: {', '.join(down)})"
            )
        LOGGER.debug("Synced control service status of %s (%d members)", key, len(members))
