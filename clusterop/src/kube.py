from __future__ import annotations

import functools
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, NamedTuple

from kubernetes import client, config
from kubernetes.client import (
    ApiClient,
    AppsV1Api,
    CoordinationV1Api,
    CoreV1Api,
    CustomObjectsApi,
    V1ObjectMeta,
    V1OwnerReference,
)
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


@dataclass(frozen=True)
class ApiClients:
    """The typed API groups the operator talks to, sharing the active configuration."""

    core: CoreV1Api
    apps: AppsV1Api
    custom_objects: CustomObjectsApi
    coordination: CoordinationV1Api


def build_clients() -> ApiClients:
    """Return API clients using the active kube configuration."""
    return ApiClients(
        core=client.CoreV1Api(),
        apps=client.AppsV1Api(),
        custom_objects=client.CustomObjectsApi(),
        coordination=client.CoordinationV1Api(),
    )


class ObjectKey(NamedTuple):
    """Identity of a namespaced object; ``namespace`` is empty for cluster-scoped ones."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name


@dataclass(frozen=True)
class DeletedFinalStateUnknown:
    """Tombstone delivered on delete when the final state of the object was missed.

    Emitted by the informer when a re-list shows an object vanished while
    the watch was disconnected.
    """

    key: str
    obj: Any = None


@dataclass(frozen=True)
class ObjectMeta:
    """Read-only view of the metadata fields the control loop relies on.

    Normalizes the three shapes objects arrive in: raw JSON dicts from the
    custom objects API, typed ``kubernetes.client`` models, and typed custom
    resources whose ``metadata`` is a dict.
    """

    name: str
    namespace: str = ""
    uid: str = ""
    resource_version: str | None = None
    labels: Mapping[str, str] = field(default_factory=dict)
    owner_references: tuple[V1OwnerReference, ...] = ()
    deletion_timestamp: Any = None


def _owner_reference(raw: Any) -> V1OwnerReference:
    if isinstance(raw, V1OwnerReference):
        return raw
    if isinstance(raw, Mapping):
        return V1OwnerReference(
            api_version=raw.get("apiVersion", ""),
            kind=raw.get("kind", ""),
            name=raw.get("name", ""),
            uid=raw.get("uid", ""),
            controller=raw.get("controller"),
            block_owner_deletion=raw.get("blockOwnerDeletion"),
        )
    return V1OwnerReference(
        api_version=getattr(raw, "api_version", "") or "",
        kind=getattr(raw, "kind", "") or "",
        name=getattr(raw, "name", "") or "",
        uid=getattr(raw, "uid", "") or "",
        controller=getattr(raw, "controller", None),
        block_owner_deletion=getattr(raw, "block_owner_deletion", None),
    )


def meta_of(obj: Any) -> ObjectMeta:
    """Return the :class:`ObjectMeta` view of *obj*.

    Raises ``TypeError`` when *obj* carries no metadata at all.
    """
    raw = obj.get("metadata") if isinstance(obj, Mapping) else getattr(obj, "metadata", None)
    if raw is None:
        raise TypeError(f"{type(obj).__name__} object has no metadata")

    if isinstance(raw, Mapping):
        return ObjectMeta(
            name=raw.get("name") or "",
            namespace=raw.get("namespace") or "",
            uid=raw.get("uid") or "",
            resource_version=raw.get("resourceVersion"),
            labels=dict(raw.get("labels") or {}),
            owner_references=tuple(
                _owner_reference(ref) for ref in raw.get("ownerReferences") or []
            ),
            deletion_timestamp=raw.get("deletionTimestamp"),
        )

    return ObjectMeta(
        name=getattr(raw, "name", None) or "",
        namespace=getattr(raw, "namespace", None) or "",
        uid=getattr(raw, "uid", None) or "",
        resource_version=getattr(raw, "resource_version", None),
        labels=dict(getattr(raw, "labels", None) or {}),
        owner_references=tuple(
            _owner_reference(ref) for ref in getattr(raw, "owner_references", None) or []
        ),
        deletion_timestamp=getattr(raw, "deletion_timestamp", None),
    )


def object_key(obj: Any) -> ObjectKey:
    meta = meta_of(obj)
    if not meta.name:
        raise ValueError(f"{type(obj).__name__} object has an empty name")
    return ObjectKey(namespace=meta.namespace, name=meta.name)


def meta_namespace_key(obj: Any) -> str:
    """Return the ``namespace/name`` work-queue key for *obj*, honoring tombstones."""
    if isinstance(obj, DeletedFinalStateUnknown):
        return obj.key
    return str(object_key(obj))


def split_meta_namespace_key(key: str) -> ObjectKey:
    parts = key.split("/")
    if len(parts) == 1 and parts[0]:
        return ObjectKey(namespace="", name=parts[0])
    if len(parts) == 2 and parts[1]:
        return ObjectKey(namespace=parts[0], name=parts[1])
    raise ValueError(f"unexpected key format: {key!r}")


def set_identity(obj: Any, name: str, namespace: str) -> None:
    """Overwrite the name and namespace of *obj* in place, creating metadata if needed."""
    raw = obj.setdefault("metadata", {}) if isinstance(obj, dict) else getattr(obj, "metadata", None)
    if isinstance(raw, dict):
        raw["name"] = name
        if namespace:
            raw["namespace"] = namespace
        return
    if raw is None:
        raw = V1ObjectMeta()
        obj.metadata = raw
    raw.name = name
    if namespace:
        raw.namespace = namespace


def type_meta_of(obj: Any) -> tuple[str, str]:
    """Return ``(apiVersion, kind)`` recorded on *obj*; empty strings when unset."""
    if isinstance(obj, Mapping):
        return obj.get("apiVersion") or "", obj.get("kind") or ""
    return getattr(obj, "api_version", None) or "", getattr(obj, "kind", None) or ""


@functools.cache
def _serializer() -> ApiClient:
    return ApiClient()


def to_plain(obj: Any) -> Any:
    """Convert *obj* to its JSON wire form.

    Unset and ``None`` model fields are dropped, so two objects that
    serialize identically compare equal even when one left a field unset.
    """
    if not hasattr(obj, "openapi_types") and callable(getattr(obj, "to_dict", None)):
        obj = obj.to_dict()
    return _serializer().sanitize_for_serialization(obj)


def semantic_equal(left: Any, right: Any) -> bool:
    return to_plain(left) == to_plain(right)
