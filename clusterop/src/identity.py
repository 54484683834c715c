from __future__ import annotations

import copy
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes.client import V1OwnerReference

from clusterop.src.kube import meta_of, set_identity

API_GROUP = "pingcap.com"
FEDERATION_API_GROUP = "federation.pingcap.com"
API_VERSION = "v1alpha1"


@dataclass(frozen=True)
class GroupVersionKind:
    group: str
    version: str
    kind: str

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    @classmethod
    def from_api_version(cls, api_version: str, kind: str) -> GroupVersionKind:
        group, version = parse_group_version(api_version)
        return cls(group=group, version=version, kind=kind)

    def __str__(self) -> str:
        return f"{self.api_version}, Kind={self.kind}"


def parse_group_version(api_version: str) -> tuple[str, str]:
    """Split an ``apiVersion`` string into ``(group, version)``.

    ``"v1"`` belongs to the core group (``""``); an empty string parses to
    two empty parts. Anything with more than one ``/`` is rejected.
    """
    if not api_version or api_version == "/":
        return "", ""
    parts = api_version.split("/")
    if len(parts) == 1:
        return "", parts[0]
    if len(parts) == 2:
        return parts[0], parts[1]
    raise ValueError(f"unexpected GroupVersion string: {api_version}")


CLUSTER_KIND = GroupVersionKind(API_GROUP, API_VERSION, "TidbCluster")
DM_CLUSTER_KIND = GroupVersionKind(API_GROUP, API_VERSION, "DMCluster")
BACKUP_KIND = GroupVersionKind(API_GROUP, API_VERSION, "Backup")
COMPACT_BACKUP_KIND = GroupVersionKind(API_GROUP, API_VERSION, "CompactBackup")
RESTORE_KIND = GroupVersionKind(API_GROUP, API_VERSION, "Restore")
BACKUP_SCHEDULE_KIND = GroupVersionKind(API_GROUP, API_VERSION, "BackupSchedule")
MONITOR_KIND = GroupVersionKind(API_GROUP, API_VERSION, "TidbMonitor")
NG_MONITORING_KIND = GroupVersionKind(API_GROUP, API_VERSION, "TidbNGMonitoring")
DASHBOARD_KIND = GroupVersionKind(API_GROUP, API_VERSION, "TidbDashboard")
FED_VOLUME_BACKUP_KIND = GroupVersionKind(FEDERATION_API_GROUP, API_VERSION, "VolumeBackup")
FED_VOLUME_RESTORE_KIND = GroupVersionKind(FEDERATION_API_GROUP, API_VERSION, "VolumeRestore")
FED_VOLUME_BACKUP_SCHEDULE_KIND = GroupVersionKind(
    FEDERATION_API_GROUP, API_VERSION, "VolumeBackupSchedule"
)


def build_owner_reference(gvk: GroupVersionKind, name: str, uid: str) -> V1OwnerReference:
    """Return a controlling owner reference that blocks owner deletion.

    Every dependent this operator creates has exactly one such reference,
    which drives both garbage collection and owner-based event routing.
    """
    return V1OwnerReference(
        api_version=gvk.api_version,
        kind=gvk.kind,
        name=name,
        uid=uid,
        controller=True,
        block_owner_deletion=True,
    )


def _owner_ref_builder(gvk: GroupVersionKind) -> Callable[[Any], V1OwnerReference]:
    def owner_ref(obj: Any) -> V1OwnerReference:
        meta = meta_of(obj)
        return build_owner_reference(gvk, meta.name, meta.uid)

    owner_ref.__name__ = f"{gvk.kind[0].lower()}{gvk.kind[1:]}_owner_ref"
    owner_ref.__doc__ = f"Return the controlling owner reference to a {gvk.kind}."
    return owner_ref


cluster_owner_ref = _owner_ref_builder(CLUSTER_KIND)
dm_cluster_owner_ref = _owner_ref_builder(DM_CLUSTER_KIND)
backup_owner_ref = _owner_ref_builder(BACKUP_KIND)
compact_backup_owner_ref = _owner_ref_builder(COMPACT_BACKUP_KIND)
restore_owner_ref = _owner_ref_builder(RESTORE_KIND)
backup_schedule_owner_ref = _owner_ref_builder(BACKUP_SCHEDULE_KIND)
monitor_owner_ref = _owner_ref_builder(MONITOR_KIND)
ng_monitoring_owner_ref = _owner_ref_builder(NG_MONITORING_KIND)
dashboard_owner_ref = _owner_ref_builder(DASHBOARD_KIND)
fed_volume_backup_schedule_owner_ref = _owner_ref_builder(FED_VOLUME_BACKUP_SCHEDULE_KIND)


def controller_of(obj: Any) -> V1OwnerReference | None:
    """Return the first owner reference of *obj* marked as controller, if any."""
    for ref in meta_of(obj).owner_references:
        if ref.controller:
            return ref
    return None


class KindError(TypeError):
    """Base class for kind inference failures; always a programming error."""


class UnregisteredKindError(KindError):
    pass


class AmbiguousKindError(KindError):
    pass


class KindRegistry:
    """Explicit catalog of the object types the operator handles.

    Maps each Python type to the kinds it was registered under and each kind
    to the factory that builds an empty instance. Lookups use the exact type
    of the object, never ``isinstance`` walks, so a subclass must be
    registered on its own.
    """

    def __init__(self) -> None:
        self._kinds_by_type: dict[type, list[GroupVersionKind]] = {}
        self._factories: dict[GroupVersionKind, Callable[[], Any]] = {}
        self._lock = threading.Lock()

    def register(self, gvk: GroupVersionKind, factory: type) -> None:
        with self._lock:
            existing = self._factories.get(gvk)
            if existing is not None and existing is not factory:
                raise ValueError(f"kind {gvk} is already registered to {existing.__name__}")
            self._factories[gvk] = factory
            kinds = self._kinds_by_type.setdefault(factory, [])
            if gvk not in kinds:
                kinds.append(gvk)

    def is_registered(self, gvk: GroupVersionKind) -> bool:
        return gvk in self._factories

    def object_kinds(self, obj: Any) -> list[GroupVersionKind]:
        kinds = self._kinds_by_type.get(type(obj))
        if not kinds:
            raise UnregisteredKindError(f"no kind is registered for the type {type(obj).__name__}")
        return list(kinds)

    def infer_kind(self, obj: Any) -> GroupVersionKind:
        """Resolve *obj* to exactly one registered kind.

        Raises :class:`AmbiguousKindError` when its type is registered under
        several kinds and :class:`UnregisteredKindError` when under none.
        """
        kinds = self.object_kinds(obj)
        if len(kinds) != 1:
            names = ", ".join(str(k) for k in kinds)
            raise AmbiguousKindError(f"object {type(obj).__name__} has ambiguous kind: {names}")
        return kinds[0]

    def new(self, gvk: GroupVersionKind) -> Any:
        factory = self._factories.get(gvk)
        if factory is None:
            raise UnregisteredKindError(f"kind {gvk} is not registered")
        return factory()

    def empty_clone(self, obj: Any) -> Any:
        """Return a fresh instance of the same kind carrying only the name and namespace."""
        meta = meta_of(obj)
        instance = self.new(self.infer_kind(obj))
        set_identity(instance, meta.name, meta.namespace)
        return instance

    @staticmethod
    def deep_copy(obj: Any) -> Any:
        return copy.deepcopy(obj)
