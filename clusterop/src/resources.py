from __future__ import annotations

import copy
from collections.abc import Mapping
from typing import Any, ClassVar

from kubernetes.client import (
    V1ConfigMap,
    V1Job,
    V1PersistentVolumeClaim,
    V1Pod,
    V1Secret,
    V1Service,
    V1StatefulSet,
)

from clusterop.src import identity
from clusterop.src.identity import GroupVersionKind, KindRegistry


class CustomResource:
    """A custom resource held in its JSON wire form.

    The custom objects API speaks plain dicts; wrapping them in one class per
    kind gives the kind registry a concrete type to key on while keeping the
    body byte-for-byte what the API server returned.
    """

    GVK: ClassVar[GroupVersionKind]
    PLURAL: ClassVar[str]

    def __init__(self, body: Mapping[str, Any] | None = None) -> None:
        self.body: dict[str, Any] = dict(body) if body is not None else {}
        self.body.setdefault("apiVersion", self.GVK.api_version)
        self.body.setdefault("kind", self.GVK.kind)

    @classmethod
    def from_dict(cls, body: Mapping[str, Any]) -> CustomResource:
        return cls(copy.deepcopy(dict(body)))

    def to_dict(self) -> dict[str, Any]:
        return copy.deepcopy(self.body)

    @property
    def api_version(self) -> str:
        return self.body.get("apiVersion") or self.GVK.api_version

    @property
    def kind(self) -> str:
        return self.body.get("kind") or self.GVK.kind

    @property
    def metadata(self) -> dict[str, Any]:
        return self.body.setdefault("metadata", {})

    @property
    def spec(self) -> dict[str, Any]:
        return self.body.setdefault("spec", {})

    @property
    def status(self) -> dict[str, Any]:
        return self.body.setdefault("status", {})

    @property
    def name(self) -> str:
        return self.metadata.get("name") or ""

    @property
    def namespace(self) -> str:
        return self.metadata.get("namespace") or ""

    @property
    def uid(self) -> str:
        return self.metadata.get("uid") or ""

    def __eq__(self, other: object) -> bool:
        if type(other) is not type(self):
            return NotImplemented
        return self.body == other.body

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.namespace}/{self.name})"


class TidbCluster(CustomResource):
    GVK = identity.CLUSTER_KIND
    PLURAL = "tidbclusters"


class DMCluster(CustomResource):
    GVK = identity.DM_CLUSTER_KIND
    PLURAL = "dmclusters"


class Backup(CustomResource):
    GVK = identity.BACKUP_KIND
    PLURAL = "backups"


class CompactBackup(CustomResource):
    GVK = identity.COMPACT_BACKUP_KIND
    PLURAL = "compactbackups"


class Restore(CustomResource):
    GVK = identity.RESTORE_KIND
    PLURAL = "restores"


class BackupSchedule(CustomResource):
    GVK = identity.BACKUP_SCHEDULE_KIND
    PLURAL = "backupschedules"


class TidbMonitor(CustomResource):
    GVK = identity.MONITOR_KIND
    PLURAL = "tidbmonitors"


class TidbNGMonitoring(CustomResource):
    GVK = identity.NG_MONITORING_KIND
    PLURAL = "tidbngmonitorings"


class TidbDashboard(CustomResource):
    GVK = identity.DASHBOARD_KIND
    PLURAL = "tidbdashboards"


class VolumeBackup(CustomResource):
    GVK = identity.FED_VOLUME_BACKUP_KIND
    PLURAL = "volumebackups"


class VolumeRestore(CustomResource):
    GVK = identity.FED_VOLUME_RESTORE_KIND
    PLURAL = "volumerestores"


class VolumeBackupSchedule(CustomResource):
    GVK = identity.FED_VOLUME_BACKUP_SCHEDULE_KIND
    PLURAL = "volumebackupschedules"


CUSTOM_RESOURCES: tuple[type[CustomResource], ...] = (
    TidbCluster,
    DMCluster,
    Backup,
    CompactBackup,
    Restore,
    BackupSchedule,
    TidbMonitor,
    TidbNGMonitoring,
    TidbDashboard,
    VolumeBackup,
    VolumeRestore,
    VolumeBackupSchedule,
)

BUILTIN_KINDS: tuple[tuple[GroupVersionKind, type], ...] = (
    (GroupVersionKind("apps", "v1", "StatefulSet"), V1StatefulSet),
    (GroupVersionKind("", "v1", "Service"), V1Service),
    (GroupVersionKind("", "v1", "ConfigMap"), V1ConfigMap),
    (GroupVersionKind("", "v1", "Pod"), V1Pod),
    (GroupVersionKind("", "v1", "PersistentVolumeClaim"), V1PersistentVolumeClaim),
    (GroupVersionKind("", "v1", "Secret"), V1Secret),
    (GroupVersionKind("batch", "v1", "Job"), V1Job),
)


def build_scheme() -> KindRegistry:
    """Return a registry holding every kind the operator creates or watches."""
    registry = KindRegistry()
    for resource_cls in CUSTOM_RESOURCES:
        registry.register(resource_cls.GVK, resource_cls)
    for gvk, model in BUILTIN_KINDS:
        registry.register(gvk, model)
    return registry


SCHEME = build_scheme()
