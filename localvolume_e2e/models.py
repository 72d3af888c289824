"""
Typed views over the control plane objects the scenario touches.

Objects travel as the plain dicts kubectl prints with ``-o json``; the classes
here read the fields the harness asserts on and build the manifests it creates.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .config import HarnessConfig, Toleration

# Phases a PersistentVolume moves through.
PHASE_AVAILABLE = "Available"
PHASE_BOUND = "Bound"
PHASE_RELEASED = "Released"
PHASE_FAILED = "Failed"

CONDITION_AVAILABLE = "Available"

PROPAGATION_BACKGROUND = "background"
PROPAGATION_FOREGROUND = "foreground"
PROPAGATION_ORPHAN = "orphan"


class Kind(Enum):
    """Object kinds the harness creates, reads or deletes.

    The value is the resource name kubectl accepts.
    """

    LOCAL_VOLUME = "localvolumes.local.storage.openshift.io"
    PERSISTENT_VOLUME = "persistentvolumes"
    PERSISTENT_VOLUME_CLAIM = "persistentvolumeclaims"
    STORAGE_CLASS = "storageclasses.storage.k8s.io"
    JOB = "jobs.batch"
    POD = "pods"
    DAEMON_SET = "daemonsets.apps"
    NODE = "nodes"

    @property
    def namespaced(self) -> bool:
        return self not in (Kind.PERSISTENT_VOLUME, Kind.STORAGE_CLASS, Kind.NODE)

    @classmethod
    def from_manifest_kind(cls, kind: str) -> "Kind":
        return _MANIFEST_KINDS[kind]


_MANIFEST_KINDS = {
    "LocalVolume": Kind.LOCAL_VOLUME,
    "PersistentVolume": Kind.PERSISTENT_VOLUME,
    "PersistentVolumeClaim": Kind.PERSISTENT_VOLUME_CLAIM,
    "StorageClass": Kind.STORAGE_CLASS,
    "Job": Kind.JOB,
    "Pod": Kind.POD,
    "DaemonSet": Kind.DAEMON_SET,
    "Node": Kind.NODE,
}


@dataclass(frozen=True)
class ObjectRef:
    """Handle to one object: enough to get or delete it."""

    kind: Kind
    name: str
    namespace: Optional[str] = None

    @property
    def key(self) -> str:
        if self.kind.namespaced and self.namespace:
            return f"{self.kind.value}/{self.namespace}/{self.name}"
        return f"{self.kind.value}/{self.name}"

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "ObjectRef":
        meta = obj.get("metadata", {})
        kind = Kind.from_manifest_kind(obj["kind"])
        return cls(kind, meta["name"], meta.get("namespace") if kind.namespaced else None)

    def __str__(self):
        return self.key


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC3339 timestamp as the API server writes it."""
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def meta(obj: Dict[str, Any]) -> Dict[str, Any]:
    return obj.get("metadata") or {}


@dataclass
class Node:
    name: str
    uid: str
    labels: Dict[str, str] = field(default_factory=dict)
    provider_id: str = ""

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "Node":
        m = meta(obj)
        return cls(
            name=m["name"],
            uid=m.get("uid", ""),
            labels=dict(m.get("labels") or {}),
            provider_id=(obj.get("spec") or {}).get("providerID", ""),
        )


@dataclass
class Disk:
    """A cloud disk attached to a node.

    ``id`` is the stable by-id name when the platform exposes one; ``name`` is
    the kernel device name, which can change across re-attachment.
    """

    size: int
    path: str = ""
    id: str = ""
    name: str = ""
    volume_id: str = ""


@dataclass
class NodeDisks:
    node: Node
    disks: List[Disk]


@dataclass
class PersistentVolume:
    name: str
    uid: str
    capacity: str
    volume_mode: str
    storage_class: str
    phase: str
    local_path: str
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "PersistentVolume":
        m = meta(obj)
        spec = obj.get("spec") or {}
        return cls(
            name=m["name"],
            uid=m.get("uid", ""),
            capacity=(spec.get("capacity") or {}).get("storage", ""),
            volume_mode=spec.get("volumeMode", "Filesystem"),
            storage_class=spec.get("storageClassName", ""),
            phase=(obj.get("status") or {}).get("phase", ""),
            local_path=(spec.get("local") or {}).get("path", ""),
            labels=dict(m.get("labels") or {}),
            annotations=dict(m.get("annotations") or {}),
        )


@dataclass
class Condition:
    type: str
    status: str
    last_transition_time: Optional[datetime]
    message: str = ""

    @property
    def is_true(self) -> bool:
        return self.status == "True"


@dataclass
class LocalVolumeState:
    """What the controller has written back onto a LocalVolume."""

    name: str
    uid: str
    finalizers: List[str]
    conditions: List[Condition]
    deletion_timestamp: Optional[datetime] = None

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "LocalVolumeState":
        m = meta(obj)
        conditions = []
        for c in (obj.get("status") or {}).get("conditions") or []:
            conditions.append(Condition(
                type=c.get("type", ""),
                status=c.get("status", ""),
                last_transition_time=parse_timestamp(c.get("lastTransitionTime")),
                message=c.get("message", ""),
            ))
        return cls(
            name=m["name"],
            uid=m.get("uid", ""),
            finalizers=list(m.get("finalizers") or []),
            conditions=conditions,
            deletion_timestamp=parse_timestamp(m.get("deletionTimestamp")),
        )

    def condition(self, condition_type: str) -> Optional[Condition]:
        for c in self.conditions:
            if c.type == condition_type:
                return c
        return None


@dataclass(frozen=True)
class StorageClassDevices:
    storage_class_name: str
    device_paths: Tuple[str, ...]


def local_volume_manifest(
    config: HarnessConfig,
    node_name: str,
    devices: Sequence[StorageClassDevices],
    namespace: Optional[str] = None,
    tolerations: Optional[Sequence[Toleration]] = None,
) -> Dict[str, Any]:
    """LocalVolume pinned to one node by metadata.name."""
    if tolerations is None:
        tolerations = config.tolerations
    return {
        "apiVersion": config.local_volume_api_version,
        "kind": "LocalVolume",
        "metadata": {
            "name": config.local_volume_name,
            "namespace": namespace or config.namespace,
        },
        "spec": {
            "nodeSelector": {
                "nodeSelectorTerms": [{
                    "matchFields": [{
                        "key": "metadata.name",
                        "operator": "In",
                        "values": [node_name],
                    }],
                }],
            },
            "tolerations": [t.to_dict() for t in tolerations],
            "storageClassDevices": [
                {"storageClassName": d.storage_class_name, "devicePaths": list(d.device_paths)}
                for d in devices
            ],
        },
    }
