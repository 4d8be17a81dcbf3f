"""API objects handled by the driver and controllers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from .errors import Code

# Annotation set on a PVC by the scheduler with the name of the chosen node.
ANN_SELECTED_NODE = "volume.kubernetes.io/selected-node"
# Index key for PVCs by selected node.
KEY_SELECTED_NODE = "metadata.annotations.selected-node"
# Index key for LogicalVolumes by node name.
KEY_LOGICAL_VOLUME_NODE = "spec.nodeName"
# Index key for LogicalVolumes by volume ID.
KEY_VOLUME_ID = "status.volumeID"

PLUGIN_NAME = "topolvm.io"
VERSION = "devel"
LOGICAL_VOLUME_FINALIZER = "topolvm.io/logicalvolume"
NODE_FINALIZER = "topolvm.io/node"
PVC_FINALIZER = "topolvm.io/pvc"
LEGACY_PVC_FINALIZER = "topolvm.cybozu.com/pvc"
LV_PENDING_DELETION_KEY = "topolvm.io/pendingdeletion"
RESIZE_REQUESTED_AT_KEY = "topolvm.io/resize-requested-at"
DEVICE_CLASS_KEY = "topolvm.io/device-class"
LVCREATE_OPTION_CLASS_KEY = "topolvm.io/lvcreate-option-class"
TOPOLOGY_NODE_KEY = "topology.topolvm.io/node"
CAPACITY_KEY_PREFIX = "capacity.topolvm.io/"
DEFAULT_DEVICE_CLASS_NAME = ""
DEFAULT_DEVICE_CLASS_ANNOTATION_NAME = "00default"
CREATED_BY_LABEL_KEY = "app.kubernetes.io/created-by"
CREATED_BY_LABEL_VALUE = "topolvm-controller"


@dataclass(frozen=True)
class ObjectKey:
    """Name and namespace identifying an API object."""

    name: str
    namespace: str = ""


@dataclass
class ObjectMeta:
    """Metadata common to every API object."""

    name: str = ""
    namespace: str = ""
    uid: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    deletion_timestamp: datetime | None = None

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(self.name, self.namespace)

    def has_finalizer(self, name: str) -> bool:
        return name in self.finalizers

    def add_finalizer(self, name: str) -> bool:
        """Add the finalizer unless present; return whether it was added."""
        if name in self.finalizers:
            return False
        self.finalizers.append(name)
        return True

    def remove_finalizer(self, name: str) -> bool:
        """Remove every occurrence of the finalizer; return whether any was removed."""
        kept = [f for f in self.finalizers if f != name]
        removed = len(kept) != len(self.finalizers)
        self.finalizers = kept
        return removed


@dataclass
class LogicalVolumeSpec:
    name: str = ""
    node_name: str = ""
    device_class: str = ""
    lvcreate_option_class: str = ""
    size: int = 0
    source: str = ""
    access_type: str = ""


@dataclass
class LogicalVolumeStatus:
    volume_id: str = ""
    code: Code = Code.OK
    message: str = ""
    current_size: int | None = None


@dataclass
class LogicalVolume:
    """A logical volume requested on a node."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: LogicalVolumeSpec = field(default_factory=LogicalVolumeSpec)
    status: LogicalVolumeStatus = field(default_factory=LogicalVolumeStatus)

    def is_compatible_with(self, other: LogicalVolume) -> bool:
        """Whether an existing volume satisfies a request for ``other``."""
        return self.spec == other.spec


@dataclass
class Node:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)


@dataclass
class StorageClass:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    provisioner: str = ""


@dataclass
class PersistentVolumeClaim:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    storage_class_name: str | None = None


@dataclass
class PodVolume:
    """A volume of a pod; ``claim_name`` is set for PVC-backed volumes."""

    name: str
    claim_name: str | None = None


@dataclass
class Pod:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    volumes: list[PodVolume] = field(default_factory=list)


@dataclass
class LVInfo:
    """A logical volume as reported by the LVM daemon."""

    name: str
    size_gb: int = 0
    dev_major: int = 0
    dev_minor: int = 0


@dataclass
class Result:
    """Outcome of a reconcile pass."""

    requeue: bool = False
    requeue_after: float = 0.0