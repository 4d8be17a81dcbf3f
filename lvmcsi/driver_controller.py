"""CSI controller service: volume and snapshot provisioning."""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import NamedTuple, TypeVar
import time

from .errors import (
    Code,
    DeviceClassNotFoundError,
    NodeNotFoundError,
    StatusError,
    VolumeNotFoundError,
)
from .lock import LockByID
from .logicalvolume_service import LogicalVolumeService
from .model import (
    DEVICE_CLASS_KEY,
    LVCREATE_OPTION_CLASS_KEY,
    TOPOLOGY_NODE_KEY,
    LogicalVolume,
)
from .node_service import NodeService

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AccessType(enum.Enum):
    BLOCK = "block"
    MOUNT = "mount"


class AccessMode(enum.IntEnum):
    """Volume access modes, numbered as in CSI."""

    UNKNOWN = 0
    SINGLE_NODE_WRITER = 1
    SINGLE_NODE_READER_ONLY = 2
    MULTI_NODE_READER_ONLY = 3
    MULTI_NODE_SINGLE_WRITER = 4
    MULTI_NODE_MULTI_WRITER = 5
    SINGLE_NODE_SINGLE_WRITER = 6
    SINGLE_NODE_MULTI_WRITER = 7


class ControllerCapability(enum.IntEnum):
    """Controller service capabilities, numbered as in CSI."""

    UNKNOWN = 0
    CREATE_DELETE_VOLUME = 1
    PUBLISH_UNPUBLISH_VOLUME = 2
    LIST_VOLUMES = 3
    GET_CAPACITY = 4
    CREATE_DELETE_SNAPSHOT = 5
    LIST_SNAPSHOTS = 6
    CLONE_VOLUME = 7
    PUBLISH_READONLY = 8
    EXPAND_VOLUME = 9


@dataclass
class VolumeCapability:
    """How a volume is accessed: as a block device or a mounted filesystem."""

    access_type: AccessType | None = None
    fs_type: str = ""
    mount_flags: list[str] = field(default_factory=list)
    access_mode: AccessMode | None = None


@dataclass
class CapacityRange:
    required_bytes: int = 0
    limit_bytes: int = 0


@dataclass
class Topology:
    segments: dict[str, str] = field(default_factory=dict)


@dataclass
class TopologyRequirement:
    requisite: list[Topology] = field(default_factory=list)
    preferred: list[Topology] = field(default_factory=list)


@dataclass
class VolumeContentSource:
    """Data source of a new volume: a snapshot or another volume."""

    snapshot_id: str | None = None
    volume_id: str | None = None


@dataclass
class CreateVolumeRequest:
    name: str = ""
    capacity_range: CapacityRange | None = None
    volume_capabilities: list[VolumeCapability] = field(default_factory=list)
    parameters: dict[str, str] = field(default_factory=dict)
    secrets: dict[str, str] = field(default_factory=dict)
    volume_content_source: VolumeContentSource | None = None
    accessibility_requirements: TopologyRequirement | None = None


@dataclass
class Volume:
    capacity_bytes: int
    volume_id: str
    content_source: VolumeContentSource | None = None
    accessible_topology: list[Topology] = field(default_factory=list)


@dataclass
class CreateSnapshotRequest:
    source_volume_id: str = ""
    name: str = ""
    parameters: dict[str, str] = field(default_factory=dict)
    secrets: dict[str, str] = field(default_factory=dict)


@dataclass
class Snapshot:
    snapshot_id: str
    source_volume_id: str
    size_bytes: int
    creation_time: datetime
    ready_to_use: bool = True


@dataclass
class GetCapacityRequest:
    volume_capabilities: list[VolumeCapability] = field(default_factory=list)
    parameters: dict[str, str] = field(default_factory=dict)
    accessible_topology: Topology | None = None


@dataclass
class ExpandVolumeRequest:
    volume_id: str = ""
    capacity_range: CapacityRange | None = None
    secrets: dict[str, str] = field(default_factory=dict)


@dataclass
class ValidatedCapabilities:
    """The capabilities confirmed for an existing volume."""

    volume_context: dict[str, str]
    volume_capabilities: list[VolumeCapability]
    parameters: dict[str, str]


class ExpandVolumeResult(NamedTuple):
    capacity_bytes: int
    node_expansion_required: bool


def convert_request_capacity(request_bytes: int, limit_bytes: int) -> int:
    """Convert a byte range to the size in GiB to allocate."""
    if request_bytes < 0:
        raise ValueError("required capacity must not be negative")
    if limit_bytes < 0:
        raise ValueError("capacity limit must not be negative")
    if limit_bytes != 0 and request_bytes > limit_bytes:
        raise ValueError(
            f"requested capacity exceeds limit capacity: request={request_bytes} limit={limit_bytes}"
        )
    if request_bytes == 0:
        return 1
    return ((request_bytes - 1) >> 30) + 1


def _range(capacity_range: CapacityRange | None) -> tuple[int, int]:
    if capacity_range is None:
        return 0, 0
    return capacity_range.required_bytes, capacity_range.limit_bytes


def _request_gb(capacity_range: CapacityRange | None) -> int:
    try:
        return convert_request_capacity(*_range(capacity_range))
    except ValueError as exc:
        raise StatusError(Code.INVALID_ARGUMENT, str(exc)) from exc


def _call(fn: Callable[[], T]) -> T:
    """Run ``fn``, turning errors without a status into INTERNAL ones."""
    try:
        return fn()
    except StatusError:
        raise
    except Exception as exc:
        raise StatusError(Code.INTERNAL, str(exc)) from exc


def _first_node(topologies: list[Topology], accept: Callable[[str], bool]) -> str:
    for topo in topologies:
        value = topo.segments.get(TOPOLOGY_NODE_KEY)
        if value is not None and accept(value):
            return value
    return ""


class ControllerServer:
    """CSI controller service.

    Calls on the same volume name or volume ID are serialised.
    """

    def __init__(self, lv_service: LogicalVolumeService, node_service: NodeService) -> None:
        self._lv_service = lv_service
        self._node_service = node_service
        self._lock_by_name = LockByID()
        self._lock_by_volume_id = LockByID()

    # Volumes

    def create_volume(self, request: CreateVolumeRequest) -> Volume:
        with self._lock_by_name.hold(request.name):
            return self._create_volume(request)

    def _create_volume(self, request: CreateVolumeRequest) -> Volume:
        capabilities = request.volume_capabilities
        source = request.volume_content_source
        device_class = request.parameters.get(DEVICE_CLASS_KEY, "")
        option_class = request.parameters.get(LVCREATE_OPTION_CLASS_KEY, "")
        required, limit = _range(request.capacity_range)
        logger.info(
            "CreateVolume called name=%s device_class=%s required=%d limit=%d source=%s",
            request.name,
            device_class,
            required,
            limit,
            source,
        )

        if not capabilities:
            raise StatusError(Code.INVALID_ARGUMENT, "no volume capabilities are provided")

        for capability in capabilities:
            if capability.access_type is AccessType.BLOCK:
                logger.info("CreateVolume specifies volume capability access_type=block")
            elif capability.access_type is AccessType.MOUNT:
                logger.info(
                    "CreateVolume specifies volume capability access_type=mount "
                    "fs_type=%s flags=%s",
                    capability.fs_type,
                    capability.mount_flags,
                )
            else:
                raise StatusError(Code.INVALID_ARGUMENT, "unknown or empty access_type")

            mode = capability.access_mode
            if mode is not None:
                mode_name = AccessMode(mode).name
                logger.info("CreateVolume specifies volume capability access_mode=%s", mode_name)
                # only SINGLE_NODE_WRITER is supported
                if mode != AccessMode.SINGLE_NODE_WRITER:
                    raise StatusError(
                        Code.INVALID_ARGUMENT, f"unsupported access mode: {mode_name}"
                    )

        request_gb = _request_gb(request.capacity_range)

        source_name = ""
        source_vol: LogicalVolume | None = None
        if source is not None:
            source_vol = self._validate_content_source(source)
            if source_vol.spec.size >> 30 != request_gb:
                raise StatusError(
                    Code.OUT_OF_RANGE, "requested size does not match the size of the source"
                )
            # A volume with a source lives on the source's node and device class.
            if device_class != source_vol.spec.device_class:
                raise StatusError(
                    Code.INVALID_ARGUMENT,
                    "device class mismatch. Snapshots should be created with the same "
                    "device class as the source.",
                )
            device_class = source_vol.spec.device_class
            source_name = source_vol.spec.name

        node = self._choose_node(request, source_vol, device_class, request_gb)

        if not request.name:
            raise StatusError(Code.INVALID_ARGUMENT, "invalid name")
        name = request.name.lower()

        volume_id = _call(
            lambda: self._lv_service.create_volume(
                node, device_class, option_class, name, source_name, request_gb
            )
        )
        return Volume(
            capacity_bytes=request_gb << 30,
            volume_id=volume_id,
            content_source=source,
            accessible_topology=[Topology({TOPOLOGY_NODE_KEY: node})],
        )

    def _choose_node(
        self,
        request: CreateVolumeRequest,
        source_vol: LogicalVolume | None,
        device_class: str,
        request_gb: int,
    ) -> str:
        requirements = request.accessibility_requirements

        if source_vol is not None:
            source_node = source_vol.spec.node_name
            if requirements is None:
                # The volume must live on the same node as its source.
                logger.info("decide node because accessibility_requirements not found")
                return source_node
            node = _first_node(requirements.preferred, lambda v: v == source_node) or _first_node(
                requirements.requisite, lambda v: v == source_node
            )
            if not node:
                raise StatusError(
                    Code.INVALID_ARGUMENT,
                    f"cannot find source volume's node '{source_node}' in "
                    "accessibility_requirements",
                )
            return node

        if requirements is None:
            # Missing requirements must still succeed, so pick a node ourselves.
            logger.info("decide node because accessibility_requirements not found")
            try:
                node_name, capacity = self._node_service.max_capacity(device_class)
            except Exception as exc:
                raise StatusError(
                    Code.INTERNAL, f"failed to get max capacity node {exc}"
                ) from exc
            if not node_name:
                raise StatusError(Code.INTERNAL, "can not find any node")
            if capacity < (request_gb << 30):
                raise StatusError(
                    Code.RESOURCE_EXHAUSTED, f"can not find enough volume space {capacity}"
                )
            return node_name

        node = _first_node(requirements.preferred, lambda v: True) or _first_node(
            requirements.requisite, lambda v: True
        )
        if not node:
            raise StatusError(
                Code.INVALID_ARGUMENT,
                f"cannot find key '{TOPOLOGY_NODE_KEY}' in accessibility_requirements",
            )
        return node

    def _validate_content_source(self, source: VolumeContentSource) -> LogicalVolume:
        if source.snapshot_id is not None:
            if not source.snapshot_id:
                raise StatusError(Code.NOT_FOUND, "Snapshot ID cannot be empty")
            return self._source_volume(source.snapshot_id, "failed to find source snapshot")
        if source.volume_id is not None:
            if not source.volume_id:
                raise StatusError(Code.NOT_FOUND, "Volume ID cannot be empty")
            return self._source_volume(source.volume_id, "failed to find source volume")
        raise StatusError(Code.INVALID_ARGUMENT, f"invalid volume source {source}")

    def _source_volume(self, volume_id: str, not_found_message: str) -> LogicalVolume:
        try:
            return self._lv_service.get_volume(volume_id)
        except VolumeNotFoundError as exc:
            raise StatusError(Code.NOT_FOUND, not_found_message) from exc
        except Exception as exc:
            raise StatusError(Code.INTERNAL, str(exc)) from exc

    def _existing_volume(self, volume_id: str) -> LogicalVolume:
        try:
            return self._lv_service.get_volume(volume_id)
        except VolumeNotFoundError as exc:
            raise StatusError(
                Code.NOT_FOUND, f"LogicalVolume for volume id {volume_id} is not found"
            ) from exc
        except Exception as exc:
            raise StatusError(Code.INTERNAL, str(exc)) from exc

    def delete_volume(self, volume_id: str) -> None:
        with self._lock_by_volume_id.hold(volume_id):
            logger.info("DeleteVolume called volume_id=%s", volume_id)
            if not volume_id:
                raise StatusError(Code.INVALID_ARGUMENT, "volume_id is not provided")
            try:
                _call(lambda: self._lv_service.delete_volume(volume_id))
            except StatusError:
                logger.exception("DeleteVolume failed volume_id=%s", volume_id)
                raise

    def validate_volume_capabilities(
        self,
        volume_id: str,
        capabilities: list[VolumeCapability],
        volume_context: dict[str, str] | None = None,
        parameters: dict[str, str] | None = None,
    ) -> ValidatedCapabilities:
        with self._lock_by_volume_id.hold(volume_id):
            logger.info("ValidateVolumeCapabilities called volume_id=%s", volume_id)
            if not volume_id:
                raise StatusError(Code.INVALID_ARGUMENT, "volume id is nil")
            if not capabilities:
                raise StatusError(Code.INVALID_ARGUMENT, "volume capabilities are empty")
            self._existing_volume(volume_id)
            # Volumes cannot be pre-provisioned, so any existing volume is valid.
            return ValidatedCapabilities(
                volume_context=dict(volume_context or {}),
                volume_capabilities=list(capabilities),
                parameters=dict(parameters or {}),
            )

    def get_capacity(self, request: GetCapacityRequest) -> int:
        """Available capacity in bytes for the request's device class and topology."""
        # Reads only published annotations; no lock is needed.
        topology = request.accessible_topology
        logger.info("GetCapacity called topology=%s", topology)
        if request.volume_capabilities:
            logger.info("capability argument is not nil, but it is ignored")

        device_class = request.parameters.get(DEVICE_CLASS_KEY, "")

        if topology is None:
            return _call(lambda: self._node_service.total_capacity(device_class))

        value = topology.segments.get(TOPOLOGY_NODE_KEY)
        if value is None:
            logger.error("%s is not found in req.AccessibleTopology", TOPOLOGY_NODE_KEY)
            return 0
        try:
            return self._node_service.capacity_by_topology_label(value, device_class)
        except NodeNotFoundError:
            logger.info("target is not found topology=%s", topology)
            return 0
        except DeviceClassNotFoundError:
            logger.info(
                "device class %s is not found on the node topology=%s", device_class, topology
            )
            return 0
        except Exception as exc:
            raise StatusError(Code.INTERNAL, str(exc)) from exc

    def controller_get_capabilities(self) -> list[ControllerCapability]:
        return [
            ControllerCapability.CREATE_DELETE_VOLUME,
            ControllerCapability.CLONE_VOLUME,
            ControllerCapability.GET_CAPACITY,
            ControllerCapability.EXPAND_VOLUME,
            ControllerCapability.CREATE_DELETE_SNAPSHOT,
        ]

    # Snapshots

    def create_snapshot(self, request: CreateSnapshotRequest) -> Snapshot:
        with self._lock_by_name.hold(request.name):
            return self._create_snapshot(request)

    def _create_snapshot(self, request: CreateSnapshotRequest) -> Snapshot:
        # Snapshots are read-only, so they are activated read-only.
        access_type = "ro"
        logger.info(
            "CreateSnapshot called name=%s source_volume_id=%s",
            request.name,
            request.source_volume_id,
        )
        if not request.source_volume_id:
            raise StatusError(Code.INVALID_ARGUMENT, "missing source volume id")
        if not request.name:
            raise StatusError(Code.INVALID_ARGUMENT, "missing name")

        name = request.name.lower()
        source_vol = self._source_volume(request.source_volume_id, "failed to find source volumes")
        created_at = datetime.fromtimestamp(int(time.time()), tz=timezone.utc)

        # Snapshots share node and device class with their source.
        snapshot_id = _call(
            lambda: self._lv_service.create_snapshot(
                source_vol.spec.node_name,
                source_vol.spec.device_class,
                source_vol.spec.name,
                name,
                access_type,
                source_vol.spec.size,
            )
        )
        return Snapshot(
            snapshot_id=snapshot_id,
            source_volume_id=request.source_volume_id,
            size_bytes=source_vol.spec.size,
            creation_time=created_at,
            ready_to_use=True,
        )

    def delete_snapshot(self, snapshot_id: str) -> None:
        with self._lock_by_volume_id.hold(snapshot_id):
            logger.info("DeleteSnapshot called snapshot_id=%s", snapshot_id)
            if not snapshot_id:
                raise StatusError(Code.INVALID_ARGUMENT, "missing snapshot id")
            try:
                _call(lambda: self._lv_service.delete_volume(snapshot_id))
            except StatusError:
                logger.exception("DeleteSnapshot failed snapshot_id=%s", snapshot_id)
                raise

    # Expansion

    def controller_expand_volume(self, request: ExpandVolumeRequest) -> ExpandVolumeResult:
        with self._lock_by_volume_id.hold(request.volume_id):
            return self._expand_volume(request)

    def _expand_volume(self, request: ExpandVolumeRequest) -> ExpandVolumeResult:
        volume_id = request.volume_id
        required, limit = _range(request.capacity_range)
        logger.info(
            "ControllerExpandVolume called volume_id=%s required=%d limit=%d",
            volume_id,
            required,
            limit,
        )
        if not volume_id:
            raise StatusError(Code.INVALID_ARGUMENT, "volume id is nil")

        lv = self._existing_volume(volume_id)
        request_gb = _request_gb(request.capacity_range)

        current_size = lv.status.current_size
        if current_size is None:
            current_size = lv.spec.size
        current_gb = current_size >> 30

        if request_gb <= current_gb:
            # Whether node expansion already happened is unknown.
            return ExpandVolumeResult(current_gb << 30, True)

        capacity = _call(
            lambda: self._node_service.capacity_by_name(lv.spec.node_name, lv.spec.device_class)
        )
        if capacity < (request_gb << 30) - (current_gb << 30):
            raise StatusError(Code.INTERNAL, "not enough space")

        _call(lambda: self._lv_service.expand_volume(volume_id, request_gb))
        return ExpandVolumeResult(request_gb << 30, True)