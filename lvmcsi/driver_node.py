"""CSI node service: publishing volumes on the node they live on."""

from __future__ import annotations

import enum
import logging
import os
import shutil
import stat
import subprocess
import threading
from dataclasses import dataclass, field
from typing import NamedTuple, Protocol

from .driver_controller import AccessMode, CapacityRange, Topology, convert_request_capacity
from .errors import Code, StatusError, VolumeNotFoundError
from .filesystem import PROC_MOUNTS, detect_filesystem, is_mounted
from .model import DEFAULT_DEVICE_CLASS_NAME, TOPOLOGY_NODE_KEY, LogicalVolume, LVInfo

logger = logging.getLogger(__name__)

# Directory where the node service creates device files.
DEVICE_DIRECTORY = "/dev/topolvm"
FINDMNT_CMD = "/bin/findmnt"
DEVICE_MODE = 0o600 | stat.S_IFBLK


class UsageUnit(enum.IntEnum):
    """Units of volume usage, numbered as in CSI."""

    UNKNOWN = 0
    BYTES = 1
    INODES = 2


class NodeCapability(enum.IntEnum):
    """Node service capabilities, numbered as in CSI."""

    UNKNOWN = 0
    STAGE_UNSTAGE_VOLUME = 1
    GET_VOLUME_STATS = 2
    EXPAND_VOLUME = 3


@dataclass
class MountVolume:
    """Filesystem access to a volume."""

    fs_type: str = ""
    mount_flags: list[str] = field(default_factory=list)


@dataclass
class NodeVolumeCapability:
    """Requested access: a raw block device or a mounted filesystem."""

    block: bool = False
    mount: MountVolume | None = None
    access_mode: AccessMode | None = None


@dataclass
class NodePublishRequest:
    volume_id: str = ""
    target_path: str = ""
    volume_capability: NodeVolumeCapability | None = None
    read_only: bool = False
    publish_context: dict[str, str] = field(default_factory=dict)
    volume_context: dict[str, str] = field(default_factory=dict)
    secrets: dict[str, str] = field(default_factory=dict)


@dataclass
class VolumeUsage:
    unit: UsageUnit
    total: int = 0
    used: int = 0
    available: int = 0


class NodeInfo(NamedTuple):
    node_id: str
    accessible_topology: Topology


class VGClient(Protocol):
    """Lists logical volumes known to the LVM daemon."""

    def get_lv_list(self, device_class: str) -> list[LVInfo]: ...


class VolumeLookup(Protocol):
    """Finds LogicalVolume objects by volume ID."""

    def get_volume(self, volume_id: str) -> LogicalVolume: ...


def make_mount_options(read_only: bool, mount: MountVolume) -> list[str]:
    """Mount options for a filesystem volume."""
    options = ["ro"] if read_only else []
    for flag in mount.mount_flags:
        if flag == "rw" and read_only:
            raise StatusError(
                Code.INVALID_ARGUMENT,
                'mount option "rw" is specified even though read only mode is specified',
            )
        options.append(flag)
    # avoid duplicate UUIDs
    if mount.fs_type == "xfs":
        options.append("nouuid")
    return options


def _run(args: list[str]) -> str:
    proc = subprocess.run(
        args, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, check=False
    )
    output = proc.stdout.decode("utf-8", "replace")
    if proc.returncode != 0:
        raise RuntimeError(
            f"{' '.join(args)} failed: exit status {proc.returncode}, output={output}"
        )
    return output


class Mounter:
    """Formats, mounts, unmounts and resizes filesystems with system tools."""

    def format_and_mount(
        self, device: str, target: str, fs_type: str, options: list[str]
    ) -> None:
        """Create a filesystem on ``device`` if it has none, then mount it."""
        if not detect_filesystem(device):
            if fs_type in ("ext3", "ext4"):
                args = [f"mkfs.{fs_type}", "-F", "-m0", device]
            elif fs_type == "xfs":
                args = ["mkfs.xfs", "-f", device]
            else:
                args = [f"mkfs.{fs_type}", device]
            _run(args)
        args = ["mount", "-t", fs_type]
        if options:
            args += ["-o", ",".join(options)]
        _run(args + [device, target])

    def unmount(self, target: str) -> None:
        _run(["umount", target])

    def mount_source(self, target: str) -> str:
        """The source device mounted at ``target``, or "" if none."""
        return _run([FINDMNT_CMD, "-o", "source", "--noheadings", "--target", target]).strip()

    def resize(self, device: str, target: str) -> bool:
        """Grow the filesystem on ``device`` mounted at ``target``."""
        fs_type = detect_filesystem(device)
        if fs_type in ("ext3", "ext4"):
            _run(["resize2fs", device])
        elif fs_type == "xfs":
            _run(["xfs_growfs", "-d", target])
        else:
            raise RuntimeError(f"resize of format {fs_type!r} is not supported for device {device}")
        return True


class NodeServer:
    """CSI node service.

    Calls that touch devices or filesystems are serialised by one lock.
    """

    def __init__(
        self,
        node_name: str,
        vg_client: VGClient,
        lv_service: VolumeLookup,
        mounter: Mounter | None = None,
        *,
        device_directory: str = DEVICE_DIRECTORY,
        mounts_path: str = PROC_MOUNTS,
    ) -> None:
        self._node_name = node_name
        self._vg_client = vg_client
        self._lv_service = lv_service
        self._mounter = mounter if mounter is not None else Mounter()
        self._device_directory = device_directory
        self._mounts_path = mounts_path
        self._lock = threading.Lock()

    def _device_path(self, volume_id: str) -> str:
        return os.path.join(self._device_directory, volume_id)

    # Publishing

    def node_publish_volume(self, request: NodePublishRequest) -> None:
        with self._lock:
            self._publish(request)

    def _publish(self, request: NodePublishRequest) -> None:
        volume_id = request.volume_id
        logger.info(
            "NodePublishVolume called volume_id=%s target_path=%s read_only=%s",
            volume_id,
            request.target_path,
            request.read_only,
        )
        if not volume_id:
            raise StatusError(Code.INVALID_ARGUMENT, "no volume_id is provided")
        if not request.target_path:
            raise StatusError(Code.INVALID_ARGUMENT, "no target_path is provided")
        capability = request.volume_capability
        if capability is None:
            raise StatusError(Code.INVALID_ARGUMENT, "no volume_capability is provided")
        is_block = capability.block
        is_fs = capability.mount is not None
        if not (is_block or is_fs):
            raise StatusError(
                Code.INVALID_ARGUMENT, f"no supported volume capability: {capability}"
            )
        # only SINGLE_NODE_WRITER is supported
        mode = AccessMode(capability.access_mode or AccessMode.UNKNOWN)
        if mode != AccessMode.SINGLE_NODE_WRITER:
            raise StatusError(
                Code.FAILED_PRECONDITION,
                f"unsupported access mode: {mode.name} ({int(mode)})",
            )

        lvr = self._lv_service.get_volume(volume_id)
        lv = self._find_lv(lvr.spec.device_class, volume_id)
        if lv is None:
            raise StatusError(Code.NOT_FOUND, f"failed to find LV: {volume_id}")

        if is_block:
            self._publish_block(request, lv)
        else:
            self._publish_filesystem(request, lv)

    def _publish_filesystem(self, request: NodePublishRequest, lv: LVInfo) -> None:
        assert request.volume_capability is not None
        mount = request.volume_capability.mount
        assert mount is not None
        mount = MountVolume(fs_type=mount.fs_type or "ext4", mount_flags=list(mount.mount_flags))
        target = request.target_path
        volume_id = request.volume_id

        device = self._device_path(volume_id)
        self._create_device_if_needed(device, lv)

        options = make_mount_options(request.read_only, mount)

        try:
            os.makedirs(target, 0o755, exist_ok=True)
        except OSError as exc:
            raise StatusError(Code.INTERNAL, f"mkdir failed: target={target}, error={exc}") from exc

        try:
            fs_type = detect_filesystem(device)
        except Exception as exc:
            raise StatusError(
                Code.INTERNAL, f"filesystem check failed: volume={volume_id}, error={exc}"
            ) from exc
        if fs_type and fs_type != mount.fs_type:
            raise StatusError(
                Code.INTERNAL,
                "target device is already formatted with different filesystem: "
                f"volume={volume_id}, current={fs_type}, new:{mount.fs_type}",
            )

        try:
            mounted = is_mounted(device, target, self._mounts_path)
        except Exception as exc:
            raise StatusError(
                Code.INTERNAL, f"mount check failed: target={target}, error={exc}"
            ) from exc

        if not mounted:
            try:
                self._mounter.format_and_mount(device, target, mount.fs_type, options)
            except Exception as exc:
                raise StatusError(
                    Code.INTERNAL, f"mount failed: volume={volume_id}, error={exc}"
                ) from exc
            try:
                os.chmod(target, 0o2777)
            except OSError as exc:
                raise StatusError(
                    Code.INTERNAL, f"chmod 2777 failed: target={target}, error={exc}"
                ) from exc

        logger.info(
            "NodePublishVolume(fs) succeeded volume_id=%s target_path=%s fstype=%s",
            volume_id,
            target,
            mount.fs_type,
        )

    def _publish_block(self, request: NodePublishRequest, lv: LVInfo) -> None:
        self._create_device_if_needed(request.target_path, lv)
        logger.info(
            "NodePublishVolume(block) succeeded volume_id=%s target_path=%s",
            request.volume_id,
            request.target_path,
        )

    def _create_device_if_needed(self, device: str, lv: LVInfo) -> None:
        devno = os.makedev(lv.dev_major, lv.dev_minor)
        try:
            st = os.stat(device)
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise StatusError(Code.INTERNAL, f"failed to stat {device}: error={exc}") from exc
        else:
            if st.st_rdev == devno and st.st_uid == os.getuid() and st.st_mode == DEVICE_MODE:
                return
            try:
                os.remove(device)
            except OSError as exc:
                raise StatusError(
                    Code.INTERNAL, f"failed to remove device file {device}: error={exc}"
                ) from exc

        parent = os.path.dirname(device)
        try:
            os.makedirs(parent, 0o755, exist_ok=True)
        except OSError as exc:
            raise StatusError(Code.INTERNAL, f"mkdir failed: target={parent}, error={exc}") from exc
        try:
            os.mknod(device, DEVICE_MODE, devno)
        except OSError as exc:
            raise StatusError(
                Code.INTERNAL,
                f"mknod failed for {device}. major={lv.dev_major}, minor={lv.dev_minor}, "
                f"error={exc}",
            ) from exc

    def _find_lv(self, device_class: str, volume_id: str) -> LVInfo | None:
        try:
            volumes = self._vg_client.get_lv_list(device_class)
        except Exception as exc:
            raise StatusError(Code.INTERNAL, f"failed to list LV: {exc}") from exc
        return next((v for v in volumes if v.name == volume_id), None)

    # Unpublishing

    def node_unpublish_volume(self, volume_id: str, target_path: str) -> None:
        with self._lock:
            self._unpublish(volume_id, target_path)

    def _unpublish(self, volume_id: str, target_path: str) -> None:
        logger.info(
            "NodeUnpublishVolume called volume_id=%s target_path=%s", volume_id, target_path
        )
        if not volume_id:
            raise StatusError(Code.INVALID_ARGUMENT, "no volume_id is provided")
        if not target_path:
            raise StatusError(Code.INVALID_ARGUMENT, "no target_path is provided")

        device = self._device_path(volume_id)
        try:
            st = os.stat(target_path)
        except FileNotFoundError:
            # The device of a filesystem volume may still exist.
            try:
                os.remove(device)
            except OSError:
                pass
            return
        except OSError as exc:
            raise StatusError(Code.INTERNAL, f"stat failed for {target_path}: {exc}") from exc

        if stat.S_ISDIR(st.st_mode):
            self._unpublish_filesystem(volume_id, target_path, device)
        else:
            self._unpublish_block(volume_id, target_path)

    def _unpublish_filesystem(self, volume_id: str, target_path: str, device: str) -> None:
        try:
            mounted = is_mounted(device, target_path, self._mounts_path)
        except Exception as exc:
            raise StatusError(
                Code.INTERNAL, f"mount check failed: target={target_path}, error={exc}"
            ) from exc
        if mounted:
            try:
                self._mounter.unmount(target_path)
            except Exception as exc:
                raise StatusError(
                    Code.INTERNAL, f"unmount failed for {target_path}: error={exc}"
                ) from exc

        try:
            shutil.rmtree(target_path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise StatusError(
                Code.INTERNAL, f"remove dir failed for {target_path}: error={exc}"
            ) from exc

        try:
            os.remove(device)
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise StatusError(
                Code.INTERNAL, f"remove device failed for {device}: error={exc}"
            ) from exc

        logger.info(
            "NodeUnpublishVolume(fs) succeeded volume_id=%s target_path=%s",
            volume_id,
            target_path,
        )

    def _unpublish_block(self, volume_id: str, target_path: str) -> None:
        try:
            os.remove(target_path)
        except OSError as exc:
            raise StatusError(
                Code.INTERNAL, f"remove failed for {target_path}: error={exc}"
            ) from exc
        logger.info(
            "NodeUnpublishVolume(block) succeeded volume_id=%s target_path=%s",
            volume_id,
            target_path,
        )

    # Stats and expansion

    def node_get_volume_stats(self, volume_id: str, volume_path: str) -> list[VolumeUsage]:
        with self._lock:
            return self._volume_stats(volume_id, volume_path)

    def _volume_stats(self, volume_id: str, volume_path: str) -> list[VolumeUsage]:
        logger.info("NodeGetVolumeStats called volume_id=%s volume_path=%s", volume_id, volume_path)
        if not volume_id:
            raise StatusError(Code.INVALID_ARGUMENT, "no volume_id is provided")
        if not volume_path:
            raise StatusError(Code.INVALID_ARGUMENT, "no volume_path is provided")

        try:
            st = os.stat(volume_path)
        except FileNotFoundError as exc:
            raise StatusError(Code.NOT_FOUND, "Volume is not found at " + volume_path) from exc
        except OSError as exc:
            raise StatusError(Code.INTERNAL, f"stat on {volume_path} was failed: {exc}") from exc

        if stat.S_ISBLK(st.st_mode):
            try:
                with open(volume_path, "rb") as f:
                    size = f.seek(0, os.SEEK_END)
            except OSError as exc:
                raise StatusError(
                    Code.INTERNAL, f"open on {volume_path} was failed: {exc}"
                ) from exc
            return [VolumeUsage(unit=UsageUnit.BYTES, total=size)]

        if not stat.S_ISDIR(st.st_mode):
            raise StatusError(
                Code.INTERNAL, f"invalid mode bits for {volume_path}: {st.st_mode}"
            )

        try:
            sfs = os.statvfs(volume_path)
        except OSError as exc:
            raise StatusError(Code.INTERNAL, f"statfs on {volume_path} was failed: {exc}") from exc

        usage = []
        if sfs.f_blocks > 0:
            usage.append(
                VolumeUsage(
                    unit=UsageUnit.BYTES,
                    total=sfs.f_blocks * sfs.f_frsize,
                    used=(sfs.f_blocks - sfs.f_bfree) * sfs.f_frsize,
                    available=sfs.f_bavail * sfs.f_frsize,
                )
            )
        if sfs.f_files > 0:
            usage.append(
                VolumeUsage(
                    unit=UsageUnit.INODES,
                    total=sfs.f_files,
                    used=sfs.f_files - sfs.f_ffree,
                    available=sfs.f_ffree,
                )
            )
        return usage

    def node_expand_volume(
        self, volume_id: str, volume_path: str, capacity_range: CapacityRange | None = None
    ) -> None:
        with self._lock:
            self._expand(volume_id, volume_path, capacity_range)

    def _expand(
        self, volume_id: str, volume_path: str, capacity_range: CapacityRange | None
    ) -> None:
        logger.info("NodeExpandVolume called volume_id=%s volume_path=%s", volume_id, volume_path)
        if not volume_id:
            raise StatusError(Code.INVALID_ARGUMENT, "no volume_id is provided")
        if not volume_path:
            raise StatusError(Code.INVALID_ARGUMENT, "no volume_path is provided")

        # Validate the range; the filesystem grows to fill the device regardless.
        required, limit = (
            (capacity_range.required_bytes, capacity_range.limit_bytes) if capacity_range else (0, 0)
        )
        try:
            convert_request_capacity(required, limit)
        except ValueError as exc:
            raise StatusError(Code.INVALID_ARGUMENT, str(exc)) from exc

        try:
            st = os.stat(volume_path)
        except FileNotFoundError as exc:
            raise StatusError(
                Code.NOT_FOUND, f"volume path is not exist: {volume_path}"
            ) from exc
        except OSError as exc:
            raise StatusError(Code.INTERNAL, f"stat failed for {volume_path}: {exc}") from exc

        if not stat.S_ISDIR(st.st_mode):
            logger.info(
                "NodeExpandVolume(block) is skipped volume_id=%s target_path=%s",
                volume_id,
                volume_path,
            )
            return

        device = self._device_path(volume_id)
        try:
            device_class = self._lv_service.get_volume(volume_id).spec.device_class
        except VolumeNotFoundError:
            device_class = DEFAULT_DEVICE_CLASS_NAME
        lv = self._find_lv(device_class, volume_id)
        if lv is None:
            raise StatusError(Code.NOT_FOUND, f"failed to find LV: {volume_id}")
        self._create_device_if_needed(device, lv)

        try:
            source = self._mounter.mount_source(volume_path)
        except Exception as exc:
            raise StatusError(Code.INTERNAL, f"findmnt error occurred: {exc}") from exc
        if not source:
            raise StatusError(
                Code.INTERNAL, f"filesystem {volume_id} is not mounted at {volume_path}"
            )

        try:
            self._mounter.resize(device, volume_path)
        except Exception as exc:
            raise StatusError(
                Code.INTERNAL,
                f"failed to resize filesystem {volume_id} (mounted at: {volume_path}): {exc}",
            ) from exc

        logger.info(
            "NodeExpandVolume(fs) succeeded volume_id=%s target_path=%s", volume_id, volume_path
        )

    # Constant information

    def node_get_capabilities(self) -> list[NodeCapability]:
        return [NodeCapability.GET_VOLUME_STATS, NodeCapability.EXPAND_VOLUME]

    def node_get_info(self) -> NodeInfo:
        return NodeInfo(
            node_id=self._node_name,
            accessible_topology=Topology({TOPOLOGY_NODE_KEY: self._node_name}),
        )