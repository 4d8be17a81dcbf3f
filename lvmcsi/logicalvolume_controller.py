"""Reconciler that creates, expands and removes LVM volumes for LogicalVolumes."""

from __future__ import annotations

import copy
import logging
from collections.abc import Sequence
from typing import Any, Protocol

from .errors import Code, NotFoundError, status_from_error
from .getter import Reader
from .model import LogicalVolume, ObjectKey, Result

logger = logging.getLogger(__name__)

LOGICAL_VOLUME_FINALIZER = "topolvm.io/logicalvolume"
LV_PENDING_DELETION_KEY = "topolvm.io/pendingDeletion"
CREATED_BY_LABEL_KEY = "app.kubernetes.io/created-by"
CREATED_BY_LABEL_VALUE = "topolvm-controller"


class VGService(Protocol):
    """Lists the logical volumes of a volume group."""

    def get_lv_list(self, device_class: str) -> Sequence[Any]: ...


class LVService(Protocol):
    """Creates, removes and resizes logical volumes on the node."""

    def create_lv(
        self, *, name: str, device_class: str, lvcreate_option_class: str, size_gb: int
    ) -> Any: ...

    def create_lv_snapshot(
        self, *, name: str, device_class: str, source_volume: str, size_gb: int, access_type: str
    ) -> Any: ...

    def remove_lv(self, *, name: str, device_class: str) -> None: ...

    def resize_lv(self, *, name: str, size_gb: int, device_class: str) -> None: ...


class _Client(Reader, Protocol):
    def patch(self, obj: object, original: object) -> None: ...

    def update_status(self, obj: object) -> None: ...


class LogicalVolumeFilter:
    """Accepts only LogicalVolumes that belong to one node."""

    def __init__(self, node_name: str) -> None:
        self.node_name = node_name

    def accepts(self, obj: object) -> bool:
        return isinstance(obj, LogicalVolume) and obj.spec.node_name == self.node_name


class LogicalVolumeReconciler:
    """Creates or deletes the LVM logical volume behind a LogicalVolume."""

    def __init__(
        self, client: _Client, node_name: str, vg_service: VGService, lv_service: LVService
    ) -> None:
        self._client = client
        self._node_name = node_name
        self._vg_service = vg_service
        self._lv_service = lv_service

    def reconcile(self, key: ObjectKey) -> Result:
        try:
            lv = self._client.get(LogicalVolume, key)
        except NotFoundError:
            return Result()
        except Exception:
            logger.exception("unable to fetch LogicalVolume")
            raise

        name = lv.metadata.name
        if lv.spec.node_name != self._node_name:
            logger.info("unfiltered logical volume node_name=%s", lv.spec.node_name)
            return Result()

        if LV_PENDING_DELETION_KEY in lv.metadata.annotations:
            if lv.metadata.has_finalizer(LOGICAL_VOLUME_FINALIZER):
                logger.error(
                    "logical volume was pending deletion but still has finalizer name=%s", name
                )
            else:
                logger.info(
                    "skipping finalizer for logical volume due to its pending deletion name=%s",
                    name,
                )
            return Result()

        if lv.metadata.deletion_timestamp is None:
            if not lv.metadata.has_finalizer(LOGICAL_VOLUME_FINALIZER):
                changed = copy.deepcopy(lv)
                changed.metadata.add_finalizer(LOGICAL_VOLUME_FINALIZER)
                self._patch(changed, lv, "failed to add finalizer")
                return Result(requeue=True)

            if lv.metadata.labels.get(CREATED_BY_LABEL_KEY) != CREATED_BY_LABEL_VALUE:
                changed = copy.deepcopy(lv)
                changed.metadata.labels[CREATED_BY_LABEL_KEY] = CREATED_BY_LABEL_VALUE
                self._patch(changed, lv, "failed to add label")
                return Result(requeue=True)

            if not lv.status.volume_id:
                try:
                    self._create_lv(lv)
                except Exception:
                    logger.exception("failed to create LV name=%s", name)
                    raise
                return Result()

            try:
                self._expand_lv(lv)
            except Exception:
                logger.exception("failed to expand LV name=%s", name)
                raise
            return Result()

        # Finalization.
        if not lv.metadata.has_finalizer(LOGICAL_VOLUME_FINALIZER):
            return Result()

        logger.info("start finalizing LogicalVolume name=%s", name)
        self._remove_lv_if_exists(lv)

        changed = copy.deepcopy(lv)
        changed.metadata.remove_finalizer(LOGICAL_VOLUME_FINALIZER)
        self._patch(changed, lv, "failed to remove finalizer")
        return Result()

    def _patch(self, changed: LogicalVolume, original: LogicalVolume, failure: str) -> None:
        try:
            self._client.patch(changed, original)
        except Exception:
            logger.exception("%s name=%s", failure, original.metadata.name)
            raise

    def _lv_names(self, lv: LogicalVolume) -> set[str]:
        return {v.name for v in self._vg_service.get_lv_list(lv.spec.device_class)}

    def _remove_lv_if_exists(self, lv: LogicalVolume) -> None:
        # Removing the LV and the finalizer is not atomic, so check first.
        try:
            names = self._lv_names(lv)
        except Exception:
            logger.exception("failed to list LV")
            raise
        uid = lv.metadata.uid
        if uid not in names:
            logger.info("LV already removed name=%s uid=%s", lv.metadata.name, uid)
            return
        try:
            self._lv_service.remove_lv(name=uid, device_class=lv.spec.device_class)
        except Exception:
            logger.exception("failed to remove LV name=%s uid=%s", lv.metadata.name, uid)
            raise
        logger.info("removed LV name=%s uid=%s", lv.metadata.name, uid)

    @staticmethod
    def _record_failure(lv: LogicalVolume, exc: BaseException) -> None:
        code, message = status_from_error(exc)
        logger.error("%s", message)
        lv.status.code = code
        lv.status.message = message

    def _save_status(self, lv: LogicalVolume, failed: bool) -> None:
        try:
            self._client.update_status(lv)
        except Exception:
            logger.exception(
                "failed to update status name=%s uid=%s", lv.metadata.name, lv.metadata.uid
            )
            if not failed:
                raise

    def _create_lv(self, lv: LogicalVolume) -> None:
        # A failed creation is left for the controller to clean up.
        if lv.status.code != Code.OK:
            return
        try:
            self._provision(lv)
        except Exception:
            self._save_status(lv, failed=True)
            raise
        self._save_status(lv, failed=False)
        logger.info(
            "created new LV name=%s uid=%s volume_id=%s",
            lv.metadata.name,
            lv.metadata.uid,
            lv.status.volume_id,
        )

    def _provision(self, lv: LogicalVolume) -> None:
        request_bytes = lv.spec.size
        uid = lv.metadata.uid
        try:
            found = uid in self._lv_names(lv)
        except Exception:
            logger.exception("failed to get list of LV")
            lv.status.code = Code.INTERNAL
            lv.status.message = "failed to check volume existence"
            raise
        if found:
            # The node may have crashed right after creating the LV.
            logger.info("set volumeID to existing LogicalVolume name=%s uid=%s", lv.metadata.name, uid)
            lv.status.volume_id = uid
            lv.status.code = Code.OK
            lv.status.message = ""
            return

        if lv.spec.source:
            if lv.spec.access_type not in ("ro", "rw"):
                raise ValueError(f"invalid access type for source volume: {lv.spec.access_type}")
            try:
                source = self._client.get(
                    LogicalVolume,
                    ObjectKey(name=lv.spec.source, namespace=lv.metadata.namespace),
                )
            except Exception:
                logger.exception("unable to fetch source LogicalVolume name=%s", lv.metadata.name)
                raise
            try:
                volume = self._lv_service.create_lv_snapshot(
                    name=uid,
                    device_class=lv.spec.device_class,
                    source_volume=source.status.volume_id,
                    size_gb=request_bytes >> 30,
                    access_type=lv.spec.access_type,
                )
            except Exception as exc:
                self._record_failure(lv, exc)
                raise
        else:
            try:
                volume = self._lv_service.create_lv(
                    name=uid,
                    device_class=lv.spec.device_class,
                    lvcreate_option_class=lv.spec.lvcreate_option_class,
                    size_gb=request_bytes >> 30,
                )
            except Exception as exc:
                self._record_failure(lv, exc)
                raise

        lv.status.volume_id = volume.name
        lv.status.current_size = request_bytes
        lv.status.code = Code.OK
        lv.status.message = ""

    def _expand_lv(self, lv: LogicalVolume) -> None:
        # -1 stands for an unknown original size.
        current = lv.status.current_size
        if current is None:
            # The node may have crashed before recording the size; resize anyway.
            original = -1
        elif lv.spec.size <= current:
            return
        else:
            original = current

        request_bytes = lv.spec.size
        try:
            self._lv_service.resize_lv(
                name=lv.metadata.uid,
                size_gb=request_bytes >> 30,
                device_class=lv.spec.device_class,
            )
        except Exception as exc:
            self._record_failure(lv, exc)
            self._save_status(lv, failed=True)
            raise

        lv.status.current_size = request_bytes
        lv.status.code = Code.OK
        lv.status.message = ""
        self._save_status(lv, failed=False)
        logger.info(
            "expanded LV name=%s uid=%s volume_id=%s original_size=%d size=%d",
            lv.metadata.name,
            lv.metadata.uid,
            lv.status.volume_id,
            original,
            request_bytes,
        )