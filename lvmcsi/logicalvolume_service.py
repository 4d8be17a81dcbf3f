"""Manage LogicalVolume objects and wait for the node to act on them."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Protocol

from .errors import Code, ConflictError, NotFoundError, StatusError, VolumeNotFoundError
from .getter import Reader, RetryMissingGetter
from .model import (
    KEY_VOLUME_ID,
    RESIZE_REQUESTED_AT_KEY,
    LogicalVolume,
    LogicalVolumeSpec,
    ObjectKey,
    ObjectMeta,
)

logger = logging.getLogger(__name__)


class Writer(Protocol):
    """Something that writes API objects."""

    def create(self, obj: object) -> None: ...

    def update(self, obj: object) -> None: ...

    def delete(self, obj: object) -> None: ...


class Client(Reader, Writer, Protocol):
    """A cached reader that can also write."""


class VolumeGetter:
    """Find a LogicalVolume by volume ID with read-after-create consistency."""

    def __init__(self, cache_reader: Reader, api_reader: Reader) -> None:
        self._cache_reader = cache_reader
        self._api_reader = api_reader

    def get(self, volume_id: str) -> LogicalVolume:
        found = self._cache_reader.list(LogicalVolume, fields={KEY_VOLUME_ID: volume_id})
        if len(found) > 1:
            raise RuntimeError(f"multiple LogicalVolume is found for VolumeID {volume_id}")
        if found:
            return found[0]

        # Not in the cache yet; ask the API server directly.
        matches = [
            lv for lv in self._api_reader.list(LogicalVolume) if lv.status.volume_id == volume_id
        ]
        if len(matches) > 1:
            raise RuntimeError(f"multiple LogicalVolume is found for VolumeID {volume_id}")
        if not matches:
            raise VolumeNotFoundError()
        return matches[0]


class LogicalVolumeService:
    """Operations on LogicalVolume objects.

    Not safe for concurrent use: callers must serialise access.
    ``timeout`` bounds each operation; ``None`` waits indefinitely.
    """

    def __init__(
        self,
        client: Client,
        api_reader: Reader,
        *,
        poll_interval: float = 0.1,
        resize_interval: float = 1.0,
        timeout: float | None = None,
    ) -> None:
        self._writer = client
        self._getter = RetryMissingGetter(client, api_reader)
        self._volumes = VolumeGetter(client, api_reader)
        self._poll_interval = poll_interval
        self._resize_interval = resize_interval
        self._timeout = timeout

    def _deadline(self) -> float | None:
        if self._timeout is None:
            return None
        return time.monotonic() + self._timeout

    @staticmethod
    def _pause(interval: float, deadline: float | None) -> None:
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining < interval:
                if remaining > 0:
                    time.sleep(remaining)
                raise TimeoutError("deadline exceeded")
        time.sleep(interval)

    def _create_or_check(self, lv: LogicalVolume) -> None:
        name = lv.metadata.name
        try:
            existing = self._getter.get(LogicalVolume, ObjectKey(name))
        except NotFoundError:
            self._writer.create(lv)
            logger.info(
                "created LogicalVolume CR name=%s source=%s access_type=%s",
                name,
                lv.spec.source,
                lv.spec.access_type,
            )
            return
        # Sizes are compared strictly rather than as ranges.
        if not existing.is_compatible_with(lv):
            raise StatusError(Code.ALREADY_EXISTS, "Incompatible LogicalVolume already exists")

    def create_volume(
        self,
        node: str,
        device_class: str,
        option_class: str,
        name: str,
        source_name: str,
        request_gb: int,
    ) -> str:
        """Create a volume (a read-write snapshot if ``source_name`` is set); return its ID."""
        logger.info(
            "CreateVolume called name=%s node=%s size_gb=%d source=%s",
            name,
            node,
            request_gb,
            source_name,
        )
        deadline = self._deadline()
        spec = LogicalVolumeSpec(
            name=name,
            node_name=node,
            device_class=device_class,
            lvcreate_option_class=option_class,
            size=request_gb << 30,
        )
        if source_name:
            spec.source = source_name
            spec.access_type = "rw"
        self._create_or_check(LogicalVolume(metadata=ObjectMeta(name=name), spec=spec))
        return self._wait_for_status_update(name, deadline)

    def delete_volume(self, volume_id: str) -> None:
        """Delete the volume and wait until it is gone; a missing volume is not an error."""
        logger.info("DeleteVolume called volume_id=%s", volume_id)
        deadline = self._deadline()
        try:
            lv = self.get_volume(volume_id)
        except VolumeNotFoundError:
            logger.info("volume is not found volume_id=%s", volume_id)
            return

        try:
            self._writer.delete(lv)
        except NotFoundError:
            return

        name = lv.metadata.name
        while True:
            logger.info("waiting for delete LogicalVolume name=%s", name)
            self._pause(self._poll_interval, deadline)
            try:
                self._getter.get(LogicalVolume, ObjectKey(name))
            except NotFoundError:
                return
            except Exception:
                logger.exception("failed to get LogicalVolume name=%s", name)
                raise

    def create_snapshot(
        self,
        node: str,
        device_class: str,
        source_volume: str,
        name: str,
        access_type: str,
        size: int,
    ) -> str:
        """Create a snapshot of ``source_volume`` of ``size`` bytes; return its ID."""
        logger.info("CreateSnapshot called name=%s", name)
        deadline = self._deadline()
        snapshot = LogicalVolume(
            metadata=ObjectMeta(name=name),
            spec=LogicalVolumeSpec(
                name=name,
                node_name=node,
                device_class=device_class,
                size=size,
                source=source_volume,
                access_type=access_type,
            ),
        )
        self._create_or_check(snapshot)
        return self._wait_for_status_update(name, deadline)

    def expand_volume(self, volume_id: str, request_gb: int) -> None:
        """Request a larger size and wait until the node reports it."""
        logger.info("ExpandVolume called volume_id=%s request_gb=%d", volume_id, request_gb)
        deadline = self._deadline()
        lv = self.get_volume(volume_id)
        self._update_spec_size(volume_id, request_gb << 30, deadline)

        name = lv.metadata.name
        while True:
            logger.info("waiting for update of 'status.currentSize' name=%s", name)
            self._pause(self._resize_interval, deadline)
            try:
                changed = self._getter.get(LogicalVolume, ObjectKey(name))
            except Exception:
                logger.exception("failed to get LogicalVolume name=%s", name)
                raise
            if changed.status.code != Code.OK:
                raise StatusError(changed.status.code, changed.status.message)
            if changed.status.current_size is None:
                # Filled in once the expansion completes.
                continue
            if changed.status.current_size != changed.spec.size:
                logger.info(
                    "current size %d does not match requested size %d",
                    changed.status.current_size,
                    changed.spec.size,
                )
                continue
            return

    def get_volume(self, volume_id: str) -> LogicalVolume:
        """Return the LogicalVolume carrying ``volume_id``."""
        return self._volumes.get(volume_id)

    def _update_spec_size(self, volume_id: str, size: int, deadline: float | None) -> None:
        while True:
            self._pause(self._resize_interval, deadline)
            lv = self.get_volume(volume_id)
            lv.spec.size = size
            lv.metadata.annotations[RESIZE_REQUESTED_AT_KEY] = str(datetime.now(timezone.utc))
            try:
                self._writer.update(lv)
            except ConflictError:
                logger.info("conflict on LogicalVolume spec update name=%s", lv.metadata.name)
                continue
            except Exception:
                logger.exception("failed to update LogicalVolume spec name=%s", lv.metadata.name)
                raise
            return

    def _wait_for_status_update(self, name: str, deadline: float | None) -> str:
        while True:
            logger.info("waiting for setting 'status.volumeID' name=%s", name)
            self._pause(self._poll_interval, deadline)
            try:
                lv = self._getter.get(LogicalVolume, ObjectKey(name))
            except Exception:
                logger.exception("failed to get LogicalVolume name=%s", name)
                raise
            if lv.status.volume_id:
                logger.info("LogicalVolume ready volume_id=%s", lv.status.volume_id)
                return lv.status.volume_id
            if lv.status.code != Code.OK:
                try:
                    self._writer.delete(lv)
                except Exception:
                    # The status message is the more important error.
                    logger.exception("failed to delete LogicalVolume name=%s", name)
                raise StatusError(lv.status.code, lv.status.message)