"""Reconciler that cleans up volumes of deleted nodes."""

from __future__ import annotations

import copy
import logging
from typing import Protocol

from .errors import NotFoundError
from .getter import Reader
from .logicalvolume_controller import LOGICAL_VOLUME_FINALIZER, LV_PENDING_DELETION_KEY
from .model import (
    PLUGIN_NAME,
    LogicalVolume,
    Node,
    ObjectKey,
    PersistentVolumeClaim,
    Result,
    StorageClass,
)

logger = logging.getLogger(__name__)

NODE_FINALIZER = "topolvm.io/node"
# Annotation the scheduler puts on a claim with the name of the chosen node.
ANN_SELECTED_NODE = "volume.kubernetes.io/selected-node"
# Field index of claims by selected node.
KEY_SELECTED_NODE = "metadata.annotations.selected-node"
# Field index of LogicalVolumes by node.
KEY_LOGICAL_VOLUME_NODE = "spec.nodeName"


class _Client(Reader, Protocol):
    def patch(self, obj: object, original: object) -> None: ...

    def delete(self, obj: object) -> None: ...


class NodeReconciler:
    """Deletes the claims and LogicalVolumes of a node being deleted."""

    def __init__(self, client: _Client, skip_node_finalize: bool = False) -> None:
        self._client = client
        self._skip_node_finalize = skip_node_finalize

    def reconcile(self, key: ObjectKey) -> Result:
        try:
            node = self._client.get(Node, key)
        except NotFoundError:
            return Result()

        if node.metadata.deletion_timestamp is None:
            return Result()
        if not node.metadata.has_finalizer(NODE_FINALIZER):
            return Result()

        self._finalize(node)

        changed = copy.deepcopy(node)
        changed.metadata.remove_finalizer(NODE_FINALIZER)
        try:
            self._client.patch(changed, node)
        except Exception:
            logger.exception("failed to remove finalizer name=%s", node.metadata.name)
            raise
        return Result()

    def _target_storage_classes(self) -> set[str]:
        return {
            sc.metadata.name
            for sc in self._client.list(StorageClass)
            if sc.provisioner == PLUGIN_NAME
        }

    def _finalize(self, node: Node) -> None:
        if self._skip_node_finalize:
            logger.info("skipping node finalize")
            return

        try:
            targets = self._target_storage_classes()
        except Exception:
            logger.exception("unable to fetch StorageClass")
            raise

        name = node.metadata.name
        try:
            pvcs = self._client.list(PersistentVolumeClaim, fields={KEY_SELECTED_NODE: name})
        except Exception:
            logger.exception("unable to fetch PersistentVolumeClaimList")
            raise

        for pvc in pvcs:
            if pvc.storage_class_name is None or pvc.storage_class_name not in targets:
                continue
            try:
                self._client.delete(pvc)
            except Exception:
                logger.exception(
                    "unable to delete PVC %s/%s", pvc.metadata.namespace, pvc.metadata.name
                )
                raise
            logger.info("deleted PVC %s/%s", pvc.metadata.namespace, pvc.metadata.name)

        try:
            lvs = self._client.list(LogicalVolume, fields={KEY_LOGICAL_VOLUME_NODE: name})
        except Exception:
            logger.exception("failed to get LogicalVolumes")
            raise
        for lv in lvs:
            self._cleanup_logical_volume(lv)

    def _cleanup_logical_volume(self, lv: LogicalVolume) -> None:
        name = lv.metadata.name
        if lv.metadata.has_finalizer(LOGICAL_VOLUME_FINALIZER):
            changed = copy.deepcopy(lv)
            # Keep the LogicalVolume reconciler from re-adding the finalizer.
            changed.metadata.annotations[LV_PENDING_DELETION_KEY] = "true"
            changed.metadata.remove_finalizer(LOGICAL_VOLUME_FINALIZER)
            try:
                self._client.patch(changed, lv)
            except Exception:
                logger.exception("failed to patch LogicalVolume name=%s", name)
                raise

        try:
            self._client.delete(lv)
        except Exception:
            logger.exception("failed to delete LogicalVolume name=%s", name)
            raise
        logger.info("deleted LogicalVolume name=%s", name)