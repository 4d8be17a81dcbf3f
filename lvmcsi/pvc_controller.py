"""Reconciler that finalizes PersistentVolumeClaims.

When a claim carrying the plugin's finalizer is deleted, the pods that
use it are deleted too, so that pods of a StatefulSet do not stay
pending on a claim that is gone.
"""

from __future__ import annotations

import logging
from typing import Protocol

from .errors import NotFoundError
from .getter import Reader
from .model import (
    LEGACY_PVC_FINALIZER,
    PVC_FINALIZER,
    ObjectKey,
    PersistentVolumeClaim,
    Pod,
    Result,
)

logger = logging.getLogger(__name__)

_REQUEUE_AFTER = 10.0


class _Client(Reader, Protocol):
    def update(self, obj: object) -> None: ...

    def delete(self, obj: object, *, grace_period_seconds: int | None = None) -> None: ...


class PersistentVolumeClaimReconciler:
    """Removes the deprecated finalizer and finalizes deleted claims."""

    def __init__(self, client: _Client, api_reader: Reader) -> None:
        self._client = client
        self._api_reader = api_reader

    def reconcile(self, key: ObjectKey) -> Result:
        try:
            pvc = self._client.get(PersistentVolumeClaim, key)
        except NotFoundError:
            return Result()

        # Several copies of the deprecated finalizer may be present; drop all.
        if pvc.metadata.remove_finalizer(LEGACY_PVC_FINALIZER):
            try:
                self._client.update(pvc)
            except Exception:
                logger.exception("failed to remove deprecated finalizer name=%s", pvc.metadata.name)
                raise
            return Result(requeue=True)

        if pvc.metadata.deletion_timestamp is None:
            return Result()
        if not pvc.metadata.has_finalizer(PVC_FINALIZER):
            return Result()

        try:
            pods = self.pods_by_pvc(pvc)
        except Exception:
            logger.exception(
                "unable to fetch pods for PVC %s/%s", pvc.metadata.namespace, pvc.metadata.name
            )
            raise
        for pod in pods:
            try:
                self._client.delete(pod, grace_period_seconds=1)
            except Exception:
                logger.exception(
                    "unable to delete pod %s/%s", pod.metadata.namespace, pod.metadata.name
                )
                raise
            logger.info("deleted pod %s/%s", pod.metadata.namespace, pod.metadata.name)

        # Wait for the other finalizers to finish their work.
        if len(pvc.metadata.finalizers) != 1:
            return Result(requeue=True, requeue_after=_REQUEUE_AFTER)

        pvc.metadata.remove_finalizer(PVC_FINALIZER)
        try:
            self._client.update(pvc)
        except Exception:
            logger.exception("failed to remove finalizer name=%s", pvc.metadata.name)
            raise
        return Result()

    def pods_by_pvc(self, pvc: PersistentVolumeClaim) -> list[Pod]:
        """Pods in the claim's namespace that mount the claim."""
        # Read the API server directly to avoid cache latency.
        pods = self._api_reader.list(Pod, namespace=pvc.metadata.namespace)
        return [
            pod
            for pod in pods
            if any(v.claim_name == pvc.metadata.name for v in pod.volumes if v.claim_name is not None)
        ]