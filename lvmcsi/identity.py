"""CSI identity service."""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass

from .errors import Code, StatusError
from .model import PLUGIN_NAME, VERSION

logger = logging.getLogger(__name__)


class ServiceCapability(enum.IntEnum):
    """Plugin service capabilities, numbered as in CSI."""

    UNKNOWN = 0
    CONTROLLER_SERVICE = 1
    VOLUME_ACCESSIBILITY_CONSTRAINTS = 2


class VolumeExpansion(enum.IntEnum):
    """Volume expansion capabilities, numbered as in CSI."""

    UNKNOWN = 0
    ONLINE = 1
    OFFLINE = 2


@dataclass(frozen=True)
class PluginInfo:
    name: str
    vendor_version: str


class IdentityServer:
    """Reports plugin identity, capabilities and readiness.

    ``ready`` returns whether the plugin is ready and raises if it is
    unhealthy.
    """

    def __init__(self, ready: Callable[[], bool]) -> None:
        self._ready = ready

    def get_plugin_info(self) -> PluginInfo:
        logger.info("GetPluginInfo")
        return PluginInfo(name=PLUGIN_NAME, vendor_version=VERSION)

    def get_plugin_capabilities(self) -> list[ServiceCapability | VolumeExpansion]:
        logger.info("GetPluginCapabilities")
        return [
            ServiceCapability.CONTROLLER_SERVICE,
            ServiceCapability.VOLUME_ACCESSIBILITY_CONSTRAINTS,
            VolumeExpansion.ONLINE,
            VolumeExpansion.OFFLINE,
        ]

    def probe(self) -> bool:
        logger.info("Probe")
        try:
            return bool(self._ready())
        except Exception as exc:
            logger.error("probe failed: %s", exc)
            raise StatusError(Code.FAILED_PRECONDITION, str(exc)) from exc