"""Error types shared by the driver, services and controllers."""

from __future__ import annotations

import enum


class Code(enum.IntEnum):
    """RPC status codes, numbered as on the wire."""

    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16


class StatusError(Exception):
    """An error that carries an RPC status code and message."""

    def __init__(self, code: Code, message: str = "") -> None:
        super().__init__(f"rpc error: code = {code.name} desc = {message}")
        self.code = Code(code)
        self.message = message


class NotFoundError(Exception):
    """The requested API object does not exist."""


class ConflictError(Exception):
    """The API object was modified concurrently."""


class VolumeNotFoundError(Exception):
    """No LogicalVolume carries the requested volume ID."""

    def __init__(self, message: str = "VolumeID is not found") -> None:
        super().__init__(message)


class NodeNotFoundError(Exception):
    """No node matches the requested topology."""

    def __init__(self, message: str = "node not found") -> None:
        super().__init__(message)


class DeviceClassNotFoundError(Exception):
    """The node has no capacity annotation for the device class."""

    def __init__(self, message: str = "device class not found") -> None:
        super().__init__(message)


def status_from_error(err: BaseException) -> tuple[Code, str]:
    """Return the status code and message an error stands for."""
    if isinstance(err, StatusError):
        return err.code, err.message
    return Code.INTERNAL, str(err)