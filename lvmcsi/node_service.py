"""Capacity lookups from node annotations."""

from __future__ import annotations

import re

from .errors import DeviceClassNotFoundError, NodeNotFoundError
from .getter import Reader
from .model import (
    CAPACITY_KEY_PREFIX,
    DEFAULT_DEVICE_CLASS_ANNOTATION_NAME,
    DEFAULT_DEVICE_CLASS_NAME,
    TOPOLOGY_NODE_KEY,
    Node,
    ObjectKey,
)

_INTEGER = re.compile(r"[+-]?[0-9]+")


def _capacity(node: Node, device_class: str) -> int:
    if device_class == DEFAULT_DEVICE_CLASS_NAME:
        device_class = DEFAULT_DEVICE_CLASS_ANNOTATION_NAME
    try:
        value = node.metadata.annotations[CAPACITY_KEY_PREFIX + device_class]
    except KeyError:
        raise DeviceClassNotFoundError() from None
    if not _INTEGER.fullmatch(value):
        raise ValueError(f"invalid capacity {value!r} on node {node.metadata.name}")
    return int(value)


def _capacity_or_zero(node: Node, device_class: str) -> int:
    try:
        return _capacity(node, device_class)
    except (DeviceClassNotFoundError, ValueError):
        return 0


class NodeService:
    """Reads volume group capacity published on nodes."""

    def __init__(self, reader: Reader) -> None:
        # A cache reader is fine: node annotations are updated periodically.
        self._reader = reader

    def capacity_by_name(self, name: str, device_class: str) -> int:
        """Capacity of the named node."""
        node = self._reader.get(Node, ObjectKey(name))
        return _capacity(node, device_class)

    def capacity_by_topology_label(self, topology: str, device_class: str) -> int:
        """Capacity of the node whose topology label equals ``topology``."""
        for node in self._reader.list(Node):
            value = node.metadata.labels.get(TOPOLOGY_NODE_KEY)
            if value is None or value != topology:
                continue
            return _capacity(node, device_class)
        raise NodeNotFoundError()

    def total_capacity(self, device_class: str) -> int:
        """Sum of capacities over all nodes."""
        return sum(_capacity_or_zero(n, device_class) for n in self._reader.list(Node))

    def max_capacity(self, device_class: str) -> tuple[str, int]:
        """Name and capacity of the node with the most capacity.

        Returns ("", 0) when no node has any capacity.
        """
        node_name = ""
        max_capacity = 0
        for node in self._reader.list(Node):
            capacity = _capacity_or_zero(node, device_class)
            if max_capacity < capacity:
                max_capacity = capacity
                node_name = node.metadata.name
        return node_name, max_capacity