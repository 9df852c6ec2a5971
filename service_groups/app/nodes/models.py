"""
Permission node models for the groups engine.

A node is a single permission assertion: a dotted key, a boolean value and
an optional expiration in epoch milliseconds (0 never expires). Three key
shapes carry extra data and are decoded once, when the node is built:

- ``group.<name>``           group membership (GroupNode)
- ``prefix.<weight>.<text>`` display prefix (PrefixNode)
- ``weight.<integer>``       group ranking (WeightNode)
"""

import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Tuple, Union


PREFIX_MIN_LENGTH = 1
PREFIX_MAX_LENGTH = 16


def now_millis() -> int:
    """Current time in epoch milliseconds."""
    return int(time.time() * 1000)


class NodeKind(str, Enum):
    """Node discriminants."""
    GROUP = "group"
    PREFIX = "prefix"
    WEIGHT = "weight"
    GENERIC = "generic"


@dataclass(frozen=True)
class GroupNode:
    """Group membership encoded as ``group.<name>``."""
    group: str
    expires_at: int = 0

    KEY_PREFIX = "group."
    REGEX = re.compile(r"^group\.([^.]+)$")

    def __post_init__(self):
        if not self.group or "." in self.group:
            raise ValueError(f"Invalid group name: {self.group!r}")
        object.__setattr__(self, "group", self.group.lower())

    @property
    def key(self) -> str:
        return f"{self.KEY_PREFIX}{self.group}"

    def is_expired(self) -> bool:
        return self.expires_at != 0 and self.expires_at < now_millis()

    def with_duration(self, duration: int) -> "GroupNode":
        """Copy of this node expiring ``duration`` milliseconds from now."""
        return GroupNode(self.group, now_millis() + duration)

    def to_node(self, value: bool = True) -> "Node":
        return Node(self.key, value, self.expires_at)

    @classmethod
    def from_node(cls, node: "Node") -> Optional["GroupNode"]:
        if node.kind is not NodeKind.GROUP:
            return None
        return cls(node.payload.group, node.expires_at)


@dataclass(frozen=True)
class PrefixNode:
    """Display prefix encoded as ``prefix.<weight>.<text>``."""
    weight: int
    text: str

    REGEX = re.compile(r"^prefix\.(-?\d+)\.(.+)$", re.DOTALL)

    @property
    def key(self) -> str:
        return f"prefix.{self.weight}.{self.text}"

    def to_node(self, value: bool = True) -> "Node":
        return Node(self.key, value)

    @classmethod
    def from_node(cls, node: "Node") -> Optional["PrefixNode"]:
        return node.payload if node.kind is NodeKind.PREFIX else None


@dataclass(frozen=True)
class WeightNode:
    """Group ranking encoded as ``weight.<integer>``."""
    weight: int

    REGEX = re.compile(r"^weight\.(-?\d+)$")

    @property
    def key(self) -> str:
        return f"weight.{self.weight}"

    def to_node(self, value: bool = True) -> "Node":
        return Node(self.key, value)

    @classmethod
    def from_node(cls, node: "Node") -> Optional["WeightNode"]:
        return node.payload if node.kind is NodeKind.WEIGHT else None


Payload = Union[GroupNode, PrefixNode, WeightNode, None]


def decode_key(key: str) -> Tuple[NodeKind, Payload]:
    """Classify a permission key and decode its typed payload."""
    match = GroupNode.REGEX.match(key)
    if match:
        return NodeKind.GROUP, GroupNode(match.group(1))

    match = PrefixNode.REGEX.match(key)
    if match:
        text = match.group(2)
        if PREFIX_MIN_LENGTH <= len(text) <= PREFIX_MAX_LENGTH:
            return NodeKind.PREFIX, PrefixNode(int(match.group(1)), text)

    match = WeightNode.REGEX.match(key)
    if match:
        return NodeKind.WEIGHT, WeightNode(int(match.group(1)))

    return NodeKind.GENERIC, None


@dataclass
class Node:
    """Permission assertion.

    Value and expiration may change in place; the key may not, since the
    kind and payload are derived from it at construction.
    """
    key: str
    value: bool = True
    expires_at: int = 0
    kind: NodeKind = field(init=False, compare=False, repr=False)
    payload: Any = field(init=False, compare=False, repr=False)

    def __post_init__(self):
        if not self.key:
            raise ValueError("Permission key must not be empty")
        self.kind, self.payload = decode_key(self.key)
        if self.kind is NodeKind.GROUP:
            # group names are case-insensitive, keys are stored lower-cased
            self.key = self.payload.key

    def is_expired(self) -> bool:
        return self.expires_at != 0 and self.expires_at < now_millis()

    def time_remaining(self) -> int:
        """Milliseconds until expiry, 0 for permanent nodes, negative once expired."""
        if self.expires_at == 0:
            return 0
        return self.expires_at - now_millis()

    def with_duration(self, duration: int) -> "Node":
        """Expire ``duration`` milliseconds from now; non-positive durations never expire."""
        self.expires_at = now_millis() + duration if duration > 0 else 0
        return self


DEFAULT_GROUP = GroupNode("default")
