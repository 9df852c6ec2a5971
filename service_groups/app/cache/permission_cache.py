"""
Per-subject permission cache.

Holds one subject's nodes keyed by permission key, answers the exact,
kind/pattern and literal-prefix queries used by group resolution, and
memoizes values derived from the node set (a group's weight and prefix).
Any mutation drops the derived values.
"""

import re
import threading
from typing import Any, Callable, Dict, Iterator, List, Optional, Pattern, Union

from ..nodes.models import Node, NodeKind


class PermissionCache:
    """Thread-safe node set owned by a single subject."""

    def __init__(self, on_invalidate: Optional[Callable[[], None]] = None):
        self._nodes: Dict[str, Node] = {}
        self._derived: Dict[str, Any] = {}
        self._on_invalidate = on_invalidate
        self._lock = threading.RLock()

    def get(self, key: str) -> Optional[Node]:
        with self._lock:
            return self._nodes.get(key)

    def get_matching(self, pattern: Union[NodeKind, str, Pattern]) -> List[Node]:
        """Nodes of the given kind, or whose whole key matches a regex."""
        with self._lock:
            if isinstance(pattern, NodeKind):
                return [node for node in self._nodes.values() if node.kind is pattern]

            regex = re.compile(pattern) if isinstance(pattern, str) else pattern
            return [node for node in self._nodes.values() if regex.fullmatch(node.key)]

    def get_starting_with(self, prefix: str) -> List[Node]:
        with self._lock:
            return [node for key, node in self._nodes.items() if key.startswith(prefix)]

    def put(self, node: Node) -> None:
        """Insert or overwrite the node stored under ``node.key``."""
        with self._lock:
            self._nodes[node.key] = node
        self.invalidate()

    def remove(self, key: str) -> bool:
        with self._lock:
            removed = self._nodes.pop(key, None) is not None
        if removed:
            self.invalidate()
        return removed

    def invalidate(self) -> None:
        """Drop derived state; raw nodes are kept."""
        with self._lock:
            self._derived.clear()
        if self._on_invalidate:
            self._on_invalidate()

    def derived(self, name: str, factory: Callable[[], Any]) -> Any:
        """Memoized value computed from the current node set."""
        with self._lock:
            if name not in self._derived:
                self._derived[name] = factory()
            return self._derived[name]

    def nodes(self) -> List[Node]:
        with self._lock:
            return list(self._nodes.values())

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, key: object) -> bool:
        return key in self._nodes

    def __iter__(self) -> Iterator[Node]:
        return iter(self.nodes())
