"""
Subject models: the groups and users that own permission caches.
"""

import threading
from typing import Dict, Iterable, Optional, Tuple

from ..cache.permission_cache import PermissionCache
from ..nodes.models import GroupNode, Node, NodeKind, PrefixNode, WeightNode


class Subject:
    """A named owner of exactly one permission cache."""

    subject_type = "subject"

    def __init__(self, name: str, nodes: Iterable[Node] = ()):
        self.name = name
        self.permission_cache = PermissionCache(on_invalidate=self._on_invalidate)
        # True while the in-memory cache holds changes the last save failed to persist
        self.dirty = False
        for node in nodes:
            self.permission_cache.put(node)

    @property
    def lock_key(self) -> str:
        return f"{self.subject_type}:{self.name}"

    def invalidate(self) -> None:
        self.permission_cache.invalidate()

    def _on_invalidate(self) -> None:
        pass

    def has_permission(self, key: str) -> bool:
        node = self.permission_cache.get(key)
        return node is not None and not node.is_expired() and node.value

    def effective_permissions(self) -> Dict[str, bool]:
        """Boolean view over the unexpired nodes."""
        return {
            node.key: node.value
            for node in self.permission_cache.nodes()
            if not node.is_expired()
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, nodes={len(self.permission_cache)})"


class Group(Subject):
    """A named group ranked by its weight node."""

    subject_type = "group"

    @property
    def weight(self) -> int:
        return self._derived(NodeKind.WEIGHT, self._compute_weight)

    @property
    def prefix(self) -> str:
        return self._derived(NodeKind.PREFIX, self._compute_prefix)

    def _derived(self, kind: NodeKind, factory):
        # timed nodes can lapse without a mutation, so their results are not memoized
        if any(node.expires_at != 0 for node in self.permission_cache.get_matching(kind)):
            return factory()
        return self.permission_cache.derived(kind.value, factory)

    def _compute_weight(self) -> int:
        weights = [
            WeightNode.from_node(node).weight
            for node in self.permission_cache.get_matching(NodeKind.WEIGHT)
            if node.value and not node.is_expired()
        ]
        return max(weights) if weights else -1

    def _compute_prefix(self) -> str:
        prefixes = [
            PrefixNode.from_node(node)
            for node in self.permission_cache.get_matching(NodeKind.PREFIX)
            if node.value and not node.is_expired()
        ]
        if not prefixes:
            return ""
        return max(prefixes, key=lambda prefix: prefix.weight).text


class User(Subject):
    """A user with a memoized best-group resolution.

    The memo is stamped with the resolution version current when it was
    stored; a stamp older than the caller's version reads as absent.
    """

    subject_type = "user"

    def __init__(self, name: str, nodes: Iterable[Node] = ()):
        self._stored_group: Optional[Tuple[GroupNode, int]] = None
        self._memo_lock = threading.Lock()
        super().__init__(name, nodes)

    def get_stored_group(self, version: int) -> Optional[GroupNode]:
        with self._memo_lock:
            if self._stored_group is None:
                return None
            group_node, stamp = self._stored_group
            return group_node if stamp >= version else None

    def set_stored_group(self, group_node: GroupNode, version: int) -> None:
        with self._memo_lock:
            self._stored_group = (group_node, version)

    def _on_invalidate(self) -> None:
        with self._memo_lock:
            self._stored_group = None
