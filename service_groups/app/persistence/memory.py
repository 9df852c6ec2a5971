"""
In-memory storage backend.

Rows hold plain ``(key, value, expires_at)`` tuples rather than node
objects, so loading a subject always yields a fresh, independent cache.
"""

import asyncio
from typing import Dict, List, Optional, Tuple

from shared.logging import get_logger
from ..nodes.models import Node
from ..subjects.models import Group, Subject, User
from .storage import Storage

Row = Dict[str, Tuple[bool, int]]


class MemoryStorage(Storage):
    """Dictionary-backed storage for embedding and tests."""

    def __init__(self):
        self.logger = get_logger("groups.persistence.memory")
        self.groups: Dict[str, Row] = {}
        self.users: Dict[str, Row] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _to_row(subject: Subject) -> Row:
        return {
            node.key: (node.value, node.expires_at)
            for node in subject.permission_cache.nodes()
        }

    @staticmethod
    def _to_nodes(row: Row) -> List[Node]:
        return [Node(key, value, expires_at) for key, (value, expires_at) in row.items()]

    async def create_and_load_group(self, name: str) -> Group:
        name = name.lower()
        async with self._lock:
            row = self.groups.setdefault(name, {})
            return Group(name, self._to_nodes(row))

    async def load_group(self, name: str) -> Optional[Group]:
        name = name.lower()
        async with self._lock:
            row = self.groups.get(name)
            return None if row is None else Group(name, self._to_nodes(row))

    async def load_all_groups(self) -> List[Group]:
        async with self._lock:
            return [Group(name, self._to_nodes(row)) for name, row in self.groups.items()]

    async def save_group(self, group: Group) -> None:
        async with self._lock:
            self.groups[group.name] = self._to_row(group)

    async def delete_group(self, name: str) -> None:
        async with self._lock:
            if self.groups.pop(name.lower(), None) is None:
                self.logger.warning("Group not found for deletion", group=name)

    async def create_and_load_user(self, name: str) -> User:
        async with self._lock:
            row = self.users.setdefault(name, {})
            return User(name, self._to_nodes(row))

    async def load_user(self, name: str) -> Optional[User]:
        async with self._lock:
            row = self.users.get(name)
            return None if row is None else User(name, self._to_nodes(row))

    async def save_user(self, user: User) -> None:
        async with self._lock:
            self.users[user.name] = self._to_row(user)

    async def remove_node_everywhere(self, key: str) -> None:
        async with self._lock:
            removed = 0
            for row in list(self.groups.values()) + list(self.users.values()):
                if row.pop(key, None) is not None:
                    removed += 1
        self.logger.info("Node removed everywhere", key=key, rows=removed)
