"""
Storage contract for groups and users.

Backends only persist and load node rows; they never touch the in-memory
registries. Every operation may raise; the mutation pipeline wraps failures
into ``StorageError`` for callers.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from ..subjects.models import Group, User


class Storage(ABC):
    """Asynchronous persistence backend."""

    async def start(self) -> None:
        """Acquire backend resources."""

    async def stop(self) -> None:
        """Release backend resources."""

    async def health_check(self) -> bool:
        """Whether the backend can serve requests."""
        return True

    @abstractmethod
    async def create_and_load_group(self, name: str) -> Group:
        """Create the group row if missing and return the group loaded from it."""

    @abstractmethod
    async def load_group(self, name: str) -> Optional[Group]:
        ...

    @abstractmethod
    async def load_all_groups(self) -> List[Group]:
        ...

    @abstractmethod
    async def save_group(self, group: Group) -> None:
        ...

    @abstractmethod
    async def delete_group(self, name: str) -> None:
        ...

    @abstractmethod
    async def create_and_load_user(self, name: str) -> User:
        ...

    @abstractmethod
    async def load_user(self, name: str) -> Optional[User]:
        ...

    @abstractmethod
    async def save_user(self, user: User) -> None:
        ...

    @abstractmethod
    async def remove_node_everywhere(self, key: str) -> None:
        """Remove the exact permission key from every persisted group and user."""
