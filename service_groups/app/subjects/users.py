"""
User manager: the in-process registry of loaded users.
"""

import threading
from typing import Optional, Protocol, TYPE_CHECKING

from shared.errors import NotFoundError
from shared.logging import get_logger
from ..cache.registry import Registry
from ..nodes.models import Node
from ..persistence.storage import Storage
from ..pipeline.mutations import MutationPipeline
from .models import User

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


class SubjectHandle(Protocol):
    """A live connection supplied by the host, identified by ``name``."""
    name: str


class UserManager(Registry[str, User]):
    """Loaded users plus the global resolution version.

    ``invalidate_all`` bumps the version instead of walking every loaded
    user; memoized resolutions stamped with an older version are ignored.
    """

    def __init__(
        self,
        storage: Storage,
        pipeline: MutationPipeline,
        metrics: Optional["MetricsCollector"] = None,
    ):
        super().__init__()
        self.storage = storage
        self.pipeline = pipeline
        self.metrics = metrics
        self.logger = get_logger("groups.users")
        self._version = 0
        self._version_lock = threading.Lock()

    def create(self, key: str) -> User:
        return User(key)

    @property
    def version(self) -> int:
        with self._version_lock:
            return self._version

    def invalidate_all(self) -> None:
        """Invalidate every loaded user's memoized resolution."""
        with self._version_lock:
            self._version += 1
            version = self._version
        self.logger.debug("Resolutions invalidated", version=version)

    async def load_user(self, name: str) -> Optional[User]:
        """Loaded user, or the stored one; None when the user is unknown."""
        user = self.get(name)
        if user is not None:
            return user

        user = await self.pipeline.call_storage("load_user", self.storage.load_user(name))
        if user is None:
            return None
        return self._register(user)

    async def require_user(self, name: str) -> User:
        user = await self.load_user(name)
        if user is None:
            raise NotFoundError.user(name)
        return user

    async def create_and_load(self, name: str) -> User:
        """Load a user, creating its storage row on first sight."""
        user = self.get(name)
        if user is not None:
            return user

        user = await self.pipeline.call_storage("create_and_load_user", self.storage.create_and_load_user(name))
        return self._register(user)

    def get_user(self, handle: SubjectHandle) -> Optional[User]:
        """Already-loaded user behind a live handle."""
        return self.get(handle.name)

    def unload(self, name: str) -> Optional[User]:
        user = self.remove(name)
        self._update_gauge()
        return user

    async def set_permission(self, user: User, node: Node) -> None:
        async with self.pipeline.transaction(user):
            await self.pipeline.set_permission(user, node)

    async def remove_permission(self, user: User, key: str) -> bool:
        async with self.pipeline.transaction(user):
            return await self.pipeline.remove_permission(user, key)

    def remove_node_from_loaded(self, key: str) -> int:
        """Drop a key from every loaded user; the storage sweep covers the rest."""
        removed = 0
        for user in self.get_all():
            if user.permission_cache.remove(key):
                removed += 1
        return removed

    def _register(self, user: User) -> User:
        with self._registry_lock:
            # a concurrent load may have registered the user first
            existing = self.get(user.name)
            if existing is not None:
                return existing
            self.put(user.name, user)
        self._update_gauge()
        self.logger.debug("User loaded", subject=user.name, nodes=len(user.permission_cache))
        return user

    def _update_gauge(self) -> None:
        if self.metrics:
            self.metrics.set_gauge("loaded_subjects", len(self), subject_type="user")
