"""
Group resolution engine.

Owns the group registry, resolves the best group for a user and runs
every group-related write through the mutation pipeline. Public write
methods validate synchronously, raising before any storage work is
scheduled, and return an awaitable for the asynchronous remainder.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Dict, List, Optional, Union, TYPE_CHECKING

from shared.errors import (
    AlreadyExistsError, AlreadyHasGroupError, InvalidGroupNameError, InvalidPrefixError, NotFoundError,
)
from shared.logging import get_logger
from ..cache.registry import Registry
from ..nodes.models import (
    DEFAULT_GROUP, PREFIX_MAX_LENGTH, PREFIX_MIN_LENGTH,
    GroupNode, Node, NodeKind, PrefixNode, WeightNode,
)
from ..persistence.storage import Storage
from ..pipeline.mutations import MutationPipeline
from ..subjects.models import Group, User
from ..subjects.users import SubjectHandle, UserManager

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector

GroupRef = Union[str, Group]
UserRef = Union[str, User]


class GroupManager(Registry[str, Group]):
    """Group registry and group-assignment logic."""

    def __init__(
        self,
        storage: Storage,
        user_manager: UserManager,
        pipeline: MutationPipeline,
        metrics: Optional["MetricsCollector"] = None,
    ):
        super().__init__()
        self.storage = storage
        self.user_manager = user_manager
        self.pipeline = pipeline
        self.metrics = metrics
        self.logger = get_logger("groups.manager")
        self.get_or_create(DEFAULT_GROUP.group)

    def create(self, key: str) -> Group:
        return Group(key)

    def normalize(self, key: str) -> str:
        return key.lower()

    # Loading

    async def load_all(self) -> List[Group]:
        """Load every stored group and make sure the default group is stored."""
        groups = await self.pipeline.call_storage("load_all_groups", self.storage.load_all_groups())
        for group in groups:
            self.put(group.name, group)

        if not any(group.name == DEFAULT_GROUP.group for group in groups):
            default = await self.pipeline.call_storage(
                "create_and_load_group", self.storage.create_and_load_group(DEFAULT_GROUP.group)
            )
            self.put(default.name, default)

        self._update_gauge()
        self.logger.info("Groups loaded", count=len(self))
        return self.get_all()

    def create_and_load(self, name: str) -> Awaitable[Group]:
        try:
            group_node = GroupNode(name)
        except ValueError as e:
            raise InvalidGroupNameError(name) from e
        if self.contains(group_node.group):
            raise AlreadyExistsError(group_node.group)
        return self._create_and_load(group_node.group)

    async def _create_and_load(self, name: str) -> Group:
        group = await self.pipeline.call_storage("create_and_load_group", self.storage.create_and_load_group(name))
        self.put(group.name, group)
        self._update_gauge()
        self.logger.info("Group created", group=group.name)
        return group

    # Resolution

    def get_group_node(self, user: User) -> GroupNode:
        """Best group assignment for a user, memoized on the user."""
        version = self.user_manager.version
        stored = user.get_stored_group(version)
        if stored is not None and self.contains(stored.group) and not stored.is_expired():
            self._count_resolution("memo_hit")
            return stored

        nodes = user.permission_cache.get_starting_with(GroupNode.KEY_PREFIX)
        if not nodes:
            user.set_stored_group(DEFAULT_GROUP, version)
            self._count_resolution("default")
            return DEFAULT_GROUP

        candidates = []
        for node in nodes:
            group_node = GroupNode.from_node(node)
            if group_node is None or not node.value or group_node.is_expired():
                continue
            if self.contains(group_node.group):
                candidates.append(group_node)

        if candidates:
            # max keeps the first of equal weights, so sort by name to break ties
            candidates.sort(key=lambda candidate: candidate.group)
            best = max(candidates, key=self._weight_of)
            self._count_resolution("resolved")
        else:
            best = DEFAULT_GROUP
            self._count_resolution("default")

        user.set_stored_group(best, version)
        self.logger.debug("Group resolved", subject=user.name, group=best.group, candidates=len(candidates))
        return best

    def get_group(self, user: User) -> Group:
        group = self.get(self.get_group_node(user).group)
        return group if group is not None else self.get_or_create(DEFAULT_GROUP.group)

    def get_group_for_handle(self, handle: SubjectHandle) -> Group:
        user = self.user_manager.get_user(handle)
        if user is None:
            raise NotFoundError.user(handle.name)
        return self.get_group(user)

    def get_weight(self, name: str) -> int:
        group = self.get(name)
        return -1 if group is None else group.weight

    def _weight_of(self, group_node: GroupNode) -> int:
        return self.get_weight(group_node.group)

    def list_groups(self) -> List[Group]:
        """All groups, highest weight first."""
        return sorted(self.get_all(), key=lambda group: (-group.weight, group.name))

    def get_effective_permissions(self, user: User) -> Dict[str, bool]:
        """The resolved group's permissions overlaid by the user's own."""
        permissions = self.get_group(user).effective_permissions()
        permissions.update(user.effective_permissions())
        return permissions

    # Group assignment

    def set_group(self, user: UserRef, group: str, duration: int = 0) -> Awaitable[None]:
        """Replace every group assignment of a user with a single one."""
        self._require_group(group)
        return self._set_group(user, group, duration)

    async def _set_group(self, user: UserRef, group: str, duration: int) -> None:
        user = await self._resolve_user(user)
        async with self.pipeline.transaction(user):
            await self.pipeline.remove_matching(user, NodeKind.GROUP, operation="clear_groups")
            user.invalidate()
            await self._assign_group(user, group, duration)

    def add_group(self, user: UserRef, group: str, duration: int = 0) -> Awaitable[None]:
        if isinstance(user, User):
            self._check_assignable(user, group)
        else:
            self._require_group(group)
        return self._add_group(user, group, duration)

    async def _add_group(self, user: UserRef, group: str, duration: int) -> None:
        user = await self._resolve_user(user)
        async with self.pipeline.transaction(user):
            await self._assign_group(user, group, duration)

    async def _assign_group(self, user: User, group: str, duration: int) -> None:
        self._check_assignable(user, group)
        group_node = GroupNode(group)
        if duration > 0:
            group_node = group_node.with_duration(duration)
        await self.pipeline.set_permission(user, group_node.to_node(), operation="add_group")

    def _check_assignable(self, user: User, group: str) -> None:
        stored = user.get_stored_group(self.user_manager.version)
        if stored is not None and not stored.is_expired() and stored.group == group.lower():
            raise AlreadyHasGroupError(user.name, stored.group)
        self._require_group(group)

    def remove_group(self, user: UserRef, group: str) -> Awaitable[bool]:
        self._require_group(group)
        return self._remove_group(user, group)

    async def _remove_group(self, user: UserRef, group: str) -> bool:
        user = await self._resolve_user(user)
        async with self.pipeline.transaction(user):
            return await self.pipeline.remove_permission(user, GroupNode(group).key, operation="remove_group")

    # Group permissions

    def set_permission(self, subject: GroupRef, key: str, value: bool = True, expires_at: int = 0) -> Awaitable[None]:
        group = self._require_group(subject)
        return self._set_group_node(group, Node(key, value, expires_at), "set_permission")

    def remove_permission(self, subject: GroupRef, key: str) -> Awaitable[bool]:
        group = self._require_group(subject)
        return self._remove_group_node(group, key)

    async def _set_group_node(self, group: Group, node: Node, operation: str) -> None:
        async with self._group_transaction(group):
            await self.pipeline.set_permission(
                group, node, invalidate=self.user_manager.invalidate_all, operation=operation
            )

    async def _remove_group_node(self, group: Group, key: str) -> bool:
        async with self._group_transaction(group):
            return await self.pipeline.remove_permission(group, key)

    def delete_group(self, name: str) -> Awaitable[None]:
        group = self._require_group(name)
        self.remove(group.name)
        self._update_gauge()
        self.logger.info("Group evicted", group=group.name)
        return self._delete_group(group)

    async def _delete_group(self, group: Group) -> None:
        name = group.name
        key = GroupNode(name).key
        try:
            # writes already holding the lock finish their save before the row is deleted
            async with self.pipeline.transaction(group):
                self.user_manager.remove_node_from_loaded(key)
                for other in self.get_all():
                    other.permission_cache.remove(key)
                await self.pipeline.call_storage("remove_node_everywhere", self.storage.remove_node_everywhere(key))
                await self.pipeline.call_storage("delete_group", self.storage.delete_group(name))
            self.logger.info("Group deleted", group=name)
        finally:
            self.user_manager.invalidate_all()
            if name == DEFAULT_GROUP.group:
                await self._restore_default_group()

    async def _restore_default_group(self) -> None:
        self.get_or_create(DEFAULT_GROUP.group)
        group = await self.pipeline.call_storage(
            "create_and_load_group", self.storage.create_and_load_group(DEFAULT_GROUP.group)
        )
        self.put(group.name, group)
        self._update_gauge()
        self.logger.info("Default group recreated", group=group.name)

    # Prefixes

    def clear_prefix(self, target: GroupRef) -> Awaitable[int]:
        group = self._require_group(target)
        return self._clear_prefix(group)

    async def _clear_prefix(self, group: Group) -> int:
        async with self._group_transaction(group):
            return await self._clear_kind(group, NodeKind.PREFIX)

    def add_prefix(self, target: GroupRef, prefix: str, weight: int) -> Awaitable[None]:
        """Add a prefix next to the existing ones."""
        self._check_prefix(prefix)
        group = self._require_group(target)
        return self._set_group_node(group, PrefixNode(weight, prefix).to_node(), "add_prefix")

    def set_prefix(self, target: GroupRef, prefix: str) -> Awaitable[None]:
        """Replace every prefix of a group with one of weight 0."""
        self._check_prefix(prefix)
        group = self._require_group(target)
        return self._replace_kind(group, NodeKind.PREFIX, PrefixNode(0, prefix).to_node(), "set_prefix")

    def _check_prefix(self, prefix: str) -> None:
        if not PREFIX_MIN_LENGTH <= len(prefix) <= PREFIX_MAX_LENGTH:
            raise InvalidPrefixError(prefix, PREFIX_MIN_LENGTH, PREFIX_MAX_LENGTH)

    # Weights

    def set_weight(self, target: GroupRef, weight: int) -> Awaitable[None]:
        group = self._require_group(target)
        return self._replace_kind(group, NodeKind.WEIGHT, WeightNode(weight).to_node(), "set_weight")

    def clear_weight(self, target: GroupRef) -> Awaitable[int]:
        group = self._require_group(target)
        return self._clear_weight(group)

    async def _clear_weight(self, group: Group) -> int:
        async with self._group_transaction(group):
            return await self._clear_kind(group, NodeKind.WEIGHT)

    def add_weight(self, target: GroupRef, weight: int) -> Awaitable[None]:
        group = self._require_group(target)
        return self._set_group_node(group, WeightNode(weight).to_node(), "add_weight")

    # Helpers

    async def _clear_kind(self, group: Group, kind: NodeKind) -> int:
        return await self.pipeline.remove_matching(group, kind, invalidate=self.user_manager.invalidate_all)

    async def _replace_kind(self, group: Group, kind: NodeKind, node: Node, operation: str) -> None:
        async with self._group_transaction(group):
            await self._clear_kind(group, kind)
            await self.pipeline.set_permission(
                group, node, invalidate=self.user_manager.invalidate_all, operation=operation
            )

    @asynccontextmanager
    async def _group_transaction(self, group: Group) -> AsyncIterator[Group]:
        """Group write lock; fails when the group was deleted while the write waited."""
        async with self.pipeline.transaction(group):
            if self.get(group.name) is not group:
                raise NotFoundError.group(group.name)
            yield group

    def _require_group(self, target: GroupRef) -> Group:
        name = target.name if isinstance(target, Group) else target
        group = self.get(name)
        if group is None:
            raise NotFoundError.group(name)
        return group

    async def _resolve_user(self, user: UserRef) -> User:
        if isinstance(user, User):
            return user
        return await self.user_manager.require_user(user)

    def _count_resolution(self, result: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("group_resolutions_total", result=result)

    def _update_gauge(self) -> None:
        if self.metrics:
            self.metrics.set_gauge("loaded_subjects", len(self), subject_type="group")
