"""
Unit tests for the mutation pipeline.
"""

import asyncio
import gc

import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from prometheus_client import CollectorRegistry

from shared.errors import StorageError
from shared.metrics import MetricsCollector
from service_groups.app.groups.manager import GroupManager
from service_groups.app.nodes.models import Node, NodeKind
from service_groups.app.persistence.memory import MemoryStorage
from service_groups.app.pipeline.mutations import MutationPipeline
from service_groups.app.subjects.models import Group, User
from service_groups.app.subjects.users import UserManager


class TestMutationPipeline:
    """Test cases for MutationPipeline."""

    @pytest.fixture
    def storage(self):
        return MemoryStorage()

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("groups", CollectorRegistry())

    @pytest.fixture
    def pipeline(self, storage, metrics):
        return MutationPipeline(storage, timeout=0.5, metrics=metrics)

    @pytest.mark.asyncio
    async def test_persist_before_invalidate(self, pipeline, storage):
        """Test dependents are invalidated only after the save completes."""
        events = []
        group = Group("vip")

        async def save(subject):
            await asyncio.sleep(0)
            events.append("persist")

        with patch.object(storage, "save_group", new_callable=AsyncMock) as mock_save:
            mock_save.side_effect = save
            await pipeline.set_permission(group, Node("fly"), invalidate=lambda: events.append("invalidate"))

        assert events == ["persist", "invalidate"]
        mock_save.assert_awaited_once_with(group)

    @pytest.mark.asyncio
    async def test_storage_failure_keeps_mutation(self, pipeline, storage, metrics):
        """Test failures surface as StorageError and mark the subject dirty."""
        user = User("u1")
        invalidate = MagicMock()

        with patch.object(storage, "save_user", new_callable=AsyncMock) as mock_save:
            mock_save.side_effect = RuntimeError("connection reset")

            with pytest.raises(StorageError) as exc_info:
                await pipeline.set_permission(user, Node("fly"), invalidate=invalidate)

        assert exc_info.value.code == "STORAGE_FAILURE"
        assert exc_info.value.operation == "save_user"
        assert user.permission_cache.get("fly") == Node("fly")
        assert user.dirty is True
        invalidate.assert_called_once_with()
        assert metrics.registry.get_sample_value(
            "group_mutations_total", {"operation": "set_permission", "status": "failure"}
        ) == 1.0

        await pipeline.set_permission(user, Node("chat"))

        assert user.dirty is False
        assert sorted(storage.users["u1"]) == ["chat", "fly"]

    @pytest.mark.asyncio
    async def test_storage_timeout(self, pipeline, storage, metrics):
        """Test hung storage calls are bounded."""
        async def hang(subject):
            await asyncio.sleep(5)

        with patch.object(storage, "save_group", new_callable=AsyncMock) as mock_save:
            mock_save.side_effect = hang

            with pytest.raises(StorageError) as exc_info:
                await pipeline.set_permission(Group("vip"), Node("fly"))

        assert "timed out" in exc_info.value.message
        assert metrics.registry.get_sample_value(
            "storage_failures_total", {"operation": "save_group"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_remove_permission_missing_key(self, pipeline, storage):
        """Test removing an absent key does not persist."""
        with patch.object(storage, "save_user", new_callable=AsyncMock) as mock_save:
            assert await pipeline.remove_permission(User("u1"), "fly") is False

        mock_save.assert_not_called()

    @pytest.mark.asyncio
    async def test_remove_matching(self, pipeline, storage):
        """Test clearing a node kind persists the result."""
        group = Group("vip", [Node("weight.1"), Node("weight.2"), Node("fly")])

        assert await pipeline.remove_matching(group, NodeKind.WEIGHT) == 2

        assert storage.groups["vip"] == {"fly": (True, 0)}

    @pytest.mark.asyncio
    async def test_success_metrics(self, pipeline, metrics):
        """Test successful mutations are counted and timed."""
        await pipeline.set_permission(Group("vip"), Node("fly"))

        assert metrics.registry.get_sample_value(
            "group_mutations_total", {"operation": "set_permission", "status": "success"}
        ) == 1.0
        assert metrics.registry.get_sample_value(
            "storage_operation_duration_seconds_count", {"operation": "save_group"}
        ) == 1.0

    def test_lock_per_subject(self, pipeline):
        """Test locks are shared per subject and separate across subjects."""
        assert pipeline.lock_for(User("u1")) is pipeline.lock_for(User("u1"))
        assert pipeline.lock_for(User("u1")) is not pipeline.lock_for(User("u2"))
        assert pipeline.lock_for(User("vip")) is not pipeline.lock_for(Group("vip"))

    @pytest.mark.asyncio
    async def test_idle_locks_are_released(self, storage):
        """Test the lock table does not keep entries for subjects no longer written."""
        pipeline = MutationPipeline(storage, timeout=1.0)
        users = UserManager(storage, pipeline)

        for index in range(50):
            user = await users.create_and_load(f"u{index}")
            await users.set_permission(user, Node("fly"))
            users.unload(user.name)
        gc.collect()

        assert len(users) == 0
        assert len(pipeline._locks) == 0

    @pytest.mark.asyncio
    async def test_waiters_share_the_held_lock(self, pipeline):
        """Test a subject's lock stays shared while a transaction holds it."""
        user = User("u1")

        async with pipeline.transaction(user):
            assert pipeline.lock_for(user).locked() is True

        gc.collect()
        assert pipeline.lock_for(user).locked() is False

    @pytest.mark.asyncio
    async def test_concurrent_composite_writes_do_not_interleave(self, storage):
        """Test clear-then-add writes on one group are serialized."""
        pipeline = MutationPipeline(storage, timeout=1.0)
        users = UserManager(storage, pipeline)
        groups = GroupManager(storage, users, pipeline)
        await groups.create_and_load("vip")

        await asyncio.gather(*(groups.set_weight("vip", weight) for weight in range(10)))

        weights = groups.get("vip").permission_cache.get_matching(NodeKind.WEIGHT)
        assert len(weights) == 1
        assert [key for key in storage.groups["vip"] if key.startswith("weight.")] == [weights[0].key]

    @pytest.mark.asyncio
    async def test_concurrent_set_group_leaves_one_assignment(self, storage):
        """Test racing set_group calls on one user end with a single assignment."""
        pipeline = MutationPipeline(storage, timeout=1.0)
        users = UserManager(storage, pipeline)
        groups = GroupManager(storage, users, pipeline)
        for name in ("a", "b", "c"):
            await groups.create_and_load(name)
        user = await users.create_and_load("u1")

        await asyncio.gather(*(groups.set_group(user, name) for name in ("a", "b", "c")))

        assert len(user.permission_cache.get_matching(NodeKind.GROUP)) == 1
        assert len(storage.users["u1"]) == 1
