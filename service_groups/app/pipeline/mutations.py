"""
Mutation pipeline shared by every write.

A write runs: mutate the subject's permission cache, persist the subject,
and only once persistence has finished, invalidate dependent caches.
Callers validate before entering the pipeline and wrap composite writes
(clear then add) in ``transaction`` so nothing else can mutate the same
subject between the steps.
"""

import asyncio
import threading
import time
import weakref
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, TYPE_CHECKING

from shared.errors import GroupsException, StorageError
from shared.logging import get_logger, subject_context
from ..nodes.models import Node, NodeKind
from ..persistence.storage import Storage
from ..subjects.models import Group, Subject

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector

Invalidator = Optional[Callable[[], None]]


class MutationPipeline:
    """Mutate, persist, then invalidate; one writer per subject."""

    def __init__(
        self,
        storage: Storage,
        *,
        timeout: float = 10.0,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.storage = storage
        self.timeout = timeout
        self.metrics = metrics
        self.logger = get_logger("groups.pipeline")
        # entries live only while a transaction holds or awaits the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def lock_for(self, subject: Subject) -> asyncio.Lock:
        with self._locks_guard:
            lock = self._locks.get(subject.lock_key)
            if lock is None:
                lock = self._locks[subject.lock_key] = asyncio.Lock()
            return lock

    @asynccontextmanager
    async def transaction(self, subject: Subject) -> AsyncIterator[Subject]:
        """Hold the subject's single-writer lock for a (possibly composite) write."""
        async with self.lock_for(subject):
            with subject_context(subject.lock_key):
                yield subject

    async def call_storage(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        """Await a storage call bounded by the configured timeout."""
        start_time = time.time()
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            self._record_storage_failure(operation, "timeout")
            raise StorageError(operation, f"timed out after {self.timeout}s") from e
        except GroupsException:
            self._record_storage_failure(operation, "rejected")
            raise
        except Exception as e:
            self._record_storage_failure(operation, str(e))
            raise StorageError(operation, str(e)) from e
        finally:
            if self.metrics:
                self.metrics.observe_histogram(
                    "storage_operation_duration_seconds",
                    time.time() - start_time,
                    operation=operation
                )

    async def persist(self, subject: Subject) -> None:
        if isinstance(subject, Group):
            operation, pending = "save_group", self.storage.save_group(subject)
        else:
            operation, pending = "save_user", self.storage.save_user(subject)

        try:
            await self.call_storage(operation, pending)
        except StorageError:
            subject.dirty = True
            raise
        subject.dirty = False

    async def set_permission(
        self,
        subject: Subject,
        node: Node,
        invalidate: Invalidator = None,
        operation: str = "set_permission",
    ) -> None:
        subject.permission_cache.put(node)
        self.logger.info(
            "Permission set",
            subject=subject.lock_key,
            key=node.key,
            value=node.value,
            expires_at=node.expires_at
        )
        await self._persist_then_invalidate(subject, operation, invalidate)

    async def remove_permission(
        self,
        subject: Subject,
        key: str,
        invalidate: Invalidator = None,
        operation: str = "remove_permission",
    ) -> bool:
        if not subject.permission_cache.remove(key):
            self.logger.debug("Permission not present", subject=subject.lock_key, key=key)
            return False

        self.logger.info("Permission removed", subject=subject.lock_key, key=key)
        await self._persist_then_invalidate(subject, operation, invalidate)
        return True

    async def remove_matching(
        self,
        subject: Subject,
        kind: NodeKind,
        invalidate: Invalidator = None,
        operation: Optional[str] = None,
    ) -> int:
        """Remove every node of a kind and persist, even when none matched."""
        matching = subject.permission_cache.get_matching(kind)
        for node in matching:
            subject.permission_cache.remove(node.key)

        self.logger.info(
            "Permissions cleared",
            subject=subject.lock_key,
            kind=kind.value,
            count=len(matching)
        )
        await self._persist_then_invalidate(subject, operation or f"clear_{kind.value}", invalidate)
        return len(matching)

    async def _persist_then_invalidate(self, subject: Subject, operation: str, invalidate: Invalidator) -> None:
        try:
            await self.persist(subject)
        except StorageError:
            self._count(operation, "failure")
            raise
        else:
            self._count(operation, "success")
        finally:
            # in-memory change is kept on failure
            if invalidate is not None:
                invalidate()

    def _record_storage_failure(self, operation: str, error: str) -> None:
        self.logger.error("Storage operation failed", operation=operation, error=error)
        if self.metrics:
            self.metrics.increment_counter("storage_failures_total", operation=operation)

    def _count(self, operation: str, status: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("group_mutations_total", operation=operation, status=status)
