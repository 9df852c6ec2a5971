"""
Groups engine composition root.
"""

from typing import Any, Dict, Optional

from shared.config import ServiceConfig, get_config
from shared.errors import StorageError
from shared.logging import configure_logging, get_logger
from shared.metrics import MetricsCollector, get_metrics_collector

from .groups.manager import GroupManager
from .persistence.memory import MemoryStorage
from .persistence.postgres import PostgreSQLStorage
from .persistence.storage import Storage
from .pipeline.mutations import MutationPipeline
from .subjects.users import UserManager


def create_storage(config: ServiceConfig) -> Storage:
    """Build the storage backend named by the configuration."""
    if config.storage_backend == "memory":
        return MemoryStorage()
    if config.storage_backend == "postgres":
        return PostgreSQLStorage(
            config.postgres_dsn,
            min_size=config.postgres_min_pool_size,
            max_size=config.postgres_max_pool_size,
            command_timeout=config.storage_timeout_seconds
        )
    raise ValueError(f"Unknown storage backend: {config.storage_backend}")


class GroupsEngine:
    """Wires storage, pipeline and managers for a host application."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        storage: Optional[Storage] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.config = config or get_config()
        configure_logging(self.config.service_name, self.config.log_level)
        self.logger = get_logger("groups.engine")

        if metrics is None and self.config.metrics_enabled:
            metrics = get_metrics_collector(self.config.service_name)
        self.metrics = metrics

        self.storage = storage or create_storage(self.config)
        self.pipeline = MutationPipeline(
            self.storage,
            timeout=self.config.storage_timeout_seconds,
            metrics=self.metrics
        )
        self.users = UserManager(self.storage, self.pipeline, metrics=self.metrics)
        self.groups = GroupManager(self.storage, self.users, self.pipeline, metrics=self.metrics)

    async def start(self) -> None:
        """Open storage and load every group."""
        await self.storage.start()
        await self.groups.load_all()
        if self.metrics and self.config.metrics_enabled:
            self.metrics.start_metrics_server(self.config.metrics_port)
        self.logger.info("Groups engine started", backend=self.config.storage_backend, groups=len(self.groups))

    async def health_check(self) -> Dict[str, Any]:
        """Storage reachability and registry sizes."""
        try:
            storage_ok = await self.pipeline.call_storage("health_check", self.storage.health_check())
        except StorageError as e:
            self.logger.error("Health check failed", error=e.message)
            storage_ok = False

        return {
            "service": self.config.service_name,
            "status": "ok" if storage_ok else "error",
            "dependencies": {self.config.storage_backend: "ok" if storage_ok else "error"},
            "groups": len(self.groups),
            "users": len(self.users),
            "version": "1.0.0",
        }

    async def stop(self) -> None:
        await self.storage.stop()
        self.logger.info("Groups engine stopped")
