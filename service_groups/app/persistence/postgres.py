"""
PostgreSQL storage backend for groups and users.
"""

from typing import List, Optional, Type, TypeVar

import asyncpg
from shared.logging import get_logger
from shared.errors import StorageError
from ..nodes.models import Node
from ..subjects.models import Group, Subject, User
from .storage import Storage

S = TypeVar("S", bound=Subject)


class PostgreSQLStorage(Storage):
    """PostgreSQL storage; one row per subject plus one row per node."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10, command_timeout: float = 30):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.logger = get_logger("groups.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Start the persistence layer."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout
            )

            # Create tables if they don't exist
            await self._create_tables()

            self.logger.info("PostgreSQL storage started")

        except Exception as e:
            self.logger.error("Failed to start PostgreSQL storage", error=str(e))
            raise StorageError("start", str(e))

    async def stop(self):
        """Stop the persistence layer."""
        if self.pool:
            await self.pool.close()
            self.logger.info("PostgreSQL storage stopped")

    async def _create_tables(self):
        """Create database tables."""
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS subjects (
                    subject_type VARCHAR(16) NOT NULL,
                    name VARCHAR(255) NOT NULL,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    PRIMARY KEY (subject_type, name)
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS subject_nodes (
                    subject_type VARCHAR(16) NOT NULL,
                    name VARCHAR(255) NOT NULL,
                    permission VARCHAR(512) NOT NULL,
                    value BOOLEAN NOT NULL DEFAULT TRUE,
                    expires_at BIGINT NOT NULL DEFAULT 0,
                    PRIMARY KEY (subject_type, name, permission),
                    FOREIGN KEY (subject_type, name)
                        REFERENCES subjects(subject_type, name) ON DELETE CASCADE
                );
            """)

            # Create indexes
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_subject_nodes_permission ON subject_nodes(permission);
            """)

    async def _create_and_load(self, cls: Type[S], name: str) -> S:
        async with self.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO subjects (subject_type, name) VALUES ($1, $2)
                ON CONFLICT (subject_type, name) DO NOTHING
            """, cls.subject_type, name)
            rows = await self._fetch_nodes(conn, cls.subject_type, name)
        return cls(name, rows)

    async def _load(self, cls: Type[S], name: str) -> Optional[S]:
        async with self.pool.acquire() as conn:
            exists = await conn.fetchval("""
                SELECT 1 FROM subjects WHERE subject_type = $1 AND name = $2
            """, cls.subject_type, name)
            if not exists:
                return None
            rows = await self._fetch_nodes(conn, cls.subject_type, name)
        return cls(name, rows)

    async def _fetch_nodes(self, conn, subject_type: str, name: str) -> List[Node]:
        rows = await conn.fetch("""
            SELECT permission, value, expires_at FROM subject_nodes
            WHERE subject_type = $1 AND name = $2
        """, subject_type, name)
        return [self._row_to_node(row) for row in rows]

    async def _save(self, subject: Subject) -> None:
        """Rewrite all node rows of a subject in one transaction."""
        nodes = subject.permission_cache.nodes()
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("""
                    INSERT INTO subjects (subject_type, name) VALUES ($1, $2)
                    ON CONFLICT (subject_type, name) DO NOTHING
                """, subject.subject_type, subject.name)
                await conn.execute("""
                    DELETE FROM subject_nodes WHERE subject_type = $1 AND name = $2
                """, subject.subject_type, subject.name)
                if nodes:
                    await conn.executemany("""
                        INSERT INTO subject_nodes (subject_type, name, permission, value, expires_at)
                        VALUES ($1, $2, $3, $4, $5)
                    """, [
                        (subject.subject_type, subject.name, node.key, node.value, node.expires_at)
                        for node in nodes
                    ])

        self.logger.debug("Subject saved", subject_type=subject.subject_type, subject=subject.name, nodes=len(nodes))

    async def create_and_load_group(self, name: str) -> Group:
        return await self._create_and_load(Group, name.lower())

    async def load_group(self, name: str) -> Optional[Group]:
        return await self._load(Group, name.lower())

    async def load_all_groups(self) -> List[Group]:
        async with self.pool.acquire() as conn:
            names = await conn.fetch("""
                SELECT name FROM subjects WHERE subject_type = $1 ORDER BY name
            """, Group.subject_type)
            return [
                Group(row['name'], await self._fetch_nodes(conn, Group.subject_type, row['name']))
                for row in names
            ]

    async def save_group(self, group: Group) -> None:
        await self._save(group)

    async def delete_group(self, name: str) -> None:
        async with self.pool.acquire() as conn:
            result = await conn.execute("""
                DELETE FROM subjects WHERE subject_type = $1 AND name = $2
            """, Group.subject_type, name.lower())

        if result == "DELETE 1":
            self.logger.info("Group deleted", group=name)
        else:
            self.logger.warning("Group not found for deletion", group=name)

    async def create_and_load_user(self, name: str) -> User:
        return await self._create_and_load(User, name)

    async def load_user(self, name: str) -> Optional[User]:
        return await self._load(User, name)

    async def save_user(self, user: User) -> None:
        await self._save(user)

    async def remove_node_everywhere(self, key: str) -> None:
        async with self.pool.acquire() as conn:
            result = await conn.execute("""
                DELETE FROM subject_nodes WHERE permission = $1
            """, key)
        self.logger.info("Node removed everywhere", key=key, result=result)

    def _row_to_node(self, row) -> Node:
        """Convert database row to Node object."""
        return Node(row['permission'], row['value'], row['expires_at'])

    async def health_check(self) -> bool:
        """Check the pool can run a query."""
        if self.pool is None:
            return False
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except (asyncpg.PostgresError, OSError) as e:
            self.logger.warning("PostgreSQL health check failed", error=str(e))
            return False
