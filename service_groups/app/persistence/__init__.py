"""
Persistence package.

- storage: The asynchronous storage contract.
- memory: Dictionary-backed storage.
- postgres: PostgreSQL storage via asyncpg.
"""
