"""
Database connection and session management.

The ledger lives in the hosted Postgres instance; we talk to it over a
service-role connection so stored procedures can be invoked directly.
"""

from contextlib import asynccontextmanager
from typing import Optional

import asyncpg

from backend.app.core.config import get_settings


class Database:
    """Async database connection pool."""

    def __init__(self):
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self) -> None:
        """Create connection pool."""
        settings = get_settings()
        self.pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
            command_timeout=60,
            # Supabase's transaction pooler does not support prepared statement caching.
            statement_cache_size=0,
        )

    async def disconnect(self) -> None:
        """Close connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None

    @asynccontextmanager
    async def connection(self):
        """Get a connection from the pool."""
        if self.pool is None:
            raise RuntimeError("Database pool is not initialized")
        async with self.pool.acquire() as conn:
            yield conn


# Global database instance
db = Database()
