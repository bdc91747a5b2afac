"""
Database service for PostgreSQL integration.
Owns the asyncpg pool shared by the whitelist store and the audit sink.
"""
import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import asyncpg
from asyncpg import Pool

logger = logging.getLogger(__name__)


# SQL schema for creating tables
SCHEMA_SQL = """
-- Admin IP whitelist (store of record for the admin IP gate)
CREATE TABLE IF NOT EXISTS admin_ip_whitelist (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    ip_cidr VARCHAR(64) NOT NULL,
    description TEXT,
    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
    created_by VARCHAR(255),
    updated_at TIMESTAMP WITH TIME ZONE,
    updated_by VARCHAR(255),
    CONSTRAINT admin_ip_whitelist_ip_cidr_key UNIQUE (ip_cidr)
);

CREATE INDEX IF NOT EXISTS idx_admin_ip_whitelist_created_at ON admin_ip_whitelist(created_at DESC);

-- Admin activity / audit log
CREATE TABLE IF NOT EXISTS admin_audit_log (
    id BIGSERIAL PRIMARY KEY,
    user_id VARCHAR(255),
    action VARCHAR(50) NOT NULL,
    activity_type VARCHAR(50) NOT NULL DEFAULT 'ADMIN_ACTION',
    entity_type VARCHAR(50),
    entity_id VARCHAR(255),
    details JSONB,
    ip_address VARCHAR(64),
    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_admin_audit_log_created_at ON admin_audit_log(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_admin_audit_log_entity ON admin_audit_log(entity_type, entity_id);
"""


class DatabaseService:
    """Async PostgreSQL pool holder."""

    def __init__(self):
        self._pool: Optional[Pool] = None
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        """Check if database connection is established."""
        return self._pool is not None and not self._pool._closed

    async def connect(self, database_url: str = None, max_retries: int = 5, retry_delay: float = 2.0) -> bool:
        """
        Initialize database connection pool with retry logic.
        Returns True if connection successful, False otherwise.

        Args:
            database_url: PostgreSQL DSN. Falls back to the DATABASE_URL env var.
            max_retries: Maximum number of connection attempts (default 5).
            retry_delay: Initial delay between retries in seconds, doubles each attempt.
        """
        if not database_url:
            database_url = os.environ.get("DATABASE_URL")
        if not database_url:
            logger.warning("DATABASE_URL not configured, database features disabled")
            return False

        min_size = int(os.environ.get("DB_POOL_MIN_SIZE", 2))
        max_size = int(os.environ.get("DB_POOL_MAX_SIZE", 10))

        async with self._lock:
            if self._pool is not None:
                return True

            delay = retry_delay
            for attempt in range(1, max_retries + 1):
                try:
                    logger.debug("Connecting to PostgreSQL (attempt %d/%d)...", attempt, max_retries)
                    self._pool = await asyncpg.create_pool(
                        dsn=database_url,
                        min_size=min_size,
                        max_size=max_size,
                        command_timeout=30,
                    )
                    await self._init_schema()
                    logger.info("Database connection established")
                    return True

                except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
                    if self._pool is not None:
                        await self._pool.close()
                    self._pool = None
                    if attempt < max_retries:
                        logger.warning(
                            "Database connection attempt %d/%d failed: %s. Retrying in %.0fs...",
                            attempt, max_retries, e, delay,
                        )
                        await asyncio.sleep(delay)
                        delay = min(delay * 2, 30)
                    else:
                        logger.error("Failed to connect to database after %d attempts: %s", max_retries, e)
                        return False

        return False

    async def disconnect(self) -> None:
        """Close database connection pool."""
        async with self._lock:
            if self._pool is not None:
                await self._pool.close()
                self._pool = None
                logger.info("Database disconnected")

    async def _init_schema(self) -> None:
        """Create tables if they do not exist."""
        if self._pool is None:
            return

        async with self._pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
            logger.debug("Database schema initialized")

    @asynccontextmanager
    async def acquire(self):
        """Acquire a connection from the pool."""
        if self._pool is None:
            raise RuntimeError("Database not connected")

        async with self._pool.acquire() as conn:
            yield conn


# Global database service instance
db_service = DatabaseService()
