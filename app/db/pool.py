# app/db/pool.py
"""
Shared psycopg connection pool for the API process and the arq worker.

Connections are handed out in autocommit mode with dict rows. Anything that
must be atomic (aggregation, conversion) goes through ``transaction()`` and
passes the yielded connection down to the repositories.
"""

import asyncio
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Pool is reported unhealthy above this share of checked-out connections
BUSY_THRESHOLD_PERCENT = 90


class DatabasePoolManager:
    """Owns the AsyncConnectionPool for the lifetime of a process."""

    def __init__(self):
        self.pool: AsyncConnectionPool | None = None
        self._initialized = False
        self._closed = False

    @property
    def available(self) -> bool:
        return self._initialized and not self._closed and self.pool is not None

    async def initialize(self) -> None:
        """Open the pool and prove one round-trip works before serving traffic."""
        if self._initialized:
            logger.warning("Database pool already initialized")
            return
        if self._closed:
            raise RuntimeError("Cannot reinitialize closed pool")

        pool_config = settings.get_db_pool_config()
        logger.info("Opening database pool", **pool_config)

        pool = AsyncConnectionPool(
            conninfo=settings.DATABASE_URL,
            open=False,
            check=AsyncConnectionPool.check_connection,
            configure=self._configure_connection,
            **pool_config,
        )
        try:
            await pool.open(wait=True)
            self.pool = pool
            self._initialized = True
            await self._ping()
        except (psycopg.Error, PoolTimeout) as e:
            logger.error("Database pool failed to open", error=str(e))
            self.pool = None
            self._initialized = False
            await pool.close()
            raise RuntimeError(f"Database pool initialization failed: {e}") from e

        logger.info("Database pool ready")

    async def _configure_connection(self, conn: psycopg.AsyncConnection) -> None:
        conn.row_factory = dict_row
        await conn.set_autocommit(True)
        for name, value in (
            ("application_name", f"availability-{settings.environment}"),
            ("timezone", "UTC"),
            ("statement_timeout", settings.DB_STATEMENT_TIMEOUT),
            ("idle_in_transaction_session_timeout", settings.DB_IDLE_IN_TRANSACTION_TIMEOUT),
        ):
            await conn.execute(
                sql.SQL("SET {} = {}").format(sql.Identifier(name), sql.Literal(value))
            )

    async def _ping(self) -> float:
        """Run ``SELECT 1`` and return the round-trip in milliseconds."""
        started = time.perf_counter()
        async with self.connection() as conn:
            cur = await conn.execute("SELECT 1 AS ok")
            row = await cur.fetchone()
        if not row or row["ok"] != 1:
            raise RuntimeError("Database ping returned an unexpected result")
        return (time.perf_counter() - started) * 1000

    async def close(self) -> None:
        """Close the pool, giving in-flight transactions up to 30s to finish."""
        if not self.available:
            return

        logger.info("Closing database pool")
        try:
            await asyncio.wait_for(self.pool.close(), timeout=30.0)
        except TimeoutError:
            logger.warning("Database pool close timed out, forcing shutdown")
        finally:
            self._initialized = False
            self._closed = True

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """Borrow an autocommit connection from the pool."""
        if not self.available:
            raise RuntimeError("Database pool not initialized. Call initialize() first.")

        async with self.pool.connection() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """
        Borrow a connection wrapped in a transaction.

        Commits when the block exits normally and rolls back on exception.
        Row and advisory locks taken inside the block are released at commit
        or rollback.
        """
        async with self.connection() as conn:
            async with conn.transaction():
                yield conn

    async def health_check(self) -> dict[str, Any]:
        """Round-trip latency plus pool utilisation."""
        if not self.available:
            return {"healthy": False, "service": "database_pool", "error": "Pool not available"}

        try:
            latency_ms = await self._ping()
        except (psycopg.Error, PoolTimeout, RuntimeError) as e:
            logger.error("Database pool health check failed", error=str(e))
            return {
                "healthy": False,
                "service": "database_pool",
                "error": str(e),
                "error_type": type(e).__name__,
            }

        stats = self.pool.get_stats()
        size = stats.get("pool_size", 0)
        idle = stats.get("pool_available", 0)
        busy_percent = (size - idle) / size * 100 if size else 0.0

        return {
            "healthy": busy_percent < BUSY_THRESHOLD_PERCENT,
            "service": "database_pool",
            "connection_time_ms": round(latency_ms, 2),
            "pool_stats": {
                "pool_size": size,
                "pool_available": idle,
                "pool_utilization_percent": round(busy_percent, 2),
                "requests_waiting": stats.get("requests_waiting", 0),
            },
        }


db_pool = DatabasePoolManager()


async def db_health_check() -> dict[str, Any]:
    return await db_pool.health_check()
