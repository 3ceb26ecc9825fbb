"""
Database connection factory utilities for relaysync.

Builds DSNs from a ConnectionDescriptor and opens psycopg async connection
pools. Pools are owned by whoever opened them (normally PostgresRepository);
there is no process-wide singleton.

Includes retry logic for transient connection failures using tenacity.
"""

from __future__ import annotations

from typing import Optional

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool, PoolTimeout
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from relaysync.domain.models import ConnectionDescriptor
from relaysync.errors import ConfigurationError
from relaysync.utils.logging import get_logger

log = get_logger(__name__)


def build_dsn(connection: ConnectionDescriptor) -> str:
    """
    Compose a libpq DSN for a PostgreSQL store.

    Raises
    ------
    ConfigurationError
        If the descriptor does not point at PostgreSQL.
    """
    if connection.map_type != "pgsql":
        raise ConfigurationError(
            f"The relay store must be PostgreSQL, got scheme '{connection.scheme}'"
        )
    return connection.dsn


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((psycopg.OperationalError, PoolTimeout)),
    reraise=True,
)
async def open_async_pool(
    conninfo: str,
    min_size: int = 1,
    max_size: int = 4,
    timeout: Optional[float] = 10.0,
) -> AsyncConnectionPool:
    """
    Open an asynchronous connection pool with automatic retry.

    Retries up to 3 times with exponential backoff when the minimum number of
    connections cannot be established. Rows are returned as dicts.

    Parameters
    ----------
    conninfo : str
        libpq connection string.
    min_size : int
        Minimum number of idle connections to keep.
    max_size : int
        Maximum total connections in the pool.
    timeout : float | None
        Seconds to wait for the pool to fill / for a connection to be handed out.

    Returns
    -------
    AsyncConnectionPool
        An opened pool. The caller must close it.

    Raises
    ------
    PoolTimeout
        If the pool cannot be filled after all retry attempts.
    """
    pool = AsyncConnectionPool(
        conninfo=conninfo,
        min_size=min_size,
        max_size=max_size,
        kwargs={"row_factory": dict_row},
        timeout=timeout or 30.0,
        open=False,
    )
    try:
        await pool.open(wait=True, timeout=timeout or 30.0)
    except BaseException:
        await pool.close()
        raise
    log.debug("Connection pool opened", extra={"min_size": min_size, "max_size": max_size})
    return pool


__all__ = ["build_dsn", "open_async_pool"]
