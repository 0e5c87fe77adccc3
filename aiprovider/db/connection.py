"""
Pooled PostgreSQL connections for the provider store.

Every DAL call runs on the event loop's default executor, so the pool is
sized from that executor rather than from request volume:

- ``maxconn`` defaults to the default ``ThreadPoolExecutor`` worker count
  (``min(32, cpu_count + 4)``). Each worker holds at most one connection,
  so ``getconn`` never hits ``PoolError`` under load.
- ``minconn`` is 1. Resolution is bursty and idle processes should not pin
  connections.
- ``get_connection`` commits on exit and rolls back on error, so a failed
  migration or usage insert leaves nothing half-written.

The CLI calls ``close_pool`` after each command, which makes short-lived
processes return their connections promptly.
"""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Generator
from contextlib import contextmanager

import psycopg2
import psycopg2.pool

from aiprovider.config import get_config

logger = logging.getLogger(__name__)

_pool: psycopg2.pool.ThreadedConnectionPool | None = None
_pool_lock = threading.Lock()


def get_pool(minconn: int = 1, maxconn: int | None = None) -> psycopg2.pool.ThreadedConnectionPool:
    """Get or create the process-wide pool."""
    global _pool
    if _pool is not None and not _pool.closed:
        return _pool

    with _pool_lock:
        if _pool is not None and not _pool.closed:
            return _pool

        if maxconn is None:
            maxconn = _executor_workers()
        cfg = get_config().db
        logger.info(
            "Creating connection pool: %s@%s:%s/%s (min=%d, max=%d)",
            cfg.user,
            cfg.host,
            cfg.port,
            cfg.name,
            minconn,
            maxconn,
        )
        try:
            _pool = psycopg2.pool.ThreadedConnectionPool(
                minconn=minconn,
                maxconn=maxconn,
                **cfg.dict,
            )
        except psycopg2.OperationalError as e:
            raise ConnectionError(
                f"Cannot connect to PostgreSQL at {cfg.host}:{cfg.port}/{cfg.name}: {e}\n"
                f"Check AIPROVIDER_DB_* environment variables and ensure PostgreSQL is running."
            ) from e
        return _pool


def _executor_workers() -> int:
    return min(32, (os.cpu_count() or 1) + 4)


@contextmanager
def get_connection() -> Generator[psycopg2.extensions.connection, None, None]:
    """Borrow a pooled connection; commit on success, roll back on error."""
    pool = get_pool()
    conn = pool.getconn()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)


def close_pool() -> None:
    """Close all connections in the pool."""
    global _pool
    if _pool is not None:
        _pool.closeall()
        _pool = None
