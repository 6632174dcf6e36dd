"""
db/connection.py
-----------------
Process-wide psycopg2 pool for itinerary persistence.

The repository runs on worker threads (asyncio.to_thread), so the pool is
a ThreadedConnectionPool built lazily under a lock on first use.

    with get_conn() as conn:          # one transaction
        insert_itinerary(conn, ...)

Commit on clean exit, rollback on exception, connection always returned.
Settings come from the POSTGRES_* values in config.py.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator

import psycopg2
import psycopg2.pool

import config

logger = logging.getLogger(__name__)

_pool: psycopg2.pool.ThreadedConnectionPool | None = None
_pool_lock = threading.Lock()


def connect_kwargs() -> dict:
    return {
        "host": config.POSTGRES_HOST,
        "port": config.POSTGRES_PORT,
        "dbname": config.POSTGRES_DB,
        "user": config.POSTGRES_USER,
        "password": config.POSTGRES_PASSWORD,
        "application_name": "outing-planner",
    }


def get_pool() -> psycopg2.pool.ThreadedConnectionPool:
    global _pool
    with _pool_lock:
        if _pool is None or _pool.closed:
            logger.info("[db] opening pool to %s@%s:%s (%d-%d connections)",
                        config.POSTGRES_DB, config.POSTGRES_HOST, config.POSTGRES_PORT,
                        config.POSTGRES_MIN_CONN, config.POSTGRES_MAX_CONN)
            _pool = psycopg2.pool.ThreadedConnectionPool(
                config.POSTGRES_MIN_CONN, config.POSTGRES_MAX_CONN, **connect_kwargs(),
            )
        return _pool


@contextmanager
def get_conn() -> Iterator:
    """Borrow a pooled connection for the duration of one transaction."""
    pool = get_pool()
    conn = pool.getconn()
    broken = False
    try:
        yield conn
        conn.commit()
    except psycopg2.OperationalError:
        broken = True
        raise
    except Exception:
        conn.rollback()
        raise
    finally:
        # A connection that lost its server is discarded, not reused.
        pool.putconn(conn, close=broken)


def ping_postgres() -> None:
    """Round-trip `SELECT 1`; raises when the database is unreachable."""
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT 1")
            cur.fetchone()


def close_pool() -> None:
    """Close every pooled connection; the next get_conn() reopens the pool."""
    global _pool
    with _pool_lock:
        if _pool is not None and not _pool.closed:
            _pool.closeall()
            logger.info("[db] pool closed")
        _pool = None
