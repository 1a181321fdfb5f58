"""
Pooled PostgreSQL connections for FlagStorage and the schema installer.

Rows come back as dicts (RealDictCursor). The pool is created on first use
and closed when the application shuts down.
"""
import logging
from contextlib import contextmanager

from psycopg2.extras import RealDictCursor
from psycopg2.pool import ThreadedConnectionPool

from .config import DB_CONFIG, DB_POOL_MAX, DB_POOL_MIN

log = logging.getLogger("flag_api.database")

_pool = None


def _get_pool() -> ThreadedConnectionPool:
    global _pool
    if _pool is None:
        _pool = ThreadedConnectionPool(
            minconn=DB_POOL_MIN,
            maxconn=DB_POOL_MAX,
            cursor_factory=RealDictCursor,
            **DB_CONFIG,
        )
        log.info("Opened connection pool to %s@%s/%s (%d-%d connections)",
                 DB_CONFIG["user"], DB_CONFIG["host"], DB_CONFIG["database"],
                 DB_POOL_MIN, DB_POOL_MAX)
    return _pool


@contextmanager
def get_db():
    """Borrow a connection. Commits when the block succeeds, rolls back when it raises."""
    pool = _get_pool()
    conn = pool.getconn()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)


def close_pool():
    global _pool
    if _pool is not None:
        _pool.closeall()
        _pool = None
        log.info("Closed connection pool")
