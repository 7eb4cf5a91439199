"""PostgreSQL pool shared by request threads and the rebalance thread."""
from contextlib import contextmanager
from typing import Optional
import logging

from psycopg2.extras import RealDictCursor
from psycopg2.pool import ThreadedConnectionPool

logger = logging.getLogger(__name__)

_pool: Optional[ThreadedConnectionPool] = None


def init_pool(
    host: str,
    port: int,
    database: str,
    user: str,
    password: str,
    minconn: int = 1,
    maxconn: int = 10
) -> None:
    """Open the process-wide pool; a second call is a logged no-op."""
    global _pool
    if _pool is not None:
        logger.warning("Connection pool already initialized")
        return
    _pool = ThreadedConnectionPool(
        minconn=minconn,
        maxconn=maxconn,
        host=host,
        port=port,
        database=database,
        user=user,
        password=password
    )
    logger.info(f"Settlement DB pool open: {user}@{host}:{port}/{database} ({minconn}-{maxconn})")


def close_pool() -> None:
    global _pool
    if _pool is None:
        return
    _pool.closeall()
    _pool = None
    logger.info("Settlement DB pool closed")


@contextmanager
def get_connection():
    """
    Borrow a pooled connection for one unit of work.

    Commits when the block exits cleanly, rolls back on any exception.

    Raises:
        RuntimeError: init_pool() has not been called
    """
    if _pool is None:
        raise RuntimeError("Connection pool not initialized. Call init_pool() first.")

    conn = _pool.getconn()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        _pool.putconn(conn)


@contextmanager
def get_cursor(cursor_factory=RealDictCursor):
    """Cursor on a borrowed connection; rows are dicts by default."""
    with get_connection() as conn:
        cursor = conn.cursor(cursor_factory=cursor_factory)
        try:
            yield cursor
        finally:
            cursor.close()
