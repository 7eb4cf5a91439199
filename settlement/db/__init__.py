"""Database connection and query interface for the settlement engine."""

from settlement.db.connection import init_pool, close_pool, get_connection, get_cursor

__all__ = ['init_pool', 'close_pool', 'get_connection', 'get_cursor']
