"""Database connection management for the AI provider layer."""

from aiprovider.db.connection import close_pool, get_connection, get_pool

__all__ = ["close_pool", "get_connection", "get_pool"]
