"""PostgreSQL pool and schema helpers for projection storage."""

from payrelay.db.pool import close_pool, get_pool

__all__ = ["close_pool", "get_pool"]
