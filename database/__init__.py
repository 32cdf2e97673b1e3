"""Database module for managing connections to PostgreSQL.

This module handles:
- Database connection pool initialization
- Schema management
- Connection lifecycle
"""

import logging
from typing import Optional
import backoff
import asyncpg

from .exceptions import DatabaseError, DatabaseSchemaError
from .lib.schema_manager import SchemaManager

logger = logging.getLogger(__name__)

_pool: Optional[asyncpg.Pool] = None
_schema_manager: Optional[SchemaManager] = None

@backoff.on_exception(
    backoff.expo,
    (asyncpg.exceptions.PostgresConnectionError, asyncpg.exceptions.CannotConnectNowError, OSError),
    max_tries=5
)
async def init_db(db_url: Optional[str] = None) -> asyncpg.Pool:
    """Initialize the database connection pool and schema.

    Args:
        db_url: Optional database URL. If not provided, will use settings.

    Returns:
        The initialized connection pool

    Raises:
        DatabaseError: If database URL is not provided
        DatabaseSchemaError: If the schema cannot be applied
    """
    global _pool, _schema_manager

    if _pool is not None:
        return _pool

    if not db_url:
        # Import here to avoid circular imports
        from config import get_settings
        db_url = get_settings().get('db_url')
    if not db_url:
        raise DatabaseError("Database URL not provided")

    try:
        _pool = await asyncpg.create_pool(
            db_url,
            min_size=2,          # Minimum idle connections
            max_size=20,         # Maximum connections
            max_queries=10000,   # Reset connection after this many queries
            max_inactive_connection_lifetime=300.0,  # 5 minutes
            command_timeout=60.0,  # 1 minute command timeout
        )

        _schema_manager = SchemaManager(_pool)
        await _schema_manager.initialize()
        logger.info("Database initialized")
        return _pool

    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        if _pool is not None:
            await _pool.close()
            _pool = None
        raise

async def get_pool() -> asyncpg.Pool:
    """Get the database connection pool.

    Returns:
        The connection pool

    Raises:
        RuntimeError: If pool hasn't been initialized
    """
    if not _pool:
        await init_db()
    if not _pool:
        raise RuntimeError("Failed to initialize database pool")
    return _pool

async def ping() -> bool:
    """Check that the pool can run a trivial query."""
    if not _pool:
        return False
    try:
        async with _pool.acquire() as conn:
            await conn.fetchval('SELECT 1')
        return True
    except (asyncpg.PostgresError, OSError) as e:
        logger.warning(f"Database ping failed: {e}")
        return False

async def close() -> None:
    """Close the database connection pool."""
    global _pool, _schema_manager

    if _pool:
        await _pool.close()
        _pool = None
        _schema_manager = None

# Export public interface
__all__ = ['init_db', 'get_pool', 'ping', 'close', 'DatabaseError', 'DatabaseSchemaError']
