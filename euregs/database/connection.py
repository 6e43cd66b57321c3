"""Database adapter construction."""

import logging
from typing import Optional

from euregs.config.settings import Settings, settings as default_settings, use_postgres
from euregs.database.adapter import DatabaseAdapter
from euregs.database.postgres_adapter import PostgresAdapter
from euregs.database.sqlite_adapter import SqliteAdapter

logger = logging.getLogger(__name__)


def create_adapter(config: Optional[Settings] = None) -> DatabaseAdapter:
    """Build the adapter selected by configuration.

    A DATABASE_URL selects PostgreSQL; otherwise the SQLite file at
    SQLITE_DB_PATH is used. The adapter is returned unopened; the caller
    owns its lifetime.
    """
    config = config or default_settings
    if use_postgres(config):
        logger.info("Using PostgreSQL backend")
        return PostgresAdapter(
            config.database_url.get_secret_value(),
            min_size=config.pool_min_size,
            max_size=config.pool_max_size,
            idle_timeout=config.pool_idle_timeout,
            acquire_timeout=config.pool_acquire_timeout,
            query_timeout=config.query_timeout,
            ssl_mode=config.database_ssl_mode,
            ssl_root_cert=config.database_ssl_root_cert,
        )

    logger.info(f"Using SQLite backend at {config.sqlite_db_path}")
    return SqliteAdapter(config.sqlite_db_path)


async def open_adapter(config: Optional[Settings] = None) -> DatabaseAdapter:
    """Create and connect an adapter."""
    adapter = create_adapter(config)
    await adapter.connect()
    return adapter
