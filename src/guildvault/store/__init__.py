"""Persistent store for the platform: servers, channels, roles, messages."""

from __future__ import annotations

from guildvault.config import StoreConfig, expand_path
from guildvault.store.backend import PlatformStore, UnitOfWork

__all__ = ["PlatformStore", "UnitOfWork", "create_store"]


def create_store(config: StoreConfig) -> PlatformStore:
    """Factory: pick backend from config.provider. Call initialize() before use."""
    if config.provider == "postgresql":
        from guildvault.store.pg_backend import PostgresStore
        return PostgresStore(dsn=config.dsn, pool_min=config.pool_min, pool_max=config.pool_max)
    if config.provider != "sqlite":
        raise ValueError(f"Unknown store provider: {config.provider!r}")
    from guildvault.store.sqlite_backend import SqliteStore
    # ~ and $VAR in the configured path
    return SqliteStore(str(expand_path(config.path)))
