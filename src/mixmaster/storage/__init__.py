from __future__ import annotations

from ..config import Settings
from .base import INVENTORY, RECIPES, EntitySpec, RecordCollection, StorageAdapter, seed_if_empty
from .cosmos import CosmosAdapter
from .sqlite import SqliteAdapter

__all__ = [
    "INVENTORY",
    "RECIPES",
    "CosmosAdapter",
    "EntitySpec",
    "RecordCollection",
    "SqliteAdapter",
    "StorageAdapter",
    "build_store",
    "seed_if_empty",
]


def build_store(settings: Settings) -> StorageAdapter:
    """Pick the backend named by DATABASE_TYPE. The caller owns initialize()/close()."""
    if settings.database_type == "sqlite":
        return SqliteAdapter(settings.database_url)
    if settings.database_type == "cosmos":
        if not settings.cosmos_connection_string:
            raise ValueError("COSMOS_CONNECTION_STRING is required when DATABASE_TYPE=cosmos")
        return CosmosAdapter(settings.cosmos_connection_string, database_id=settings.cosmos_database)
    raise ValueError(f"Unsupported DATABASE_TYPE: {settings.database_type!r}")
