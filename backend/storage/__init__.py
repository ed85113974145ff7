# storage/__init__.py
# ============================================================================
# COMMERCE BACKEND — STORAGE MODULE
# ============================================================================
# Entity store (in-memory or PostgreSQL) and signed upload URLs
# ============================================================================

from config import Settings
from database import Database
from storage.blob_storage import IUploadUrlGenerator, S3UploadUrlGenerator, UploadTicket
from storage.postgres_repositories import build_postgres_store
from storage.repositories import (
    EntityStore,
    IAuditLog,
    IRepository,
    InMemoryAuditLog,
    InMemoryRepository,
)


def create_store(settings: Settings) -> EntityStore:
    """Store handle for the configured backend. Call ``initialize()`` before use."""
    if settings.store_backend == "memory":
        return EntityStore.in_memory()
    return build_postgres_store(Database(
        settings.database_url,
        min_size=settings.db_min_pool_size,
        max_size=settings.db_max_pool_size,
    ))


__all__ = [
    "EntityStore",
    "IAuditLog",
    "IRepository",
    "IUploadUrlGenerator",
    "InMemoryAuditLog",
    "InMemoryRepository",
    "S3UploadUrlGenerator",
    "UploadTicket",
    "create_store",
]
