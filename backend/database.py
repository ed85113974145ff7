"""
Database Module - The Black Box
================================
asyncpg persistence for the commerce document store.

This module provides:
- An explicitly constructed connection-pool handle (no module-level pool)
- Idempotent startup migrations for the document tables
- The Black Box (system_events) for the audit trail

Entities are stored as JSONB documents, one table per collection, with
expression indexes on the provider reference fields used for lookup.
"""

import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

import asyncpg
import structlog

logger = structlog.get_logger().bind(component="database")


DOCUMENT_TABLES = ("orders", "subscriptions", "submissions", "packages")

# Indexed JSONB keys per table, used for provider-reference lookups
INDEXED_KEYS = {
    "orders": (
        "user_id",
        "stripe_session_id",
        "stripe_payment_intent_id",
        "paypal_order_id",
        "paystack_reference",
    ),
    "subscriptions": (
        "user_id",
        "email",
        "stripe_session_id",
        "stripe_payment_intent_id",
        "paypal_subscription_id",
        "paystack_reference",
        "paystack_subscription_code",
    ),
    "submissions": ("order_id",),
    "packages": (),
}


# =============================================================================
# CONNECTION POOL
# =============================================================================

class Database:
    """Async connection pool handle.

    Created once at process start, passed to the repositories, and closed
    explicitly on shutdown.
    """

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None

    async def initialize(self) -> None:
        """Open the pool and run migrations."""
        if self._pool is not None:
            return

        try:
            self._pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
            )
            logger.info("database_pool_initialized", max_size=self.max_size)
            await self._run_migrations()
        except (OSError, asyncpg.PostgresError) as e:
            logger.error("database_init_failed", error=str(e))
            raise

    async def close(self) -> None:
        """Close the pool"""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info("database_pool_closed")

    @asynccontextmanager
    async def acquire(self):
        """Acquire a connection from the pool"""
        if self._pool is None:
            await self.initialize()

        async with self._pool.acquire() as conn:
            yield conn

    async def execute(self, query: str, *args) -> str:
        async with self.acquire() as conn:
            return await conn.execute(query, *args)

    async def fetch_one(self, query: str, *args) -> Optional[asyncpg.Record]:
        async with self.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def fetch_all(self, query: str, *args) -> List[asyncpg.Record]:
        async with self.acquire() as conn:
            return await conn.fetch(query, *args)

    async def _run_migrations(self) -> None:
        """Create document tables, reference indexes and the event log."""
        migrations: List[str] = []

        for table in DOCUMENT_TABLES:
            migrations.append(
                f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    user_id TEXT,
                    data JSONB NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
                """
            )
            for key in INDEXED_KEYS[table]:
                migrations.append(
                    f"CREATE INDEX IF NOT EXISTS idx_{table}_{key} "
                    f"ON {table} ((data->>'{key}'))"
                )

        migrations += [
            """
            CREATE TABLE IF NOT EXISTS system_events (
                id UUID PRIMARY KEY,
                correlation_id TEXT NOT NULL,
                event_type VARCHAR(50) NOT NULL,
                entity_type VARCHAR(30) NOT NULL,
                entity_id TEXT NOT NULL,
                actor VARCHAR(30) NOT NULL DEFAULT 'system',
                payload JSONB NOT NULL DEFAULT '{}',
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_events_entity ON system_events(entity_id)",
            "CREATE INDEX IF NOT EXISTS idx_events_correlation ON system_events(correlation_id)",
        ]

        async with self.acquire() as conn:
            for migration in migrations:
                await conn.execute(migration)

        logger.info("database_migrations_complete", statements=len(migrations))


# =============================================================================
# THE BLACK BOX
# =============================================================================

async def log_event(
    db: Database,
    *,
    log_id: str,
    correlation_id: str,
    event_type: str,
    entity_type: str,
    entity_id: str,
    actor: str = "system",
    payload: Optional[Dict[str, Any]] = None,
    created_at: Optional[datetime] = None,
) -> None:
    """Append one row to system_events."""
    await db.execute(
        """
        INSERT INTO system_events
            (id, correlation_id, event_type, entity_type, entity_id, actor, payload, created_at)
        VALUES ($1::uuid, $2, $3, $4, $5, $6, $7::jsonb, COALESCE($8, NOW()))
        """,
        log_id,
        correlation_id,
        event_type,
        entity_type,
        entity_id,
        actor,
        json.dumps(payload or {}, default=str),
        created_at,
    )


async def get_entity_events(db: Database, entity_id: str, limit: int = 100) -> List[Dict[str, Any]]:
    """Audit trail for one entity, oldest first."""
    rows = await db.fetch_all(
        """
        SELECT id, correlation_id, event_type, entity_type, entity_id, actor, payload, created_at
        FROM system_events
        WHERE entity_id = $1
        ORDER BY created_at ASC
        LIMIT $2
        """,
        entity_id,
        limit,
    )
    events = []
    for row in rows:
        event = dict(row)
        if isinstance(event.get("payload"), str):
            event["payload"] = json.loads(event["payload"])
        events.append(event)
    return events
