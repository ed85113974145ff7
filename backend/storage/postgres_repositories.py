"""
Entity Store - PostgreSQL
=========================
JSONB document repositories and the system_events audit log on top of
the asyncpg ``Database`` handle.
"""

import json
from typing import Any, List, Optional

import structlog

from database import Database, get_entity_events, log_event
from schemas.commerce import (
    AuditEventType,
    AuditLogEntry,
    Order,
    Package,
    Submission,
    Subscription,
)
from storage.repositories import EntityStore, IAuditLog, IRepository, T, _plain

logger = structlog.get_logger().bind(component="postgres_store")


class PostgresRepository(IRepository[T]):
    """One table of JSONB documents."""

    def __init__(self, db: Database, table: str, model: type):
        self.db = db
        self.table = table
        self.model = model

    def _load(self, raw: Any) -> T:
        data = json.loads(raw) if isinstance(raw, str) else raw
        return self.model.model_validate(data)

    async def get(self, id: str) -> Optional[T]:
        row = await self.db.fetch_one(f"SELECT data FROM {self.table} WHERE id = $1", id)
        return self._load(row["data"]) if row else None

    async def save(self, entity: T) -> T:
        await self.db.execute(
            f"""
            INSERT INTO {self.table} (id, user_id, data, created_at, updated_at)
            VALUES ($1, $2, $3::jsonb, $4, $5)
            ON CONFLICT (id) DO UPDATE
            SET data = EXCLUDED.data, user_id = EXCLUDED.user_id, updated_at = EXCLUDED.updated_at
            """,
            entity.id,
            getattr(entity, "user_id", None),
            entity.model_dump_json(),
            entity.created_at,
            entity.updated_at,
        )
        return entity

    async def delete(self, id: str) -> bool:
        result = await self.db.execute(f"DELETE FROM {self.table} WHERE id = $1", id)
        return result.endswith(" 1")

    async def find_many(self, limit: Optional[int] = None, **criteria: Any) -> List[T]:
        self._check_criteria(criteria)

        clauses, args = [], []
        for key, value in criteria.items():
            if value is None:
                clauses.append(f"data->>'{key}' IS NULL")
            else:
                args.append(str(_plain(value)))
                clauses.append(f"data->>'{key}' = ${len(args)}")

        query = f"SELECT data FROM {self.table}"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC"
        if limit is not None:
            args.append(limit)
            query += f" LIMIT ${len(args)}"

        rows = await self.db.fetch_all(query, *args)
        return [self._load(row["data"]) for row in rows]


class PostgresAuditLog(IAuditLog):
    """Audit entries in the system_events black box."""

    def __init__(self, db: Database):
        self.db = db

    async def append(self, entry: AuditLogEntry) -> None:
        await log_event(
            self.db,
            log_id=entry.log_id,
            correlation_id=entry.correlation_id,
            event_type=entry.event_type.value,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            actor=entry.actor,
            payload={
                "previous_state": entry.previous_state,
                "new_state": entry.new_state,
                "metadata": entry.metadata,
            },
            created_at=entry.timestamp,
        )

    async def get_by_entity(self, entity_id: str) -> List[AuditLogEntry]:
        rows = await get_entity_events(self.db, entity_id)
        return [
            AuditLogEntry(
                log_id=str(row["id"]),
                correlation_id=row["correlation_id"],
                event_type=AuditEventType(row["event_type"]),
                entity_type=row["entity_type"],
                entity_id=row["entity_id"],
                actor=row["actor"],
                previous_state=row["payload"].get("previous_state"),
                new_state=row["payload"].get("new_state"),
                metadata=row["payload"].get("metadata") or {},
                timestamp=row["created_at"],
            )
            for row in rows
        ]


def build_postgres_store(db: Database) -> EntityStore:
    return EntityStore(
        orders=PostgresRepository(db, "orders", Order),
        subscriptions=PostgresRepository(db, "subscriptions", Subscription),
        submissions=PostgresRepository(db, "submissions", Submission),
        packages=PostgresRepository(db, "packages", Package),
        audit=PostgresAuditLog(db),
        database=db,
    )
