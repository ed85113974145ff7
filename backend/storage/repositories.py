"""
Entity Store - Repository Interfaces
====================================
Persistence interfaces for orders, subscriptions, submissions, packages
and the audit log, plus the in-memory implementations used in tests and
local development.

Repositories hand out copies: mutating a returned model never touches
stored state until ``save`` is called.
"""

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel

from schemas.commerce import (
    AuditLogEntry,
    EntityType,
    Order,
    Package,
    Submission,
    Subscription,
)

T = TypeVar("T", bound=BaseModel)


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


# =============================================================================
# INTERFACES
# =============================================================================

class IRepository(ABC, Generic[T]):
    """Abstract document repository"""

    model: type

    @abstractmethod
    async def get(self, id: str) -> Optional[T]:
        pass

    @abstractmethod
    async def save(self, entity: T) -> T:
        pass

    @abstractmethod
    async def delete(self, id: str) -> bool:
        pass

    @abstractmethod
    async def find_many(self, limit: Optional[int] = None, **criteria: Any) -> List[T]:
        """Documents whose fields equal ``criteria``, newest first."""
        pass

    async def find_one(self, **criteria: Any) -> Optional[T]:
        matches = await self.find_many(limit=1, **criteria)
        return matches[0] if matches else None

    def _check_criteria(self, criteria: Dict[str, Any]) -> None:
        unknown = set(criteria) - set(self.model.model_fields)
        if unknown:
            raise KeyError(f"{self.model.__name__} has no field(s): {sorted(unknown)}")


class IAuditLog(ABC):
    """Audit log interface"""

    @abstractmethod
    async def append(self, entry: AuditLogEntry) -> None:
        pass

    @abstractmethod
    async def get_by_entity(self, entity_id: str) -> List[AuditLogEntry]:
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

class InMemoryRepository(IRepository[T]):
    """Lock-guarded dict of documents keyed by id."""

    def __init__(self, model: type):
        self.model = model
        self._items: Dict[str, T] = {}
        self._lock = asyncio.Lock()

    async def get(self, id: str) -> Optional[T]:
        async with self._lock:
            item = self._items.get(id)
            return item.model_copy(deep=True) if item else None

    async def save(self, entity: T) -> T:
        async with self._lock:
            self._items[entity.id] = entity.model_copy(deep=True)
            return entity

    async def delete(self, id: str) -> bool:
        async with self._lock:
            return self._items.pop(id, None) is not None

    async def find_many(self, limit: Optional[int] = None, **criteria: Any) -> List[T]:
        self._check_criteria(criteria)
        async with self._lock:
            matches = [
                item for item in self._items.values()
                if all(_plain(getattr(item, k)) == _plain(v) for k, v in criteria.items())
            ]
        matches.sort(key=lambda item: item.created_at, reverse=True)
        if limit is not None:
            matches = matches[:limit]
        return [item.model_copy(deep=True) for item in matches]


class InMemoryAuditLog(IAuditLog):
    """Append-only audit log"""

    def __init__(self):
        self._logs: List[AuditLogEntry] = []
        self._lock = asyncio.Lock()

    async def append(self, entry: AuditLogEntry) -> None:
        async with self._lock:
            self._logs.append(entry)

    async def get_by_entity(self, entity_id: str) -> List[AuditLogEntry]:
        async with self._lock:
            return [e for e in self._logs if e.entity_id == entity_id]

    @property
    def entries(self) -> List[AuditLogEntry]:
        return list(self._logs)


# =============================================================================
# ENTITY LOCKS
# =============================================================================

class EntityLocks:
    """
    In-process mutual exclusion per (entity_type, entity_id).

    Every read-modify-write of an order or subscription happens under its
    lock, whichever provider handle or API call led to it. An entry lives
    only while someone holds or waits on it.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, entity_type: EntityType, entity_id: str) -> AsyncIterator[None]:
        key = f"{entity_type.value}:{entity_id}"
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


# =============================================================================
# STORE HANDLE
# =============================================================================

class EntityStore:
    """The set of repositories every component is handed explicitly."""

    def __init__(
        self,
        orders: IRepository[Order],
        subscriptions: IRepository[Subscription],
        submissions: IRepository[Submission],
        packages: IRepository[Package],
        audit: IAuditLog,
        database=None,
    ):
        self.orders = orders
        self.subscriptions = subscriptions
        self.submissions = submissions
        self.packages = packages
        self.audit = audit
        self.locks = EntityLocks()
        self._database = database

    @classmethod
    def in_memory(cls) -> "EntityStore":
        return cls(
            orders=InMemoryRepository(Order),
            subscriptions=InMemoryRepository(Subscription),
            submissions=InMemoryRepository(Submission),
            packages=InMemoryRepository(Package),
            audit=InMemoryAuditLog(),
        )

    def repository_for(self, entity_type: EntityType) -> IRepository:
        if entity_type == EntityType.ORDER:
            return self.orders
        return self.subscriptions

    async def initialize(self) -> None:
        if self._database is not None:
            await self._database.initialize()

    async def close(self) -> None:
        if self._database is not None:
            await self._database.close()
