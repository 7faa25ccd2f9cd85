"""
EntityCache - Durable, freshness-aware cache of upstream entities.

Entities are addressed by (entity class, id). Each class has its own
freshness window. Batch writes report success per entity; batch reads
return only the fresh subset and never fail on missing or stale ids.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Generic, Iterable, TypeVar, Union

from loguru import logger
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from kiniro.datastore.engine import Database
from kiniro.datastore.repositories import EntityRecordRepository
from kiniro.policies import DEFAULT_ENTITY_CLASSES, EntityClassConfig
from kiniro.services.clock import Clock, system_clock
from kiniro.services.errors import StoreUnavailable

T = TypeVar("T")
EntityId = Union[int, str]


class EntitySource(str, Enum):
    """Where an entity's payload came from."""

    PRIMARY = "primary"
    FALLBACK = "fallback"


@dataclass
class Entity(Generic[T]):
    """One cached entity. An upsert always replaces the whole payload."""

    id: EntityId
    payload: T
    updated_at_ms: int
    source: EntitySource = EntitySource.PRIMARY


@dataclass
class BatchWriteReport:
    """Per-entity outcome of ``upsert_many``."""

    succeeded: list[EntityId] = field(default_factory=list)
    superseded: list[EntityId] = field(default_factory=list)  # lost to a newer write
    failed: dict[EntityId, Exception] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "succeeded": list(self.succeeded),
            "superseded": list(self.superseded),
            "failed": {str(k): str(v) for k, v in self.failed.items()},
        }


class EntityStore(ABC):
    """Storage backend for ``EntityCache``. Ids are handled as strings."""

    @abstractmethod
    async def read_many(self, entity_class: str, ids: list[str]) -> list[Entity[Any]]:
        """Return stored entities for ``ids`` regardless of age."""
        ...

    @abstractmethod
    async def write(self, entity_class: str, entity: Entity[Any]) -> bool:
        """Store ``entity`` unless a newer one exists. False when superseded."""
        ...


class MemoryEntityStore(EntityStore):
    """Process-local store, for tests and single-instance deployments."""

    def __init__(self):
        self._data: dict[tuple[str, str], Entity[Any]] = {}
        self._lock = asyncio.Lock()

    async def read_many(self, entity_class: str, ids: list[str]) -> list[Entity[Any]]:
        async with self._lock:
            return [
                self._data[(entity_class, i)]
                for i in ids
                if (entity_class, i) in self._data
            ]

    async def write(self, entity_class: str, entity: Entity[Any]) -> bool:
        key = (entity_class, str(entity.id))
        async with self._lock:
            existing = self._data.get(key)
            if existing is not None and existing.updated_at_ms > entity.updated_at_ms:
                return False
            self._data[key] = entity
            return True

    def __len__(self) -> int:
        return len(self._data)


class SQLEntityStore(EntityStore):
    """Entity store over the SQLAlchemy ``entity_records`` table."""

    def __init__(self, database: Database):
        self._db = database

    async def read_many(self, entity_class: str, ids: list[str]) -> list[Entity[Any]]:
        try:
            async with self._db.session() as session:
                rows = await EntityRecordRepository(session).get_many(entity_class, ids)
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailable(f"Entity read failed: {e}", service_id="entity_store") from e

        return [
            Entity(
                id=row.entity_id,
                payload=json.loads(row.payload_json),
                updated_at_ms=row.updated_at_ms,
                source=EntitySource(row.source),
            )
            for row in rows
        ]

    async def write(self, entity_class: str, entity: Entity[Any]) -> bool:
        payload_json = json.dumps(_to_jsonable(entity.payload), ensure_ascii=False)
        try:
            async with self._db.session() as session:
                return await EntityRecordRepository(session).upsert(
                    entity_class=entity_class,
                    entity_id=str(entity.id),
                    payload_json=payload_json,
                    source=entity.source.value,
                    updated_at_ms=entity.updated_at_ms,
                )
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailable(
                f"Entity write failed for {entity_class}:{entity.id}: {e}",
                service_id="entity_store",
            ) from e


def _to_jsonable(payload: Any) -> Any:
    if isinstance(payload, BaseModel):
        return payload.model_dump(mode="json")
    return payload


class EntityCache:
    """
    Freshness-aware entity cache over an ``EntityStore``.

    Usage:
        entities = EntityCache(SQLEntityStore(db))

        report = await entities.upsert_many("anime", [Entity(1, media, now_ms)])
        fresh = await entities.get_many("anime", [1, 2, 3])
        missing = [i for i in (1, 2, 3) if i not in fresh]
    """

    def __init__(
        self,
        store: EntityStore,
        entity_classes: dict[str, EntityClassConfig] | None = None,
        max_concurrency: int = 8,
        read_chunk_size: int = 30,
        store_timeout: float | None = 10.0,
        clock: Clock = system_clock,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._store = store
        self._classes = dict(entity_classes or DEFAULT_ENTITY_CLASSES)
        self._max_concurrency = max_concurrency
        self._read_chunk_size = read_chunk_size
        self._store_timeout = store_timeout
        self._clock = clock

    def get_class(self, entity_class: str) -> EntityClassConfig:
        try:
            return self._classes[entity_class]
        except KeyError:
            raise ValueError(f"Unknown entity class '{entity_class}'") from None

    def is_fresh(self, entity_class: str, entity: Entity[Any], now_ms: int | None = None) -> bool:
        now_ms = self._clock.now_ms() if now_ms is None else now_ms
        return now_ms - entity.updated_at_ms <= self.get_class(entity_class).freshness_ms

    async def get_many(
        self, entity_class: str, ids: Iterable[EntityId]
    ) -> dict[EntityId, Entity[Any]]:
        """
        Fresh entities for ``ids``, keyed by the ids as passed in.

        Ids with no stored or no fresh entity are simply absent.

        Raises:
            StoreUnavailable: the backing store could not be read
        """
        self.get_class(entity_class)
        requested: dict[str, EntityId] = {}
        for entity_id in ids:
            requested.setdefault(str(entity_id), entity_id)
        if not requested:
            return {}

        keys = list(requested)
        chunks = [
            keys[i : i + self._read_chunk_size]
            for i in range(0, len(keys), self._read_chunk_size)
        ]
        rows = await asyncio.gather(
            *(self._with_timeout(self._store.read_many(entity_class, c)) for c in chunks)
        )

        now_ms = self._clock.now_ms()
        results: dict[EntityId, Entity[Any]] = {}
        for entity in (e for chunk in rows for e in chunk):
            original_id = requested.get(str(entity.id))
            if original_id is None or not self.is_fresh(entity_class, entity, now_ms):
                continue
            results[original_id] = replace(entity, id=original_id)
        return results

    async def upsert_many(
        self, entity_class: str, entities: Iterable[Entity[Any]]
    ) -> BatchWriteReport:
        """
        Write each entity independently with bounded concurrency.

        Never raises for individual write failures; they are listed in
        ``BatchWriteReport.failed`` keyed by entity id.
        """
        self.get_class(entity_class)
        batch = list(entities)
        report = BatchWriteReport()
        if not batch:
            return report

        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def write_one(entity: Entity[Any]) -> None:
            async with semaphore:
                try:
                    applied = await self._with_timeout(self._store.write(entity_class, entity))
                except Exception as e:
                    report.failed[entity.id] = e
                    return
            if applied:
                report.succeeded.append(entity.id)
            else:
                report.superseded.append(entity.id)

        await asyncio.gather(*(write_one(e) for e in batch))

        if report.failed:
            logger.warning(
                f"Entity cache '{entity_class}': {len(report.failed)}/{len(batch)} "
                f"writes failed: {list(report.failed)[:10]}"
            )
        return report

    async def upsert_payloads(
        self,
        entity_class: str,
        payloads: dict[EntityId, Any],
        source: EntitySource = EntitySource.PRIMARY,
    ) -> BatchWriteReport:
        """Stamp payloads with the current time and upsert them."""
        now_ms = self._clock.now_ms()
        return await self.upsert_many(
            entity_class,
            [
                Entity(id=entity_id, payload=payload, updated_at_ms=now_ms, source=source)
                for entity_id, payload in payloads.items()
            ],
        )

    async def _with_timeout(self, coro):
        if self._store_timeout is None:
            return await coro
        try:
            return await asyncio.wait_for(coro, self._store_timeout)
        except asyncio.TimeoutError as e:
            raise StoreUnavailable(
                f"Entity store timed out after {self._store_timeout}s",
                service_id="entity_store",
            ) from e
