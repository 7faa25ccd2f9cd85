"""
Repository layer - data access for the durable caches.
"""

from loguru import logger
from sqlalchemy import delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from kiniro.datastore.models import EntityRecordDB, RateWindowDB


def _dialect_insert(session: AsyncSession):
    """INSERT construct with ON CONFLICT support for the bound dialect"""
    if session.bind.dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


class EntityRecordRepository:
    """Entity cache rows"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_many(self, entity_class: str, entity_ids: list[str]) -> list[EntityRecordDB]:
        """Rows for the given ids that exist, regardless of age"""
        if not entity_ids:
            return []
        result = await self.session.execute(
            select(EntityRecordDB).where(
                EntityRecordDB.entity_class == entity_class,
                EntityRecordDB.entity_id.in_(entity_ids),
            )
        )
        return list(result.scalars().all())

    async def upsert(
        self,
        entity_class: str,
        entity_id: str,
        payload_json: str,
        source: str,
        updated_at_ms: int,
    ) -> bool:
        """
        Replace the stored row unless it carries a newer timestamp.

        One INSERT .. ON CONFLICT DO UPDATE statement, so concurrent writers
        to a new id cannot race between a read and an insert.

        Returns False when the write lost to a newer stored version.
        """
        insert = _dialect_insert(self.session)
        stmt = insert(EntityRecordDB).values(
            entity_class=entity_class,
            entity_id=entity_id,
            payload_json=payload_json,
            source=source,
            updated_at_ms=updated_at_ms,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[EntityRecordDB.entity_class, EntityRecordDB.entity_id],
            set_={
                "payload_json": stmt.excluded.payload_json,
                "source": stmt.excluded.source,
                "updated_at_ms": stmt.excluded.updated_at_ms,
            },
            where=EntityRecordDB.updated_at_ms <= stmt.excluded.updated_at_ms,
        )
        result = await self.session.execute(stmt)
        if not result.rowcount:
            logger.debug(f"Skipped older write for {entity_class}:{entity_id}")
            return False
        return True


class RateWindowRepository:
    """Rate limit window rows"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, identity: str, category: str) -> RateWindowDB | None:
        return await self.session.get(RateWindowDB, (identity, category))

    async def delete_expired(self, now_ms: int) -> int:
        """Delete windows whose reset time has passed"""
        result = await self.session.execute(
            delete(RateWindowDB).where(
                RateWindowDB.window_start_ms + RateWindowDB.window_seconds * 1000 <= now_ms
            )
        )
        return result.rowcount or 0

    async def save(
        self,
        identity: str,
        category: str,
        window_start_ms: int,
        count: int,
        limit: int,
        window_seconds: int,
    ) -> None:
        row = await self.get(identity, category)
        if row is None:
            self.session.add(
                RateWindowDB(
                    identity=identity,
                    category=category,
                    window_start_ms=window_start_ms,
                    count=count,
                    limit=limit,
                    window_seconds=window_seconds,
                )
            )
            return
        row.window_start_ms = window_start_ms
        row.count = count
        row.limit = limit
        row.window_seconds = window_seconds
