"""
Database models for the durable caches.
Uses SQLAlchemy 2.0+ declarative mapping.
"""

from sqlalchemy import BigInteger, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all models"""

    pass


class EntityRecordDB(Base):
    """Cached upstream entity, one row per (entity_class, entity_id)"""

    __tablename__ = "entity_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_class: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(255), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    source: Mapped[str] = mapped_column(String(16), default="primary", nullable=False)
    updated_at_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        UniqueConstraint("entity_class", "entity_id", name="uq_entity_class_id"),
        Index("idx_entity_class_updated", "entity_class", "updated_at_ms"),
    )

    def __repr__(self) -> str:
        return f"<EntityRecord(class={self.entity_class}, id={self.entity_id})>"


class RateWindowDB(Base):
    """Fixed rate limit window for one (identity, category) pair"""

    __tablename__ = "rate_windows"

    identity: Mapped[str] = mapped_column(String(255), primary_key=True)
    category: Mapped[str] = mapped_column(String(64), primary_key=True)
    window_start_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    limit: Mapped[int] = mapped_column(Integer, nullable=False)
    window_seconds: Mapped[int] = mapped_column(Integer, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<RateWindow(identity={self.identity}, category={self.category}, "
            f"count={self.count})>"
        )
