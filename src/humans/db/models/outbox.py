"""Transactional outbox for external team-resource synchronization.

Events are written in the same transaction as the membership change that
causes them and relayed later by the drain job.

Lifecycle:
    pending   -> processed_at IS NULL, abandoned_at IS NULL
    processed -> processed_at set
    abandoned -> abandoned_at set once retry_count reaches the cap
"""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import DateTime, Index, Integer, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from humans.db.models.base import (
    Base,
    OptionalTimestampTZ,
    OutboxEventType,
    SyncSource,
    UUIDPrimaryKey,
    enum_type,
)

DEDUPLICATION_KEY_MAX_LENGTH = 200
LAST_ERROR_MAX_LENGTH = 4000


class OutboxEvent(Base):
    """A pending or completed request to change a user's team resources."""

    __tablename__ = "outbox_events"

    event_id: Mapped[UUIDPrimaryKey]

    event_type: Mapped[OutboxEventType] = mapped_column(
        enum_type(OutboxEventType, "outbox_event_type"),
        nullable=False,
    )
    # No foreign keys: events must survive deletion of the team or user
    team_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processed_at: Mapped[OptionalTimestampTZ]
    abandoned_at: Mapped[OptionalTimestampTZ]

    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(
        String(LAST_ERROR_MAX_LENGTH), nullable=True
    )
    deduplication_key: Mapped[str] = mapped_column(
        String(DEDUPLICATION_KEY_MAX_LENGTH), nullable=False
    )
    sync_source: Mapped[SyncSource | None] = mapped_column(
        enum_type(SyncSource, "sync_source"),
        nullable=True,
    )

    __table_args__ = (
        # Drain query: pending events oldest first
        Index("ix_outbox_events_processed_occurred", "processed_at", "occurred_at"),
        Index("ix_outbox_events_team_user_processed", "team_id", "user_id", "processed_at"),
        # A key may appear only once among pending events
        Index(
            "ix_outbox_events_pending_deduplication_key",
            "deduplication_key",
            unique=True,
            postgresql_where=text("processed_at IS NULL AND abandoned_at IS NULL"),
        ),
    )

    @property
    def is_pending(self) -> bool:
        return self.processed_at is None and self.abandoned_at is None
