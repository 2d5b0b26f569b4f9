"""Append-only audit log.

Rows are never updated or deleted; migration 001 installs triggers that
reject both. actor_name is denormalized so entries stay readable after the
acting user is deleted.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import DateTime, ForeignKey, Index, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from humans.db.models.base import (
    AuditAction,
    Base,
    SyncSource,
    UUIDPrimaryKey,
    enum_type,
)

DESCRIPTION_MAX_LENGTH = 4000
ACTOR_NAME_MAX_LENGTH = 200


class AuditLogEntry(Base):
    """One recorded change and who made it."""

    __tablename__ = "audit_log"

    entry_id: Mapped[UUIDPrimaryKey]

    action: Mapped[AuditAction] = mapped_column(
        enum_type(AuditAction, "audit_action"),
        nullable=False,
    )
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    description: Mapped[str] = mapped_column(String(DESCRIPTION_MAX_LENGTH), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    actor_user_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.user_id", ondelete="SET NULL"),
        nullable=True,
    )
    actor_name: Mapped[str] = mapped_column(String(ACTOR_NAME_MAX_LENGTH), nullable=False)

    related_entity_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )
    related_entity_type: Mapped[str | None] = mapped_column(String(100), nullable=True)

    sync_source: Mapped[SyncSource | None] = mapped_column(
        enum_type(SyncSource, "sync_source"),
        nullable=True,
    )

    __table_args__ = (
        Index("ix_audit_log_entity", "entity_type", "entity_id"),
        Index("ix_audit_log_related_entity", "related_entity_type", "related_entity_id"),
        Index("ix_audit_log_occurred_at", "occurred_at"),
        Index("ix_audit_log_action", "action"),
    )
