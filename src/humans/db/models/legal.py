"""Legal document models: documents, their versions and consent records.

A document is scoped either to the whole organization (team_id NULL) or to
one team. Consent records are append-only; the database rejects UPDATE and
DELETE on consent_records (see migration 001).
"""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from humans.db.models.base import (
    Base,
    OptionalTimestampTZ,
    TimestampTZ,
    UUIDPrimaryKey,
)


class LegalDocument(Base):
    """A legal document members may be required to consent to."""

    __tablename__ = "legal_documents"

    legal_document_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    name: Mapped[str] = mapped_column(String(256), nullable=False)
    # NULL means the global scope that applies to everyone
    team_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("teams.team_id", ondelete="RESTRICT"),
        nullable=True,
    )
    is_required: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    grace_period_days: Mapped[int] = mapped_column(Integer, default=7, nullable=False)
    source_path: Mapped[str | None] = mapped_column(String(512), nullable=True)
    last_synced_at: Mapped[OptionalTimestampTZ]

    __table_args__ = (
        Index("ix_legal_documents_scope_active", "team_id", "is_active", "is_required"),
    )


class DocumentVersion(Base):
    """One published version of a legal document.

    The current version of a document is the one with the latest
    effective_from that is not in the future.
    """

    __tablename__ = "document_versions"

    document_version_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    legal_document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("legal_documents.legal_document_id", ondelete="CASCADE"),
        nullable=False,
    )
    version_number: Mapped[str] = mapped_column(String(50), nullable=False)
    commit_sha: Mapped[str | None] = mapped_column(String(40), nullable=True)
    effective_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    requires_re_consent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    changes_summary: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    __table_args__ = (
        Index(
            "ix_document_versions_document_effective_from",
            "legal_document_id",
            "effective_from",
            unique=True,
        ),
    )


class ConsentRecord(Base):
    """Immutable record of a user consenting to a document version."""

    __tablename__ = "consent_records"

    consent_record_id: Mapped[UUIDPrimaryKey]

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.user_id", ondelete="RESTRICT"),
        nullable=False,
    )
    document_version_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("document_versions.document_version_id", ondelete="RESTRICT"),
        nullable=False,
    )
    consented_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # Only explicit consent (a checked box, not a page view) satisfies a requirement
    explicit_consent: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    ip_address: Mapped[str] = mapped_column(String(45), nullable=False)
    user_agent: Mapped[str] = mapped_column(String(1024), nullable=False)
    # SHA-256 hex digest of the document content the user saw
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index(
            "ix_consent_records_user_version",
            "user_id",
            "document_version_id",
            unique=True,
        ),
        Index("ix_consent_records_consented_at", "consented_at"),
        Index("ix_consent_records_document_version_id", "document_version_id"),
    )
