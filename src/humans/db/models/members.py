"""Member models: users, profiles and role grants.

Role grants are temporal: a grant is active from valid_from up to, but not
including, valid_to. Several grants may be active at the same time.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Index, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from humans.db.models.base import (
    Base,
    OptionalTimestampTZ,
    TimestampTZ,
    UUIDPrimaryKey,
)


class RoleNames:
    """Well-known role names used by system logic."""

    ADMIN = "Admin"
    BOARD = "Board"
    METALEAD = "Metalead"


class User(Base):
    """A person known to the system."""

    __tablename__ = "users"

    user_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    display_name: Mapped[str] = mapped_column(String(256), nullable=False)
    email: Mapped[str | None] = mapped_column(String(256), nullable=True)

    __table_args__ = (Index("ix_users_email", "email", unique=True),)


class Profile(Base):
    """Membership profile gating status before roles and consents are considered.

    An unapproved profile is pending review; a suspended profile loses
    access regardless of roles or consents.
    """

    __tablename__ = "profiles"

    profile_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.user_id", ondelete="CASCADE"),
        nullable=False,
    )
    is_approved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_suspended: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (Index("ix_profiles_user_id", "user_id", unique=True),)


class RoleAssignment(Base):
    """Temporal grant of a named role to a user."""

    __tablename__ = "role_assignments"

    role_assignment_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.user_id", ondelete="CASCADE"),
        nullable=False,
    )
    role_name: Mapped[str] = mapped_column(String(256), nullable=False)
    valid_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    valid_to: Mapped[OptionalTimestampTZ]
    notes: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    created_by_user_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.user_id", ondelete="SET NULL"),
        nullable=True,
    )

    __table_args__ = (
        CheckConstraint(
            "valid_to IS NULL OR valid_to > valid_from",
            name="valid_window",
        ),
        Index("ix_role_assignments_user_id", "user_id"),
        Index("ix_role_assignments_role_name", "role_name"),
        Index(
            "ix_role_assignments_user_role_window",
            "user_id",
            "role_name",
            "valid_from",
            "valid_to",
        ),
    )
