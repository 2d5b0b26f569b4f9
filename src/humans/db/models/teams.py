"""Team models.

Membership history is kept: leaving a team sets left_at on the row, and
rejoining creates a new row. At most one active row exists per team and
user.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from humans.db.models.base import (
    Base,
    OptionalTimestampTZ,
    SystemTeamType,
    TeamMemberRole,
    TimestampTZ,
    UUIDPrimaryKey,
    enum_type,
)


class Team(Base):
    """A working group. System teams have their membership derived."""

    __tablename__ = "teams"

    team_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    name: Mapped[str] = mapped_column(String(256), nullable=False)
    slug: Mapped[str] = mapped_column(String(256), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    system_team_type: Mapped[SystemTeamType] = mapped_column(
        enum_type(SystemTeamType, "system_team_type"),
        nullable=False,
        default=SystemTeamType.NONE,
    )

    __table_args__ = (
        Index("ix_teams_slug", "slug", unique=True),
        # One team per derived kind
        Index(
            "ix_teams_system_team_type",
            "system_team_type",
            unique=True,
            postgresql_where=text("system_team_type <> 'none'"),
        ),
    )

    @property
    def is_system_team(self) -> bool:
        return self.system_team_type != SystemTeamType.NONE


class TeamMember(Base):
    """A user's membership of a team; active while left_at is NULL."""

    __tablename__ = "team_members"

    team_member_id: Mapped[UUIDPrimaryKey]

    team_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("teams.team_id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.user_id", ondelete="CASCADE"),
        nullable=False,
    )
    role: Mapped[TeamMemberRole] = mapped_column(
        enum_type(TeamMemberRole, "team_member_role"),
        nullable=False,
        default=TeamMemberRole.MEMBER,
    )
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    left_at: Mapped[OptionalTimestampTZ]

    __table_args__ = (
        Index(
            "ix_team_members_active_team_user",
            "team_id",
            "user_id",
            unique=True,
            postgresql_where=text("left_at IS NULL"),
        ),
        Index("ix_team_members_user_id", "user_id"),
    )

    @property
    def is_active(self) -> bool:
        return self.left_at is None
