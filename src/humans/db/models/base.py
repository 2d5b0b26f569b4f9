"""Base model definitions and common types.

This module provides:
- SQLAlchemy declarative base with naming conventions
- Common column type annotations
- Enum types used across multiple models
"""

import enum
import uuid
from datetime import datetime
from typing import Annotated

from sqlalchemy import DateTime, Enum, MetaData, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, mapped_column, registry

# Naming convention for constraints ensures consistent migration generation.
# See: https://alembic.sqlalchemy.org/en/latest/naming.html
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)

type_registry = registry()

# UUID primary key with server-side default generation
UUIDPrimaryKey = Annotated[
    uuid.UUID,
    mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    ),
]

# Timestamp with timezone, defaults to now
TimestampTZ = Annotated[
    datetime,
    mapped_column(DateTime(timezone=True), server_default=text("now()")),
]

OptionalTimestampTZ = Annotated[
    datetime | None,
    mapped_column(DateTime(timezone=True), nullable=True),
]

ShortString = Annotated[str, mapped_column(String(100))]
MediumString = Annotated[str, mapped_column(String(256))]


class Base(DeclarativeBase):
    """Declarative base for all Humans models."""

    metadata = metadata
    registry = type_registry


def enum_type(enum_cls: type[enum.Enum], name: str) -> Enum:
    """PostgreSQL enum column type storing member values, not names."""
    return Enum(
        enum_cls,
        name=name,
        create_constraint=True,
        values_callable=lambda members: [member.value for member in members],
    )


# =============================================================================
# Common Enums
# =============================================================================


class SystemTeamType(enum.Enum):
    """Marks teams whose membership is derived by the system.

    Values:
        NONE: Ordinary team, membership managed by people
        VOLUNTEERS: Every active volunteer
        METALEADS: Leads of ordinary teams
        BOARD: Holders of an active Board role
    """

    NONE = "none"
    VOLUNTEERS = "volunteers"
    METALEADS = "metaleads"
    BOARD = "board"


class TeamMemberRole(enum.Enum):
    """Role of a member inside a team.

    Values:
        MEMBER: Regular member
        METALEAD: Team lead, feeds the Metaleads system team
    """

    MEMBER = "member"
    METALEAD = "metalead"


class OutboxEventType(enum.Enum):
    """External side effects relayed through the outbox.

    Values:
        ADD_USER_TO_TEAM_RESOURCES: Grant the user the team's shared resources
        REMOVE_USER_FROM_TEAM_RESOURCES: Revoke the user's access to them
    """

    ADD_USER_TO_TEAM_RESOURCES = "add_user_to_team_resources"
    REMOVE_USER_FROM_TEAM_RESOURCES = "remove_user_from_team_resources"


class SyncSource(enum.Enum):
    """What triggered a resource sync, kept for diagnostics.

    Values:
        TEAM_MEMBER_JOINED: A person joined a team
        TEAM_MEMBER_LEFT: A person left a team
        MANUAL_SYNC: An admin requested a sync
        SCHEDULED_SYNC: Periodic full resync
        SUSPENSION: Member suspension revoked access
        SYSTEM_TEAM_SYNC: Derived team reconciliation
    """

    TEAM_MEMBER_JOINED = "team_member_joined"
    TEAM_MEMBER_LEFT = "team_member_left"
    MANUAL_SYNC = "manual_sync"
    SCHEDULED_SYNC = "scheduled_sync"
    SUSPENSION = "suspension"
    SYSTEM_TEAM_SYNC = "system_team_sync"


class AuditAction(enum.Enum):
    """Actions recorded in the audit log.

    Values:
        TEAM_MEMBER_ADDED: User added to a team
        TEAM_MEMBER_REMOVED: User removed from a team
        MEMBER_SUSPENDED: Member suspended by an admin
        MEMBER_UNSUSPENDED: Suspension lifted
        MEMBER_APPROVED: Profile approved by an admin
        ROLE_ASSIGNED: Role granted
        ROLE_ENDED: Role grant ended
        CONSENT_RECORDED: Member consented to a document version
    """

    TEAM_MEMBER_ADDED = "team_member_added"
    TEAM_MEMBER_REMOVED = "team_member_removed"
    MEMBER_SUSPENDED = "member_suspended"
    MEMBER_UNSUSPENDED = "member_unsuspended"
    MEMBER_APPROVED = "member_approved"
    ROLE_ASSIGNED = "role_assigned"
    ROLE_ENDED = "role_ended"
    CONSENT_RECORDED = "consent_recorded"
