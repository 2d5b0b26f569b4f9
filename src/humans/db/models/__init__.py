"""SQLAlchemy ORM models for Humans.

Importing this package registers every table on Base.metadata.
"""

from humans.db.models.audit import AuditLogEntry
from humans.db.models.base import (
    AuditAction,
    Base,
    OutboxEventType,
    SyncSource,
    SystemTeamType,
    TeamMemberRole,
    metadata,
)
from humans.db.models.legal import ConsentRecord, DocumentVersion, LegalDocument
from humans.db.models.members import Profile, RoleAssignment, RoleNames, User
from humans.db.models.outbox import OutboxEvent
from humans.db.models.teams import Team, TeamMember

__all__ = [
    "AuditAction",
    "AuditLogEntry",
    "Base",
    "ConsentRecord",
    "DocumentVersion",
    "LegalDocument",
    "OutboxEvent",
    "OutboxEventType",
    "Profile",
    "RoleAssignment",
    "RoleNames",
    "SyncSource",
    "SystemTeamType",
    "Team",
    "TeamMember",
    "TeamMemberRole",
    "User",
    "metadata",
]
