"""Append-only audit log writer.

Entries are staged on the caller's session and persisted by the caller's
commit, so an entry exists exactly when the change it documents does.
The service never commits or flushes on its own.

Actors are either an automated job, recorded under the job's name, or a
human admin, recorded as "Admin: <display name>" together with their user
id. The name survives deletion of the user.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import and_, or_, select

from humans.db.models.audit import (
    ACTOR_NAME_MAX_LENGTH,
    DESCRIPTION_MAX_LENGTH,
    AuditLogEntry,
)

if TYPE_CHECKING:
    from collections.abc import Sequence
    from uuid import UUID

    from sqlalchemy.ext.asyncio import AsyncSession

    from humans.db.models.base import AuditAction, SyncSource

logger = logging.getLogger(__name__)

ADMIN_ACTOR_PREFIX = "Admin: "


@dataclass(frozen=True, slots=True)
class AuditActor:
    """Who performed an audited change."""

    name: str
    user_id: UUID | None = None

    @classmethod
    def job(cls, job_name: str) -> AuditActor:
        return cls(name=job_name[:ACTOR_NAME_MAX_LENGTH])

    @classmethod
    def admin(cls, user_id: UUID, display_name: str) -> AuditActor:
        return cls(
            name=f"{ADMIN_ACTOR_PREFIX}{display_name}"[:ACTOR_NAME_MAX_LENGTH],
            user_id=user_id,
        )

    @property
    def is_job(self) -> bool:
        return self.user_id is None


def truncate_description(description: str) -> str:
    if len(description) <= DESCRIPTION_MAX_LENGTH:
        return description
    return description[: DESCRIPTION_MAX_LENGTH - 3] + "..."


class AuditLogService:
    """Stages audit entries and reads them back.

    Example:
        audit = AuditLogService(session)
        audit.append(
            action=AuditAction.TEAM_MEMBER_ADDED,
            entity_type="Team",
            entity_id=team.team_id,
            description=f"{user_name} added to {team.name} by system sync",
            actor=AuditActor.job("SystemTeamSyncJob"),
            related_entity_id=user_id,
            related_entity_type="User",
        )
        await session.commit()
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    def append(
        self,
        *,
        action: AuditAction,
        entity_type: str,
        entity_id: UUID,
        description: str,
        actor: AuditActor,
        related_entity_id: UUID | None = None,
        related_entity_type: str | None = None,
        sync_source: SyncSource | None = None,
        occurred_at: datetime | None = None,
    ) -> AuditLogEntry:
        """Stage an audit entry on the session without saving it.

        Returns:
            The staged entry.
        """
        entry = AuditLogEntry(
            entry_id=uuid.uuid4(),
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            description=truncate_description(description),
            occurred_at=occurred_at or datetime.now(UTC),
            actor_user_id=actor.user_id,
            actor_name=actor.name,
            related_entity_id=related_entity_id,
            related_entity_type=related_entity_type,
            sync_source=sync_source,
        )
        self._session.add(entry)

        logger.debug(
            "Audit entry staged: action=%s, entity=%s:%s, actor=%s",
            action.value,
            entity_type,
            entity_id,
            actor.name,
        )
        return entry

    async def get_entries_for_entity(
        self,
        entity_type: str,
        entity_id: UUID,
        *,
        limit: int = 100,
    ) -> Sequence[AuditLogEntry]:
        """Entries about one entity, newest first."""
        query = (
            select(AuditLogEntry)
            .where(
                AuditLogEntry.entity_type == entity_type,
                AuditLogEntry.entity_id == entity_id,
            )
            .order_by(AuditLogEntry.occurred_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(query)
        return result.scalars().all()

    async def get_entries_for_user(
        self,
        user_id: UUID,
        *,
        limit: int = 100,
    ) -> Sequence[AuditLogEntry]:
        """Entries where the user is the subject or the related entity."""
        query = (
            select(AuditLogEntry)
            .where(
                or_(
                    and_(
                        AuditLogEntry.entity_type == "User",
                        AuditLogEntry.entity_id == user_id,
                    ),
                    and_(
                        AuditLogEntry.related_entity_type == "User",
                        AuditLogEntry.related_entity_id == user_id,
                    ),
                )
            )
            .order_by(AuditLogEntry.occurred_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(query)
        return result.scalars().all()

    async def get_recent(
        self,
        *,
        limit: int = 50,
        action: AuditAction | None = None,
    ) -> Sequence[AuditLogEntry]:
        query = select(AuditLogEntry).order_by(AuditLogEntry.occurred_at.desc()).limit(limit)
        if action is not None:
            query = query.where(AuditLogEntry.action == action)
        result = await self._session.execute(query)
        return result.scalars().all()
