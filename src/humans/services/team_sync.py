"""Reconciliation of system-managed teams.

Three teams have their membership derived rather than managed by people:
- Volunteers: approved, non-suspended members holding every required
  global consent
- Metaleads: active metaleads of ordinary (non-system) teams
- Board: holders of an active Board role grant

Each pass computes the eligible set, diffs it against the team's active
members and applies only the difference. Every addition and removal is
written together with its audit entry and outbox event in a single
transaction per team.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import or_, select

from humans.db.models.base import (
    AuditAction,
    OutboxEventType,
    SyncSource,
    SystemTeamType,
    TeamMemberRole,
)
from humans.db.models.members import Profile, RoleAssignment, RoleNames, User
from humans.db.models.teams import Team, TeamMember
from humans.services.audit_log import AuditActor, AuditLogService
from humans.services.membership import MembershipCalculator
from humans.services.outbox import OutboxService

if TYPE_CHECKING:
    import asyncio
    from collections.abc import Awaitable, Callable, Iterable
    from uuid import UUID

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    Eligibility = Callable[[AsyncSession, datetime], Awaitable[set[UUID]]]

logger = logging.getLogger(__name__)

DEFAULT_JOB_NAME = "SystemTeamSyncJob"

SYNC_ORDER = (SystemTeamType.VOLUNTEERS, SystemTeamType.METALEADS, SystemTeamType.BOARD)


async def volunteers_eligibility(session: AsyncSession, now: datetime) -> set[UUID]:
    """Approved, non-suspended members with all required global consents."""
    result = await session.execute(
        select(Profile.user_id).where(
            Profile.is_approved.is_(True),
            Profile.is_suspended.is_(False),
        )
    )
    candidates = set(result.scalars().all())
    return await MembershipCalculator(session).users_with_all_required_consents(
        candidates, now=now
    )


async def metaleads_eligibility(session: AsyncSession, now: datetime) -> set[UUID]:
    """Active metaleads of ordinary teams."""
    result = await session.execute(
        select(TeamMember.user_id)
        .join(Team, TeamMember.team_id == Team.team_id)
        .where(
            TeamMember.left_at.is_(None),
            TeamMember.role == TeamMemberRole.METALEAD,
            Team.system_team_type == SystemTeamType.NONE,
        )
        .distinct()
    )
    return set(result.scalars().all())


async def board_eligibility(session: AsyncSession, now: datetime) -> set[UUID]:
    """Holders of a Board role grant active at `now`."""
    result = await session.execute(
        select(RoleAssignment.user_id)
        .where(
            RoleAssignment.role_name == RoleNames.BOARD,
            RoleAssignment.valid_from <= now,
            or_(RoleAssignment.valid_to.is_(None), RoleAssignment.valid_to > now),
        )
        .distinct()
    )
    return set(result.scalars().all())


ELIGIBILITY: dict[SystemTeamType, Eligibility] = {
    SystemTeamType.VOLUNTEERS: volunteers_eligibility,
    SystemTeamType.METALEADS: metaleads_eligibility,
    SystemTeamType.BOARD: board_eligibility,
}


@dataclass
class TeamSyncResult:
    """Changes applied to one system team."""

    team_kind: SystemTeamType
    team_id: UUID | None = None
    added: list[UUID] = field(default_factory=list)
    removed: list[UUID] = field(default_factory=list)
    skipped: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)

    def as_dict(self) -> dict[str, Any]:
        return {
            "team": self.team_kind.value,
            "added": len(self.added),
            "removed": len(self.removed),
            "skipped": self.skipped,
        }


@dataclass
class TeamSyncRun:
    """Outcome of a full reconciliation run."""

    results: list[TeamSyncResult] = field(default_factory=list)
    cancelled: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "teams": [r.as_dict() for r in self.results],
            "cancelled": self.cancelled,
        }


class SystemTeamSyncService:
    """Reconciles system teams, one transaction per team.

    Example:
        service = SystemTeamSyncService(session_factory)
        run = await service.sync_all(datetime.now(UTC))
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        job_name: str = DEFAULT_JOB_NAME,
    ) -> None:
        self._session_factory = session_factory
        self.job_name = job_name

    async def sync_all(
        self,
        now: datetime | None = None,
        *,
        source: SyncSource = SyncSource.SYSTEM_TEAM_SYNC,
        cancel_event: asyncio.Event | None = None,
    ) -> TeamSyncRun:
        """Run the Volunteers, Metaleads and Board passes in order.

        Cancellation is honored between passes; a pass that has started
        runs to completion.
        """
        now = now or datetime.now(UTC)
        run = TeamSyncRun()
        logger.info("Starting system team sync: now=%s", now.isoformat())

        for team_kind in SYNC_ORDER:
            if cancel_event is not None and cancel_event.is_set():
                run.cancelled = True
                logger.info("System team sync cancelled before %s", team_kind.value)
                break
            run.results.append(await self.sync_derived_team(team_kind, now=now, source=source))

        logger.info(
            "Completed system team sync: teams=%d, changed=%d, cancelled=%s",
            len(run.results),
            sum(1 for r in run.results if r.changed),
            run.cancelled,
        )
        return run

    async def sync_volunteers_team(self, now: datetime) -> TeamSyncResult:
        return await self.sync_derived_team(SystemTeamType.VOLUNTEERS, now=now)

    async def sync_metaleads_team(self, now: datetime) -> TeamSyncResult:
        return await self.sync_derived_team(SystemTeamType.METALEADS, now=now)

    async def sync_board_team(self, now: datetime) -> TeamSyncResult:
        return await self.sync_derived_team(SystemTeamType.BOARD, now=now)

    async def sync_derived_team(
        self,
        team_kind: SystemTeamType,
        eligibility: Eligibility | None = None,
        *,
        now: datetime,
        source: SyncSource = SyncSource.SYSTEM_TEAM_SYNC,
    ) -> TeamSyncResult:
        """Bring one system team in line with its eligibility predicate.

        Nothing is written, and no transaction is committed, when the team
        already matches.

        Raises:
            ValueError: If team_kind is not a system team kind.
        """
        if eligibility is None:
            if team_kind not in ELIGIBILITY:
                msg = f"No eligibility rule for team kind {team_kind.value}"
                raise ValueError(msg)
            eligibility = ELIGIBILITY[team_kind]

        result = TeamSyncResult(team_kind=team_kind)

        async with self._session_factory() as session:
            try:
                team = await self._load_team(session, team_kind)
                if team is None:
                    logger.warning("System team not found: kind=%s", team_kind.value)
                    result.skipped = True
                    return result
                result.team_id = team.team_id

                current = await self._load_active_members(session, team.team_id)
                eligible = await eligibility(session, now)

                result.added = sorted(eligible - current.keys(), key=str)
                result.removed = sorted(current.keys() - eligible, key=str)
                if not result.changed:
                    logger.debug("System team up to date: team=%s", team.name)
                    return result

                names = await self._load_display_names(session, [*result.added, *result.removed])
                await self._apply(session, team, current, result, names, now, source)
                await session.commit()
            except Exception:
                await session.rollback()
                logger.exception("System team sync failed: kind=%s", team_kind.value)
                raise

        logger.info(
            "Synced %s team: added=%d, removed=%d",
            team.name,
            len(result.added),
            len(result.removed),
        )
        return result

    async def _apply(
        self,
        session: AsyncSession,
        team: Team,
        current: dict[UUID, TeamMember],
        result: TeamSyncResult,
        names: dict[UUID, str],
        now: datetime,
        source: SyncSource,
    ) -> None:
        audit = AuditLogService(session)
        outbox = OutboxService(session)
        actor = AuditActor.job(self.job_name)

        for user_id in result.added:
            session.add(
                TeamMember(
                    team_member_id=uuid.uuid4(),
                    team_id=team.team_id,
                    user_id=user_id,
                    role=TeamMemberRole.MEMBER,
                    joined_at=now,
                )
            )
            audit.append(
                action=AuditAction.TEAM_MEMBER_ADDED,
                entity_type="Team",
                entity_id=team.team_id,
                description=(
                    f"{names.get(user_id, str(user_id))} added to {team.name} by system sync"
                ),
                actor=actor,
                related_entity_id=user_id,
                related_entity_type="User",
                sync_source=source,
                occurred_at=now,
            )
            await outbox.enqueue(
                OutboxEventType.ADD_USER_TO_TEAM_RESOURCES,
                team_id=team.team_id,
                user_id=user_id,
                occurred_at=now,
                source=source,
            )

        for user_id in result.removed:
            current[user_id].left_at = now
            audit.append(
                action=AuditAction.TEAM_MEMBER_REMOVED,
                entity_type="Team",
                entity_id=team.team_id,
                description=(
                    f"{names.get(user_id, str(user_id))} removed from {team.name} by system sync"
                ),
                actor=actor,
                related_entity_id=user_id,
                related_entity_type="User",
                sync_source=source,
                occurred_at=now,
            )
            await outbox.enqueue(
                OutboxEventType.REMOVE_USER_FROM_TEAM_RESOURCES,
                team_id=team.team_id,
                user_id=user_id,
                occurred_at=now,
                source=source,
            )

        team.updated_at = now

    async def _load_team(self, session: AsyncSession, team_kind: SystemTeamType) -> Team | None:
        result = await session.execute(select(Team).where(Team.system_team_type == team_kind))
        return result.scalar_one_or_none()

    async def _load_active_members(
        self,
        session: AsyncSession,
        team_id: UUID,
    ) -> dict[UUID, TeamMember]:
        result = await session.execute(
            select(TeamMember).where(
                TeamMember.team_id == team_id,
                TeamMember.left_at.is_(None),
            )
        )
        return {member.user_id: member for member in result.scalars().all()}

    async def _load_display_names(
        self,
        session: AsyncSession,
        user_ids: Iterable[UUID],
    ) -> dict[UUID, str]:
        ids = list(user_ids)
        if not ids:
            return {}
        result = await session.execute(
            select(User.user_id, User.display_name).where(User.user_id.in_(ids))
        )
        return {user_id: display_name for user_id, display_name in result.all()}
