"""Membership status computation.

A member's status is derived from four facts evaluated against a single
instant:
- profile flags (approved, suspended)
- role grants active at that instant
- the current version of every active, required legal document in scope
- the member's explicit consent records

Rules, first match wins:
    no profile           -> NONE
    suspended            -> SUSPENDED
    not approved         -> PENDING
    no active role grant -> NONE
    a required version is unconsented past its grace period -> INACTIVE
    otherwise            -> ACTIVE

The rules live in pure functions so they can be exercised without a
database. MembershipCalculator only loads the inputs, and its batch
methods load them once for many users.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Protocol

from sqlalchemy import or_, select

from humans.db.models.base import SystemTeamType
from humans.db.models.legal import DocumentVersion, LegalDocument
from humans.db.models.members import Profile, RoleAssignment
from humans.db.models.teams import Team, TeamMember
from humans.services.consent_repository import ConsentRecordRepository

if TYPE_CHECKING:
    from collections.abc import Collection, Iterable, Sequence
    from uuid import UUID

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# Documents with no team are required of everyone
GLOBAL_SCOPE: UUID | None = None


class MembershipStatus(str, Enum):
    """Computed access status of a member."""

    NONE = "none"
    PENDING = "pending"
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class _ValidityWindow(Protocol):
    valid_from: datetime
    valid_to: datetime | None


class _ProfileFlags(Protocol):
    is_approved: bool
    is_suspended: bool


@dataclass(frozen=True, slots=True)
class RequiredVersion:
    """Current version of a required document.

    Attributes:
        document_version_id: The version a member must consent to.
        legal_document_id: Owning document.
        document_name: Document name, for reports.
        effective_from: When the version took effect.
        grace_period_days: Days after effective_from before a missing
            consent makes the member inactive.
    """

    document_version_id: UUID
    legal_document_id: UUID
    document_name: str
    effective_from: datetime
    grace_period_days: int

    @property
    def consent_deadline(self) -> datetime:
        return self.effective_from + timedelta(days=self.grace_period_days)

    def is_expired(self, now: datetime) -> bool:
        """Whether a missing consent for this version now counts against the member."""
        return self.consent_deadline <= now


@dataclass(frozen=True, slots=True)
class MembershipSnapshot:
    """Consolidated membership and consent state of one member."""

    status: MembershipStatus
    is_volunteer_member: bool
    required_consent_count: int
    pending_consent_count: int
    missing_consent_version_ids: tuple[UUID, ...] = field(default_factory=tuple)


def is_role_active(assignment: _ValidityWindow, now: datetime) -> bool:
    """A grant is active from valid_from (inclusive) to valid_to (exclusive)."""
    if assignment.valid_from > now:
        return False
    return assignment.valid_to is None or assignment.valid_to > now


def select_current_versions(
    rows: Iterable[tuple[DocumentVersion, LegalDocument]],
    now: datetime,
) -> list[RequiredVersion]:
    """Pick the latest already-effective version of each document.

    Versions with effective_from in the future are ignored. The result is
    ordered by document name for stable reporting.
    """
    latest: dict[UUID, tuple[DocumentVersion, LegalDocument]] = {}
    for version, document in rows:
        if version.effective_from > now:
            continue
        current = latest.get(document.legal_document_id)
        if current is None or version.effective_from > current[0].effective_from:
            latest[document.legal_document_id] = (version, document)

    required = [
        RequiredVersion(
            document_version_id=version.document_version_id,
            legal_document_id=document.legal_document_id,
            document_name=document.name,
            effective_from=version.effective_from,
            grace_period_days=document.grace_period_days,
        )
        for version, document in latest.values()
    ]
    required.sort(key=lambda v: (v.document_name, str(v.document_version_id)))
    return required


def find_missing_versions(
    required_versions: Iterable[RequiredVersion],
    consented_version_ids: Collection[UUID],
) -> list[RequiredVersion]:
    return [v for v in required_versions if v.document_version_id not in consented_version_ids]


def has_expired_consent(
    required_versions: Iterable[RequiredVersion],
    consented_version_ids: Collection[UUID],
    now: datetime,
) -> bool:
    """Whether any unconsented required version is past its grace period."""
    return any(
        v.is_expired(now) for v in find_missing_versions(required_versions, consented_version_ids)
    )


def compute_membership_status(
    *,
    profile: _ProfileFlags | None,
    role_assignments: Iterable[_ValidityWindow],
    required_versions: Iterable[RequiredVersion],
    consented_version_ids: Collection[UUID],
    now: datetime,
) -> MembershipStatus:
    """Apply the status rules to already-loaded facts."""
    if profile is None:
        return MembershipStatus.NONE
    if profile.is_suspended:
        return MembershipStatus.SUSPENDED
    if not profile.is_approved:
        return MembershipStatus.PENDING
    if not any(is_role_active(a, now) for a in role_assignments):
        return MembershipStatus.NONE
    if has_expired_consent(required_versions, consented_version_ids, now):
        return MembershipStatus.INACTIVE
    return MembershipStatus.ACTIVE


class MembershipCalculator:
    """Loads membership facts and evaluates status.

    All methods are read-only. `now` is always passed in so that a batch
    of decisions is made against one instant.

    Example:
        calculator = MembershipCalculator(session)
        status = await calculator.compute_status(user_id, now)
        eligible = await calculator.users_with_all_required_consents(user_ids, now=now)
    """

    def __init__(
        self,
        session: AsyncSession,
        consents: ConsentRecordRepository | None = None,
    ) -> None:
        self._session = session
        self._consents = consents or ConsentRecordRepository(session)

    async def compute_status(self, user_id: UUID, now: datetime) -> MembershipStatus:
        """Compute a member's status at `now`.

        Global-scope documents are the ones that gate status.
        """
        profile = await self._load_profile(user_id)
        if profile is None or profile.is_suspended or not profile.is_approved:
            return compute_membership_status(
                profile=profile,
                role_assignments=(),
                required_versions=(),
                consented_version_ids=frozenset(),
                now=now,
            )

        role_assignments = await self._load_active_role_assignments(user_id, now)
        if not role_assignments:
            return MembershipStatus.NONE

        required = await self.get_required_versions(GLOBAL_SCOPE, now)
        consented = await self._consents.get_consented_version_ids(user_id) if required else set()

        return compute_membership_status(
            profile=profile,
            role_assignments=role_assignments,
            required_versions=required,
            consented_version_ids=consented,
            now=now,
        )

    async def get_required_versions(
        self,
        scope: UUID | None,
        now: datetime,
    ) -> list[RequiredVersion]:
        """Current versions of the active, required documents in a scope.

        Args:
            scope: Team id, or GLOBAL_SCOPE for organization-wide documents.
            now: Reference instant; later versions are not yet in force.
        """
        scope_clause = (
            LegalDocument.team_id.is_(None) if scope is None else LegalDocument.team_id == scope
        )
        query = (
            select(DocumentVersion, LegalDocument)
            .join(
                LegalDocument,
                DocumentVersion.legal_document_id == LegalDocument.legal_document_id,
            )
            .where(
                LegalDocument.is_active.is_(True),
                LegalDocument.is_required.is_(True),
                scope_clause,
                DocumentVersion.effective_from <= now,
            )
        )
        result = await self._session.execute(query)
        return select_current_versions(result.all(), now)

    async def get_missing_consent_versions(
        self,
        user_id: UUID,
        now: datetime,
        scope: UUID | None = GLOBAL_SCOPE,
    ) -> list[UUID]:
        """Required version ids the user has not explicitly consented to."""
        required = await self.get_required_versions(scope, now)
        if not required:
            return []
        consented = await self._consents.get_consented_version_ids(user_id)
        return [v.document_version_id for v in find_missing_versions(required, consented)]

    async def has_all_required_consents(
        self,
        user_id: UUID,
        now: datetime,
        scope: UUID | None = GLOBAL_SCOPE,
    ) -> bool:
        return not await self.get_missing_consent_versions(user_id, now, scope)

    async def has_any_expired_consents(
        self,
        user_id: UUID,
        now: datetime,
        scope: UUID | None = GLOBAL_SCOPE,
    ) -> bool:
        required = await self.get_required_versions(scope, now)
        if not required:
            return False
        consented = await self._consents.get_consented_version_ids(user_id)
        return has_expired_consent(required, consented, now)

    async def has_active_roles(self, user_id: UUID, now: datetime) -> bool:
        return bool(await self._load_active_role_assignments(user_id, now))

    async def users_with_all_required_consents(
        self,
        user_ids: Iterable[UUID],
        *,
        now: datetime,
        scope: UUID | None = GLOBAL_SCOPE,
    ) -> set[UUID]:
        """Subset of users who consented to every required version in scope.

        One query for the required versions and one for the consents,
        whatever the number of users. When nothing is required every
        given user qualifies.
        """
        ids = set(user_ids)
        if not ids:
            return set()

        required = await self.get_required_versions(scope, now)
        if not required:
            return ids

        required_ids = {v.document_version_id for v in required}
        consented = await self._consents.get_consented_version_ids_by_users(ids, required_ids)
        return {user_id for user_id in ids if required_ids <= consented.get(user_id, set())}

    async def users_with_any_expired_consent(
        self,
        user_ids: Iterable[UUID],
        *,
        now: datetime,
        scope: UUID | None = GLOBAL_SCOPE,
    ) -> set[UUID]:
        """Subset of users missing a consent whose grace period has ended."""
        ids = set(user_ids)
        if not ids:
            return set()

        expired_ids = {
            v.document_version_id
            for v in await self.get_required_versions(scope, now)
            if v.is_expired(now)
        }
        if not expired_ids:
            return set()

        consented = await self._consents.get_consented_version_ids_by_users(ids, expired_ids)
        return {user_id for user_id in ids if not expired_ids <= consented.get(user_id, set())}

    async def get_users_requiring_status_update(self, now: datetime) -> set[UUID]:
        """Role holders whose status has dropped to inactive through expired consents."""
        query = (
            select(RoleAssignment.user_id)
            .where(
                RoleAssignment.valid_from <= now,
                or_(RoleAssignment.valid_to.is_(None), RoleAssignment.valid_to > now),
            )
            .distinct()
        )
        result = await self._session.execute(query)
        role_holders = set(result.scalars().all())

        users = await self.users_with_any_expired_consent(role_holders, now=now)
        if users:
            logger.info(
                "Users requiring status update: count=%d, role_holders=%d",
                len(users),
                len(role_holders),
            )
        return users

    async def get_membership_snapshot(self, user_id: UUID, now: datetime) -> MembershipSnapshot:
        """Status plus the consent details shown to the member."""
        status = await self.compute_status(user_id, now)
        required = await self.get_required_versions(GLOBAL_SCOPE, now)
        consented = await self._consents.get_consented_version_ids(user_id) if required else set()
        missing = find_missing_versions(required, consented)

        return MembershipSnapshot(
            status=status,
            is_volunteer_member=await self._is_volunteer_member(user_id),
            required_consent_count=len(required),
            pending_consent_count=len(missing),
            missing_consent_version_ids=tuple(v.document_version_id for v in missing),
        )

    async def _load_profile(self, user_id: UUID) -> Profile | None:
        result = await self._session.execute(select(Profile).where(Profile.user_id == user_id))
        return result.scalar_one_or_none()

    async def _load_active_role_assignments(
        self,
        user_id: UUID,
        now: datetime,
    ) -> Sequence[RoleAssignment]:
        query = select(RoleAssignment).where(
            RoleAssignment.user_id == user_id,
            RoleAssignment.valid_from <= now,
            or_(RoleAssignment.valid_to.is_(None), RoleAssignment.valid_to > now),
        )
        result = await self._session.execute(query)
        return result.scalars().all()

    async def _is_volunteer_member(self, user_id: UUID) -> bool:
        query = (
            select(TeamMember.team_member_id)
            .join(Team, TeamMember.team_id == Team.team_id)
            .where(
                Team.system_team_type == SystemTeamType.VOLUNTEERS,
                TeamMember.user_id == user_id,
                TeamMember.left_at.is_(None),
            )
            .limit(1)
        )
        result = await self._session.execute(query)
        return result.scalar_one_or_none() is not None
