"""Append-only access to consent records.

Consent records are never updated or deleted (the database enforces it),
so this repository only reads and stages new rows. Only records with
explicit_consent set count as consent in the has/ids lookups.
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import select

from humans.db.models.legal import ConsentRecord
from humans.db.models.members import User

if TYPE_CHECKING:
    from collections.abc import Iterable
    from uuid import UUID

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class ConsentAlreadyRecordedError(Exception):
    """Raised when a user already has a consent record for a document version."""

    def __init__(self, user_id: UUID, document_version_id: UUID) -> None:
        self.user_id = user_id
        self.document_version_id = document_version_id
        super().__init__(
            f"User {user_id} already has a consent record for version {document_version_id}"
        )


def compute_content_hash(content: str | bytes) -> str:
    """SHA-256 hex digest of the document content shown to the user."""
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()


class ConsentRecordRepository:
    """Reads and appends consent records.

    Example:
        consents = ConsentRecordRepository(session)
        by_user = await consents.get_consented_version_ids_by_users(user_ids)
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_user(self, user_id: UUID) -> list[ConsentRecord]:
        """All consent records of a user, newest first."""
        query = (
            select(ConsentRecord)
            .where(ConsentRecord.user_id == user_id)
            .order_by(ConsentRecord.consented_at.desc())
        )
        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def get_by_user_and_version(
        self,
        user_id: UUID,
        document_version_id: UUID,
    ) -> ConsentRecord | None:
        query = select(ConsentRecord).where(
            ConsentRecord.user_id == user_id,
            ConsentRecord.document_version_id == document_version_id,
        )
        result = await self._session.execute(query)
        return result.scalar_one_or_none()

    async def has_consent(self, user_id: UUID, document_version_id: UUID) -> bool:
        """Whether the user explicitly consented to the version."""
        query = (
            select(ConsentRecord.consent_record_id)
            .where(
                ConsentRecord.user_id == user_id,
                ConsentRecord.document_version_id == document_version_id,
                ConsentRecord.explicit_consent.is_(True),
            )
            .limit(1)
        )
        result = await self._session.execute(query)
        return result.scalar_one_or_none() is not None

    async def get_consented_version_ids(self, user_id: UUID) -> set[UUID]:
        """Version ids the user explicitly consented to."""
        query = select(ConsentRecord.document_version_id).where(
            ConsentRecord.user_id == user_id,
            ConsentRecord.explicit_consent.is_(True),
        )
        result = await self._session.execute(query)
        return set(result.scalars().all())

    async def get_consented_version_ids_by_users(
        self,
        user_ids: Iterable[UUID],
        document_version_ids: Iterable[UUID] | None = None,
    ) -> dict[UUID, set[UUID]]:
        """Explicitly consented version ids for many users in one query.

        Every requested user appears in the result, with an empty set when
        they have no consents. Passing document_version_ids narrows the
        lookup to those versions.
        """
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return {}

        query = select(ConsentRecord.user_id, ConsentRecord.document_version_id).where(
            ConsentRecord.user_id.in_(ids),
            ConsentRecord.explicit_consent.is_(True),
        )
        if document_version_ids is not None:
            version_ids = list(document_version_ids)
            if not version_ids:
                return {user_id: set() for user_id in ids}
            query = query.where(ConsentRecord.document_version_id.in_(version_ids))

        result = await self._session.execute(query)

        consented: dict[UUID, set[UUID]] = {user_id: set() for user_id in ids}
        for user_id, version_id in result.all():
            consented[user_id].add(version_id)
        return consented

    async def get_users_without_consent(self, document_version_id: UUID) -> list[UUID]:
        """Users with no explicit consent for the version."""
        consented_users = select(ConsentRecord.user_id).where(
            ConsentRecord.document_version_id == document_version_id,
            ConsentRecord.explicit_consent.is_(True),
        )
        query = select(User.user_id).where(User.user_id.not_in(consented_users))
        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def record_consent(
        self,
        *,
        user_id: UUID,
        document_version_id: UUID,
        content: str | bytes,
        ip_address: str,
        user_agent: str,
        explicit: bool = True,
        consented_at: datetime | None = None,
    ) -> ConsentRecord:
        """Stage a new consent record.

        The caller commits, normally together with the matching audit entry.

        Raises:
            ConsentAlreadyRecordedError: If a record already exists for the
                user and version.
        """
        existing = await self.get_by_user_and_version(user_id, document_version_id)
        if existing is not None:
            raise ConsentAlreadyRecordedError(user_id, document_version_id)

        record = ConsentRecord(
            consent_record_id=uuid.uuid4(),
            user_id=user_id,
            document_version_id=document_version_id,
            consented_at=consented_at or datetime.now(UTC),
            explicit_consent=explicit,
            ip_address=ip_address,
            user_agent=user_agent[:1024],
            content_hash=compute_content_hash(content),
        )
        self._session.add(record)
        await self._session.flush()

        logger.info(
            "Consent recorded: user_id=%s, document_version_id=%s, explicit=%s",
            user_id,
            document_version_id,
            explicit,
        )
        return record
