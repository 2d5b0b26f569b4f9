"""Transactional outbox for team resource synchronization.

Membership changes call enqueue() inside their own transaction, so the
event is committed if and only if the change is. The drain job later
relays pending events to the external groupware system via a
TeamResourceSync implementation.

Delivery is at-least-once: an event whose call succeeded may be sent
again if the drain transaction fails to commit afterwards.

Example:
    outbox = OutboxService(session)
    await outbox.enqueue(
        OutboxEventType.ADD_USER_TO_TEAM_RESOURCES,
        team_id=team.team_id,
        user_id=user_id,
        source=SyncSource.SYSTEM_TEAM_SYNC,
    )
    await session.commit()
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from humans.db.models.base import OutboxEventType
from humans.db.models.outbox import (
    DEDUPLICATION_KEY_MAX_LENGTH,
    LAST_ERROR_MAX_LENGTH,
    OutboxEvent,
)

if TYPE_CHECKING:
    import asyncio
    from collections.abc import Sequence
    from uuid import UUID

    from sqlalchemy.ext.asyncio import AsyncSession

    from humans.db.models.base import SyncSource
    from humans.services.team_resources import TeamResourceSync

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100
DEFAULT_MAX_RETRY_COUNT = 10


class OutboxError(Exception):
    """Base exception for outbox operations."""


class UnknownOutboxEventTypeError(OutboxError):
    """Raised when an event carries a type the drain cannot dispatch."""

    def __init__(self, event_type: Any) -> None:
        self.event_type = event_type
        super().__init__(f"Unknown outbox event type: {event_type!r}")


OPPOSITE_EVENT_TYPES = {
    OutboxEventType.ADD_USER_TO_TEAM_RESOURCES: OutboxEventType.REMOVE_USER_FROM_TEAM_RESOURCES,
    OutboxEventType.REMOVE_USER_FROM_TEAM_RESOURCES: OutboxEventType.ADD_USER_TO_TEAM_RESOURCES,
}


def build_deduplication_key(event_type: OutboxEventType, team_id: UUID, user_id: UUID) -> str:
    """Default key: one pending event per operation, team and user."""
    return f"{event_type.value}:{team_id}:{user_id}"


def format_error(exc: BaseException, max_length: int = LAST_ERROR_MAX_LENGTH) -> str:
    message = str(exc) or type(exc).__name__
    return message[:max_length]


@dataclass
class DrainReport:
    """Outcome of one drain run."""

    selected: int = 0
    processed_ids: list[UUID] = field(default_factory=list)
    failed_ids: list[UUID] = field(default_factory=list)
    abandoned_ids: list[UUID] = field(default_factory=list)
    cancelled: bool = False

    @property
    def processed(self) -> int:
        return len(self.processed_ids)

    @property
    def failed(self) -> int:
        return len(self.failed_ids)

    @property
    def is_idle(self) -> bool:
        return self.selected == 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "selected": self.selected,
            "processed": self.processed,
            "failed": self.failed,
            "abandoned": len(self.abandoned_ids),
            "cancelled": self.cancelled,
        }


class OutboxService:
    """Writes and drains outbox events on a caller-provided session.

    Neither enqueue() nor drain_batch() commits; the caller owns the
    transaction.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def enqueue(
        self,
        event_type: OutboxEventType,
        *,
        team_id: UUID,
        user_id: UUID,
        dedup_key: str | None = None,
        occurred_at: datetime | None = None,
        source: SyncSource | None = None,
    ) -> OutboxEvent | None:
        """Stage an event in the current transaction.

        A no-op when a pending event with the same deduplication key
        already exists, including one inserted concurrently by another
        transaction.

        A pending event in the opposite direction for the same team and
        user is superseded: it is marked processed without being
        delivered, so the last membership change is the one relayed.

        Returns:
            The staged event, or None if it was deduplicated.

        Raises:
            OutboxError: If the insert fails for another reason.
        """
        key = (dedup_key or build_deduplication_key(event_type, team_id, user_id))[
            :DEDUPLICATION_KEY_MAX_LENGTH
        ]

        if await self._has_pending(key):
            logger.debug("Outbox event deduplicated: key=%s", key)
            return None

        occurred_at = occurred_at or datetime.now(UTC)
        await self._supersede_opposite(event_type, team_id, user_id, occurred_at)

        event = OutboxEvent(
            event_id=uuid.uuid4(),
            event_type=event_type,
            team_id=team_id,
            user_id=user_id,
            occurred_at=occurred_at,
            retry_count=0,
            deduplication_key=key,
            sync_source=source,
        )

        try:
            async with self.session.begin_nested():
                self.session.add(event)
        except IntegrityError:
            logger.info("Outbox event deduplicated by concurrent insert: key=%s", key)
            return None
        except SQLAlchemyError as e:
            logger.error("Failed to enqueue outbox event: key=%s, error=%s", key, str(e))
            raise OutboxError(f"Failed to enqueue outbox event: {e}") from e

        logger.info(
            "Outbox event enqueued: event_id=%s, event_type=%s, team_id=%s, user_id=%s",
            event.event_id,
            event_type.value,
            team_id,
            user_id,
        )
        return event

    async def fetch_pending(
        self,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_retry: int = DEFAULT_MAX_RETRY_COUNT,
    ) -> Sequence[OutboxEvent]:
        """Oldest unprocessed, non-abandoned events below the retry cap.

        Rows are locked with SKIP LOCKED so a second drain running by
        mistake picks disjoint events.
        """
        query = (
            select(OutboxEvent)
            .where(
                OutboxEvent.processed_at.is_(None),
                OutboxEvent.abandoned_at.is_(None),
                OutboxEvent.retry_count < max_retry,
            )
            .order_by(OutboxEvent.occurred_at)
            .limit(batch_size)
            .with_for_update(skip_locked=True)
        )
        result = await self.session.execute(query)
        return result.scalars().all()

    async def drain_batch(
        self,
        sync: TeamResourceSync,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_retry: int = DEFAULT_MAX_RETRY_COUNT,
        error_max_length: int = LAST_ERROR_MAX_LENGTH,
        now: datetime | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> DrainReport:
        """Relay one batch of pending events.

        Each event is attempted independently; a failure is recorded on the
        event and never interrupts the batch. Outcomes are flushed to the
        session at the end; committing is left to the caller.

        Cancellation is checked before each event. Events already handled
        keep their recorded outcome.
        """
        events = await self.fetch_pending(batch_size=batch_size, max_retry=max_retry)
        report = DrainReport(selected=len(events))
        if not events:
            logger.debug("Outbox idle: no pending events")
            return report

        for event in events:
            if cancel_event is not None and cancel_event.is_set():
                report.cancelled = True
                logger.info(
                    "Outbox drain cancelled: processed=%d, failed=%d, remaining=%d",
                    report.processed,
                    report.failed,
                    report.selected - report.processed - report.failed,
                )
                break

            attempted_at = now or datetime.now(UTC)
            try:
                await self._dispatch(sync, event)
            except Exception as e:
                self._record_failure(event, e, max_retry, error_max_length, attempted_at, report)
            else:
                event.processed_at = attempted_at
                event.last_error = None
                report.processed_ids.append(event.event_id)

        await self.session.flush()

        logger.info(
            "Outbox batch drained: selected=%d, processed=%d, failed=%d, abandoned=%d",
            report.selected,
            report.processed,
            report.failed,
            len(report.abandoned_ids),
        )
        return report

    async def get_pending_count(self) -> int:
        query = select(func.count(OutboxEvent.event_id)).where(
            OutboxEvent.processed_at.is_(None),
            OutboxEvent.abandoned_at.is_(None),
        )
        result = await self.session.execute(query)
        return result.scalar_one()

    async def get_abandoned_events(self, *, limit: int = 100) -> Sequence[OutboxEvent]:
        """Events given up on, most recently abandoned first."""
        query = (
            select(OutboxEvent)
            .where(OutboxEvent.abandoned_at.is_not(None))
            .order_by(OutboxEvent.abandoned_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(query)
        return result.scalars().all()

    async def _has_pending(self, key: str) -> bool:
        query = (
            select(OutboxEvent.event_id)
            .where(
                OutboxEvent.deduplication_key == key,
                OutboxEvent.processed_at.is_(None),
                OutboxEvent.abandoned_at.is_(None),
            )
            .limit(1)
        )
        result = await self.session.execute(query)
        return result.scalar_one_or_none() is not None

    async def _supersede_opposite(
        self,
        event_type: OutboxEventType,
        team_id: UUID,
        user_id: UUID,
        superseded_at: datetime,
    ) -> list[OutboxEvent]:
        """Retire pending events that the new event reverses.

        Rows a drain has locked are waited for; if the drain delivers one
        first it no longer matches and is left alone.
        """
        opposite = OPPOSITE_EVENT_TYPES.get(event_type)
        if opposite is None:
            return []

        query = (
            select(OutboxEvent)
            .where(
                OutboxEvent.event_type == opposite,
                OutboxEvent.team_id == team_id,
                OutboxEvent.user_id == user_id,
                OutboxEvent.processed_at.is_(None),
                OutboxEvent.abandoned_at.is_(None),
            )
            .with_for_update()
        )
        result = await self.session.execute(query)
        superseded = list(result.scalars().all())

        for event in superseded:
            event.processed_at = superseded_at
            event.last_error = f"Superseded by {event_type.value} before delivery"
            logger.info(
                "Outbox event superseded: event_id=%s, event_type=%s, team_id=%s, user_id=%s",
                event.event_id,
                opposite.value,
                team_id,
                user_id,
            )
        return superseded

    async def _dispatch(self, sync: TeamResourceSync, event: OutboxEvent) -> None:
        if event.event_type == OutboxEventType.ADD_USER_TO_TEAM_RESOURCES:
            await sync.add_user_to_team_resources(event.team_id, event.user_id)
        elif event.event_type == OutboxEventType.REMOVE_USER_FROM_TEAM_RESOURCES:
            await sync.remove_user_from_team_resources(event.team_id, event.user_id)
        else:
            raise UnknownOutboxEventTypeError(event.event_type)

    def _record_failure(
        self,
        event: OutboxEvent,
        error: Exception,
        max_retry: int,
        error_max_length: int,
        attempted_at: datetime,
        report: DrainReport,
    ) -> None:
        event.retry_count += 1
        event.last_error = format_error(error, error_max_length)
        report.failed_ids.append(event.event_id)

        if event.retry_count >= max_retry:
            event.abandoned_at = attempted_at
            report.abandoned_ids.append(event.event_id)
            logger.error(
                "Outbox event abandoned after %d attempts: event_id=%s, event_type=%s, "
                "team_id=%s, user_id=%s, error=%s",
                event.retry_count,
                event.event_id,
                getattr(event.event_type, "value", event.event_type),
                event.team_id,
                event.user_id,
                event.last_error,
            )
        else:
            logger.warning(
                "Outbox event failed: event_id=%s, attempt=%d/%d, error=%s",
                event.event_id,
                event.retry_count,
                max_retry,
                event.last_error,
            )
