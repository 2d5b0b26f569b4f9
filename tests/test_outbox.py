"""Tests for the transactional outbox.

Tests cover:
- Enqueue deduplication, including concurrent inserts
- Per-event failure isolation while draining
- Retry counting and abandonment at the cap
- Cancellation between events
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from humans.db.models.base import OutboxEventType, SyncSource
from humans.db.models.outbox import DEDUPLICATION_KEY_MAX_LENGTH, OutboxEvent
from humans.services.outbox import (
    DrainReport,
    OutboxError,
    OutboxService,
    UnknownOutboxEventTypeError,
    build_deduplication_key,
    format_error,
)
from humans.services.team_resources import LoggingTeamResourceSync
from tests.factories import FakeSession, make_result


def make_event(
    event_type=OutboxEventType.ADD_USER_TO_TEAM_RESOURCES,
    *,
    retry_count: int = 0,
    occurred_at=None,
) -> OutboxEvent:
    team_id, user_id = uuid4(), uuid4()
    return OutboxEvent(
        event_id=uuid4(),
        event_type=event_type,
        team_id=team_id,
        user_id=user_id,
        occurred_at=occurred_at,
        retry_count=retry_count,
        deduplication_key=f"{event_type}:{team_id}:{user_id}",
    )


class FailingTeamResourceSync(LoggingTeamResourceSync):
    """Fails for the given user ids, succeeds for everyone else."""

    def __init__(self, failing_user_ids, error=None) -> None:
        super().__init__()
        self.failing_user_ids = set(failing_user_ids)
        self.error = error or RuntimeError("groupware unavailable")

    async def add_user_to_team_resources(self, team_id, user_id) -> None:
        if user_id in self.failing_user_ids:
            raise self.error
        await super().add_user_to_team_resources(team_id, user_id)


class InMemoryOutboxSession(FakeSession):
    """FakeSession answering the outbox queries from the events it has staged."""

    def _next_result(self, statement, *args, **kwargs):
        params = statement.compile().params
        pending = [e for e in self.added_of(OutboxEvent) if e.is_pending]

        if "deduplication_key_1" in params:
            key = params["deduplication_key_1"]
            matches = [e.event_id for e in pending if e.deduplication_key == key]
            return make_result(scalar=matches[0] if matches else None)
        if "event_type_1" in params:
            return make_result(
                scalars=[
                    e
                    for e in pending
                    if e.event_type == params["event_type_1"]
                    and e.team_id == params["team_id_1"]
                    and e.user_id == params["user_id_1"]
                ]
            )
        return make_result(scalars=sorted(pending, key=lambda e: e.occurred_at))


class TestDeduplicationKey:
    def test_default_key_format(self):
        team_id, user_id = uuid4(), uuid4()

        key = build_deduplication_key(OutboxEventType.ADD_USER_TO_TEAM_RESOURCES, team_id, user_id)

        assert key == f"add_user_to_team_resources:{team_id}:{user_id}"

    def test_add_and_remove_keys_differ(self):
        team_id, user_id = uuid4(), uuid4()

        add = build_deduplication_key(OutboxEventType.ADD_USER_TO_TEAM_RESOURCES, team_id, user_id)
        remove = build_deduplication_key(
            OutboxEventType.REMOVE_USER_FROM_TEAM_RESOURCES, team_id, user_id
        )

        assert add != remove


class TestFormatError:
    def test_uses_message(self):
        assert format_error(RuntimeError("boom")) == "boom"

    def test_falls_back_to_type_name(self):
        assert format_error(TimeoutError()) == "TimeoutError"

    def test_truncates(self):
        assert len(format_error(RuntimeError("x" * 10000), 100)) == 100


class TestEnqueue:
    """Tests for OutboxService.enqueue."""

    @pytest.mark.asyncio
    async def test_enqueue_stages_event(self, now):
        session = FakeSession([make_result(scalar=None)])
        team_id, user_id = uuid4(), uuid4()

        event = await OutboxService(session).enqueue(
            OutboxEventType.ADD_USER_TO_TEAM_RESOURCES,
            team_id=team_id,
            user_id=user_id,
            occurred_at=now,
            source=SyncSource.SYSTEM_TEAM_SYNC,
        )

        assert session.added == [event]
        assert event.team_id == team_id
        assert event.user_id == user_id
        assert event.retry_count == 0
        assert event.processed_at is None
        assert event.occurred_at == now
        assert event.sync_source == SyncSource.SYSTEM_TEAM_SYNC
        assert event.deduplication_key == build_deduplication_key(
            OutboxEventType.ADD_USER_TO_TEAM_RESOURCES, team_id, user_id
        )
        session.commit.assert_not_called()

    @pytest.mark.asyncio
    async def test_pending_duplicate_is_noop(self):
        session = FakeSession([make_result(scalar=uuid4())])

        event = await OutboxService(session).enqueue(
            OutboxEventType.ADD_USER_TO_TEAM_RESOURCES,
            team_id=uuid4(),
            user_id=uuid4(),
        )

        assert event is None
        assert session.added == []

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_is_noop(self):
        """A unique violation from a concurrent insert is swallowed."""
        session = FakeSession([make_result(scalar=None)])
        session.savepoint_error = IntegrityError("INSERT", {}, Exception("duplicate key"))

        event = await OutboxService(session).enqueue(
            OutboxEventType.REMOVE_USER_FROM_TEAM_RESOURCES,
            team_id=uuid4(),
            user_id=uuid4(),
        )

        assert event is None

    @pytest.mark.asyncio
    async def test_other_database_errors_raise(self):
        session = FakeSession([make_result(scalar=None)])
        session.savepoint_error = OperationalError("INSERT", {}, Exception("connection lost"))

        with pytest.raises(OutboxError):
            await OutboxService(session).enqueue(
                OutboxEventType.ADD_USER_TO_TEAM_RESOURCES,
                team_id=uuid4(),
                user_id=uuid4(),
            )

    @pytest.mark.asyncio
    async def test_custom_key_is_clipped(self):
        session = FakeSession([make_result(scalar=None)])

        event = await OutboxService(session).enqueue(
            OutboxEventType.ADD_USER_TO_TEAM_RESOURCES,
            team_id=uuid4(),
            user_id=uuid4(),
            dedup_key="k" * 500,
        )

        assert len(event.deduplication_key) == DEDUPLICATION_KEY_MAX_LENGTH


class TestOppositeDirection:
    """Tests for superseding pending events in the other direction."""

    @pytest.fixture
    def ids(self):
        return uuid4(), uuid4()

    async def _enqueue(self, outbox, event_type, ids, occurred_at):
        team_id, user_id = ids
        return await outbox.enqueue(
            event_type, team_id=team_id, user_id=user_id, occurred_at=occurred_at
        )

    @pytest.mark.asyncio
    async def test_remove_supersedes_pending_add(self, now, ids):
        session = InMemoryOutboxSession()
        outbox = OutboxService(session)

        add = await self._enqueue(outbox, OutboxEventType.ADD_USER_TO_TEAM_RESOURCES, ids, now)
        remove = await self._enqueue(
            outbox, OutboxEventType.REMOVE_USER_FROM_TEAM_RESOURCES, ids, now + timedelta(1)
        )

        assert add.processed_at == remove.occurred_at
        assert "Superseded" in add.last_error
        assert remove.is_pending

    @pytest.mark.asyncio
    async def test_add_remove_add_delivers_add_last(self, now, ids):
        """The relayed state matches the final membership."""
        session = InMemoryOutboxSession()
        outbox = OutboxService(session)

        await self._enqueue(outbox, OutboxEventType.ADD_USER_TO_TEAM_RESOURCES, ids, now)
        await self._enqueue(
            outbox,
            OutboxEventType.REMOVE_USER_FROM_TEAM_RESOURCES,
            ids,
            now + timedelta(seconds=1),
        )
        readd = await self._enqueue(
            outbox, OutboxEventType.ADD_USER_TO_TEAM_RESOURCES, ids, now + timedelta(seconds=2)
        )

        assert readd is not None
        assert [e.event_id for e in session.added_of(OutboxEvent) if e.is_pending] == [
            readd.event_id
        ]

        sync = LoggingTeamResourceSync()
        await outbox.drain_batch(sync, now=now + timedelta(seconds=3))

        assert sync.calls == [("add", *ids)]

    @pytest.mark.asyncio
    async def test_same_direction_still_deduplicated(self, now, ids):
        session = InMemoryOutboxSession()
        outbox = OutboxService(session)

        first = await self._enqueue(outbox, OutboxEventType.ADD_USER_TO_TEAM_RESOURCES, ids, now)
        second = await self._enqueue(outbox, OutboxEventType.ADD_USER_TO_TEAM_RESOURCES, ids, now)

        assert second is None
        assert first.is_pending

    @pytest.mark.asyncio
    async def test_other_users_are_untouched(self, now, ids):
        session = InMemoryOutboxSession()
        outbox = OutboxService(session)
        team_id, _ = ids

        other = await self._enqueue(
            outbox, OutboxEventType.ADD_USER_TO_TEAM_RESOURCES, (team_id, uuid4()), now
        )
        await self._enqueue(outbox, OutboxEventType.REMOVE_USER_FROM_TEAM_RESOURCES, ids, now)

        assert other.is_pending


class TestDrainBatch:
    """Tests for OutboxService.drain_batch."""

    @pytest.mark.asyncio
    async def test_idle_outbox_does_nothing(self):
        session = FakeSession([make_result(scalars=[])])
        sync = LoggingTeamResourceSync()

        report = await OutboxService(session).drain_batch(sync)

        assert report.is_idle
        assert report.as_dict() == {
            "selected": 0,
            "processed": 0,
            "failed": 0,
            "abandoned": 0,
            "cancelled": False,
        }
        assert sync.calls == []
        session.flush.assert_not_called()

    @pytest.mark.asyncio
    async def test_dispatches_by_event_type(self, now):
        add = make_event(OutboxEventType.ADD_USER_TO_TEAM_RESOURCES)
        remove = make_event(OutboxEventType.REMOVE_USER_FROM_TEAM_RESOURCES)
        session = FakeSession([make_result(scalars=[add, remove])])
        sync = LoggingTeamResourceSync()

        report = await OutboxService(session).drain_batch(sync, now=now)

        assert sync.calls == [
            ("add", add.team_id, add.user_id),
            ("remove", remove.team_id, remove.user_id),
        ]
        assert report.processed_ids == [add.event_id, remove.event_id]
        assert add.processed_at == now
        assert remove.processed_at == now
        session.flush.assert_awaited_once()
        session.commit.assert_not_called()

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_batch(self, now):
        events = [make_event() for _ in range(3)]
        session = FakeSession([make_result(scalars=events)])
        sync = FailingTeamResourceSync({events[1].user_id})

        report = await OutboxService(session).drain_batch(sync, now=now)

        assert report.processed_ids == [events[0].event_id, events[2].event_id]
        assert report.failed_ids == [events[1].event_id]
        assert events[1].processed_at is None
        assert events[1].retry_count == 1
        assert events[1].last_error == "groupware unavailable"
        assert events[1].abandoned_at is None
        assert events[0].processed_at == now
        assert events[2].processed_at == now

    @pytest.mark.asyncio
    async def test_event_abandoned_at_retry_cap(self, now):
        event = make_event(retry_count=2)
        session = FakeSession([make_result(scalars=[event])])
        sync = FailingTeamResourceSync({event.user_id})

        report = await OutboxService(session).drain_batch(sync, max_retry=3, now=now)

        assert event.retry_count == 3
        assert event.abandoned_at == now
        assert report.abandoned_ids == [event.event_id]
        assert report.as_dict()["abandoned"] == 1

    @pytest.mark.asyncio
    async def test_last_error_is_truncated(self):
        event = make_event()
        session = FakeSession([make_result(scalars=[event])])
        sync = FailingTeamResourceSync({event.user_id}, RuntimeError("e" * 9000))

        await OutboxService(session).drain_batch(sync, error_max_length=4000)

        assert len(event.last_error) == 4000

    @pytest.mark.asyncio
    async def test_unknown_event_type_is_a_failure(self):
        event = make_event()
        event.event_type = "rename_team"
        session = FakeSession([make_result(scalars=[event])])

        report = await OutboxService(session).drain_batch(LoggingTeamResourceSync())

        assert report.failed_ids == [event.event_id]
        assert "rename_team" in event.last_error

    @pytest.mark.asyncio
    async def test_cancellation_stops_before_next_event(self, now):
        events = [make_event() for _ in range(3)]
        session = FakeSession([make_result(scalars=events)])
        cancel_event = asyncio.Event()
        sync = LoggingTeamResourceSync()

        async def add_then_cancel(team_id, user_id):
            sync.calls.append(("add", team_id, user_id))
            cancel_event.set()

        sync.add_user_to_team_resources = add_then_cancel

        report = await OutboxService(session).drain_batch(
            sync, now=now, cancel_event=cancel_event
        )

        assert report.cancelled
        assert report.processed_ids == [events[0].event_id]
        assert events[1].processed_at is None
        assert events[2].processed_at is None
        assert len(sync.calls) == 1
        session.flush.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self):
        events = [make_event()]
        session = FakeSession([make_result(scalars=events)])
        cancel_event = asyncio.Event()
        cancel_event.set()
        sync = AsyncMock()

        report = await OutboxService(session).drain_batch(sync, cancel_event=cancel_event)

        assert report.cancelled
        assert report.selected == 1
        assert report.processed == 0
        sync.add_user_to_team_resources.assert_not_called()


class TestOutboxQueries:
    @pytest.mark.asyncio
    async def test_pending_count(self):
        session = FakeSession([make_result(scalar=7)])
        assert await OutboxService(session).get_pending_count() == 7

    @pytest.mark.asyncio
    async def test_fetch_pending_locks_with_skip_locked(self):
        session = FakeSession([make_result(scalars=[])])

        await OutboxService(session).fetch_pending(batch_size=10)

        query = session.execute.await_args.args[0]
        assert query._for_update_arg is not None
        assert query._for_update_arg.skip_locked

    @pytest.mark.asyncio
    async def test_abandoned_events_newest_first(self, now):
        abandoned = make_event(retry_count=10)
        abandoned.abandoned_at = now
        session = FakeSession([make_result(scalars=[abandoned])])

        events = await OutboxService(session).get_abandoned_events(limit=5)

        assert events == [abandoned]
        sql = str(session.execute.await_args.args[0])
        assert "outbox_events.abandoned_at IS NOT NULL" in sql
        assert "ORDER BY outbox_events.abandoned_at DESC" in sql


class TestDrainReport:
    def test_counts(self):
        report = DrainReport(selected=3, processed_ids=[uuid4()], failed_ids=[uuid4(), uuid4()])

        assert report.processed == 1
        assert report.failed == 2
        assert not report.is_idle


class TestUnknownOutboxEventTypeError:
    def test_keeps_event_type(self):
        error = UnknownOutboxEventTypeError("rename_team")
        assert error.event_type == "rename_team"
        assert isinstance(error, OutboxError)
