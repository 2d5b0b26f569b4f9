"""System team reconciliation job handler."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from humans.db.models.base import SyncSource
from humans.services.team_sync import SystemTeamSyncService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from humans.worker.scheduler import JobContext


async def system_team_sync_handler(
    session_factory: async_sessionmaker[AsyncSession],
    context: JobContext,
) -> dict[str, Any]:
    """Reconcile the Volunteers, Metaleads and Board teams against context.now."""
    service = SystemTeamSyncService(
        session_factory,
        job_name=context.settings.team_sync.job_name,
    )
    run = await service.sync_all(
        context.now,
        source=SyncSource.SYSTEM_TEAM_SYNC,
        cancel_event=context.cancel_event,
    )
    return run.as_dict()
