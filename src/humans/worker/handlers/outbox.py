"""Outbox drain job handler.

Processes one batch of pending outbox events and commits every recorded
outcome in a single transaction at the end of the batch.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from humans.services.outbox import OutboxService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from humans.worker.scheduler import JobContext

logger = logging.getLogger(__name__)


async def process_outbox_handler(
    session_factory: async_sessionmaker[AsyncSession],
    context: JobContext,
) -> dict[str, Any]:
    """Handle process_outbox runs.

    An idle outbox yields an empty report and no commit. When cancelled
    mid-batch the outcomes recorded so far are still committed.

    Returns:
        DrainReport summary.
    """
    outbox_settings = context.settings.outbox

    async with session_factory() as session:
        try:
            report = await OutboxService(session).drain_batch(
                context.team_resources,
                batch_size=outbox_settings.batch_size,
                max_retry=outbox_settings.max_retry_count,
                error_max_length=outbox_settings.error_max_length,
                cancel_event=context.cancel_event,
            )
            if not report.is_idle:
                await session.commit()
        except Exception:
            await session.rollback()
            raise

    if report.abandoned_ids:
        logger.error(
            "Outbox events abandoned and need manual attention: count=%d, event_ids=%s",
            len(report.abandoned_ids),
            [str(event_id) for event_id in report.abandoned_ids],
        )

    return report.as_dict()
