"""Consent compliance report handler.

Finds role holders whose status has dropped to inactive because a
required consent passed its grace period. Read-only: access is revoked by
the Volunteers team sync, and notifying members is handled elsewhere.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from humans.services.membership import MembershipCalculator

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from humans.worker.scheduler import JobContext

logger = logging.getLogger(__name__)


async def compliance_check_handler(
    session_factory: async_sessionmaker[AsyncSession],
    context: JobContext,
) -> dict[str, Any]:
    async with session_factory() as session:
        users = await MembershipCalculator(session).get_users_requiring_status_update(context.now)

    for user_id in sorted(users, key=str):
        logger.warning("Member inactive due to expired consent: user_id=%s", user_id)

    return {"users_requiring_update": len(users)}
