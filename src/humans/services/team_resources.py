"""Interface to the external groupware system holding team resources.

Team resources are the shared drives and mailing groups a team owns. The
outbox drain calls these operations; implementations must be idempotent
per (team, user, operation) because delivery is at-least-once.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from uuid import UUID

logger = logging.getLogger(__name__)


@runtime_checkable
class TeamResourceSync(Protocol):
    """Grants and revokes a user's access to a team's external resources.

    Any exception raised counts as a failed delivery and is retried.
    """

    async def add_user_to_team_resources(self, team_id: UUID, user_id: UUID) -> None: ...

    async def remove_user_from_team_resources(self, team_id: UUID, user_id: UUID) -> None: ...


class LoggingTeamResourceSync:
    """Stand-in that logs the changes it would make.

    Used for dry-run deployments and whenever no groupware client is
    configured.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, UUID, UUID]] = []

    async def add_user_to_team_resources(self, team_id: UUID, user_id: UUID) -> None:
        logger.info(
            "[STUB] Would add user to team resources: team_id=%s, user_id=%s",
            team_id,
            user_id,
        )
        self.calls.append(("add", team_id, user_id))

    async def remove_user_from_team_resources(self, team_id: UUID, user_id: UUID) -> None:
        logger.info(
            "[STUB] Would remove user from team resources: team_id=%s, user_id=%s",
            team_id,
            user_id,
        )
        self.calls.append(("remove", team_id, user_id))
