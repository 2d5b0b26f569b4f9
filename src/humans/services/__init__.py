"""Humans service layer.

Business logic on top of the ORM models:
- MembershipCalculator: membership status and consent compliance
- ConsentRecordRepository: append-only consent records
- AuditLogService: append-only audit log
- OutboxService: transactional outbox for team resource sync
- SystemTeamSyncService: reconciliation of system teams
- TeamResourceSync: interface to the external groupware system
"""

from humans.services.audit_log import AuditActor, AuditLogService
from humans.services.consent_repository import (
    ConsentAlreadyRecordedError,
    ConsentRecordRepository,
)
from humans.services.membership import (
    GLOBAL_SCOPE,
    MembershipCalculator,
    MembershipSnapshot,
    MembershipStatus,
    RequiredVersion,
    compute_membership_status,
)
from humans.services.outbox import (
    DrainReport,
    OutboxError,
    OutboxService,
    UnknownOutboxEventTypeError,
    build_deduplication_key,
)
from humans.services.team_resources import LoggingTeamResourceSync, TeamResourceSync
from humans.services.team_sync import SystemTeamSyncService, TeamSyncResult, TeamSyncRun

__all__ = [
    "GLOBAL_SCOPE",
    "AuditActor",
    "AuditLogService",
    "ConsentAlreadyRecordedError",
    "ConsentRecordRepository",
    "DrainReport",
    "LoggingTeamResourceSync",
    "MembershipCalculator",
    "MembershipSnapshot",
    "MembershipStatus",
    "OutboxError",
    "OutboxService",
    "RequiredVersion",
    "SystemTeamSyncService",
    "TeamResourceSync",
    "TeamSyncResult",
    "TeamSyncRun",
    "UnknownOutboxEventTypeError",
    "build_deduplication_key",
    "compute_membership_status",
]
