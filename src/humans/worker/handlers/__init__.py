"""Job handlers for the Humans worker.

Each handler takes the session factory and a JobContext and returns a
result dict for logging:
- outbox: drain pending outbox events
- team_sync: reconcile system teams
- compliance: report members whose consents have expired
"""

from humans.worker.handlers.compliance import compliance_check_handler
from humans.worker.handlers.outbox import process_outbox_handler
from humans.worker.handlers.team_sync import system_team_sync_handler

__all__ = [
    "compliance_check_handler",
    "process_outbox_handler",
    "system_team_sync_handler",
]
