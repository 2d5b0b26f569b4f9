"""Humans Worker service.

Background runner for:
- Draining the team-resource outbox with retries
- Reconciling system teams (Volunteers, Metaleads, Board)
- Reporting members whose consents have expired

Usage:
    # Run continuously
    python -m humans.worker

    # Run jobs once, e.g. from cron
    python -m humans.worker --once system_team_sync process_outbox
"""

from humans.worker.main import Worker, WorkerConfig, run

__all__ = ["Worker", "WorkerConfig", "run"]
