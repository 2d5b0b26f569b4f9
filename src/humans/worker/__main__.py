"""Allow running the worker with ``python -m humans.worker``."""

from humans.worker.main import run

run()
