"""Humans Core module.

Shared components used across all services:
- Configuration management
- Settings accessor
"""

from humans.core.config import (
    ConfigValidationError,
    DatabaseSettings,
    Environment,
    OutboxSettings,
    Settings,
    TeamSyncSettings,
    WorkerSettings,
)
from humans.core.settings import (
    clear_settings_cache,
    get_settings,
    get_settings_safe,
)

__all__ = [
    "ConfigValidationError",
    "DatabaseSettings",
    "Environment",
    "OutboxSettings",
    "Settings",
    "TeamSyncSettings",
    "WorkerSettings",
    "clear_settings_cache",
    "get_settings",
    "get_settings_safe",
]
