"""Pytest configuration and shared fixtures.

Unit tests run without a database; see tests/factories.py for the
recording FakeSession used in place of AsyncSession.

Environment variables:
    TEST_DATABASE_URL: PostgreSQL connection URL used to build Settings
"""

from datetime import UTC, datetime

import pytest

from humans.core.config import DatabaseSettings, Settings
from humans.core.settings import clear_settings_cache
from tests.factories import TEST_DATABASE_URL, FakeSession


@pytest.fixture
def now() -> datetime:
    """Fixed reference instant."""
    return datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def settings() -> Settings:
    """Settings with defaults and a test database URL."""
    return Settings(database=DatabaseSettings(url=TEST_DATABASE_URL))


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    """Keep cached settings from leaking between tests."""
    clear_settings_cache()
    yield
    clear_settings_cache()
