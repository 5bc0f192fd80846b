"""
Tests for application settings
"""

import pytest
from pydantic import ValidationError

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from eventsync.config import Settings


class TestDatabaseUrl:
    """Database URLs are rewritten onto async drivers"""

    @pytest.mark.parametrize("url,expected", [
        ("postgres://u:p@db:5432/app", "postgresql+asyncpg://u:p@db:5432/app"),
        ("postgresql://u:p@db:5432/app", "postgresql+asyncpg://u:p@db:5432/app"),
        ("postgresql+asyncpg://u:p@db:5432/app", "postgresql+asyncpg://u:p@db:5432/app"),
        ("sqlite:///./local.db", "sqlite+aiosqlite:///./local.db"),
        ("sqlite+aiosqlite:///./local.db", "sqlite+aiosqlite:///./local.db"),
    ])
    def test_normalization(self, url, expected):
        assert Settings(database_url=url).database_url == expected

    def test_is_sqlite(self):
        assert Settings(database_url="sqlite:///./x.db").is_sqlite is True
        assert Settings(database_url="postgres://u:p@db/app").is_sqlite is False


class TestValidation:
    @pytest.mark.parametrize("field", ["worker_pool_size", "backfill_batch_size", "jobs_per_drain", "retry_max_attempts"])
    def test_must_be_positive(self, field):
        with pytest.raises(ValidationError):
            Settings(**{field: 0})

    def test_env_aliases(self, monkeypatch):
        monkeypatch.setenv("LINK_WINDOW_BEFORE_DAYS", "3")
        monkeypatch.setenv("SINGLE_TENANT_FALLBACK", "false")
        settings = Settings()
        assert settings.link_window_before_days == 3
        assert settings.single_tenant_fallback is False

    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.link_window_before_days == 7
        assert settings.link_window_after_days == 1
        assert settings.retry_max_attempts == 5
        assert settings.job_lock_timeout_seconds == 300
