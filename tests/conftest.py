"""
Shared fixtures.

Database tests run against a file-backed SQLite database under ``tmp_path``
through the same async engine factory the application uses. Every
``harness.run(...)`` call gets its own event loop and engine; the file
persists between calls within one test.
"""

import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from eventsync.config import Settings
from eventsync.database import build_engine, build_session_factory, create_tables
from eventsync.services.entity_resolver import EntityResolver
from eventsync.services.normalizer import PayloadNormalizer
from eventsync.services.persistence import EntityStore
from eventsync.services.webhook_processor import IngestionPipeline


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/eventsync-test.db",
        log_json=False,
        single_tenant_fallback=False,
        retry_base_delay_seconds=0,
        retry_max_delay_seconds=0,
        retry_max_attempts=5,
        scheduler_enabled=False,
        square_access_token="",
        webhook_signature_key="test-signature-key",
        cron_secret="test-cron-secret",
        backfill_batch_delay_seconds=0,
    )
    values.update(overrides)
    return Settings(**values)


class DatabaseHarness:
    """Runs coroutines against a fresh engine bound to the test database."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.session_factory = None

    def session(self):
        return self.session_factory()

    def run(self, scenario):
        """Run ``scenario(harness)`` in a new event loop and return its result."""
        async def main():
            engine = build_engine(self.settings)
            await create_tables(engine)
            self.session_factory = build_session_factory(engine)
            try:
                return await scenario(self)
            finally:
                await engine.dispose()
                self.session_factory = None

        return asyncio.run(main())

    async def organization(self, merchant_id: str = "MERCHANT1", is_active: bool = True) -> str:
        async with self.session() as db:
            org_id = await EntityStore(db).ensure_organization(merchant_id, is_active=is_active)
            await db.commit()
        return org_id

    async def persist(self, organization_id: str, entity_type: str, obj: dict) -> str:
        """Normalize and write one upstream object without running follow-ups."""
        record = PayloadNormalizer().normalize_entity(entity_type, obj)
        pipeline = IngestionPipeline(self.session_factory, self.settings)
        async with self.session() as db:
            resolver = EntityResolver(db, self.settings)
            entity_id = await pipeline.persist_record(db, resolver, organization_id, entity_type, record)
            await db.commit()
        return entity_id


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def harness(settings):
    return DatabaseHarness(settings)
