"""
Tests for the entity resolver

Tests cover:
- Organization resolution chain (merchant, location, sibling, single tenant)
- Inactive organizations
- Stub creation for locations, customers and service variations
- Lookup-only references
"""

import pytest
from sqlalchemy import func, select

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from eventsync.errors import OrganizationUnresolved
from eventsync.models import Location, ServiceVariation, StaffMember
from eventsync.services.entity_resolver import EntityResolver, OrganizationHints
from eventsync.services.normalizer import PayloadNormalizer
from eventsync.services.persistence import EntityStore

from conftest import DatabaseHarness, make_settings
from payloads import envelope, order_obj, payment_obj

normalizer = PayloadNormalizer()


class TestOrganizationResolution:
    """Tests for the tenant priority chain"""

    def test_merchant_id_wins(self, harness):
        async def scenario(h):
            org_id = await h.organization("MERCHANT1")
            await h.organization("MERCHANT2")
            async with h.session() as db:
                lookup = await EntityResolver(db, h.settings).resolve_organization(
                    OrganizationHints(merchant_id="MERCHANT1")
                )
            return org_id, lookup

        org_id, lookup = harness.run(scenario)
        assert lookup.found
        assert lookup.key == org_id
        assert lookup.via == "merchant"

    def test_inactive_organization_is_not_resolved(self, harness):
        async def scenario(h):
            await h.organization("MERCHANT1", is_active=False)
            async with h.session() as db:
                return await EntityResolver(db, h.settings).resolve_organization(
                    OrganizationHints(merchant_id="MERCHANT1")
                )

        lookup = harness.run(scenario)
        assert not lookup.found
        assert "inactive" in lookup.reason

    def test_location_hint(self, harness):
        async def scenario(h):
            org_id = await h.organization("MERCHANT1")
            await h.organization("MERCHANT2")
            async with h.session() as db:
                await EntityStore(db).upsert_location(org_id, "L-KNOWN", "Downtown")
                await db.commit()
            async with h.session() as db:
                lookup = await EntityResolver(db, h.settings).resolve_organization(
                    OrganizationHints(merchant_id="UNKNOWN", external_location_id="L-KNOWN")
                )
            return org_id, lookup

        org_id, lookup = harness.run(scenario)
        assert lookup.key == org_id
        assert lookup.via == "location"

    def test_sibling_row_hint(self, harness):
        async def scenario(h):
            await h.organization("MERCHANT1")
            org_id = await h.organization("MERCHANT2")
            async with h.session() as db:
                order = normalizer.normalize_entity("order", order_obj(order_id="O-SIB"))
                await EntityStore(db).upsert_order(org_id, order, None, None)
                await db.commit()
            event = normalizer.normalize(envelope(
                "payment.created", "payment",
                payment_obj(order_id="O-SIB", location_id="L-NEW"),
                merchant_id=None,
            ))
            async with h.session() as db:
                return org_id, await EntityResolver(db, h.settings).require_organization(event)

        org_id, resolved = harness.run(scenario)
        assert resolved == org_id

    def test_single_tenant_fallback(self, tmp_path):
        harness = DatabaseHarness(make_settings(tmp_path, single_tenant_fallback=True))

        async def scenario(h):
            org_id = await h.organization("ONLY")
            async with h.session() as db:
                lookup = await EntityResolver(db, h.settings).resolve_organization(OrganizationHints())
            return org_id, lookup

        org_id, lookup = harness.run(scenario)
        assert lookup.key == org_id
        assert lookup.via == "single_tenant"

    def test_fallback_refuses_when_several_tenants(self, tmp_path):
        harness = DatabaseHarness(make_settings(tmp_path, single_tenant_fallback=True))

        async def scenario(h):
            await h.organization("MERCHANT1")
            await h.organization("MERCHANT2")
            event = normalizer.normalize(envelope("payment.created", "payment", payment_obj(), merchant_id=None))
            async with h.session() as db:
                await EntityResolver(db, h.settings).require_organization(event)

        with pytest.raises(OrganizationUnresolved):
            harness.run(scenario)


class TestStubReferences:
    """Tests for stub-created and lookup-only references"""

    def test_location_stub_created_once(self, harness):
        async def scenario(h):
            org_id = await h.organization()
            async with h.session() as db:
                first = await EntityResolver(db, h.settings).resolve_location(org_id, "L9")
                await db.commit()
            async with h.session() as db:
                second = await EntityResolver(db, h.settings).resolve_location(org_id, "L9")
                location = (await db.execute(select(Location))).scalars().one()
            return first, second, location

        first, second, location = harness.run(scenario)
        assert first.via == "stub"
        assert second.via == "match"
        assert first.key == second.key
        assert location.is_stub is True
        assert location.name == "Location L9"

    def test_real_location_replaces_stub(self, harness):
        async def scenario(h):
            org_id = await h.organization()
            async with h.session() as db:
                stub = await EntityResolver(db, h.settings).resolve_location(org_id, "L9")
                real_id = await EntityStore(db).upsert_location(org_id, "L9", "Uptown Studio")
                await db.commit()
            async with h.session() as db:
                location = (await db.execute(select(Location))).scalars().one()
            return stub.key, real_id, location

        stub_id, real_id, location = harness.run(scenario)
        assert stub_id == real_id
        assert location.is_stub is False
        assert location.name == "Uptown Studio"

    def test_resolver_caches_within_unit_of_work(self, harness):
        async def scenario(h):
            org_id = await h.organization()
            async with h.session() as db:
                resolver = EntityResolver(db, h.settings)
                first = await resolver.resolve_service(org_id, "SV1")
                second = await resolver.resolve_service(org_id, "SV1")
                await db.commit()
                count = (await db.execute(select(func.count(ServiceVariation.id)))).scalar_one()
            return first, second, count

        first, second, count = harness.run(scenario)
        assert second.via == "cache"
        assert first.key == second.key
        assert count == 1

    def test_customers_are_platform_global(self, harness):
        async def scenario(h):
            org_a = await h.organization("MERCHANT1")
            org_b = await h.organization("MERCHANT2")
            async with h.session() as db:
                first = await EntityResolver(db, h.settings).resolve_customer(org_a, "C-GLOBAL")
                second = await EntityResolver(db, h.settings).resolve_customer(org_b, "C-GLOBAL")
                await db.commit()
            return first, second

        first, second = harness.run(scenario)
        assert first.key == second.key

    def test_staff_is_never_stubbed(self, harness):
        async def scenario(h):
            org_id = await h.organization()
            async with h.session() as db:
                lookup = await EntityResolver(db, h.settings).resolve_staff(org_id, "TM-NEW")
                await db.commit()
                count = (await db.execute(select(func.count(StaffMember.id)))).scalar_one()
            return lookup, count

        lookup, count = harness.run(scenario)
        assert not lookup.found
        assert "not yet synced" in lookup.reason
        assert count == 0

    def test_missing_identifier_is_a_miss(self, harness):
        async def scenario(h):
            org_id = await h.organization()
            async with h.session() as db:
                resolver = EntityResolver(db, h.settings)
                return [
                    await resolver.resolve_location(org_id, None),
                    await resolver.resolve_order(org_id, None),
                    await resolver.resolve_booking(org_id, "B-MISSING"),
                ]

        assert not any(lookup.found for lookup in harness.run(scenario))
