"""
Tests for the gift card ledger

Tests cover:
- Balance as the signed sum of transactions
- Duplicate and out-of-order activities
- Activities arriving before their card
- Upstream-reported balance kept separately
- Balance drift audit
"""

from sqlalchemy import func, select

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from eventsync.models import GiftCard, GiftCardTransaction
from eventsync.services.gift_card_ledger import GiftCardLedger
from eventsync.services.normalizer import PayloadNormalizer

from payloads import activity_obj, gift_card_obj

normalizer = PayloadNormalizer()


def activity(activity_id, activity_type, amount, **kwargs):
    return normalizer.normalize_entity("gift_card_activity", activity_obj(activity_id, activity_type, amount, **kwargs))


async def append_all(h, org_id, activities):
    results = []
    for item in activities:
        async with h.session() as db:
            results.append(await GiftCardLedger(db).append(org_id, item))
            await db.commit()
    return results


async def card(h, external_id="GC1"):
    async with h.session() as db:
        return (await db.execute(
            select(GiftCard).where(GiftCard.external_id == external_id)
        )).scalars().one()


class TestLedgerBalance:
    """Tests for GiftCardLedger.append"""

    def test_balance_is_sum_of_activities(self, harness):
        async def scenario(h):
            org_id = await h.organization()
            await h.persist(org_id, "gift_card", gift_card_obj())
            results = await append_all(h, org_id, [
                activity("A1", "ACTIVATE", 5000),
                activity("A2", "REDEEM", 1500),
                activity("A3", "ADJUST_DECREMENT", 500),
            ])
            return results, await card(h)

        results, gift_card = harness.run(scenario)
        assert [r.balance_cents for r in results] == [5000, 3500, 3000]
        assert gift_card.current_balance_cents == 3000

    def test_duplicate_activity_is_counted_once(self, harness):
        async def scenario(h):
            org_id = await h.organization()
            results = await append_all(h, org_id, [
                activity("A1", "LOAD", 2000),
                activity("A1", "LOAD", 2000),
            ])
            async with h.session() as db:
                count = (await db.execute(select(func.count(GiftCardTransaction.id)))).scalar_one()
            return results, count

        results, count = harness.run(scenario)
        assert results[0].inserted is True
        assert results[1].inserted is False
        assert results[1].balance_cents == 2000
        assert count == 1

    def test_out_of_order_activities_converge(self, harness):
        async def scenario(h):
            org_id = await h.organization()
            await append_all(h, org_id, [
                activity("A3", "REDEEM", 700, created_at="2024-01-07T12:00:00Z"),
                activity("A1", "ACTIVATE", 1000, created_at="2024-01-05T12:00:00Z"),
                activity("A2", "LOAD", 300, created_at="2024-01-06T12:00:00Z"),
            ])
            return await card(h)

        assert harness.run(scenario).current_balance_cents == 600

    def test_activity_before_card_creates_stub(self, harness):
        async def scenario(h):
            org_id = await h.organization()
            await append_all(h, org_id, [activity("A1", "ACTIVATE", 2500)])
            stub = await card(h)
            await h.persist(org_id, "gift_card", gift_card_obj(balance=9999))
            return stub, await card(h)

        stub, full = harness.run(scenario)
        assert stub.state is None
        assert stub.gan == "7783320000000001"
        assert stub.current_balance_cents == 2500
        assert full.id == stub.id
        assert full.state == "ACTIVE"
        # The upstream-reported balance never replaces the ledger balance
        assert full.current_balance_cents == 2500
        assert full.reported_balance_cents == 9999

    def test_non_monetary_activity_is_not_recorded(self, harness):
        async def scenario(h):
            org_id = await h.organization()
            results = await append_all(h, org_id, [
                activity("A1", "ACTIVATE", 1000),
                activity("A2", "BLOCK", 0),
            ])
            async with h.session() as db:
                count = (await db.execute(select(func.count(GiftCardTransaction.id)))).scalar_one()
            return results, count

        results, count = harness.run(scenario)
        assert results[1].inserted is False
        assert results[1].balance_cents == 1000
        assert count == 1

    def test_reported_balance_from_activity(self, harness):
        async def scenario(h):
            org_id = await h.organization()
            await append_all(h, org_id, [activity("A1", "LOAD", 1000, balance=1000)])
            return await card(h)

        assert harness.run(scenario).reported_balance_cents == 1000


class TestLedgerSyncAndAudit:
    """Tests for full-history replay and drift audit"""

    def test_sync_card_replays_history(self, harness):
        async def scenario(h):
            org_id = await h.organization()
            card_record = normalizer.normalize_entity("gift_card", gift_card_obj(balance=4000))
            history = [activity("A1", "ACTIVATE", 5000), activity("A2", "REDEEM", 1000)]
            async with h.session() as db:
                result = await GiftCardLedger(db).sync_card(org_id, card_record, history)
                await db.commit()
            async with h.session() as db:
                again = await GiftCardLedger(db).sync_card(org_id, card_record, history)
                await db.commit()
            return result, again

        result, again = harness.run(scenario)
        assert result.balance_cents == 4000
        assert result.inserted is True
        assert again.inserted is False
        assert again.balance_cents == 4000

    def test_audit_reports_drift(self, harness):
        async def scenario(h):
            org_id = await h.organization()
            await h.persist(org_id, "gift_card", gift_card_obj("GC1", balance=1000))
            await h.persist(org_id, "gift_card", gift_card_obj("GC2", gan="7783320000000002", balance=800))
            await append_all(h, org_id, [
                activity("A1", "ACTIVATE", 1000, gift_card_id="GC1"),
                activity("A2", "ACTIVATE", 500, gift_card_id="GC2"),
            ])
            async with h.session() as db:
                return await GiftCardLedger(db).audit_balances(org_id)

        drifts = harness.run(scenario)
        assert [d.external_id for d in drifts] == ["GC2"]
        assert drifts[0].computed_cents == 500
        assert drifts[0].reported_cents == 800
