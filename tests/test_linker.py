"""
Tests for the deferred linker

Tests cover:
- Payment -> order -> booking -> staff linking
- Booking strategy chain (exact, service window, customer window)
- Write-once links
- Late arrivals (payments waiting for their order or booking)
- Gaps that keep a link job alive
"""

import pytest
from unittest.mock import MagicMock
from sqlalchemy import select

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from eventsync.errors import DependencyNotYetAvailable
from eventsync.models import Order, OrderLineItem, Payment, StaffMember
from eventsync.services.deferred_linker import DeferredLinker

from payloads import booking_obj, line_item, order_obj, payment_obj, segment, team_member_obj


async def seed_staff(h, org_id):
    await h.persist(org_id, "staff_member", team_member_obj("TM1", "Maria"))
    await h.persist(org_id, "staff_member", team_member_obj("TM2", "Jordan"))


async def staff_id(h, external_id):
    async with h.session() as db:
        return (await db.execute(
            select(StaffMember.id).where(StaffMember.external_id == external_id)
        )).scalar_one()


async def rows(h, external_payment_id="P1", external_order_id="O1"):
    async with h.session() as db:
        payment = (await db.execute(
            select(Payment).where(Payment.external_id == external_payment_id)
        )).scalars().first()
        order = (await db.execute(
            select(Order).where(Order.external_id == external_order_id)
        )).scalars().first()
        items = []
        if order is not None:
            items = list((await db.execute(
                select(OrderLineItem).where(OrderLineItem.order_id == order.id)
            )).scalars().all())
    return payment, order, items


async def link_payment(h, org_id, exhausted=False, external_id="P1"):
    async with h.session() as db:
        try:
            return await DeferredLinker(db, h.settings).link_payment(org_id, external_id, exhausted=exhausted)
        finally:
            await db.commit()


class TestPaymentLinking:
    """Tests for DeferredLinker.link_payment"""

    def test_links_booking_and_staff(self, harness):
        async def scenario(h):
            org_id = await h.organization()
            await seed_staff(h, org_id)
            booking_id = await h.persist(org_id, "booking", booking_obj())
            await h.persist(org_id, "order", order_obj())
            await h.persist(org_id, "payment", payment_obj(team_member_id="TM2"))

            result = await link_payment(h, org_id)
            return (result, booking_id, await staff_id(h, "TM1"), await staff_id(h, "TM2"), await rows(h))

        result, booking_id, technician, administrator, (payment, order, items) = harness.run(scenario)

        assert result.complete
        assert result.booking_id == booking_id
        assert result.confidence == "service_window"
        assert result.technicians_linked == 1
        assert result.administrators_linked == 1

        assert payment.order_id == order.id
        assert payment.booking_id == booking_id
        assert payment.link_confidence == "service_window"
        assert payment.technician_id == technician
        assert payment.administrator_id == administrator
        assert order.booking_id == booking_id
        assert order.booking_confidence == "service_window"
        assert items[0].booking_id == booking_id
        assert items[0].technician_id == technician
        assert items[0].technician_confidence == "service_window"
        assert items[0].administrator_id == administrator

    def test_missing_order_is_terminal_on_exhaustion(self, harness):
        async def scenario(h):
            org_id = await h.organization()
            await h.persist(org_id, "payment", payment_obj())
            await link_payment(h, org_id)

        with pytest.raises(DependencyNotYetAvailable) as exc_info:
            harness.run(scenario)
        assert exc_info.value.terminal_on_exhaustion is True

    def test_unknown_payment(self, harness):
        async def scenario(h):
            org_id = await h.organization()
            await link_payment(h, org_id, external_id="P-NOPE")

        with pytest.raises(DependencyNotYetAvailable):
            harness.run(scenario)

    def test_nearest_booking_wins(self, harness):
        async def scenario(h):
            org_id = await h.organization()
            await seed_staff(h, org_id)
            await h.persist(org_id, "booking", booking_obj("B-FAR", start_at="2024-02-27T14:00:00Z"))
            near_id = await h.persist(org_id, "booking", booking_obj("B-NEAR", start_at="2024-03-01T13:00:00Z"))
            await h.persist(org_id, "order", order_obj())
            await h.persist(org_id, "payment", payment_obj())
            result = await link_payment(h, org_id)
            return near_id, result

        near_id, result = harness.run(scenario)
        assert result.booking_id == near_id

    def test_cancelled_bookings_are_skipped(self, harness):
        async def scenario(h):
            org_id = await h.organization()
            await seed_staff(h, org_id)
            await h.persist(org_id, "booking", booking_obj(status="CANCELLED_BY_CUSTOMER"))
            await h.persist(org_id, "order", order_obj())
            await h.persist(org_id, "payment", payment_obj())
            try:
                await link_payment(h, org_id)
            except DependencyNotYetAvailable as e:
                return e, await rows(h)
            return None, await rows(h)

        error, (payment, order, items) = harness.run(scenario)
        assert error is not None
        assert "no booking match" in error.message
        assert payment.order_id == order.id
        assert payment.booking_id is None

    def test_bookings_outside_window_are_skipped(self, harness):
        async def scenario(h):
            org_id = await h.organization()
            await seed_staff(h, org_id)
            await h.persist(org_id, "booking", booking_obj(start_at="2024-02-01T14:00:00Z"))
            await h.persist(org_id, "order", order_obj())
            await h.persist(org_id, "payment", payment_obj())
            await link_payment(h, org_id, exhausted=True)

        with pytest.raises(DependencyNotYetAvailable):
            harness.run(scenario)

    def test_customer_window_only_on_final_attempt(self, harness):
        async def scenario(h):
            org_id = await h.organization()
            await seed_staff(h, org_id)
            booking_id = await h.persist(org_id, "booking", booking_obj(segments=[segment("SV-OTHER")]))
            await h.persist(org_id, "order", order_obj())
            await h.persist(org_id, "payment", payment_obj())
            try:
                await link_payment(h, org_id)
                early = None
            except DependencyNotYetAvailable as e:
                early = e
            result = await link_payment(h, org_id, exhausted=True)
            return early, booking_id, result

        early, booking_id, result = harness.run(scenario)
        assert early is not None
        assert result.booking_id == booking_id
        assert result.confidence == "customer_window"

    def test_order_without_line_items_waits_for_services(self, harness):
        async def scenario(h):
            org_id = await h.organization()
            await seed_staff(h, org_id)
            await h.persist(org_id, "booking", booking_obj(
                "B-NEAR", start_at="2024-03-01T14:00:00Z", segments=[segment("SV-OTHER")]
            ))
            service_id = await h.persist(org_id, "booking", booking_obj("B-SVC", start_at="2024-02-28T15:00:00Z"))
            await h.persist(org_id, "order", order_obj(line_items=[]))
            await h.persist(org_id, "payment", payment_obj())
            with pytest.raises(DependencyNotYetAvailable):
                await link_payment(h, org_id)
            early = await rows(h)

            # The full order arrives with its service line item
            await h.persist(org_id, "order", order_obj(version=2))
            result = await link_payment(h, org_id)
            return service_id, early, result, await rows(h)

        service_id, (early_payment, _, _), result, (payment, order, items) = harness.run(scenario)
        assert early_payment.booking_id is None
        assert result.booking_id == service_id
        assert result.confidence == "service_window"
        assert payment.booking_id == service_id
        assert order.booking_id == service_id
        assert items[0].booking_id == service_id

    def test_payment_without_order_uses_customer_window(self, harness):
        async def scenario(h):
            org_id = await h.organization()
            await seed_staff(h, org_id)
            booking_id = await h.persist(org_id, "booking", booking_obj())
            await h.persist(org_id, "payment", payment_obj(order_id=None))
            return booking_id, await link_payment(h, org_id)

        booking_id, result = harness.run(scenario)
        assert result.booking_id == booking_id
        assert result.confidence == "customer_window"

    def test_existing_link_is_never_replaced(self, harness):
        async def scenario(h):
            org_id = await h.organization()
            await seed_staff(h, org_id)
            first_id = await h.persist(org_id, "booking", booking_obj())
            await h.persist(org_id, "order", order_obj())
            await h.persist(org_id, "payment", payment_obj())
            await link_payment(h, org_id)
            # A closer booking arriving later does not move the link
            await h.persist(org_id, "booking", booking_obj("B-CLOSER", start_at="2024-03-01T15:00:00Z"))
            result = await link_payment(h, org_id)
            return first_id, result, await rows(h)

        first_id, result, (payment, order, items) = harness.run(scenario)
        assert result.booking_id == first_id
        assert payment.booking_id == first_id
        assert order.booking_id == first_id

    def test_unsynced_technician_is_a_gap(self, harness):
        async def scenario(h):
            org_id = await h.organization()
            booking_id = await h.persist(org_id, "booking", booking_obj(segments=[segment(team_member_id="TM9")]))
            await h.persist(org_id, "order", order_obj())
            await h.persist(org_id, "payment", payment_obj())
            try:
                await link_payment(h, org_id)
            except DependencyNotYetAvailable as e:
                return e, booking_id, await rows(h)
            return None, booking_id, await rows(h)

        error, booking_id, (payment, order, items) = harness.run(scenario)
        assert error is not None
        assert "TM9" in error.message
        # The booking link is kept even though the job stays open
        assert payment.booking_id == booking_id
        assert items[0].technician_id is None

    def test_name_heuristic_on_final_attempt(self, harness):
        async def scenario(h):
            org_id = await h.organization()
            await seed_staff(h, org_id)
            order = order_obj(line_items=[line_item(name="Pedicure with Maria")])
            await h.persist(org_id, "order", order)
            await h.persist(org_id, "payment", payment_obj())
            with pytest.raises(DependencyNotYetAvailable):
                await link_payment(h, org_id, exhausted=True)
            return await staff_id(h, "TM1"), await rows(h)

        maria, (payment, order, items) = harness.run(scenario)
        assert items[0].technician_id == maria
        assert items[0].technician_confidence == "name_heuristic"
        assert payment.booking_id is None


class TestLateArrivals:
    """Tests for entities arriving after the ones that reference them"""

    def test_order_attaches_waiting_payments(self, harness):
        async def scenario(h):
            org_id = await h.organization()
            await seed_staff(h, org_id)
            await h.persist(org_id, "booking", booking_obj())
            await h.persist(org_id, "payment", payment_obj())
            await h.persist(org_id, "order", order_obj())
            async with h.session() as db:
                result = await DeferredLinker(db, h.settings).link_order(org_id, "O1")
                await db.commit()
            return result, await rows(h)

        result, (payment, order, items) = harness.run(scenario)
        assert result.complete
        assert payment.order_id == order.id
        assert payment.booking_id == order.booking_id
        assert items[0].technician_id is not None

    def test_order_without_payments_links_its_booking(self, harness):
        async def scenario(h):
            org_id = await h.organization()
            await seed_staff(h, org_id)
            booking_id = await h.persist(org_id, "booking", booking_obj())
            await h.persist(org_id, "order", order_obj())
            async with h.session() as db:
                result = await DeferredLinker(db, h.settings).link_order(org_id, "O1")
                await db.commit()
            return booking_id, result

        booking_id, result = harness.run(scenario)
        assert result.booking_id == booking_id
        assert result.payment_id is None

    def test_booking_completes_waiting_payments(self, harness):
        async def scenario(h):
            org_id = await h.organization()
            await seed_staff(h, org_id)
            await h.persist(org_id, "order", order_obj())
            await h.persist(org_id, "payment", payment_obj())
            booking_id = await h.persist(org_id, "booking", booking_obj())
            async with h.session() as db:
                linked = await DeferredLinker(db, h.settings).link_payments_for_booking(org_id, booking_id)
                await db.commit()
            return booking_id, linked, await rows(h)

        booking_id, linked, (payment, order, items) = harness.run(scenario)
        assert linked == 1
        assert payment.booking_id == booking_id


class TestPrimaryTeamMember:
    """Tests for choosing the technician of a multi-segment booking"""

    def _segment(self, team_member, duration, position, any_team_member=False):
        return MagicMock(
            external_team_member_id=team_member,
            duration_minutes=duration,
            position=position,
            any_team_member=any_team_member,
        )

    def test_longest_explicit_segment(self):
        segments = [
            self._segment("TM1", 30, 0),
            self._segment("TM2", 90, 1),
            self._segment("TM3", 120, 2, any_team_member=True),
        ]
        assert DeferredLinker._primary_team_member(segments) == "TM2"

    def test_falls_back_to_any_team_member(self):
        segments = [self._segment("TM3", 45, 0, any_team_member=True)]
        assert DeferredLinker._primary_team_member(segments) == "TM3"

    def test_no_team_member(self):
        assert DeferredLinker._primary_team_member([self._segment(None, 60, 0)]) is None
