"""
Tests for the ingestion pipeline

Tests cover:
- Payment arriving before its order (link job drained later)
- Concurrent duplicate deliveries of the same event
- Arrival-order independence of the final linked state
- Ignored, rejected, dropped and duplicate deliveries
- Metadata-only orders and upstream failures turning into jobs
- Gift card activities for cards not yet synced
- Follow-up failures turning into jobs instead of failed deliveries
- Metadata-only bookings fetched inline or deferred
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from sqlalchemy import func, select, update

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from eventsync.errors import StorageConstraintViolation, UpstreamRateLimited, UpstreamTimeout
from eventsync.models import (
    Booking,
    BookingSegment,
    GiftCard,
    Location,
    Order,
    OrderLineItem,
    Payment,
    RetryJob,
    WebhookEventLog,
)
from eventsync.services.job_runner import JobRunner
from eventsync.services.upstream_client import UpstreamClient
from eventsync.services.webhook_processor import IngestionPipeline
from eventsync.utils.dates import utcnow

from payloads import (
    activity_obj,
    booking_metadata,
    booking_obj,
    envelope,
    gift_card_obj,
    order_metadata,
    order_obj,
    payment_obj,
    team_member_obj,
)


async def count(h, model, *criteria):
    async with h.session() as db:
        stmt = select(func.count(model.id))
        for criterion in criteria:
            stmt = stmt.where(criterion)
        return (await db.execute(stmt)).scalar_one()


async def first(h, model, *criteria):
    async with h.session() as db:
        stmt = select(model)
        for criterion in criteria:
            stmt = stmt.where(criterion)
        return (await db.execute(stmt)).scalars().first()


def runner_for(h, pipeline):
    return JobRunner(h.session_factory, h.settings, pipeline, owner="test-runner")


class TestPaymentBeforeOrder:
    """A payment referencing an order that has not arrived yet"""

    def test_drained_job_links_payment_to_order(self, harness):
        async def scenario(h):
            org_id = await h.organization()
            pipeline = IngestionPipeline(h.session_factory, h.settings)

            result = await pipeline.process(envelope("payment.created", "payment", payment_obj()))
            before = await first(h, Payment, Payment.external_id == "P1")

            # Order lands without running its own follow-ups
            order_id = await h.persist(org_id, "order", order_obj())
            summary = await runner_for(h, pipeline).drain()

            after = await first(h, Payment, Payment.external_id == "P1")
            return result, before, order_id, summary, after

        result, before, order_id, summary, after = harness.run(scenario)
        assert result.action == "persisted"
        assert result.jobs == ["link-payment-P1"]
        assert before.order_id is None
        assert before.external_order_id == "O1"
        assert summary.claimed == 1
        assert after.order_id == order_id

    def test_full_sequence_completes_link_job(self, harness):
        async def scenario(h):
            await h.organization()
            pipeline = IngestionPipeline(h.session_factory, h.settings)
            await pipeline.process(envelope("team_member.created", "team_member", team_member_obj()))
            await pipeline.process(envelope("booking.created", "booking", booking_obj()))
            payment_result = await pipeline.process(envelope("payment.created", "payment", payment_obj()))
            order_result = await pipeline.process(envelope("order.updated", "order_updated", order_obj()))
            summary = await runner_for(h, pipeline).drain()
            job = await first(h, RetryJob, RetryJob.correlation_id == "link-payment-P1")
            payment = await first(h, Payment, Payment.external_id == "P1")
            order = await first(h, Order, Order.external_id == "O1")
            return payment_result, order_result, summary, job, payment, order

        payment_result, order_result, summary, job, payment, order = harness.run(scenario)
        assert payment_result.jobs == ["link-payment-P1"]
        assert order_result.jobs == []
        assert summary.succeeded == 1
        assert job.status == "succeeded"
        assert job.outcome == "completed"
        assert payment.order_id == order.id
        assert payment.booking_id is not None
        assert payment.booking_id == order.booking_id


class TestDuplicateDeliveries:
    """Redelivery of the same event"""

    def test_concurrent_duplicates_make_one_booking(self, harness):
        async def scenario(h):
            await h.organization()
            pipeline = IngestionPipeline(h.session_factory, h.settings)
            env = envelope("booking.updated", "booking", booking_obj(), event_id="evt-dup")
            results = await asyncio.gather(pipeline.process(env), pipeline.process(env))
            return (
                results,
                await count(h, Booking),
                await count(h, BookingSegment),
                await count(h, WebhookEventLog),
            )

        results, bookings, segments, logs = harness.run(scenario)
        assert {r.action for r in results} <= {"persisted", "duplicate"}
        assert bookings == 1
        assert segments == 1
        assert logs == 1

    def test_sequential_redelivery_is_duplicate(self, harness):
        async def scenario(h):
            await h.organization()
            pipeline = IngestionPipeline(h.session_factory, h.settings)
            env = envelope("booking.created", "booking", booking_obj(), event_id="evt-1")
            return await pipeline.process(env), await pipeline.process(env)

        first_result, second_result = harness.run(scenario)
        assert first_result.action == "persisted"
        assert second_result.action == "duplicate"


class TestArrivalOrder:
    """The final linked state does not depend on delivery order"""

    def test_forward_and_reverse_converge(self, harness):
        async def deliver(h, pipeline, merchant, customer_id, sequence):
            events = {
                "booking": envelope("booking.created", "booking",
                                    booking_obj(customer_id=customer_id), merchant_id=merchant),
                "order": envelope("order.updated", "order_updated",
                                  order_obj(customer_id=customer_id), merchant_id=merchant),
                "payment": envelope("payment.created", "payment",
                                    payment_obj(customer_id=customer_id), merchant_id=merchant),
            }
            await pipeline.process(envelope("team_member.created", "team_member",
                                            team_member_obj(), merchant_id=merchant))
            for name in sequence:
                await pipeline.process(events[name])

        async def outcome(h, org_id):
            payment = await first(h, Payment, Payment.organization_id == org_id)
            item = await first(h, OrderLineItem, OrderLineItem.organization_id == org_id)
            return (
                payment.order_id is not None,
                payment.booking_id is not None,
                payment.link_confidence,
                item.technician_id is not None,
                item.technician_confidence,
            )

        async def scenario(h):
            forward_org = await h.organization("M-FORWARD")
            reverse_org = await h.organization("M-REVERSE")
            pipeline = IngestionPipeline(h.session_factory, h.settings)
            await deliver(h, pipeline, "M-FORWARD", "C-FWD", ("booking", "order", "payment"))
            await deliver(h, pipeline, "M-REVERSE", "C-REV", ("payment", "order", "booking"))
            await runner_for(h, pipeline).drain()
            open_jobs = await count(h, RetryJob, RetryJob.status != "succeeded")
            return await outcome(h, forward_org), await outcome(h, reverse_org), open_jobs

        forward, reverse, open_jobs = harness.run(scenario)
        assert forward == reverse
        assert forward == (True, True, "service_window", True, "service_window")
        assert open_jobs == 0


class TestDeliveryOutcomes:
    """Ignored, rejected and dropped deliveries"""

    def test_unrecognized_event_is_ignored(self, harness):
        async def scenario(h):
            await h.organization()
            pipeline = IngestionPipeline(h.session_factory, h.settings)
            result = await pipeline.process(envelope("invoice.created", "invoice", {"id": "I1"}, event_id="evt-inv"))
            log = await first(h, WebhookEventLog, WebhookEventLog.event_id == "evt-inv")
            return result, log

        result, log = harness.run(scenario)
        assert result.action == "ignored"
        assert log.status == "ignored"

    def test_malformed_event_is_rejected(self, harness):
        async def scenario(h):
            await h.organization()
            pipeline = IngestionPipeline(h.session_factory, h.settings)
            obj = payment_obj()
            del obj["id"]
            env = envelope("payment.created", "payment", obj, event_id="evt-bad")
            env["data"].pop("id")
            result = await pipeline.process(env)
            log = await first(h, WebhookEventLog, WebhookEventLog.event_id == "evt-bad")
            return result, log, await count(h, Payment)

        result, log, payments = harness.run(scenario)
        assert result.action == "rejected"
        assert "payment" in result.message
        assert log.status == "rejected"
        assert payments == 0

    def test_unresolvable_tenant_is_dropped_without_writes(self, harness):
        async def scenario(h):
            await h.organization("MERCHANT1")
            await h.organization("MERCHANT2")
            pipeline = IngestionPipeline(h.session_factory, h.settings)
            env = envelope("payment.created", "payment", payment_obj(), merchant_id="STRANGER", event_id="evt-x")
            result = await pipeline.process(env)
            log = await first(h, WebhookEventLog, WebhookEventLog.event_id == "evt-x")
            return result, log, await count(h, Payment), await count(h, Location)

        result, log, payments, locations = harness.run(scenario)
        assert result.action == "dropped"
        assert log.status == "dropped"
        assert payments == 0
        assert locations == 0

    def test_processed_event_is_logged(self, harness):
        async def scenario(h):
            org_id = await h.organization()
            pipeline = IngestionPipeline(h.session_factory, h.settings)
            env = envelope("booking.created", "booking", booking_obj(), event_id="evt-ok")
            result = await pipeline.process(env, payload_hash="abc123")
            log = await first(h, WebhookEventLog, WebhookEventLog.event_id == "evt-ok")
            return org_id, result, log

        org_id, result, log = harness.run(scenario)
        assert log.status == "processed"
        assert log.result_action == "persisted"
        assert log.organization_id == org_id
        assert log.entity_id == result.entity_id
        assert log.payload_hash == "abc123"


class TestUpstreamFollowUps:
    """Metadata-only orders and gift cards that need the upstream API"""

    def test_upstream_timeout_becomes_fetch_job(self, harness):
        async def scenario(h):
            await h.organization()
            upstream = MagicMock()
            upstream.get_order = AsyncMock(side_effect=UpstreamTimeout("/v2/orders/O1: timed out"))
            pipeline = IngestionPipeline(h.session_factory, h.settings, upstream)

            result = await pipeline.process(envelope("order.created", "order_created", order_metadata()))
            order = await first(h, Order, Order.external_id == "O1")
            items_before = await count(h, OrderLineItem)

            # Upstream recovers before the next drain
            upstream.get_order = AsyncMock(return_value=order_obj())
            await runner_for(h, pipeline).drain()
            fetch_job = await first(h, RetryJob, RetryJob.correlation_id == "fetch-order-O1")
            return result, order, items_before, fetch_job, await count(h, OrderLineItem)

        result, order, items_before, fetch_job, items_after = harness.run(scenario)
        assert result.action == "persisted"
        assert "fetch-order-O1" in result.jobs
        assert order.raw_payload is None
        assert items_before == 0
        assert fetch_job.status == "succeeded"
        assert items_after == 1

    def test_metadata_only_order_fetched_inline(self, harness):
        async def scenario(h):
            await h.organization()
            upstream = MagicMock()
            upstream.get_order = AsyncMock(return_value=order_obj())
            pipeline = IngestionPipeline(h.session_factory, h.settings, upstream)
            result = await pipeline.process(envelope("order.created", "order_created", order_metadata()))
            order = await first(h, Order, Order.external_id == "O1")
            return result, order, await count(h, OrderLineItem), upstream

        result, order, items, upstream = harness.run(scenario)
        upstream.get_order.assert_awaited_once_with("O1")
        assert "fetch-order-O1" not in result.jobs
        assert order.raw_payload is not None
        assert order.total_money_cents == 5000
        assert items == 1

    def test_metadata_only_order_without_upstream(self, harness):
        async def scenario(h):
            await h.organization()
            pipeline = IngestionPipeline(h.session_factory, h.settings)
            return await pipeline.process(envelope("order.created", "order_created", order_metadata()))

        result = harness.run(scenario)
        assert result.action == "persisted"
        assert "fetch-order-O1" not in result.jobs

    def test_activity_for_unknown_card_schedules_sync(self, harness):
        async def scenario(h):
            await h.organization()
            upstream = MagicMock()
            upstream.get_gift_card = AsyncMock(return_value=gift_card_obj(balance=2000))
            upstream.list_gift_card_activities = AsyncMock(return_value=[activity_obj("A1", "ACTIVATE", 2000)])
            pipeline = IngestionPipeline(h.session_factory, h.settings, upstream)

            result = await pipeline.process(envelope(
                "gift_card.activity.created", "gift_card_activity", activity_obj("A1", "ACTIVATE", 2000)
            ))
            await runner_for(h, pipeline).drain()
            card = await first(h, GiftCard, GiftCard.external_id == "GC1")
            return result, card

        result, card = harness.run(scenario)
        assert result.jobs == ["sync-gift-card-GC1"]
        assert card.state == "ACTIVE"
        assert card.current_balance_cents == 2000
        assert card.reported_balance_cents == 2000

    def test_storage_violation_is_logged_and_raised(self, harness):
        async def scenario(h):
            await h.organization()
            pipeline = IngestionPipeline(h.session_factory, h.settings)
            pipeline.persist_record = AsyncMock(side_effect=StorageConstraintViolation("orders: boom"))
            env = envelope("order.updated", "order_updated", order_obj(), event_id="evt-fail")
            with pytest.raises(StorageConstraintViolation):
                await pipeline.process(env)
            return await first(h, WebhookEventLog, WebhookEventLog.event_id == "evt-fail")

        log = harness.run(scenario)
        assert log.status == "failed"
        assert "boom" in log.error_message


class TestFollowUpIsolation:
    """Follow-up failures never undo or hide a persisted delivery"""

    def test_rejected_credentials_defer_the_fetch(self, harness):
        async def scenario(h):
            await h.organization()
            transport = httpx.MockTransport(lambda request: httpx.Response(
                401, json={"errors": [{"code": "UNAUTHORIZED", "detail": "bad token"}]}
            ))
            async with UpstreamClient(
                h.settings, access_token="test-token", base_url="https://upstream.test", transport=transport
            ) as upstream:
                pipeline = IngestionPipeline(h.session_factory, h.settings, upstream)
                result = await pipeline.process(
                    envelope("order.created", "order_created", order_metadata(), event_id="evt-401")
                )
            log = await first(h, WebhookEventLog, WebhookEventLog.event_id == "evt-401")
            order = await first(h, Order, Order.external_id == "O1")
            fetch_job = await first(h, RetryJob, RetryJob.correlation_id == "fetch-order-O1")
            return result, log, order, fetch_job

        result, log, order, fetch_job = harness.run(scenario)
        assert result.action == "persisted"
        assert "fetch-order-O1" in result.jobs
        assert log.status == "processed"
        assert order is not None
        assert fetch_job.status == "queued"

    def test_failed_inline_apply_becomes_fetch_job(self, harness):
        async def scenario(h):
            await h.organization()
            upstream = MagicMock()
            upstream.get_order = AsyncMock(return_value=order_obj())
            pipeline = IngestionPipeline(h.session_factory, h.settings, upstream)
            pipeline.apply_record = AsyncMock(side_effect=StorageConstraintViolation("order_line_items: boom"))
            result = await pipeline.process(
                envelope("order.created", "order_created", order_metadata(), event_id="evt-apply")
            )
            log = await first(h, WebhookEventLog, WebhookEventLog.event_id == "evt-apply")
            return result, log

        result, log = harness.run(scenario)
        assert result.action == "persisted"
        assert result.jobs == ["fetch-order-O1"]
        assert log.status == "processed"

    def test_failed_booking_follow_up_refetches_booking(self, harness):
        async def scenario(h):
            await h.organization()
            upstream = MagicMock()
            upstream.get_booking = AsyncMock(return_value=booking_obj())
            pipeline = IngestionPipeline(h.session_factory, h.settings, upstream)
            pipeline._link_waiting_payments = AsyncMock(side_effect=RuntimeError("lock wait timeout"))
            result = await pipeline.process(envelope("booking.created", "booking", booking_obj()))
            return result, await count(h, Booking)

        result, bookings = harness.run(scenario)
        assert result.action == "persisted"
        assert result.jobs == ["fetch-booking-B1"]
        assert bookings == 1

    def test_failed_link_without_upstream_still_acknowledged(self, harness):
        async def scenario(h):
            await h.organization()
            pipeline = IngestionPipeline(h.session_factory, h.settings)
            pipeline._link = AsyncMock(side_effect=RuntimeError("connection reset"))
            result = await pipeline.process(envelope("payment.created", "payment", payment_obj()))
            return result, await count(h, Payment)

        result, payments = harness.run(scenario)
        assert result.action == "persisted"
        assert result.jobs == ["link-payment-P1"]
        assert payments == 1


class TestIncompleteBookings:
    """Booking notifications that arrive without the appointment"""

    def test_metadata_only_booking_fetched_inline(self, harness):
        async def scenario(h):
            await h.organization()
            upstream = MagicMock()
            upstream.get_booking = AsyncMock(return_value=booking_obj(version=2))
            pipeline = IngestionPipeline(h.session_factory, h.settings, upstream)
            result = await pipeline.process(envelope("booking.updated", "booking", booking_metadata()))
            booking = await first(h, Booking, Booking.external_id == "B1")
            return result, booking, await count(h, BookingSegment), upstream

        result, booking, segments, upstream = harness.run(scenario)
        upstream.get_booking.assert_awaited_once_with("B1")
        assert result.jobs == []
        assert booking.start_at is not None
        assert booking.raw_payload is not None
        assert segments == 1

    def test_rate_limited_booking_fetch_becomes_job(self, harness):
        async def scenario(h):
            await h.organization()
            upstream = MagicMock()
            upstream.get_booking = AsyncMock(
                side_effect=UpstreamRateLimited("/v2/bookings/B1: slow down", retry_after=30)
            )
            pipeline = IngestionPipeline(h.session_factory, h.settings, upstream)
            result = await pipeline.process(envelope("booking.updated", "booking", booking_metadata()))
            stub = await first(h, Booking, Booking.external_id == "B1")

            upstream.get_booking = AsyncMock(return_value=booking_obj(version=2))
            async with h.session() as db:
                await db.execute(update(RetryJob).values(scheduled_at=utcnow() - timedelta(seconds=1)))
                await db.commit()
            await runner_for(h, pipeline).drain()
            fetch_job = await first(h, RetryJob, RetryJob.correlation_id == "fetch-booking-B1")
            booking = await first(h, Booking, Booking.external_id == "B1")
            return result, stub, fetch_job, booking

        result, stub, fetch_job, booking = harness.run(scenario)
        assert result.jobs == ["fetch-booking-B1"]
        assert stub.start_at is None
        assert stub.raw_payload is None
        assert fetch_job.status == "succeeded"
        assert booking.start_at is not None
