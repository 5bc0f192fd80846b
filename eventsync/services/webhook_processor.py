"""
Ingestion Pipeline

Webhook path:
1. Normalize the envelope (unknown types are ignored, malformed ones rejected)
2. Resolve the tenant (unresolvable events are dropped, nothing is written)
3. Persist the entity and its stub references in one transaction
4. Best-effort follow-ups in their own transactions: inline fetch of
   metadata-only orders, deferred linking, gift card sync
5. Anything a follow-up cannot finish now becomes a RetryJob

Step 3 is the durability point: once it commits the delivery is acknowledged,
whatever happens in step 4.

Backfill and the job runner enter at ``apply_record`` / ``fetch_and_apply``
so bulk and incremental ingestion share one code path.
"""

import hashlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings, settings as default_settings
from ..errors import (
    DependencyNotYetAvailable,
    MalformedPayload,
    OrganizationUnresolved,
    StorageConstraintViolation,
    UpstreamError,
    UpstreamNotFound,
    UpstreamUnavailable,
)
from ..models import GiftCard, JobStage, WebhookEventLog, WebhookEventStatus
from ..schemas.canonical import (
    CanonicalBooking,
    CanonicalGiftCard,
    CanonicalGiftCardActivity,
    CanonicalOrder,
    CanonicalPayment,
)
from ..utils.dates import utcnow
from ..utils.db_helpers import dialect_name
from ..utils.logging_config import get_logger, set_event_context
from ..utils.upsert import get_upsert_strategy
from .deferred_linker import DeferredLinker
from .entity_resolver import EntityResolver
from .gift_card_ledger import GiftCardLedger
from .normalizer import CanonicalRecord, NormalizedEvent, PayloadNormalizer, lookup
from .persistence import EntityStore
from .retry_queue import RetryQueue
from .upstream_client import UpstreamClient

logger = get_logger(__name__)

FETCH_STAGES = {
    "order": (JobStage.FETCH_ORDER, "external_order_id"),
    "booking": (JobStage.FETCH_BOOKING, "external_booking_id"),
}


def compute_payload_hash(body: bytes) -> str:
    """SHA256 of the raw request body."""
    return hashlib.sha256(body).hexdigest()


@dataclass
class IngestResult:
    """What the pipeline did with one delivery."""
    action: str  # persisted, ignored, dropped, rejected, duplicate
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    organization_id: Optional[str] = None
    message: str = ""
    jobs: List[str] = field(default_factory=list)


class IngestionPipeline:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        settings: Optional[Settings] = None,
        upstream: Optional[UpstreamClient] = None,
        normalizer: Optional[PayloadNormalizer] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or default_settings
        self.upstream = upstream
        self.normalizer = normalizer or PayloadNormalizer()

    # ------------------------------------------------------------------
    # Webhook entry point
    # ------------------------------------------------------------------

    async def process(self, envelope: Dict[str, Any], payload_hash: Optional[str] = None) -> IngestResult:
        """
        Process one verified webhook delivery.

        Never raises for ignored, dropped or rejected events; the caller maps
        the returned action onto an HTTP status. StorageConstraintViolation
        propagates.
        """
        raw_event_id = lookup(envelope, "event_id", "id") if isinstance(envelope, dict) else None
        raw_event_type = lookup(envelope, "type", "event_type") if isinstance(envelope, dict) else None
        set_event_context(str(raw_event_id) if raw_event_id else None)

        try:
            event = self.normalizer.normalize(envelope)
        except MalformedPayload as e:
            logger.warning(f"Rejected payload: {e.message}")
            await self._record_event(
                raw_event_id, raw_event_type, None, None, payload_hash,
                WebhookEventStatus.REJECTED, error=e.message,
            )
            return IngestResult("rejected", event_id=raw_event_id, event_type=raw_event_type, message=e.message)

        if event is None:
            await self._record_event(
                raw_event_id, raw_event_type, None, None, payload_hash, WebhookEventStatus.IGNORED,
            )
            return IngestResult("ignored", event_id=raw_event_id, event_type=raw_event_type,
                                message="unrecognized event type")

        if await self._already_processed(event.event_id):
            logger.info(f"Duplicate delivery of {event.event_type} {event.event_id}")
            return IngestResult("duplicate", event_id=event.event_id, event_type=event.event_type,
                                entity_type=event.entity_type)

        try:
            result = await self.apply(event)
        except OrganizationUnresolved as e:
            logger.warning(f"Dropped event: {e.message}")
            await self._record_event(
                event.event_id, event.event_type, event.merchant_id, None, payload_hash,
                WebhookEventStatus.DROPPED, error=e.message,
            )
            return IngestResult("dropped", event_id=event.event_id, event_type=event.event_type,
                                entity_type=event.entity_type, message=e.message)
        except StorageConstraintViolation as e:
            await self._record_event(
                event.event_id, event.event_type, event.merchant_id, None, payload_hash,
                WebhookEventStatus.FAILED, error=e.message,
            )
            raise

        await self._record_event(
            event.event_id, event.event_type, event.merchant_id, result.organization_id, payload_hash,
            WebhookEventStatus.PROCESSED, action=result.action, entity_id=result.entity_id,
        )
        return result

    async def apply(self, event: NormalizedEvent) -> IngestResult:
        """Resolve the tenant, persist, then run follow-ups."""
        async with self.session_factory() as db:
            resolver = EntityResolver(db, self.settings)
            organization_id = await resolver.require_organization(event)
            entity_id = await self.persist_record(db, resolver, organization_id, event.entity_type, event.record)
            await db.commit()

        try:
            jobs = await self._follow_up(organization_id, event.entity_type, event.record, fetch_incomplete=True)
        except Exception as e:
            logger.exception(f"Follow-up for {event.entity_type} {entity_id} failed: {e}")
            jobs = await self._defer_follow_up(organization_id, event.record)
        return IngestResult(
            "persisted",
            event_id=event.event_id,
            event_type=event.event_type,
            entity_type=event.entity_type,
            entity_id=entity_id,
            organization_id=organization_id,
            jobs=jobs,
        )

    # ------------------------------------------------------------------
    # Shared with backfill and the job runner
    # ------------------------------------------------------------------

    async def apply_record(
        self,
        organization_id: str,
        entity_type: str,
        record: CanonicalRecord,
        link: bool = True,
    ) -> str:
        """Persist a canonical record for a known tenant and run its follow-ups."""
        async with self.session_factory() as db:
            resolver = EntityResolver(db, self.settings)
            entity_id = await self.persist_record(db, resolver, organization_id, entity_type, record)
            await db.commit()
        if link:
            await self._follow_up(organization_id, entity_type, record, fetch_incomplete=False)
        return entity_id

    async def persist_record(
        self,
        db: AsyncSession,
        resolver: EntityResolver,
        organization_id: str,
        entity_type: str,
        record: CanonicalRecord,
    ) -> str:
        """Write one record and the stub references it needs. Does not commit."""
        store = EntityStore(db)

        if entity_type == "order":
            location = await resolver.resolve_location(organization_id, record.external_location_id)
            customer = await resolver.resolve_customer(organization_id, record.external_customer_id)
            for item in record.line_items:
                await resolver.resolve_service(organization_id, item.service_variation_id)
            entity_id, applied = await store.upsert_order(organization_id, record, location.key, customer.key)
            if applied and record.line_items:
                await store.upsert_line_items(organization_id, entity_id, record)
            logger.entity_persisted("order", entity_id, "applied" if applied else "merged")

        elif entity_type == "payment":
            location = await resolver.resolve_location(organization_id, record.external_location_id)
            customer = await resolver.resolve_customer(organization_id, record.external_customer_id)
            order = await resolver.resolve_order(organization_id, record.external_order_id)
            entity_id = await store.upsert_payment(
                organization_id, record, location.key, customer.key, order.key
            )
            logger.entity_persisted("payment", entity_id, "upserted")

        elif entity_type == "booking":
            location = await resolver.resolve_location(organization_id, record.external_location_id)
            customer = await resolver.resolve_customer(organization_id, record.external_customer_id)
            for segment in record.segments:
                await resolver.resolve_service(organization_id, segment.service_variation_id)
            entity_id, applied = await store.upsert_booking(organization_id, record, location.key, customer.key)
            logger.entity_persisted("booking", entity_id, "applied" if applied else "merged")

        elif entity_type == "gift_card":
            customer_id = None
            if record.external_customer_ids:
                customer = await resolver.resolve_customer(organization_id, record.external_customer_ids[0])
                customer_id = customer.key
            entity_id = await store.upsert_gift_card(organization_id, record, customer_id)
            logger.entity_persisted("gift_card", entity_id, "upserted")

        elif entity_type == "gift_card_activity":
            ledger_result = await GiftCardLedger(db).append(organization_id, record)
            entity_id = ledger_result.gift_card_id
            logger.entity_persisted(
                "gift_card_activity", record.activity_id, "appended" if ledger_result.inserted else "duplicate"
            )

        elif entity_type == "customer":
            entity_id = await store.upsert_customer(organization_id, record)
            logger.entity_persisted("customer", entity_id, "upserted")

        elif entity_type == "staff_member":
            entity_id = await store.upsert_staff_member(organization_id, record)
            logger.entity_persisted("staff_member", entity_id, "upserted")

        else:
            raise ValueError(f"Unknown entity type {entity_type}")

        return entity_id

    async def fetch_and_apply(self, organization_id: str, entity_type: str, external_id: str) -> str:
        """
        Pull the full entity from upstream and apply it. Upstream errors
        propagate so the job runner can classify them.
        """
        if self.upstream is None:
            raise UpstreamUnavailable("upstream client not configured")

        if entity_type == "order":
            obj = await self.upstream.get_order(external_id)
        elif entity_type == "booking":
            obj = await self.upstream.get_booking(external_id)
        elif entity_type == "staff_member":
            obj = await self.upstream.get_team_member(external_id)
        else:
            raise ValueError(f"Cannot fetch entity type {entity_type}")

        record = self.normalizer.normalize_entity(entity_type, obj, fallback_id=external_id)
        return await self.apply_record(organization_id, entity_type, record)

    async def sync_gift_card(self, organization_id: str, external_id: str) -> int:
        """Replay a card and its full activity history. Returns the recomputed balance."""
        if self.upstream is None:
            raise UpstreamUnavailable("upstream client not configured")

        card_obj = await self.upstream.get_gift_card(external_id)
        card = self.normalizer.normalize_entity("gift_card", card_obj, fallback_id=external_id)
        activities = [
            self.normalizer.normalize_entity("gift_card_activity", activity)
            for activity in await self.upstream.list_gift_card_activities(external_id)
        ]

        async with self.session_factory() as db:
            resolver = EntityResolver(db, self.settings)
            customer_id = None
            if card.external_customer_ids:
                customer_id = (await resolver.resolve_customer(organization_id, card.external_customer_ids[0])).key
            result = await GiftCardLedger(db).sync_card(organization_id, card, activities, customer_id)
            await db.commit()

        logger.info(f"Synced gift card {external_id}: {len(activities)} activities, balance {result.balance_cents}")
        return result.balance_cents

    # ------------------------------------------------------------------
    # Follow-ups
    # ------------------------------------------------------------------

    async def _follow_up(
        self,
        organization_id: str,
        entity_type: str,
        record: CanonicalRecord,
        fetch_incomplete: bool,
    ) -> List[str]:
        jobs: List[str] = []

        if isinstance(record, CanonicalOrder):
            if fetch_incomplete and not record.is_complete:
                job = await self._fetch_incomplete("order", organization_id, record.external_id)
                if job:
                    jobs.append(job)
            job = await self._link(JobStage.LINK_ORDER, organization_id, record.external_id)
            if job:
                jobs.append(job)

        elif isinstance(record, CanonicalPayment):
            job = await self._link(JobStage.LINK_PAYMENT, organization_id, record.external_id)
            if job:
                jobs.append(job)

        elif isinstance(record, CanonicalBooking):
            if fetch_incomplete and not record.is_complete:
                job = await self._fetch_incomplete("booking", organization_id, record.external_id)
                if job:
                    jobs.append(job)
            await self._link_waiting_payments(organization_id, record)

        elif isinstance(record, CanonicalGiftCardActivity):
            job = await self._schedule_card_sync(organization_id, record.external_gift_card_id)
            if job:
                jobs.append(job)

        return jobs

    async def _defer_follow_up(self, organization_id: str, record: CanonicalRecord) -> List[str]:
        """Hand a follow-up that failed inline to the retry queue."""
        job = None
        if isinstance(record, CanonicalOrder):
            if not record.is_complete and self.upstream is not None:
                job = await self._enqueue_fetch("order", organization_id, record.external_id)
            else:
                job = await self._enqueue_link(JobStage.LINK_ORDER, organization_id, record.external_id)
        elif isinstance(record, CanonicalPayment):
            job = await self._enqueue_link(JobStage.LINK_PAYMENT, organization_id, record.external_id)
        elif isinstance(record, CanonicalBooking) and self.upstream is not None:
            # Re-applying the booking repeats the waiting-payment pass
            job = await self._enqueue_fetch("booking", organization_id, record.external_id)
        elif isinstance(record, CanonicalGiftCardActivity) and self.upstream is not None:
            job = await self._enqueue(
                f"sync-gift-card-{record.external_gift_card_id}", JobStage.SYNC_GIFT_CARD,
                {"external_gift_card_id": record.external_gift_card_id}, organization_id,
            )
        return [job] if job else []

    async def _fetch_incomplete(self, entity_type: str, organization_id: str, external_id: str) -> Optional[str]:
        """Metadata-only notifications carry no snapshot; fetch the entity inline."""
        if self.upstream is None:
            logger.info(
                f"{entity_type.capitalize()} {external_id} is metadata-only and no upstream client is configured"
            )
            return None
        try:
            if entity_type == "order":
                obj = await self.upstream.get_order(external_id)
            else:
                obj = await self.upstream.get_booking(external_id)
        except UpstreamNotFound as e:
            logger.warning(f"{entity_type.capitalize()} {external_id} not found upstream: {e.message}")
            return None
        except UpstreamError as e:
            logger.warning(f"Inline fetch of {entity_type} {external_id} deferred: {e.message}")
            return await self._enqueue_fetch(
                entity_type, organization_id, external_id,
                delay_seconds=getattr(e, "retry_after", None) or 0,
            )

        record = self.normalizer.normalize_entity(entity_type, obj, fallback_id=external_id)
        await self.apply_record(organization_id, entity_type, record, link=False)
        return None

    async def _link(self, stage: JobStage, organization_id: str, external_id: str) -> Optional[str]:
        """Best-effort linking; whatever cannot be linked now becomes a job."""
        async with self.session_factory() as db:
            linker = DeferredLinker(db, self.settings)
            try:
                if stage == JobStage.LINK_PAYMENT:
                    await linker.link_payment(organization_id, external_id)
                else:
                    await linker.link_order(organization_id, external_id)
                await db.commit()
                return None
            except DependencyNotYetAvailable as e:
                # Partial links are write-once and safe to keep
                await db.commit()
                logger.info(f"{stage.value} {external_id} deferred: {e.message}")
            except Exception as e:
                await db.rollback()
                logger.exception(f"{stage.value} {external_id} failed inline: {e}")

        return await self._enqueue_link(stage, organization_id, external_id)

    async def _link_waiting_payments(self, organization_id: str, record: CanonicalBooking) -> None:
        async with self.session_factory() as db:
            resolver = EntityResolver(db, self.settings)
            booking = await resolver.resolve_booking(organization_id, record.external_id)
            if not booking.found:
                return
            linked = await DeferredLinker(db, self.settings, resolver).link_payments_for_booking(
                organization_id, booking.key
            )
            await db.commit()
        if linked:
            logger.info(f"Booking {record.external_id} completed {linked} waiting payment(s)")

    async def _schedule_card_sync(self, organization_id: str, external_gift_card_id: str) -> Optional[str]:
        """A card first seen through an activity is a stub until its details are fetched."""
        if self.upstream is None:
            return None
        async with self.session_factory() as db:
            result = await db.execute(
                select(GiftCard.state).where(
                    GiftCard.organization_id == organization_id,
                    GiftCard.external_id == external_gift_card_id,
                )
            )
            state = result.scalars().first()
        if state is not None:
            return None
        return await self._enqueue(
            f"sync-gift-card-{external_gift_card_id}", JobStage.SYNC_GIFT_CARD,
            {"external_gift_card_id": external_gift_card_id}, organization_id,
        )

    async def _enqueue(
        self,
        correlation_id: str,
        stage: JobStage,
        payload: dict,
        organization_id: str,
        delay_seconds: float = 0,
    ) -> Optional[str]:
        async with self.session_factory() as db:
            job_id = await RetryQueue(db, self.settings).enqueue(
                correlation_id, stage, payload, organization_id, delay_seconds=delay_seconds
            )
            await db.commit()
        return correlation_id if job_id else None

    async def _enqueue_link(self, stage: JobStage, organization_id: str, external_id: str) -> Optional[str]:
        key = "external_payment_id" if stage == JobStage.LINK_PAYMENT else "external_order_id"
        return await self._enqueue(
            f"{stage.value}-{external_id}", stage, {key: external_id}, organization_id,
            delay_seconds=self.settings.retry_base_delay_seconds,
        )

    async def _enqueue_fetch(
        self,
        entity_type: str,
        organization_id: str,
        external_id: str,
        delay_seconds: float = 0,
    ) -> Optional[str]:
        stage, key = FETCH_STAGES[entity_type]
        return await self._enqueue(
            f"{stage.value}-{external_id}", stage, {key: external_id}, organization_id,
            delay_seconds=delay_seconds,
        )

    # ------------------------------------------------------------------
    # Delivery audit log
    # ------------------------------------------------------------------

    async def _already_processed(self, event_id: str) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                select(WebhookEventLog.id).where(
                    WebhookEventLog.event_id == event_id,
                    WebhookEventLog.status == WebhookEventStatus.PROCESSED.value,
                )
            )
            return result.first() is not None

    async def _record_event(
        self,
        event_id: Optional[str],
        event_type: Optional[str],
        merchant_id: Optional[str],
        organization_id: Optional[str],
        payload_hash: Optional[str],
        status: WebhookEventStatus,
        action: Optional[str] = None,
        entity_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Upsert the audit row for a delivery; redeliveries update the same row."""
        if not event_id:
            return
        now = utcnow()
        async with self.session_factory() as db:
            stmt = get_upsert_strategy(dialect_name(db)).insert(WebhookEventLog).values(
                event_id=str(event_id),
                event_type=event_type,
                merchant_id=merchant_id,
                organization_id=organization_id,
                payload_hash=payload_hash,
                status=status.value,
                result_action=action,
                entity_id=entity_id,
                error_message=error[:1000] if error else None,
                received_at=now,
                processed_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["event_id"],
                set_={
                    "status": stmt.excluded.status,
                    "organization_id": stmt.excluded.organization_id,
                    "result_action": stmt.excluded.result_action,
                    "entity_id": stmt.excluded.entity_id,
                    "error_message": stmt.excluded.error_message,
                    "processed_at": stmt.excluded.processed_at,
                },
            )
            await db.execute(stmt)
            await db.commit()
