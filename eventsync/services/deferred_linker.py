"""
Deferred Linker

Fills cross-entity references once both ends exist:

- Payment.order_id from the payment's external order id
- Payment/Order/OrderLineItem.booking_id via the booking strategy chain
- OrderLineItem.technician_id from the matched booking's segments
- Payment/OrderLineItem.administrator_id from the payment's team member

Booking strategy chain, most specific first, stopping at the first match:

1. exact            a booking reference already exists on the payment, the
                    order, a sibling payment or one of the line items
2. service_window   same customer and location, a segment with one of the
                    order's service variations, start time inside the window
                    around the order's creation time, nearest start wins
3. customer_window  same customer and window without the service filter;
                    only once strategy 2 is exhausted: the final attempt,
                    or a full order snapshot with no service line items
4. no match         DependencyNotYetAvailable, terminal once attempts run out

Every link is written with ``WHERE column IS NULL``: links only ever add
information, and the first writer wins.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings, settings as default_settings
from ..errors import DependencyNotYetAvailable
from ..models import (
    Booking,
    BookingSegment,
    LinkConfidence,
    Order,
    OrderLineItem,
    Payment,
    StaffMember,
    UNLINKABLE_BOOKING_STATUSES,
)
from ..utils.logging_config import get_logger
from .entity_resolver import EntityResolver

logger = get_logger(__name__)


@dataclass
class LinkContext:
    """What the chain knows about the sale being linked."""
    organization_id: str
    customer_id: Optional[str]
    location_id: Optional[str]
    anchor: Optional[datetime]
    order: Optional[Order] = None
    payment: Optional[Payment] = None
    line_items: List[OrderLineItem] = field(default_factory=list)

    @property
    def service_ids(self) -> List[str]:
        return sorted({li.service_variation_id for li in self.line_items if li.service_variation_id})

    @property
    def services_final(self) -> bool:
        """True when no later snapshot of the sale can add service ids."""
        if self.order is None:
            return self.payment is not None and not self.payment.external_order_id
        return self.order.raw_payload is not None and bool(self.line_items)


@dataclass
class LinkResult:
    payment_id: Optional[str] = None
    order_id: Optional[str] = None
    booking_id: Optional[str] = None
    confidence: Optional[str] = None
    technicians_linked: int = 0
    administrators_linked: int = 0
    gaps: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return self.booking_id is not None and not self.gaps


class DeferredLinker:
    def __init__(
        self,
        db: AsyncSession,
        settings: Optional[Settings] = None,
        resolver: Optional[EntityResolver] = None,
    ):
        self.db = db
        self.settings = settings or default_settings
        self.resolver = resolver or EntityResolver(db, self.settings)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def link_payment(
        self,
        organization_id: str,
        external_payment_id: str,
        exhausted: bool = False,
    ) -> LinkResult:
        """
        Link one payment. ``exhausted`` marks the final attempt, which
        unlocks the low-confidence strategies.

        Raises DependencyNotYetAvailable while anything is still missing.
        """
        payment = await self._payment(organization_id, external_payment_id)
        if payment is None:
            raise DependencyNotYetAvailable(f"payment {external_payment_id} not yet persisted")

        result = LinkResult(payment_id=payment.id)

        order = None
        if payment.order_id:
            order = await self.db.get(Order, payment.order_id)
        elif payment.external_order_id:
            lookup = await self.resolver.resolve_order(organization_id, payment.external_order_id)
            if not lookup.found:
                raise DependencyNotYetAvailable(lookup.reason, terminal_on_exhaustion=True)
            await self._set_once(Payment, payment.id, order_id=lookup.key)
            order = await self.db.get(Order, lookup.key)
            logger.link_established("payment", payment.id, "order_id", lookup.key, LinkConfidence.EXACT.value)
        result.order_id = order.id if order else None

        line_items = await self._line_items(order.id) if order else []
        ctx = LinkContext(
            organization_id=organization_id,
            customer_id=(order.customer_id if order else None) or payment.customer_id,
            location_id=(order.location_id if order else None) or payment.location_id,
            anchor=(order.upstream_created_at if order else None) or payment.upstream_created_at,
            order=order,
            payment=payment,
            line_items=line_items,
        )

        await self._link_administrator(ctx, result)
        await self._link_booking(ctx, result, exhausted)
        self._raise_if_incomplete(result, f"payment {external_payment_id}")
        return result

    async def link_order(
        self,
        organization_id: str,
        external_order_id: str,
        exhausted: bool = False,
    ) -> LinkResult:
        """
        Attach waiting payments to a newly arrived order, then link through
        each payment (or the order alone when it has none yet).
        """
        order = await self._order(organization_id, external_order_id)
        if order is None:
            raise DependencyNotYetAvailable(f"order {external_order_id} not yet persisted")

        attached = await self.attach_waiting_payments(organization_id, order.id, external_order_id)
        if attached:
            logger.info(f"Attached {attached} waiting payment(s) to order {external_order_id}")

        result = await self.db.execute(
            select(Payment.external_id)
            .where(Payment.order_id == order.id)
            .order_by(Payment.upstream_created_at)
        )
        payment_ids = list(result.scalars().all())

        if payment_ids:
            last = LinkResult(order_id=order.id)
            pending: Optional[DependencyNotYetAvailable] = None
            for external_payment_id in payment_ids:
                try:
                    last = await self.link_payment(organization_id, external_payment_id, exhausted)
                except DependencyNotYetAvailable as e:
                    pending = e
            if pending is not None:
                raise pending
            return last

        ctx = LinkContext(
            organization_id=organization_id,
            customer_id=order.customer_id,
            location_id=order.location_id,
            anchor=order.upstream_created_at,
            order=order,
            line_items=await self._line_items(order.id),
        )
        result_ = LinkResult(order_id=order.id)
        await self._link_booking(ctx, result_, exhausted)
        self._raise_if_incomplete(result_, f"order {external_order_id}")
        return result_

    async def attach_waiting_payments(self, organization_id: str, order_id: str, external_order_id: str) -> int:
        result = await self.db.execute(
            update(Payment)
            .where(
                Payment.organization_id == organization_id,
                Payment.external_order_id == external_order_id,
                Payment.order_id.is_(None),
            )
            .values(order_id=order_id)
        )
        return result.rowcount or 0

    async def link_payments_for_booking(self, organization_id: str, booking_id: str) -> int:
        """
        A booking that arrives late may complete payments that were waiting
        for it. Tries every unlinked payment of the same customer whose sale
        falls inside the (mirrored) window. Returns how many got a booking.
        """
        booking = await self.db.get(Booking, booking_id)
        if booking is None or booking.customer_id is None or booking.start_at is None:
            return 0

        lower = booking.start_at - timedelta(days=self.settings.link_window_after_days)
        upper = booking.start_at + timedelta(days=self.settings.link_window_before_days)
        result = await self.db.execute(
            select(Payment.external_id).where(
                Payment.organization_id == organization_id,
                Payment.customer_id == booking.customer_id,
                Payment.booking_id.is_(None),
                Payment.upstream_created_at.between(lower, upper),
            )
        )
        linked = 0
        for external_payment_id in result.scalars().all():
            try:
                outcome = await self.link_payment(organization_id, external_payment_id)
            except DependencyNotYetAvailable as e:
                logger.debug(f"Payment {external_payment_id} still incomplete: {e.message}")
                continue
            if outcome.booking_id:
                linked += 1
        return linked

    # ------------------------------------------------------------------
    # Booking chain
    # ------------------------------------------------------------------

    async def _link_booking(self, ctx: LinkContext, result: LinkResult, exhausted: bool) -> None:
        match = await self._exact_booking(ctx)
        if match is None:
            match = await self._window_booking(ctx, ctx.service_ids)
        if match is None and (exhausted or (not ctx.service_ids and ctx.services_final)):
            match = await self._window_booking(ctx, None)

        if match is None:
            if exhausted:
                await self._guess_technicians_from_names(ctx, result)
            result.gaps.append("no booking match")
            return

        booking_id, confidence = match
        booking_id, confidence = await self._write_booking_link(ctx, booking_id, confidence)
        result.booking_id = booking_id
        result.confidence = confidence
        await self._link_technicians(ctx, booking_id, confidence, result)

    async def _exact_booking(self, ctx: LinkContext) -> Optional[Tuple[str, str]]:
        exact = LinkConfidence.EXACT.value
        if ctx.payment is not None and ctx.payment.booking_id:
            return ctx.payment.booking_id, ctx.payment.link_confidence or exact
        if ctx.order is not None:
            if ctx.order.booking_id:
                return ctx.order.booking_id, ctx.order.booking_confidence or exact
            for item in ctx.line_items:
                if item.booking_id:
                    return item.booking_id, item.technician_confidence or exact
            result = await self.db.execute(
                select(Payment.booking_id, Payment.link_confidence).where(
                    Payment.order_id == ctx.order.id,
                    Payment.booking_id.isnot(None),
                ).limit(1)
            )
            row = result.first()
            if row is not None:
                return row.booking_id, row.link_confidence or exact
        return None

    async def _window_booking(
        self,
        ctx: LinkContext,
        service_ids: Optional[List[str]],
    ) -> Optional[Tuple[str, str]]:
        """
        Nearest booking to the anchor inside the window. ``service_ids`` None
        means the customer-only fallback; an empty list means nothing to match.
        """
        if ctx.customer_id is None or ctx.anchor is None:
            return None
        if service_ids is not None and not service_ids:
            return None

        lower = ctx.anchor - timedelta(days=self.settings.link_window_before_days)
        upper = ctx.anchor + timedelta(days=self.settings.link_window_after_days)

        stmt = select(Booking.id, Booking.external_id, Booking.start_at).where(
            Booking.organization_id == ctx.organization_id,
            Booking.customer_id == ctx.customer_id,
            Booking.start_at.between(lower, upper),
            or_(Booking.status.is_(None), Booking.status.notin_(UNLINKABLE_BOOKING_STATUSES)),
        )
        if ctx.location_id:
            stmt = stmt.where(Booking.location_id == ctx.location_id)
        if service_ids is not None:
            stmt = stmt.join(BookingSegment, BookingSegment.booking_id == Booking.id).where(
                BookingSegment.service_variation_id.in_(service_ids)
            )

        candidates = (await self.db.execute(stmt.distinct())).all()
        if not candidates:
            return None

        best = min(
            candidates,
            key=lambda row: (abs((row.start_at - ctx.anchor).total_seconds()), row.external_id),
        )
        confidence = (
            LinkConfidence.SERVICE_WINDOW.value if service_ids is not None
            else LinkConfidence.CUSTOMER_WINDOW.value
        )
        if len(candidates) > 1:
            logger.info(
                f"{len(candidates)} booking candidates for {ctx.customer_id}; "
                f"picked {best.external_id} ({confidence})"
            )
        return best.id, confidence

    async def _write_booking_link(self, ctx: LinkContext, booking_id: str, confidence: str) -> Tuple[str, str]:
        """Write-once on every row; returns whatever link the payment/order finally holds."""
        if ctx.payment is not None:
            if await self._set_once(Payment, ctx.payment.id, booking_id=booking_id, link_confidence=confidence):
                logger.link_established("payment", ctx.payment.id, "booking_id", booking_id, confidence)
            row = (await self.db.execute(
                select(Payment.booking_id, Payment.link_confidence).where(Payment.id == ctx.payment.id)
            )).one()
            booking_id, confidence = row.booking_id, row.link_confidence or confidence

        if ctx.order is not None:
            if await self._set_once(Order, ctx.order.id, booking_id=booking_id, booking_confidence=confidence):
                logger.link_established("order", ctx.order.id, "booking_id", booking_id, confidence)
            await self.db.execute(
                update(OrderLineItem)
                .where(OrderLineItem.order_id == ctx.order.id, OrderLineItem.booking_id.is_(None))
                .values(booking_id=booking_id)
            )
        return booking_id, confidence

    # ------------------------------------------------------------------
    # Staff
    # ------------------------------------------------------------------

    async def _link_technicians(
        self,
        ctx: LinkContext,
        booking_id: str,
        confidence: str,
        result: LinkResult,
    ) -> None:
        segments = (await self.db.execute(
            select(BookingSegment)
            .where(BookingSegment.booking_id == booking_id)
            .order_by(BookingSegment.position)
        )).scalars().all()

        primary = self._primary_team_member(segments)
        if primary is None:
            return

        primary_lookup = await self.resolver.resolve_staff(ctx.organization_id, primary)
        if not primary_lookup.found:
            result.gaps.append(primary_lookup.reason)
            return

        if ctx.payment is not None:
            await self._set_once(Payment, ctx.payment.id, technician_id=primary_lookup.key)

        by_service = {
            s.service_variation_id: s.external_team_member_id
            for s in segments
            if s.service_variation_id and s.external_team_member_id
        }
        for item in ctx.line_items:
            if item.technician_id:
                continue
            external_staff = by_service.get(item.service_variation_id, primary)
            lookup = primary_lookup if external_staff == primary else (
                await self.resolver.resolve_staff(ctx.organization_id, external_staff)
            )
            if not lookup.found:
                result.gaps.append(lookup.reason)
                continue
            if await self._set_once(
                OrderLineItem, item.id, technician_id=lookup.key, technician_confidence=confidence
            ):
                result.technicians_linked += 1
                logger.link_established("order_line_item", item.id, "technician_id", lookup.key, confidence)

    @staticmethod
    def _primary_team_member(segments) -> Optional[str]:
        """Longest segment with an explicitly chosen team member, else any assigned one."""
        chosen = [s for s in segments if s.external_team_member_id and not s.any_team_member]
        if not chosen:
            chosen = [s for s in segments if s.external_team_member_id]
        if not chosen:
            return None
        chosen.sort(key=lambda s: (-(s.duration_minutes or 0), s.position))
        return chosen[0].external_team_member_id

    async def _link_administrator(self, ctx: LinkContext, result: LinkResult) -> None:
        payment = ctx.payment
        if payment is None or not payment.external_team_member_id:
            return
        lookup = await self.resolver.resolve_staff(ctx.organization_id, payment.external_team_member_id)
        if not lookup.found:
            result.gaps.append(lookup.reason)
            return

        exact = LinkConfidence.EXACT.value
        await self._set_once(Payment, payment.id, administrator_id=lookup.key)
        for item in ctx.line_items:
            if item.administrator_id:
                continue
            if await self._set_once(
                OrderLineItem, item.id, administrator_id=lookup.key, administrator_confidence=exact
            ):
                result.administrators_linked += 1

    async def _guess_technicians_from_names(self, ctx: LinkContext, result: LinkResult) -> None:
        """
        Last resort for sales with no booking: a staff member's given name
        appearing as a word in the line-item name. Recorded as name_heuristic.
        """
        items = [li for li in ctx.line_items if not li.technician_id and li.name]
        if not items:
            return
        staff = (await self.db.execute(
            select(StaffMember.id, StaffMember.given_name).where(
                StaffMember.organization_id == ctx.organization_id,
                StaffMember.given_name.isnot(None),
                or_(StaffMember.status.is_(None), StaffMember.status == "ACTIVE"),
            )
        )).all()
        if not staff:
            return

        heuristic = LinkConfidence.NAME_HEURISTIC.value
        for item in items:
            words = set(re.findall(r"[a-z]+", item.name.lower()))
            matches = [s.id for s in staff if s.given_name.lower() in words]
            if len(matches) != 1:
                continue
            if await self._set_once(
                OrderLineItem, item.id, technician_id=matches[0], technician_confidence=heuristic
            ):
                result.technicians_linked += 1
                logger.link_established("order_line_item", item.id, "technician_id", matches[0], heuristic)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _set_once(self, model, row_id: str, **values) -> bool:
        """Set columns only where the first one is still null. True if written."""
        first = next(iter(values))
        result = await self.db.execute(
            update(model)
            .where(and_(model.id == row_id, getattr(model, first).is_(None)))
            .values(**values)
        )
        return bool(result.rowcount)

    @staticmethod
    def _raise_if_incomplete(result: LinkResult, subject: str) -> None:
        if result.gaps:
            raise DependencyNotYetAvailable(
                f"{subject}: {'; '.join(result.gaps)}",
                terminal_on_exhaustion=True,
            )

    async def _payment(self, organization_id: str, external_id: str) -> Optional[Payment]:
        result = await self.db.execute(
            select(Payment).where(
                Payment.organization_id == organization_id,
                Payment.external_id == external_id,
            )
        )
        return result.scalars().first()

    async def _order(self, organization_id: str, external_id: str) -> Optional[Order]:
        result = await self.db.execute(
            select(Order).where(
                Order.organization_id == organization_id,
                Order.external_id == external_id,
            )
        )
        return result.scalars().first()

    async def _line_items(self, order_id: str) -> List[OrderLineItem]:
        result = await self.db.execute(
            select(OrderLineItem)
            .where(OrderLineItem.order_id == order_id)
            .order_by(OrderLineItem.created_at)
        )
        return list(result.scalars().all())
