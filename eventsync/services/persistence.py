"""
Idempotent Persistence Layer

One atomic merge-upsert per entity, keyed on its natural key. Conflict rules
live in the ``*_POLICY`` declarations below; see ``utils.upsert`` for how
they compile to SQL.

Nothing here commits: callers own the transaction.
"""

import logging
from typing import Any, Dict, Optional, Sequence, Tuple

from sqlalchemy import delete, insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import StorageConstraintViolation
from ..models import (
    Booking,
    BookingSegment,
    Customer,
    GiftCard,
    Location,
    Order,
    OrderLineItem,
    Organization,
    Payment,
    ServiceVariation,
    StaffMember,
)
from ..schemas.canonical import (
    CanonicalBooking,
    CanonicalCustomer,
    CanonicalGiftCard,
    CanonicalOrder,
    CanonicalPayment,
    CanonicalStaffMember,
)
from ..utils.upsert import MergePolicy, merge_upsert

logger = logging.getLogger(__name__)


ORGANIZATION_POLICY = MergePolicy(
    conflict_columns=("merchant_id",),
    volatile=frozenset({"is_active"}),
    first_write_wins=frozenset({"name"}),
)

LOCATION_POLICY = MergePolicy(
    conflict_columns=("organization_id", "external_id"),
    volatile=frozenset({"is_stub"}),
)

CUSTOMER_POLICY = MergePolicy(
    conflict_columns=("external_id",),
    first_write_wins=frozenset({"organization_id", "given_name", "family_name", "email", "phone"}),
)

STAFF_POLICY = MergePolicy(
    conflict_columns=("organization_id", "external_id"),
    volatile=frozenset({"role", "status"}),
    version_column="upstream_updated_at",
)

SERVICE_POLICY = MergePolicy(
    conflict_columns=("organization_id", "external_id"),
)

ORDER_POLICY = MergePolicy(
    conflict_columns=("organization_id", "external_id"),
    volatile=frozenset({"state", "upstream_updated_at", "raw_payload"}),
    version_column="version",
)

LINE_ITEM_POLICY = MergePolicy(
    conflict_columns=("organization_id", "uid"),
    volatile=frozenset({"order_state", "order_total_cents", "order_tax_cents", "order_discount_cents"}),
    first_write_wins=frozenset({"order_id"}),
    version_column="order_version",
)

BOOKING_POLICY = MergePolicy(
    conflict_columns=("organization_id", "external_id"),
    volatile=frozenset({"status", "start_at", "customer_note", "upstream_updated_at", "raw_payload"}),
    version_column="version",
)

PAYMENT_POLICY = MergePolicy(
    conflict_columns=("organization_id", "external_id"),
    volatile=frozenset({"status", "refunded_cents", "raw_payload"}),
    first_write_wins=frozenset({"order_id"}),
    version_column="upstream_updated_at",
)

GIFT_CARD_POLICY = MergePolicy(
    conflict_columns=("organization_id", "external_id"),
    volatile=frozenset({"state", "reported_balance_cents"}),
)


def version_applied(stored: Any, incoming: Any) -> bool:
    """
    True when the row now carries the incoming version. An unversioned write
    only counts against an unversioned row.
    """
    if incoming is None:
        return stored is None
    return stored == incoming


class EntityStore:
    """Entity writers bound to one session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _merge(
        self,
        model,
        values: Dict[str, Any],
        policy: MergePolicy,
        returning: Sequence[str] = ("id",),
    ):
        try:
            return await merge_upsert(self.db, model, values, policy, returning)
        except IntegrityError as e:
            logger.error(f"Constraint violation writing {model.__tablename__}: {e.orig}")
            raise StorageConstraintViolation(
                f"{model.__tablename__}: {e.orig}"
            ) from e

    # ------------------------------------------------------------------
    # Tenancy and reference data
    # ------------------------------------------------------------------

    async def ensure_organization(
        self,
        merchant_id: str,
        name: Optional[str] = None,
        is_active: bool = True,
    ) -> str:
        row = await self._merge(
            Organization,
            {"merchant_id": merchant_id, "name": name, "is_active": is_active},
            ORGANIZATION_POLICY,
        )
        return row.id

    async def upsert_location(
        self,
        organization_id: str,
        external_id: str,
        name: str,
        address: Optional[dict] = None,
        timezone: Optional[str] = None,
    ) -> str:
        """Write real location details, replacing any stub placeholder."""
        row = await self._merge(
            Location,
            {
                "organization_id": organization_id,
                "external_id": external_id,
                "name": name,
                "address": address,
                "timezone": timezone,
                "is_stub": False,
            },
            LOCATION_POLICY,
        )
        return row.id

    async def upsert_customer(self, organization_id: str, record: CanonicalCustomer) -> str:
        row = await self._merge(
            Customer,
            {
                "organization_id": organization_id,
                "external_id": record.external_id,
                "given_name": record.given_name,
                "family_name": record.family_name,
                "email": record.email,
                "phone": record.phone,
            },
            CUSTOMER_POLICY,
        )
        return row.id

    async def upsert_staff_member(self, organization_id: str, record: CanonicalStaffMember) -> str:
        row = await self._merge(
            StaffMember,
            {
                "organization_id": organization_id,
                "external_id": record.external_id,
                "given_name": record.given_name,
                "family_name": record.family_name,
                "email": record.email,
                "role": record.role,
                "status": record.status,
                "upstream_updated_at": record.updated_at,
            },
            STAFF_POLICY,
        )
        return row.id

    async def upsert_service_variation(
        self,
        organization_id: str,
        external_id: str,
        name: Optional[str] = None,
        duration_minutes: Optional[int] = None,
    ) -> str:
        row = await self._merge(
            ServiceVariation,
            {
                "organization_id": organization_id,
                "external_id": external_id,
                "name": name,
                "duration_minutes": duration_minutes,
            },
            SERVICE_POLICY,
        )
        return row.id

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def upsert_order(
        self,
        organization_id: str,
        record: CanonicalOrder,
        location_id: Optional[str],
        customer_id: Optional[str],
    ) -> Tuple[str, bool]:
        """
        Returns (order id, applied). ``applied`` is False when the stored
        version is newer than the incoming one.
        """
        values = {
            "organization_id": organization_id,
            "external_id": record.external_id,
            "location_id": location_id,
            "customer_id": customer_id,
            "state": record.state,
            "version": record.version,
            "total_money_cents": record.total_money_cents,
            "total_tax_cents": record.total_tax_cents,
            "total_discount_cents": record.total_discount_cents,
            "total_tip_cents": record.total_tip_cents,
            "currency": record.currency,
            "upstream_created_at": record.created_at,
            "upstream_updated_at": record.updated_at,
        }
        # Metadata-only notifications are not a snapshot of the order
        if record.is_complete:
            values["raw_payload"] = record.raw

        row = await self._merge(Order, values, ORDER_POLICY, returning=("id", "version"))
        return row.id, version_applied(row.version, record.version)

    async def upsert_line_items(
        self,
        organization_id: str,
        order_id: str,
        record: CanonicalOrder,
    ) -> int:
        """
        Upsert line items with a uid; replace the order's uid-less items as a
        set so re-delivery does not duplicate them.
        """
        snapshot = {
            "order_state": record.state,
            "order_version": record.version,
            "order_total_cents": record.total_money_cents,
            "order_tax_cents": record.total_tax_cents,
            "order_discount_cents": record.total_discount_cents,
        }

        await self.db.execute(
            delete(OrderLineItem).where(
                OrderLineItem.order_id == order_id,
                OrderLineItem.uid.is_(None),
            )
        )

        written = 0
        for item in record.line_items:
            values = {
                "organization_id": organization_id,
                "order_id": order_id,
                "uid": item.uid,
                "name": item.name,
                "variation_name": item.variation_name,
                "quantity": item.quantity,
                "item_type": item.item_type,
                "service_variation_id": item.service_variation_id,
                "base_price_cents": item.base_price_cents,
                "gross_sales_cents": item.gross_sales_cents,
                "total_tax_cents": item.total_tax_cents,
                "total_discount_cents": item.total_discount_cents,
                "total_cents": item.total_cents,
                "currency": item.currency or record.currency,
                **snapshot,
            }
            if item.uid:
                await self._merge(OrderLineItem, values, LINE_ITEM_POLICY)
            else:
                await self.db.execute(insert(OrderLineItem).values(**values))
            written += 1
        return written

    # ------------------------------------------------------------------
    # Bookings
    # ------------------------------------------------------------------

    async def upsert_booking(
        self,
        organization_id: str,
        record: CanonicalBooking,
        location_id: Optional[str],
        customer_id: Optional[str],
    ) -> Tuple[str, bool]:
        values = {
            "organization_id": organization_id,
            "external_id": record.external_id,
            "location_id": location_id,
            "customer_id": customer_id,
            "status": record.status,
            "version": record.version,
            "start_at": record.start_at,
            "source": record.source,
            "creator_type": record.creator_type,
            "customer_note": record.customer_note,
            "upstream_created_at": record.created_at,
            "upstream_updated_at": record.updated_at,
        }
        if record.is_complete:
            values["raw_payload"] = record.raw
        row = await self._merge(Booking, values, BOOKING_POLICY, returning=("id", "version"))
        applied = version_applied(row.version, record.version)

        if applied and record.segments:
            await self.replace_booking_segments(row.id, record)
        return row.id, applied

    async def replace_booking_segments(self, booking_id: str, record: CanonicalBooking) -> None:
        """
        Segments are replaced as a set. The booking upsert above holds the
        parent row lock until commit, so concurrent replacements serialize.
        """
        await self.db.execute(delete(BookingSegment).where(BookingSegment.booking_id == booking_id))
        for position, segment in enumerate(record.segments):
            await self.db.execute(
                insert(BookingSegment).values(
                    booking_id=booking_id,
                    position=position,
                    service_variation_id=segment.service_variation_id,
                    service_variation_version=segment.service_variation_version,
                    external_team_member_id=segment.team_member_id,
                    duration_minutes=segment.duration_minutes,
                    intermission_minutes=segment.intermission_minutes,
                    any_team_member=segment.any_team_member,
                )
            )

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def upsert_payment(
        self,
        organization_id: str,
        record: CanonicalPayment,
        location_id: Optional[str],
        customer_id: Optional[str],
        order_id: Optional[str],
    ) -> str:
        values = {
            "organization_id": organization_id,
            "external_id": record.external_id,
            "location_id": location_id,
            "customer_id": customer_id,
            "order_id": order_id,
            "external_order_id": record.external_order_id,
            "external_team_member_id": record.external_team_member_id,
            "status": record.status,
            "source_type": record.source_type,
            "amount_cents": record.amount_cents,
            "tip_cents": record.tip_cents,
            "total_cents": record.total_cents,
            "approved_cents": record.approved_cents,
            "refunded_cents": record.refunded_cents,
            "currency": record.currency,
            "card_brand": record.card_brand,
            "card_last4": record.card_last4,
            "receipt_number": record.receipt_number,
            "receipt_url": record.receipt_url,
            "upstream_created_at": record.created_at,
            "upstream_updated_at": record.updated_at,
            "raw_payload": record.raw,
        }
        row = await self._merge(Payment, values, PAYMENT_POLICY)
        return row.id

    # ------------------------------------------------------------------
    # Gift cards
    # ------------------------------------------------------------------

    async def upsert_gift_card(
        self,
        organization_id: str,
        record: CanonicalGiftCard,
        customer_id: Optional[str] = None,
    ) -> str:
        """The upstream balance is stored as reported, never as the balance."""
        row = await self._merge(
            GiftCard,
            {
                "organization_id": organization_id,
                "external_id": record.external_id,
                "gan": record.gan,
                "card_type": record.card_type,
                "state": record.state,
                "customer_id": customer_id,
                "reported_balance_cents": record.balance_cents,
                "currency": record.currency,
                "upstream_created_at": record.created_at,
            },
            GIFT_CARD_POLICY,
        )
        return row.id
