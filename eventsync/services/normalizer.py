"""
Payload Normalizer

Maps vendor webhook envelopes into one canonical record per entity type.

Vendor payloads mix snake_case and camelCase and nest the object of interest
under wrapper keys that depend on the event type (``order_created`` vs
``order``). All field access goes through ``lookup``, which tries a fixed,
declared list of aliases, so call sites never hand-roll ``a or b`` chains.

Normalization is pure: no I/O, no clock, no database.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Union

from ..errors import MalformedPayload, MissingIdentifier
from ..models.gift_card import ACTIVITY_SIGNS
from ..schemas.canonical import (
    CanonicalBooking,
    CanonicalCustomer,
    CanonicalGiftCard,
    CanonicalGiftCardActivity,
    CanonicalLineItem,
    CanonicalOrder,
    CanonicalPayment,
    CanonicalSegment,
    CanonicalStaffMember,
)
from ..utils.dates import parse_timestamp

logger = logging.getLogger(__name__)


CanonicalRecord = Union[
    CanonicalOrder,
    CanonicalPayment,
    CanonicalBooking,
    CanonicalGiftCard,
    CanonicalGiftCardActivity,
    CanonicalCustomer,
    CanonicalStaffMember,
]


# Event type -> canonical entity type
EVENT_ENTITY_TYPES: Dict[str, str] = {
    "order.created": "order",
    "order.updated": "order",
    "order.fulfillment.updated": "order",
    "payment.created": "payment",
    "payment.updated": "payment",
    "booking.created": "booking",
    "booking.updated": "booking",
    "gift_card.created": "gift_card",
    "gift_card.updated": "gift_card",
    "gift_card.customer_linked": "gift_card",
    "gift_card.activity.created": "gift_card_activity",
    "gift_card.activity.updated": "gift_card_activity",
    "customer.created": "customer",
    "customer.updated": "customer",
    "team_member.created": "staff_member",
    "team_member.updated": "staff_member",
}

# Wrapper keys under data.object, in priority order
ENTITY_WRAPPERS: Dict[str, tuple] = {
    "order": ("order", "order_created", "order_updated", "order_fulfillment_updated"),
    "payment": ("payment",),
    "booking": ("booking",),
    "gift_card": ("gift_card",),
    "gift_card_activity": ("gift_card_activity",),
    "customer": ("customer",),
    "staff_member": ("team_member",),
}

# Primary identifier aliases per entity
ENTITY_ID_FIELDS: Dict[str, tuple] = {
    "order": ("id", "order_id"),
    "payment": ("id", "payment_id"),
    "booking": ("id", "booking_id"),
    "gift_card": ("id", "gift_card_id"),
    "gift_card_activity": ("id", "activity_id"),
    "customer": ("id", "customer_id"),
    "staff_member": ("id", "team_member_id"),
}


@dataclass
class NormalizedEvent:
    """Envelope metadata plus the canonical record it carried."""
    event_id: str
    event_type: str
    entity_type: str
    merchant_id: Optional[str]
    occurred_at: Optional[datetime]
    record: CanonicalRecord


def camel_case(name: str) -> str:
    """snake_case -> camelCase (``last_4`` -> ``last4``)."""
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def _lookup_key(obj: Dict[str, Any], key: str) -> Any:
    value = obj.get(key)
    if value is not None:
        return value
    camel = camel_case(key)
    if camel != key:
        return obj.get(camel)
    return None


def _lookup_path(obj: Any, path: str) -> Any:
    current = obj
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = _lookup_key(current, part)
        if current is None:
            return None
    return current


def lookup(obj: Any, name: str, *aliases: str, default: Any = None) -> Any:
    """
    Return the first non-null value among ``name`` and ``aliases``.

    Each candidate is a dotted path; every path segment is tried as written
    and then as its camelCase twin.
    """
    for candidate in (name,) + aliases:
        value = _lookup_path(obj, candidate)
        if value is not None:
            return value
    return default


def _int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _str(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def money_cents(obj: Any, field: str) -> Optional[int]:
    return _int(lookup(obj, f"{field}.amount"))


def money_currency(obj: Any, *fields: str) -> Optional[str]:
    return _str(lookup(obj, *[f"{f}.currency" for f in fields]))


class PayloadNormalizer:
    """
    Turns raw envelopes (webhooks) or bare upstream objects (backfill) into
    canonical records.
    """

    def __init__(self):
        self._builders = {
            "order": self._order,
            "payment": self._payment,
            "booking": self._booking,
            "gift_card": self._gift_card,
            "gift_card_activity": self._gift_card_activity,
            "customer": self._customer,
            "staff_member": self._staff_member,
        }

    def normalize(self, envelope: Dict[str, Any]) -> Optional[NormalizedEvent]:
        """
        Normalize a webhook envelope.

        Returns None for unrecognized event types. Raises MissingIdentifier
        when a recognized event lacks its entity's primary identifier.
        """
        if not isinstance(envelope, dict):
            raise MalformedPayload("Envelope is not a JSON object")

        event_type = _str(lookup(envelope, "type", "event_type"))
        if not event_type:
            raise MissingIdentifier("event", "type")

        entity_type = EVENT_ENTITY_TYPES.get(event_type)
        if entity_type is None:
            logger.info(f"Ignoring unrecognized event type {event_type}")
            return None

        event_id = _str(lookup(envelope, "event_id", "id"))
        if not event_id:
            raise MissingIdentifier("event", "event_id")

        container = lookup(envelope, "data.object", "object", "payload.object")
        if not isinstance(container, dict):
            raise MissingIdentifier(entity_type, "object")

        obj = self._unwrap(container, entity_type)
        record = self.normalize_entity(entity_type, obj, fallback_id=lookup(envelope, "data.id"))

        return NormalizedEvent(
            event_id=event_id,
            event_type=event_type,
            entity_type=entity_type,
            merchant_id=_str(lookup(envelope, "merchant_id")),
            occurred_at=parse_timestamp(lookup(envelope, "created_at")),
            record=record,
        )

    def normalize_entity(
        self,
        entity_type: str,
        obj: Dict[str, Any],
        fallback_id: Optional[str] = None
    ) -> CanonicalRecord:
        """Normalize a bare entity object as returned by the upstream API."""
        builder = self._builders.get(entity_type)
        if builder is None:
            raise ValueError(f"Unknown entity type {entity_type}")
        if not isinstance(obj, dict):
            raise MissingIdentifier(entity_type, "object")

        entity_id = _str(lookup(obj, *ENTITY_ID_FIELDS[entity_type])) or _str(fallback_id)
        if not entity_id:
            raise MissingIdentifier(entity_type, ENTITY_ID_FIELDS[entity_type][0])
        return builder(entity_id, obj)

    def _unwrap(self, container: Dict[str, Any], entity_type: str) -> Dict[str, Any]:
        for wrapper in ENTITY_WRAPPERS[entity_type]:
            inner = lookup(container, wrapper)
            if isinstance(inner, dict):
                return inner
        # Some producers put the entity directly under data.object
        return container

    # ------------------------------------------------------------------
    # Builders
    # ------------------------------------------------------------------

    def _order(self, entity_id: str, obj: Dict[str, Any]) -> CanonicalOrder:
        raw_items = lookup(obj, "line_items") or []
        line_items = [self._line_item(item) for item in raw_items if isinstance(item, dict)]
        return CanonicalOrder(
            external_id=entity_id,
            external_location_id=_str(lookup(obj, "location_id")),
            external_customer_id=_str(lookup(obj, "customer_id")),
            state=_str(lookup(obj, "state")),
            version=_int(lookup(obj, "version")),
            total_money_cents=money_cents(obj, "total_money"),
            total_tax_cents=money_cents(obj, "total_tax_money"),
            total_discount_cents=money_cents(obj, "total_discount_money"),
            total_tip_cents=money_cents(obj, "total_tip_money"),
            currency=money_currency(obj, "total_money"),
            created_at=parse_timestamp(lookup(obj, "created_at")),
            updated_at=parse_timestamp(lookup(obj, "updated_at")),
            line_items=line_items,
            is_complete=lookup(obj, "line_items") is not None or lookup(obj, "total_money") is not None,
            raw=obj,
        )

    def _line_item(self, item: Dict[str, Any]) -> CanonicalLineItem:
        return CanonicalLineItem(
            uid=_str(lookup(item, "uid")),
            name=_str(lookup(item, "name")),
            variation_name=_str(lookup(item, "variation_name")),
            quantity=_str(lookup(item, "quantity")),
            item_type=_str(lookup(item, "item_type")),
            service_variation_id=_str(lookup(item, "catalog_object_id", "service_variation_id")),
            base_price_cents=money_cents(item, "base_price_money"),
            gross_sales_cents=money_cents(item, "gross_sales_money"),
            total_tax_cents=money_cents(item, "total_tax_money"),
            total_discount_cents=money_cents(item, "total_discount_money"),
            total_cents=money_cents(item, "total_money"),
            currency=money_currency(item, "total_money", "base_price_money"),
        )

    def _payment(self, entity_id: str, obj: Dict[str, Any]) -> CanonicalPayment:
        return CanonicalPayment(
            external_id=entity_id,
            external_order_id=_str(lookup(obj, "order_id")),
            external_customer_id=_str(lookup(obj, "customer_id")),
            external_location_id=_str(lookup(obj, "location_id")),
            external_team_member_id=_str(lookup(obj, "team_member_id", "employee_id")),
            status=_str(lookup(obj, "status")),
            source_type=_str(lookup(obj, "source_type")),
            amount_cents=money_cents(obj, "amount_money"),
            tip_cents=money_cents(obj, "tip_money"),
            total_cents=money_cents(obj, "total_money"),
            approved_cents=money_cents(obj, "approved_money"),
            refunded_cents=money_cents(obj, "refunded_money"),
            currency=money_currency(obj, "total_money", "amount_money"),
            card_brand=_str(lookup(obj, "card_details.card.card_brand")),
            card_last4=_str(lookup(obj, "card_details.card.last_4")),
            receipt_number=_str(lookup(obj, "receipt_number")),
            receipt_url=_str(lookup(obj, "receipt_url")),
            created_at=parse_timestamp(lookup(obj, "created_at")),
            updated_at=parse_timestamp(lookup(obj, "updated_at")),
            raw=obj,
        )

    def _booking(self, entity_id: str, obj: Dict[str, Any]) -> CanonicalBooking:
        segments = []
        for segment in lookup(obj, "appointment_segments") or []:
            if not isinstance(segment, dict):
                continue
            segments.append(CanonicalSegment(
                service_variation_id=_str(lookup(segment, "service_variation_id")),
                service_variation_version=_str(lookup(segment, "service_variation_version")),
                team_member_id=_str(lookup(segment, "team_member_id")),
                duration_minutes=_int(lookup(segment, "duration_minutes")),
                intermission_minutes=_int(lookup(segment, "intermission_minutes")),
                any_team_member=bool(lookup(segment, "any_team_member", default=False)),
            ))
        return CanonicalBooking(
            external_id=entity_id,
            version=_int(lookup(obj, "version")),
            status=_str(lookup(obj, "status")),
            start_at=parse_timestamp(lookup(obj, "start_at")),
            external_location_id=_str(lookup(obj, "location_id")),
            external_customer_id=_str(lookup(obj, "customer_id")),
            source=_str(lookup(obj, "source")),
            creator_type=_str(lookup(obj, "creator_details.creator_type")),
            customer_note=_str(lookup(obj, "customer_note")),
            created_at=parse_timestamp(lookup(obj, "created_at")),
            updated_at=parse_timestamp(lookup(obj, "updated_at")),
            segments=segments,
            is_complete=lookup(obj, "start_at") is not None,
            raw=obj,
        )

    def _gift_card(self, entity_id: str, obj: Dict[str, Any]) -> CanonicalGiftCard:
        customer_ids = lookup(obj, "customer_ids") or []
        return CanonicalGiftCard(
            external_id=entity_id,
            gan=_str(lookup(obj, "gan")),
            card_type=_str(lookup(obj, "type")),
            state=_str(lookup(obj, "state")),
            balance_cents=money_cents(obj, "balance_money"),
            currency=money_currency(obj, "balance_money"),
            external_customer_ids=[str(c) for c in customer_ids if c],
            created_at=parse_timestamp(lookup(obj, "created_at")),
        )

    def _gift_card_activity(self, entity_id: str, obj: Dict[str, Any]) -> CanonicalGiftCardActivity:
        activity_type = _str(lookup(obj, "type"))
        if not activity_type:
            raise MissingIdentifier("gift_card_activity", "type")
        gift_card_id = _str(lookup(obj, "gift_card_id"))
        if not gift_card_id:
            raise MissingIdentifier("gift_card_activity", "gift_card_id")

        details = lookup(obj, f"{activity_type.lower()}_activity_details") or {}
        sign = ACTIVITY_SIGNS.get(activity_type.upper(), 0)
        amount = money_cents(details, "amount_money") or 0

        return CanonicalGiftCardActivity(
            activity_id=entity_id,
            activity_type=activity_type.upper(),
            external_gift_card_id=gift_card_id,
            gan=_str(lookup(obj, "gift_card_gan")),
            amount_cents=sign * abs(amount),
            currency=money_currency(details, "amount_money") or money_currency(obj, "gift_card_balance_money"),
            external_location_id=_str(lookup(obj, "location_id")),
            external_order_id=_str(lookup(details, "order_id")),
            external_payment_id=_str(lookup(details, "payment_id")),
            reason=_str(lookup(details, "reason")),
            occurred_at=parse_timestamp(lookup(obj, "created_at")),
            reported_balance_cents=money_cents(obj, "gift_card_balance_money"),
            raw=obj,
        )

    def _customer(self, entity_id: str, obj: Dict[str, Any]) -> CanonicalCustomer:
        return CanonicalCustomer(
            external_id=entity_id,
            given_name=_str(lookup(obj, "given_name")),
            family_name=_str(lookup(obj, "family_name")),
            email=_str(lookup(obj, "email_address", "email")),
            phone=_str(lookup(obj, "phone_number", "phone")),
            created_at=parse_timestamp(lookup(obj, "created_at")),
            updated_at=parse_timestamp(lookup(obj, "updated_at")),
        )

    def _staff_member(self, entity_id: str, obj: Dict[str, Any]) -> CanonicalStaffMember:
        role = "OWNER" if lookup(obj, "is_owner") else _str(lookup(obj, "role"))
        return CanonicalStaffMember(
            external_id=entity_id,
            given_name=_str(lookup(obj, "given_name")),
            family_name=_str(lookup(obj, "family_name")),
            email=_str(lookup(obj, "email_address", "email")),
            role=role,
            status=_str(lookup(obj, "status")),
            updated_at=parse_timestamp(lookup(obj, "updated_at")),
        )
