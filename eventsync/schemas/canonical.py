"""
Canonical Record Schemas

Alias-free representation of every entity after normalization. External
identifiers keep the ``external_`` prefix; money is integer cents; timestamps
are naive UTC.
"""

from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field


class CanonicalCustomer(BaseModel):
    external_id: str
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CanonicalStaffMember(BaseModel):
    external_id: str
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None
    status: Optional[str] = None
    updated_at: Optional[datetime] = None


class CanonicalLineItem(BaseModel):
    uid: Optional[str] = None
    name: Optional[str] = None
    variation_name: Optional[str] = None
    quantity: Optional[str] = None
    item_type: Optional[str] = None
    service_variation_id: Optional[str] = None
    base_price_cents: Optional[int] = None
    gross_sales_cents: Optional[int] = None
    total_tax_cents: Optional[int] = None
    total_discount_cents: Optional[int] = None
    total_cents: Optional[int] = None
    currency: Optional[str] = None


class CanonicalOrder(BaseModel):
    external_id: str
    external_location_id: Optional[str] = None
    external_customer_id: Optional[str] = None
    state: Optional[str] = None
    version: Optional[int] = None
    total_money_cents: Optional[int] = None
    total_tax_cents: Optional[int] = None
    total_discount_cents: Optional[int] = None
    total_tip_cents: Optional[int] = None
    currency: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    line_items: List[CanonicalLineItem] = Field(default_factory=list)
    # False for metadata-only notifications that must be completed upstream
    is_complete: bool = False
    raw: Optional[Dict[str, Any]] = None


class CanonicalPayment(BaseModel):
    external_id: str
    external_order_id: Optional[str] = None
    external_customer_id: Optional[str] = None
    external_location_id: Optional[str] = None
    external_team_member_id: Optional[str] = None
    status: Optional[str] = None
    source_type: Optional[str] = None
    amount_cents: Optional[int] = None
    tip_cents: Optional[int] = None
    total_cents: Optional[int] = None
    approved_cents: Optional[int] = None
    refunded_cents: Optional[int] = None
    currency: Optional[str] = None
    card_brand: Optional[str] = None
    card_last4: Optional[str] = None
    receipt_number: Optional[str] = None
    receipt_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    raw: Optional[Dict[str, Any]] = None


class CanonicalSegment(BaseModel):
    service_variation_id: Optional[str] = None
    service_variation_version: Optional[str] = None
    team_member_id: Optional[str] = None
    duration_minutes: Optional[int] = None
    intermission_minutes: Optional[int] = None
    any_team_member: bool = False


class CanonicalBooking(BaseModel):
    external_id: str
    version: Optional[int] = None
    status: Optional[str] = None
    start_at: Optional[datetime] = None
    external_location_id: Optional[str] = None
    external_customer_id: Optional[str] = None
    source: Optional[str] = None
    creator_type: Optional[str] = None
    customer_note: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    segments: List[CanonicalSegment] = Field(default_factory=list)
    # False for notifications without the appointment itself
    is_complete: bool = True
    raw: Optional[Dict[str, Any]] = None


class CanonicalGiftCard(BaseModel):
    external_id: str
    gan: Optional[str] = None
    card_type: Optional[str] = None
    state: Optional[str] = None
    balance_cents: Optional[int] = None
    currency: Optional[str] = None
    external_customer_ids: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None


class CanonicalGiftCardActivity(BaseModel):
    activity_id: str
    activity_type: str
    external_gift_card_id: str
    gan: Optional[str] = None
    amount_cents: int = 0  # signed
    currency: Optional[str] = None
    external_location_id: Optional[str] = None
    external_order_id: Optional[str] = None
    external_payment_id: Optional[str] = None
    reason: Optional[str] = None
    occurred_at: Optional[datetime] = None
    reported_balance_cents: Optional[int] = None
    raw: Optional[Dict[str, Any]] = None
