"""
Gift Card Models

The balance is a projection: ``current_balance_cents`` is recomputed from the
signed transaction amounts every time a transaction is appended, and the
upstream-reported balance is kept separately for drift audits.
"""

import uuid
from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, JSON, Index, UniqueConstraint
from ..database import Base
from ..utils.dates import utcnow
import enum


class GiftCardActivityType(str, enum.Enum):
    ACTIVATE = "ACTIVATE"
    LOAD = "LOAD"
    REDEEM = "REDEEM"
    ADJUST_INCREMENT = "ADJUST_INCREMENT"
    ADJUST_DECREMENT = "ADJUST_DECREMENT"


# Sign applied to the activity amount
ACTIVITY_SIGNS = {
    GiftCardActivityType.ACTIVATE.value: 1,
    GiftCardActivityType.LOAD.value: 1,
    GiftCardActivityType.ADJUST_INCREMENT.value: 1,
    GiftCardActivityType.REDEEM.value: -1,
    GiftCardActivityType.ADJUST_DECREMENT.value: -1,
}


class GiftCard(Base):
    __tablename__ = "gift_cards"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column(String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    external_id = Column(String(64), nullable=False)

    gan = Column(String(64), nullable=True)
    card_type = Column(String(20), nullable=True)  # PHYSICAL, DIGITAL
    state = Column(String(20), nullable=True)  # ACTIVE, DEACTIVATED, BLOCKED, PENDING
    customer_id = Column(String(36), ForeignKey("customers.id", ondelete="SET NULL"), nullable=True)

    current_balance_cents = Column(Integer, default=0, nullable=False)
    reported_balance_cents = Column(Integer, nullable=True)
    currency = Column(String(3), nullable=True)

    upstream_created_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("organization_id", "external_id", name="uq_gift_cards_org_external"),
        Index("ix_gift_cards_gan", "gan"),
    )

    def __repr__(self):
        return f"<GiftCard {self.external_id} balance={self.current_balance_cents}>"


class GiftCardTransaction(Base):
    __tablename__ = "gift_card_transactions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column(String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    gift_card_id = Column(String(36), ForeignKey("gift_cards.id", ondelete="CASCADE"), nullable=False)
    activity_id = Column(String(64), nullable=False)

    activity_type = Column(String(30), nullable=False)
    amount_cents = Column(Integer, nullable=False)  # signed
    currency = Column(String(3), nullable=True)

    external_location_id = Column(String(64), nullable=True)
    external_order_id = Column(String(64), nullable=True)
    external_payment_id = Column(String(64), nullable=True)
    reason = Column(String(100), nullable=True)

    occurred_at = Column(DateTime, nullable=True)
    raw_payload = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("activity_id", name="uq_gift_card_transactions_activity"),
        Index("ix_gift_card_transactions_card", "gift_card_id", "occurred_at"),
    )

    def __repr__(self):
        return f"<GiftCardTransaction {self.activity_type} {self.amount_cents}>"
