"""
Gift Card Ledger

A gift card's balance is the signed sum of its transactions. Each activity is
stored once (keyed by its activity id) and the cached balance is recomputed
from the table in the same transaction, with the card row locked so that
concurrent appends cannot interleave their recomputations.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import ACTIVITY_SIGNS, GiftCard, GiftCardTransaction
from ..schemas.canonical import CanonicalGiftCard, CanonicalGiftCardActivity
from ..utils.db_helpers import acquire_row_lock
from ..utils.upsert import insert_ignore
from .persistence import EntityStore

logger = logging.getLogger(__name__)


@dataclass
class LedgerResult:
    gift_card_id: str
    inserted: bool
    balance_cents: int


@dataclass
class BalanceDrift:
    gift_card_id: str
    external_id: str
    cached_cents: int
    computed_cents: int
    reported_cents: Optional[int]


class GiftCardLedger:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.store = EntityStore(db)

    async def _card_id(self, organization_id: str, activity: CanonicalGiftCardActivity) -> str:
        result = await self.db.execute(
            select(GiftCard.id).where(
                GiftCard.organization_id == organization_id,
                GiftCard.external_id == activity.external_gift_card_id,
            )
        )
        card_id = result.scalars().first()
        if card_id:
            return card_id

        # Activity arrived before the card itself
        row = await insert_ignore(
            self.db,
            GiftCard,
            {
                "organization_id": organization_id,
                "external_id": activity.external_gift_card_id,
                "gan": activity.gan,
                "current_balance_cents": 0,
            },
            ("organization_id", "external_id"),
        )
        if row is not None:
            return row.id
        result = await self.db.execute(
            select(GiftCard.id).where(
                GiftCard.organization_id == organization_id,
                GiftCard.external_id == activity.external_gift_card_id,
            )
        )
        return result.scalars().one()

    async def append(self, organization_id: str, activity: CanonicalGiftCardActivity) -> LedgerResult:
        """Store an activity (idempotent on activity id) and refresh the cached balance."""
        card_id = await self._card_id(organization_id, activity)
        await acquire_row_lock(self.db, GiftCard, GiftCard.id == card_id)

        if activity.activity_type not in ACTIVITY_SIGNS:
            logger.info(
                f"Gift card activity {activity.activity_id} type {activity.activity_type} "
                f"does not move money; not recorded"
            )
            balance = await self.recompute_balance(card_id)
            return LedgerResult(card_id, False, balance)

        row = await insert_ignore(
            self.db,
            GiftCardTransaction,
            {
                "organization_id": organization_id,
                "gift_card_id": card_id,
                "activity_id": activity.activity_id,
                "activity_type": activity.activity_type,
                "amount_cents": activity.amount_cents,
                "currency": activity.currency,
                "external_location_id": activity.external_location_id,
                "external_order_id": activity.external_order_id,
                "external_payment_id": activity.external_payment_id,
                "reason": activity.reason,
                "occurred_at": activity.occurred_at,
                "raw_payload": activity.raw,
            },
            ("activity_id",),
        )
        inserted = row is not None
        if activity.reported_balance_cents is not None:
            await self.db.execute(
                update(GiftCard)
                .where(GiftCard.id == card_id)
                .values(reported_balance_cents=activity.reported_balance_cents)
            )

        balance = await self.recompute_balance(card_id)
        if inserted:
            logger.info(
                f"Gift card {activity.external_gift_card_id} {activity.activity_type} "
                f"{activity.amount_cents:+d} -> balance {balance}"
            )
        return LedgerResult(card_id, inserted, balance)

    async def recompute_balance(self, gift_card_id: str) -> int:
        total = (
            select(func.coalesce(func.sum(GiftCardTransaction.amount_cents), 0))
            .where(GiftCardTransaction.gift_card_id == gift_card_id)
            .scalar_subquery()
        )
        await self.db.execute(
            update(GiftCard)
            .where(GiftCard.id == gift_card_id)
            .values(current_balance_cents=total)
        )
        result = await self.db.execute(
            select(GiftCard.current_balance_cents).where(GiftCard.id == gift_card_id)
        )
        return int(result.scalar_one())

    async def sync_card(
        self,
        organization_id: str,
        card: CanonicalGiftCard,
        activities: Iterable[CanonicalGiftCardActivity],
        customer_id: Optional[str] = None,
    ) -> LedgerResult:
        """Replay a card and its full activity history (backfill)."""
        card_id = await self.store.upsert_gift_card(organization_id, card, customer_id)
        inserted_any = False
        for activity in activities:
            result = await self.append(organization_id, activity)
            inserted_any = inserted_any or result.inserted
        balance = await self.recompute_balance(card_id)
        return LedgerResult(card_id, inserted_any, balance)

    async def audit_balances(self, organization_id: Optional[str] = None) -> List[BalanceDrift]:
        """Cards whose cached, recomputed or upstream-reported balances disagree."""
        computed = (
            select(
                GiftCardTransaction.gift_card_id.label("gift_card_id"),
                func.sum(GiftCardTransaction.amount_cents).label("total"),
            )
            .group_by(GiftCardTransaction.gift_card_id)
            .subquery()
        )
        stmt = (
            select(
                GiftCard.id,
                GiftCard.external_id,
                GiftCard.current_balance_cents,
                GiftCard.reported_balance_cents,
                func.coalesce(computed.c.total, 0).label("computed"),
            )
            .outerjoin(computed, computed.c.gift_card_id == GiftCard.id)
        )
        if organization_id:
            stmt = stmt.where(GiftCard.organization_id == organization_id)

        drifts = []
        for row in (await self.db.execute(stmt)).all():
            computed_cents = int(row.computed)
            reported = row.reported_balance_cents
            if row.current_balance_cents != computed_cents or (
                reported is not None and reported != computed_cents
            ):
                drifts.append(BalanceDrift(
                    gift_card_id=row.id,
                    external_id=row.external_id,
                    cached_cents=row.current_balance_cents,
                    computed_cents=computed_cents,
                    reported_cents=reported,
                ))
        if drifts:
            logger.warning(f"Gift card balance audit found {len(drifts)} drifting cards")
        return drifts
