"""
Entity Resolver

Converts external platform identifiers into internal keys.

"Not found" is an expected outcome here (the referenced row may simply not
have arrived yet), so lookups return a ``Lookup`` value instead of raising.
The only exception raised is ``OrganizationUnresolved``, because nothing may
be written without a tenant.

Stub policy:
- locations, customers and service variations are stub-created on first reference
- staff members are looked up only; a miss is a linking gap
- orders, bookings and gift cards are looked up only
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings, settings as default_settings
from ..errors import OrganizationUnresolved
from ..models import (
    Booking,
    Customer,
    GiftCard,
    Location,
    Order,
    Organization,
    Payment,
    ServiceVariation,
    StaffMember,
)
from ..utils.upsert import insert_ignore
from .normalizer import NormalizedEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Lookup:
    """Result of a resolution: either an internal key or a reason it is missing."""
    key: Optional[str] = None
    via: Optional[str] = None
    reason: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.key is not None

    @classmethod
    def hit(cls, key: str, via: str) -> "Lookup":
        return cls(key=key, via=via)

    @classmethod
    def miss(cls, reason: str) -> "Lookup":
        return cls(reason=reason)


@dataclass
class OrganizationHints:
    """Everything an event offers for tenant resolution."""
    merchant_id: Optional[str] = None
    external_location_id: Optional[str] = None
    # (model, column name, external id) of rows that may already carry tenancy
    siblings: Tuple[Tuple[type, str, str], ...] = ()


def organization_hints(event: NormalizedEvent) -> OrganizationHints:
    record = event.record
    siblings: List[Tuple[type, str, str]] = []

    if event.entity_type == "order":
        siblings.append((Order, "external_id", record.external_id))
        siblings.append((Payment, "external_order_id", record.external_id))
    elif event.entity_type == "payment":
        siblings.append((Payment, "external_id", record.external_id))
        if record.external_order_id:
            siblings.append((Order, "external_id", record.external_order_id))
    elif event.entity_type == "booking":
        siblings.append((Booking, "external_id", record.external_id))
    elif event.entity_type == "gift_card":
        siblings.append((GiftCard, "external_id", record.external_id))
    elif event.entity_type == "gift_card_activity":
        siblings.append((GiftCard, "external_id", record.external_gift_card_id))
    elif event.entity_type == "customer":
        siblings.append((Customer, "external_id", record.external_id))
    elif event.entity_type == "staff_member":
        siblings.append((StaffMember, "external_id", record.external_id))

    return OrganizationHints(
        merchant_id=event.merchant_id,
        external_location_id=getattr(record, "external_location_id", None),
        siblings=tuple(siblings),
    )


class EntityResolver:
    """
    Per-unit-of-work resolver bound to one session. Resolved keys are cached
    for the lifetime of the instance.
    """

    def __init__(self, db: AsyncSession, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or default_settings
        self._cache: Dict[Tuple[str, str, str], str] = {}

    # ------------------------------------------------------------------
    # Organization
    # ------------------------------------------------------------------

    async def resolve_organization(self, hints: OrganizationHints) -> Lookup:
        """Priority chain; the first step that yields exactly one tenant wins."""
        if hints.merchant_id:
            result = await self.db.execute(
                select(Organization.id, Organization.is_active)
                .where(Organization.merchant_id == hints.merchant_id)
            )
            row = result.first()
            if row is not None:
                if not row.is_active:
                    return Lookup.miss(f"organization for merchant {hints.merchant_id} is inactive")
                return Lookup.hit(row.id, "merchant")

        if hints.external_location_id:
            org_id = await self._single_organization(
                select(Location.organization_id)
                .join(Organization, Organization.id == Location.organization_id)
                .where(
                    Location.external_id == hints.external_location_id,
                    Organization.is_active.is_(True),
                )
            )
            if org_id:
                return Lookup.hit(org_id, "location")

        for model, column, external_id in hints.siblings:
            if not external_id:
                continue
            org_id = await self._single_organization(
                select(model.organization_id)
                .join(Organization, Organization.id == model.organization_id)
                .where(
                    getattr(model, column) == external_id,
                    Organization.is_active.is_(True),
                )
            )
            if org_id:
                return Lookup.hit(org_id, "sibling")

        if self.settings.single_tenant_fallback:
            result = await self.db.execute(
                select(Organization.id).where(Organization.is_active.is_(True)).limit(2)
            )
            org_ids = list(result.scalars().all())
            if len(org_ids) == 1:
                return Lookup.hit(org_ids[0], "single_tenant")

        return Lookup.miss("no merchant, location, sibling or single-tenant match")

    async def require_organization(self, event: NormalizedEvent) -> str:
        lookup = await self.resolve_organization(organization_hints(event))
        if not lookup.found:
            raise OrganizationUnresolved(
                f"{event.event_type} {event.event_id}: {lookup.reason}"
            )
        logger.debug(f"Organization {lookup.key} resolved via {lookup.via}")
        return lookup.key

    async def _single_organization(self, stmt) -> Optional[str]:
        result = await self.db.execute(stmt.distinct().limit(2))
        org_ids = list(result.scalars().all())
        if len(org_ids) == 1:
            return org_ids[0]
        if len(org_ids) > 1:
            logger.warning("Ambiguous tenant hint matched several organizations; skipping")
        return None

    # ------------------------------------------------------------------
    # Stub-created references
    # ------------------------------------------------------------------

    async def resolve_location(self, organization_id: str, external_id: Optional[str]) -> Lookup:
        if not external_id:
            return Lookup.miss("no location id")
        return await self._find_or_stub(
            Location,
            organization_id,
            external_id,
            stub_values={"name": f"Location {external_id}", "is_stub": True},
            conflict_columns=("organization_id", "external_id"),
            scoped=True,
        )

    async def resolve_customer(self, organization_id: str, external_id: Optional[str]) -> Lookup:
        if not external_id:
            return Lookup.miss("no customer id")
        # Customer ids are platform-global
        return await self._find_or_stub(
            Customer,
            organization_id,
            external_id,
            stub_values={},
            conflict_columns=("external_id",),
            scoped=False,
        )

    async def resolve_service(self, organization_id: str, external_id: Optional[str]) -> Lookup:
        if not external_id:
            return Lookup.miss("no service variation id")
        return await self._find_or_stub(
            ServiceVariation,
            organization_id,
            external_id,
            stub_values={},
            conflict_columns=("organization_id", "external_id"),
            scoped=True,
        )

    async def _find_or_stub(
        self,
        model,
        organization_id: str,
        external_id: str,
        stub_values: dict,
        conflict_columns: Tuple[str, ...],
        scoped: bool,
    ) -> Lookup:
        cache_key = (model.__tablename__, organization_id if scoped else "", external_id)
        if cache_key in self._cache:
            return Lookup.hit(self._cache[cache_key], "cache")

        existing = await self._find_id(model, organization_id if scoped else None, external_id)
        if existing:
            self._cache[cache_key] = existing
            return Lookup.hit(existing, "match")

        values = {"organization_id": organization_id, "external_id": external_id}
        values.update(stub_values)
        row = await insert_ignore(self.db, model, values, conflict_columns)
        if row is not None:
            logger.info(f"Created stub {model.__tablename__} {external_id}")
            self._cache[cache_key] = row.id
            return Lookup.hit(row.id, "stub")

        # Lost the race to a concurrent writer; its row is now visible
        existing = await self._find_id(model, organization_id if scoped else None, external_id)
        if existing:
            self._cache[cache_key] = existing
            return Lookup.hit(existing, "match")
        return Lookup.miss(f"{model.__tablename__} {external_id} could not be created")

    # ------------------------------------------------------------------
    # Lookup-only references
    # ------------------------------------------------------------------

    async def resolve_staff(self, organization_id: str, external_id: Optional[str]) -> Lookup:
        if not external_id:
            return Lookup.miss("no staff id")
        found = await self._find_id(StaffMember, organization_id, external_id)
        if found:
            return Lookup.hit(found, "match")
        return Lookup.miss(f"staff member {external_id} not yet synced")

    async def resolve_order(self, organization_id: str, external_id: Optional[str]) -> Lookup:
        if not external_id:
            return Lookup.miss("no order id")
        found = await self._find_id(Order, organization_id, external_id)
        if found:
            return Lookup.hit(found, "match")
        return Lookup.miss(f"order {external_id} not yet persisted")

    async def resolve_booking(self, organization_id: str, external_id: Optional[str]) -> Lookup:
        if not external_id:
            return Lookup.miss("no booking id")
        found = await self._find_id(Booking, organization_id, external_id)
        if found:
            return Lookup.hit(found, "match")
        return Lookup.miss(f"booking {external_id} not yet persisted")

    async def resolve_gift_card(self, organization_id: str, external_id: Optional[str]) -> Lookup:
        if not external_id:
            return Lookup.miss("no gift card id")
        found = await self._find_id(GiftCard, organization_id, external_id)
        if found:
            return Lookup.hit(found, "match")
        return Lookup.miss(f"gift card {external_id} not yet persisted")

    async def _find_id(self, model, organization_id: Optional[str], external_id: str) -> Optional[str]:
        stmt = select(model.id).where(model.external_id == external_id)
        if organization_id is not None:
            stmt = stmt.where(model.organization_id == organization_id)
        result = await self.db.execute(stmt)
        return result.scalars().first()
