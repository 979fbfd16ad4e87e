"""Unified licence lookup across order rows and activated account rows.

A licence code can be backed by a ``license_accounts`` row (activated trading
account), a ``license_orders`` row (purchase record), or both. Call sites work
with a ``LicenseRef`` and never branch on the backing table themselves.

Fallback order: ``license_accounts`` by id, then by code; then
``license_orders`` by id, then by code.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.license_account import LicenseAccount
from models.license_order import LicenseOrder
from services.calendar_codec import now_utc, parse_expiry
from services.errors import InvalidState, NotFound, ValidationError
from services.plans import is_lifetime_days

logger = logging.getLogger(__name__)

SOURCES = ("account", "order")

ORDER_STATUSES = ("pending_payment", "paid", "activated", "expired", "cancelled")
ACCOUNT_STATUSES = ("valid", "suspended", "expired")


def effective_status(record: Union[LicenseAccount, LicenseOrder], now: Optional[datetime] = None) -> str:
    """Derive the status a licence has right now from its stored expiry.

    Suspension, unpaid and cancelled states are taken as stored. Otherwise a
    stored ``valid``/``activated`` (or ``expired``) is re-derived from
    ``expires_at`` so a lapsed licence reads as expired without any sweep.
    Lifetime licences never expire.
    """
    current = now or now_utc()
    if isinstance(record, LicenseAccount):
        if record.status == "suspended":
            return "suspended"
        if is_lifetime_days(record.plan_days):
            return "valid"
        return "expired" if parse_expiry(record.expires_at) <= current else "valid"

    if record.status not in ("activated", "expired"):
        return record.status
    if is_lifetime_days(record.plan_days):
        return "activated"
    return "expired" if parse_expiry(record.expires_at) <= current else "activated"


@dataclass
class LicenseRef:
    account: Optional[LicenseAccount] = None
    order: Optional[LicenseOrder] = None

    @property
    def _primary(self) -> Union[LicenseAccount, LicenseOrder]:
        primary = self.account or self.order
        if primary is None:
            raise NotFound("License not found")
        return primary

    @property
    def source(self) -> str:
        if self.account is not None and self.order is not None:
            return "both"
        return "account" if self.account is not None else "order"

    @property
    def id(self) -> str:
        return self._primary.id

    @property
    def code(self) -> str:
        return self._primary.code

    @property
    def owner_id(self) -> str:
        return self._primary.user_id

    @property
    def username(self) -> str:
        return self._primary.username

    @property
    def expires_at(self) -> str:
        return self._primary.expires_at

    @property
    def plan_days(self) -> int:
        return int(self._primary.plan_days)

    @property
    def is_lifetime(self) -> bool:
        return is_lifetime_days(self.plan_days)

    def status(self, now: Optional[datetime] = None) -> str:
        return effective_status(self._primary, now)


async def _find_account(db: AsyncSession, identifier: str) -> Optional[LicenseAccount]:
    result = await db.execute(
        select(LicenseAccount).where(or_(LicenseAccount.id == identifier, LicenseAccount.code == identifier))
    )
    return result.scalars().first()


async def _find_order(db: AsyncSession, identifier: str) -> Optional[LicenseOrder]:
    result = await db.execute(
        select(LicenseOrder).where(or_(LicenseOrder.id == identifier, LicenseOrder.code == identifier))
    )
    return result.scalars().first()


async def resolve_license_ref(
    db: AsyncSession,
    license_id: str,
    *,
    owner_id: Optional[str] = None,
    source: Optional[str] = None,
) -> LicenseRef:
    """Resolve ``license_id`` (row id or licence code) to a ``LicenseRef``.

    ``source`` restricts the lookup to one backing table. When ``owner_id`` is
    given, licences owned by someone else are reported as not found.
    """
    identifier = str(license_id or "").strip()
    if not identifier:
        raise ValidationError("License identifier is required")
    if source is not None and source not in SOURCES:
        raise ValidationError(f"source must be one of {', '.join(SOURCES)}")

    ref = LicenseRef()
    if source in (None, "account"):
        ref.account = await _find_account(db, identifier)
        if ref.account is not None:
            result = await db.execute(select(LicenseOrder).where(LicenseOrder.code == ref.account.code))
            ref.order = result.scalars().first()

    if ref.account is None and source in (None, "order"):
        ref.order = await _find_order(db, identifier)
        if ref.order is not None:
            result = await db.execute(select(LicenseAccount).where(LicenseAccount.code == ref.order.code))
            ref.account = result.scalars().first()

    if ref.account is None and ref.order is None:
        raise NotFound("License not found or access denied")
    if owner_id is not None and ref.owner_id != owner_id:
        raise NotFound("License not found or access denied")
    return ref


async def ensure_account(db: AsyncSession, ref: LicenseRef, now: Optional[datetime] = None) -> LicenseAccount:
    """Return the account row for ``ref``, creating it for activated legacy orders."""
    if ref.account is not None:
        return ref.account

    order = ref.order
    if order is None or effective_status(order, now) not in ("activated", "expired"):
        raise InvalidState("Cannot extend license: License must be activated first.")

    account = LicenseAccount(
        id=str(uuid.uuid4()),
        user_id=order.user_id,
        username=order.username,
        code=order.code,
        platform=order.platform,
        account_number=order.account_number,
        plan_days=order.plan_days,
        cumulative_plan_days=order.plan_days,
        status="valid",
        expires_at=order.expires_at,
        created_by="admin" if order.source == "admin" else "user",
        activated_at=order.activated_at or now or now_utc(),
    )
    db.add(account)
    await db.flush()
    ref.account = account
    logger.info("license_account_materialized code=%s order=%s", order.code, order.id)
    return account
