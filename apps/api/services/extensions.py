"""Licence extension engine.

Both funding modes compute the new expiry the same way: the extension is
added to whichever is later, the current expiry or now, so an expired licence
restarts from today instead of stacking days in the past.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.extension_request import ExtensionRequest
from models.license_account import LicenseAccount
from models.plan_setting import PlanSetting
from models.user import User
from services.broadcaster import (
    CREDITS_UPDATED,
    EXTENSION_REQUEST_UPDATED,
    LICENSE_UPDATED,
    broadcaster,
)
from services.calendar_codec import add_days, format_expiry, now_utc, parse_expiry
from services.credits import debit_credits, get_credit_balance
from services.errors import (
    DuplicatePendingRequest,
    FeatureDisabled,
    InvalidState,
    NotFound,
    ValidationError,
)
from services.license_ref import LicenseRef, effective_status, ensure_account, resolve_license_ref
from services.plans import resolve_plan
from services.system_settings import (
    LICENSE_EXTENSION_COST_PER_DAY,
    LICENSE_EXTENSION_ENABLED,
    LICENSE_EXTENSION_MAX_DAYS,
    get_bool_setting,
    get_int_setting,
)

logger = logging.getLogger(__name__)

FUNDING_MODES = ("credits", "admin_request")
MAX_EXTENSION_DAYS = 9999


def compute_new_expiry(expires_at: str, days: int, now: Optional[datetime] = None) -> datetime:
    base = max(parse_expiry(expires_at), now or now_utc())
    return add_days(base, days)


def assert_extendable(ref: LicenseRef, now: Optional[datetime] = None) -> None:
    if ref.is_lifetime:
        raise InvalidState("Lifetime licenses cannot be extended")
    if ref.account is None:
        if ref.order is None or effective_status(ref.order, now) not in ("activated", "expired"):
            raise InvalidState("Cannot extend license: License must be activated first.")
        return
    if ref.account.status == "suspended":
        raise InvalidState("Suspended licenses cannot be extended")


def _validate_days(days: Any) -> int:
    try:
        value = int(days)
    except (TypeError, ValueError) as exc:
        raise ValidationError("days must be a whole number") from exc
    if value < 1 or value > MAX_EXTENSION_DAYS:
        raise ValidationError(f"days must be between 1 and {MAX_EXTENSION_DAYS}")
    return value


async def _resolve_requested_days(
    db: AsyncSession,
    days: Optional[int],
    plan_days: Optional[Any],
) -> Tuple[int, Optional[PlanSetting]]:
    if (days is None) == (plan_days is None):
        raise ValidationError("Provide exactly one of days or plan_days")
    if days is not None:
        return _validate_days(days), None
    plan = await resolve_plan(db, plan_days)
    if plan.is_lifetime:
        raise ValidationError("The lifetime plan cannot be used as an extension")
    return int(plan.days), plan


async def apply_extension(
    db: AsyncSession,
    ref: LicenseRef,
    days: int,
    *,
    actor: str,
    now: Optional[datetime] = None,
) -> Tuple[LicenseAccount, str]:
    """Move the expiry forward by ``days``; returns the account and its previous expiry.

    Does not commit.
    """
    current = now or now_utc()
    assert_extendable(ref, current)
    previous_expiry = ref.expires_at
    new_expiry = format_expiry(compute_new_expiry(previous_expiry, days, current))

    account = await ensure_account(db, ref, current)
    account.expires_at = new_expiry
    account.cumulative_plan_days = int(account.cumulative_plan_days or account.plan_days) + int(days)
    account.status = "valid"
    account.extended_by = actor
    account.last_extended_at = current
    if ref.order is not None:
        ref.order.expires_at = new_expiry
        if ref.order.status == "expired":
            ref.order.status = "activated"
    await db.flush()
    return account, previous_expiry


def _history_row(
    ref: LicenseRef,
    *,
    days: int,
    requested_plan: str,
    funding_mode: str,
    current_expiry: str,
    status: str,
    credits_used: int = 0,
    account: Optional[LicenseAccount] = None,
    processed_by: Optional[str] = None,
    processed_at: Optional[datetime] = None,
) -> ExtensionRequest:
    cumulative = account.cumulative_plan_days if account is not None else None
    return ExtensionRequest(
        id=str(uuid.uuid4()),
        user_id=ref.owner_id,
        username=ref.username,
        license_code=ref.code,
        license_source=ref.source,
        license_account_id=ref.account.id if ref.account is not None else None,
        license_order_id=ref.order.id if ref.order is not None else None,
        current_expiry=current_expiry,
        requested_plan=requested_plan,
        requested_days=days,
        cumulative_plan_days=cumulative,
        total_extended_days=(cumulative - account.plan_days) if account is not None else None,
        funding_mode=funding_mode,
        credits_used=credits_used,
        status=status,
        processed_by=processed_by,
        processed_at=processed_at,
    )


async def _pending_request_exists(db: AsyncSession, license_code: str) -> bool:
    result = await db.execute(
        select(ExtensionRequest.id).where(
            ExtensionRequest.license_code == license_code,
            ExtensionRequest.status == "pending",
        )
    )
    return result.scalars().first() is not None


async def extend_license_service(
    *,
    user_id: str,
    license_id: str,
    db: AsyncSession,
    days: Optional[int] = None,
    plan_days: Optional[Any] = None,
    funding_mode: str = "credits",
    source: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    if funding_mode not in FUNDING_MODES:
        raise ValidationError(f"funding_mode must be one of {', '.join(FUNDING_MODES)}")
    if not await get_bool_setting(db, LICENSE_EXTENSION_ENABLED):
        raise FeatureDisabled("License extension is currently disabled")

    current = now or now_utc()
    extension_days, plan = await _resolve_requested_days(db, days, plan_days)
    max_days = await get_int_setting(db, LICENSE_EXTENSION_MAX_DAYS)
    if extension_days > max_days:
        raise ValidationError(f"Maximum extension is {max_days} days")

    ref = await resolve_license_ref(db, license_id, owner_id=user_id, source=source)
    assert_extendable(ref, current)
    # Reject unreadable expiry strings before any money moves.
    parse_expiry(ref.expires_at)
    requested_plan = plan.name if plan is not None else f"{extension_days} days"

    if funding_mode == "admin_request":
        return await _queue_extension_request(
            db, ref, days=extension_days, requested_plan=requested_plan
        )

    if plan is not None:
        cost = int(plan.points)
    else:
        cost = extension_days * await get_int_setting(db, LICENSE_EXTENSION_COST_PER_DAY)

    try:
        previous_expiry = ref.expires_at
        history = _history_row(
            ref,
            days=extension_days,
            requested_plan=requested_plan,
            funding_mode="credits",
            current_expiry=previous_expiry,
            status="approved",
            credits_used=cost,
            processed_by="system",
            processed_at=current,
        )
        remaining = await debit_credits(
            user_id,
            db,
            amount=cost,
            reason=f"License extension {ref.code} +{extension_days} days",
            actor=user_id,
            entry_type="extension",
            reference_type="extension_request",
            reference_id=history.id,
        )
        account, _ = await apply_extension(db, ref, extension_days, actor="user", now=current)
        history.cumulative_plan_days = account.cumulative_plan_days
        history.total_extended_days = account.cumulative_plan_days - account.plan_days
        history.license_account_id = account.id
        db.add(history)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "license_extended user=%s code=%s days=%s credits=%s new_expiry=%s",
        user_id,
        account.code,
        extension_days,
        cost,
        account.expires_at,
    )
    await broadcaster.publish(
        LICENSE_UPDATED,
        {"action": "extended", "code": account.code, "status": "valid", "expires_at": account.expires_at},
        room=user_id,
    )
    await broadcaster.publish(
        CREDITS_UPDATED, {"balance": remaining, "delta": -cost, "reason": "license-extension"}, room=user_id
    )
    return {
        "status": "completed",
        "license_code": account.code,
        "previous_expiry": previous_expiry,
        "new_expiry": account.expires_at,
        "days_added": extension_days,
        "cumulative_plan_days": account.cumulative_plan_days,
        "credits_used": cost,
        "remaining_credits": remaining,
    }


async def _queue_extension_request(
    db: AsyncSession,
    ref: LicenseRef,
    *,
    days: int,
    requested_plan: str,
) -> Dict[str, Any]:
    if await _pending_request_exists(db, ref.code):
        raise DuplicatePendingRequest("You already have a pending extension request for this license")

    request = _history_row(
        ref,
        days=days,
        requested_plan=requested_plan,
        funding_mode="admin_request",
        current_expiry=ref.expires_at,
        status="pending",
    )
    if ref.account is not None:
        request.cumulative_plan_days = ref.account.cumulative_plan_days
    try:
        db.add(request)
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise DuplicatePendingRequest(
            "You already have a pending extension request for this license"
        ) from exc

    logger.info("extension_requested user=%s code=%s days=%s request=%s", ref.owner_id, ref.code, days, request.id)
    await broadcaster.publish(
        EXTENSION_REQUEST_UPDATED,
        {"action": "created", "request_id": request.id, "code": ref.code, "status": "pending"},
        room=ref.owner_id,
    )
    return {"status": "pending", "request_id": request.id, "license_code": ref.code, "days": days}


async def admin_extend_license_service(
    *,
    license_id: str,
    days: int,
    admin_id: str,
    db: AsyncSession,
    source: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    current = now or now_utc()
    extension_days = _validate_days(days)
    ref = await resolve_license_ref(db, license_id, source=source)
    try:
        account, previous_expiry = await apply_extension(db, ref, extension_days, actor=admin_id, now=current)
        db.add(
            _history_row(
                ref,
                days=extension_days,
                requested_plan=f"{extension_days} days",
                funding_mode="admin",
                current_expiry=previous_expiry,
                status="approved",
                account=account,
                processed_by=admin_id,
                processed_at=current,
            )
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "license_extended_by_admin admin=%s code=%s days=%s new_expiry=%s",
        admin_id,
        account.code,
        extension_days,
        account.expires_at,
    )
    await broadcaster.publish(
        LICENSE_UPDATED,
        {"action": "extended", "code": account.code, "status": "valid", "expires_at": account.expires_at},
        room=account.user_id,
    )
    return {
        "license_code": account.code,
        "previous_expiry": previous_expiry,
        "new_expiry": account.expires_at,
        "days_added": extension_days,
        "cumulative_plan_days": account.cumulative_plan_days,
    }


async def get_extension_settings(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    result = await db.execute(select(User.id).where(User.id == user_id))
    if result.scalar_one_or_none() is None:
        raise NotFound("Account not found")
    return {
        "enabled": await get_bool_setting(db, LICENSE_EXTENSION_ENABLED),
        "cost_per_day": await get_int_setting(db, LICENSE_EXTENSION_COST_PER_DAY),
        "max_days": await get_int_setting(db, LICENSE_EXTENSION_MAX_DAYS),
        "user_credits": await get_credit_balance(user_id, db),
    }
