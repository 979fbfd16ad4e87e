"""Licence lifecycle services: purchase, activation, suspension and deletion.

Order lifecycle: pending_payment -> paid -> activated -> expired, with
pending_payment/paid -> cancelled. Activated accounts toggle valid <->
suspended. Expiry is derived from ``expires_at`` at read time and only written
back when an operation already touches the row.
"""

from __future__ import annotations

import logging
import secrets
import string
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.license_account import LicenseAccount
from models.license_order import LicenseOrder
from models.plan_setting import LIFETIME_PLAN_DAYS
from models.user import User
from services.broadcaster import CREDITS_UPDATED, LICENSE_UPDATED, broadcaster
from services.calendar_codec import add_days, format_expiry, now_utc
from services.credits import debit_credits, get_credit_balance
from services.errors import (
    ExpiryParseError,
    FeatureDisabled,
    InternalError,
    InvalidState,
    LicenceError,
    NotFound,
    ValidationError,
)
from services.license_ref import LicenseRef, effective_status, ensure_account, resolve_license_ref
from services.plans import is_lifetime_days, resolve_plan
from services.system_settings import (
    ACCOUNT_NUMBER_CHANGE_COST,
    ACCOUNT_NUMBER_CHANGE_ENABLED,
    get_bool_setting,
    get_int_setting,
)

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ("money", "credits")
DELETABLE_ACCOUNT_STATUSES = ("suspended", "expired")
DELETABLE_ORDER_STATUSES = ("expired", "cancelled")
LISTABLE_STATUSES = ("valid", "suspended", "expired", "pending_payment", "paid", "activated", "cancelled")
LIFETIME_HORIZON = timedelta(days=50 * 365)
_CODE_ALPHABET = string.ascii_uppercase + string.digits


def _base36(value: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_CODE_ALPHABET[rem] if rem >= 10 else str(rem))
    return "".join(reversed(digits)) or "0"


def generate_license_code() -> str:
    timestamp = _base36(int(time.time() * 1000))
    random_part = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(6))
    return f"{settings.LICENCE_CODE_PREFIX}-{timestamp}-{random_part}"


async def _unique_license_code(db: AsyncSession) -> str:
    for _ in range(5):
        code = generate_license_code()
        result = await db.execute(select(LicenseOrder.id).where(LicenseOrder.code == code))
        if result.scalar_one_or_none() is None:
            return code
    raise InternalError("Could not allocate a unique licence code")


def initial_expiry(plan_days: int, now: datetime) -> str:
    if is_lifetime_days(plan_days):
        return format_expiry(now + LIFETIME_HORIZON)
    return format_expiry(add_days(now, plan_days))


def sync_account_status(account: LicenseAccount, now: Optional[datetime] = None) -> str:
    """Write the derived status back onto an account that is being modified."""
    status = effective_status(account, now)
    if account.status != status:
        account.status = status
    return status


def serialize_account(account: LicenseAccount, now: Optional[datetime] = None) -> Dict[str, Any]:
    try:
        status = effective_status(account, now)
        expiry_valid = True
    except ExpiryParseError:
        status = account.status
        expiry_valid = False
    return {
        "id": account.id,
        "source": "account",
        "code": account.code,
        "username": account.username,
        "platform": account.platform,
        "account_number": account.account_number,
        "plan_days": None if is_lifetime_days(account.plan_days) else account.plan_days,
        "is_lifetime": is_lifetime_days(account.plan_days),
        "cumulative_plan_days": account.cumulative_plan_days,
        "status": status,
        "expires_at": account.expires_at,
        "expires_at_valid": expiry_valid,
        "created_by": account.created_by,
    }


def serialize_order(order: LicenseOrder, now: Optional[datetime] = None) -> Dict[str, Any]:
    try:
        status = effective_status(order, now)
        expiry_valid = True
    except ExpiryParseError:
        status = order.status
        expiry_valid = False
    return {
        "id": order.id,
        "source": "order",
        "code": order.code,
        "username": order.username,
        "platform": order.platform,
        "account_number": order.account_number,
        "plan_days": None if is_lifetime_days(order.plan_days) else order.plan_days,
        "is_lifetime": is_lifetime_days(order.plan_days),
        "price": order.price,
        "points_used": order.points_used,
        "payment_source": order.source,
        "status": status,
        "expires_at": order.expires_at,
        "expires_at_valid": expiry_valid,
    }


async def _get_user(db: AsyncSession, user_id: str) -> User:
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise NotFound("Account not found")
    return user


def _new_account_for_order(order: LicenseOrder, *, created_by: str, now: datetime) -> LicenseAccount:
    return LicenseAccount(
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
        created_by=created_by,
        activated_at=now,
    )


async def purchase_license_service(
    *,
    user_id: str,
    account_number: str,
    platform: str,
    plan: Any,
    payment_method: str,
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    account_number = str(account_number or "").strip()
    platform = str(platform or "").strip()
    if not account_number or not platform:
        raise ValidationError("Account number, platform, and plan are required")
    if len(account_number) < 4:
        raise ValidationError("Account number must be at least 4 characters")
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(f"payment_method must be one of {', '.join(PAYMENT_METHODS)}")

    current = now or now_utc()
    user = await _get_user(db, user_id)
    plan_setting = await resolve_plan(db, plan)
    plan_days = LIFETIME_PLAN_DAYS if plan_setting.is_lifetime else plan_setting.days
    code = await _unique_license_code(db)

    order = LicenseOrder(
        id=str(uuid.uuid4()),
        user_id=user.id,
        username=user.username,
        code=code,
        platform=platform,
        account_number=account_number,
        plan_days=plan_days,
        price=plan_setting.price if payment_method == "money" else 0,
        points_used=plan_setting.points if payment_method == "credits" else 0,
        source=payment_method,
        status="pending_payment",
        expires_at=initial_expiry(plan_days, current),
    )

    remaining_credits: Optional[int] = None
    try:
        db.add(order)
        await db.flush()
        if payment_method == "credits":
            remaining_credits = await debit_credits(
                user.id,
                db,
                amount=plan_setting.points,
                reason=f"License purchase {code} ({plan_setting.name})",
                actor=user.id,
                entry_type="purchase",
                reference_type="license_order",
                reference_id=order.id,
            )
            order.status = "activated"
            order.paid_at = current
            order.activated_at = current
            db.add(_new_account_for_order(order, created_by="user", now=current))
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "license_purchased user=%s code=%s plan_days=%s method=%s status=%s",
        user.id,
        code,
        plan_days,
        payment_method,
        order.status,
    )
    await broadcaster.publish(
        LICENSE_UPDATED,
        {"action": "purchase-created", "code": code, "status": order.status},
        room=user.id,
    )
    payload: Dict[str, Any] = {
        "license_code": code,
        "status": order.status,
        "order_id": order.id,
        "plan_days": None if plan_setting.is_lifetime else plan_days,
        "is_lifetime": bool(plan_setting.is_lifetime),
        "price": order.price,
        "expires_at": order.expires_at,
    }
    if remaining_credits is not None:
        payload["credits_used"] = plan_setting.points
        payload["remaining_credits"] = remaining_credits
        await broadcaster.publish(
            CREDITS_UPDATED,
            {"balance": remaining_credits, "delta": -plan_setting.points, "reason": "license-purchase"},
            room=user.id,
        )
    return payload


async def admin_create_license(
    *,
    username: str,
    platform: str,
    account_number: str,
    plan: Any,
    admin_id: str,
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Grant an activated licence to an existing customer without charging credits."""
    username = str(username or "").strip()
    account_number = str(account_number or "").strip()
    platform = str(platform or "").strip()
    if not username or not account_number or not platform:
        raise ValidationError("Username, account number, platform, and plan are required")
    if len(account_number) < 4:
        raise ValidationError("Account number must be at least 4 characters")

    current = now or now_utc()
    result = await db.execute(select(User).where(User.username == username))
    user = result.scalar_one_or_none()
    if not user:
        raise NotFound(f"User {username} not found")

    for model in (LicenseOrder, LicenseAccount):
        clash = await db.execute(
            select(model.id).where(model.user_id == user.id, model.account_number == account_number)
        )
        if clash.scalars().first():
            raise ValidationError("Account number already exists")

    plan_setting = await resolve_plan(db, plan)
    plan_days = LIFETIME_PLAN_DAYS if plan_setting.is_lifetime else plan_setting.days
    code = await _unique_license_code(db)
    order = LicenseOrder(
        id=str(uuid.uuid4()),
        user_id=user.id,
        username=user.username,
        code=code,
        platform=platform,
        account_number=account_number,
        plan_days=plan_days,
        price=0,
        points_used=0,
        source="admin",
        status="activated",
        expires_at=initial_expiry(plan_days, current),
        paid_at=current,
        activated_at=current,
    )
    account = _new_account_for_order(order, created_by="admin", now=current)
    try:
        db.add(order)
        db.add(account)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "license_granted user=%s code=%s plan_days=%s admin=%s", user.id, code, plan_days, admin_id
    )
    await broadcaster.publish(
        LICENSE_UPDATED,
        {"action": "admin-created", "code": code, "status": "valid", "expires_at": account.expires_at},
        room=user.id,
    )
    return serialize_account(account, current)


async def list_user_licenses(user_id: str, db: AsyncSession, now: Optional[datetime] = None) -> Dict[str, Any]:
    current = now or now_utc()
    accounts_result = await db.execute(
        select(LicenseAccount).where(LicenseAccount.user_id == user_id).order_by(LicenseAccount.created_at.desc())
    )
    accounts = accounts_result.scalars().all()
    activated_codes = {account.code for account in accounts}

    orders_result = await db.execute(
        select(LicenseOrder).where(LicenseOrder.user_id == user_id).order_by(LicenseOrder.created_at.desc())
    )
    items: List[Dict[str, Any]] = [serialize_account(account, current) for account in accounts]
    items.extend(
        serialize_order(order, current)
        for order in orders_result.scalars().all()
        if order.code not in activated_codes
    )
    return {"count": len(items), "items": items}


async def list_admin_licenses(
    db: AsyncSession,
    *,
    status: Optional[str] = None,
    search: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """List every licence, accounts first, filtered on derived status and a text search."""
    status_filter = str(status or "").strip().lower()
    if status_filter in ("", "all"):
        status_filter = ""
    elif status_filter not in LISTABLE_STATUSES:
        raise ValidationError(f"status must be one of all, {', '.join(LISTABLE_STATUSES)}")

    current = now or now_utc()
    account_query = select(LicenseAccount).order_by(LicenseAccount.created_at.desc())
    order_query = select(LicenseOrder).order_by(LicenseOrder.created_at.desc())
    term = str(search or "").strip()
    if term:
        pattern = f"%{term}%"
        account_query = account_query.where(
            or_(
                LicenseAccount.code.ilike(pattern),
                LicenseAccount.username.ilike(pattern),
                LicenseAccount.account_number.ilike(pattern),
            )
        )
        order_query = order_query.where(
            or_(
                LicenseOrder.code.ilike(pattern),
                LicenseOrder.username.ilike(pattern),
                LicenseOrder.account_number.ilike(pattern),
            )
        )

    accounts = (await db.execute(account_query)).scalars().all()
    account_codes = set((await db.execute(select(LicenseAccount.code))).scalars().all())
    items: List[Dict[str, Any]] = [serialize_account(account, current) for account in accounts]
    items.extend(
        serialize_order(order, current)
        for order in (await db.execute(order_query)).scalars().all()
        if order.code not in account_codes
    )
    if status_filter:
        items = [item for item in items if item["status"] == status_filter]
    return {"count": len(items), "items": items}


async def _get_order(db: AsyncSession, order_id: str) -> LicenseOrder:
    ref = await resolve_license_ref(db, order_id, source="order")
    if ref.order is None:
        raise NotFound("License order not found")
    return ref.order


async def mark_order_paid(
    *,
    order_id: str,
    admin_id: str,
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    order = await _get_order(db, order_id)
    if order.status != "pending_payment":
        raise InvalidState(f"Only pending_payment orders can be marked paid (current: {order.status})")
    order.status = "paid"
    order.paid_at = now or now_utc()
    await db.commit()
    logger.info("license_order_paid code=%s admin=%s", order.code, admin_id)
    await broadcaster.publish(
        LICENSE_UPDATED, {"action": "paid", "code": order.code, "status": "paid"}, room=order.user_id
    )
    return serialize_order(order, now)


async def activate_order(
    *,
    order_id: str,
    admin_id: str,
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    current = now or now_utc()
    order = await _get_order(db, order_id)
    if order.status != "paid":
        raise InvalidState(f"Only paid orders can be activated (current: {order.status})")

    order.status = "activated"
    order.activated_at = current
    order.expires_at = initial_expiry(order.plan_days, current)
    result = await db.execute(select(LicenseAccount).where(LicenseAccount.code == order.code))
    account = result.scalars().first()
    if account is None:
        account = _new_account_for_order(
            order, created_by="admin" if order.source == "admin" else "user", now=current
        )
        db.add(account)
    await db.commit()
    logger.info("license_activated code=%s admin=%s expires=%s", order.code, admin_id, order.expires_at)
    await broadcaster.publish(
        LICENSE_UPDATED,
        {"action": "activated", "code": order.code, "status": "valid", "expires_at": account.expires_at},
        room=order.user_id,
    )
    return serialize_account(account, current)


async def cancel_order(
    *,
    order_id: str,
    admin_id: str,
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    order = await _get_order(db, order_id)
    if order.status not in ("pending_payment", "paid"):
        raise InvalidState(f"Only unpaid or paid orders can be cancelled (current: {order.status})")
    order.status = "cancelled"
    await db.commit()
    logger.info("license_order_cancelled code=%s admin=%s", order.code, admin_id)
    await broadcaster.publish(
        LICENSE_UPDATED, {"action": "cancelled", "code": order.code, "status": "cancelled"}, room=order.user_id
    )
    return serialize_order(order, now)


async def suspend_license(
    *,
    license_id: str,
    admin_id: str,
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    current = now or now_utc()
    ref = await resolve_license_ref(db, license_id)
    account = await ensure_account(db, ref, current)
    status = sync_account_status(account, current)
    if status != "valid":
        await db.rollback()
        raise InvalidState(f"Only valid licenses can be suspended (current: {status})")
    account.status = "suspended"
    await db.commit()
    logger.info("license_suspended code=%s admin=%s", account.code, admin_id)
    await broadcaster.publish(
        LICENSE_UPDATED, {"action": "suspended", "code": account.code, "status": "suspended"}, room=account.user_id
    )
    return serialize_account(account, current)


async def resume_license(
    *,
    license_id: str,
    admin_id: str,
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    current = now or now_utc()
    ref = await resolve_license_ref(db, license_id)
    account = ref.account
    if account is None or account.status != "suspended":
        raise InvalidState("Only suspended licenses can be resumed")
    # Suspension does not pause the countdown; a lapsed licence resumes as expired.
    account.status = "valid"
    status = sync_account_status(account, current)
    await db.commit()
    logger.info("license_resumed code=%s admin=%s status=%s", account.code, admin_id, status)
    await broadcaster.publish(
        LICENSE_UPDATED, {"action": "resumed", "code": account.code, "status": status}, room=account.user_id
    )
    return serialize_account(account, current)


def _assert_deletable(ref: LicenseRef, now: datetime) -> str:
    if ref.account is not None:
        status = effective_status(ref.account, now)
        if status not in DELETABLE_ACCOUNT_STATUSES:
            raise InvalidState(f"Only suspended or expired licenses can be deleted (current: {status})")
        return status
    status = effective_status(ref.order, now)
    if status not in DELETABLE_ORDER_STATUSES:
        raise InvalidState(f"Only expired or cancelled orders can be deleted (current: {status})")
    return status


async def delete_license(
    *,
    license_id: str,
    confirmation: Optional[str],
    admin_id: str,
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    if (confirmation or "") != settings.DELETE_CONFIRMATION_TOKEN:
        raise ValidationError(f'Please type "{settings.DELETE_CONFIRMATION_TOKEN}" to confirm')

    current = now or now_utc()
    ref = await resolve_license_ref(db, license_id)
    previous_status = _assert_deletable(ref, current)
    code, owner_id = ref.code, ref.owner_id
    if ref.account is not None:
        await db.delete(ref.account)
    if ref.order is not None:
        await db.delete(ref.order)
    await db.commit()
    logger.info("license_deleted code=%s admin=%s previous_status=%s", code, admin_id, previous_status)
    await broadcaster.publish(
        LICENSE_UPDATED, {"action": "deleted", "code": code, "status": "deleted"}, room=owner_id
    )
    return {"code": code, "deleted": True, "previous_status": previous_status}


async def bulk_license_action(
    *,
    action: str,
    license_ids: List[str],
    admin_id: str,
    db: AsyncSession,
    confirmation: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    if action not in ("suspend", "delete"):
        raise ValidationError("Invalid action. Use suspend or delete.")
    if not license_ids:
        raise ValidationError("ids array required")

    processed: List[Dict[str, Any]] = []
    errors: List[Dict[str, Any]] = []
    for license_id in license_ids:
        try:
            if action == "suspend":
                result = await suspend_license(license_id=license_id, admin_id=admin_id, db=db, now=now)
            else:
                result = await delete_license(
                    license_id=license_id, confirmation=confirmation, admin_id=admin_id, db=db, now=now
                )
            processed.append({"id": license_id, "code": result.get("code")})
        except LicenceError as exc:
            await db.rollback()
            errors.append({"id": license_id, "error": exc.error_code, "detail": exc.detail})
        except SQLAlchemyError as exc:
            await db.rollback()
            logger.exception("Bulk %s failed for license %s", action, license_id)
            errors.append({"id": license_id, "error": "internal_error", "detail": str(exc)})

    return {
        "action": action,
        "processed": processed,
        "errors": errors,
        "processed_count": len(processed),
        "error_count": len(errors),
    }


async def get_account_change_settings(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    balance = await get_credit_balance(user_id, db)
    cost = await get_int_setting(db, ACCOUNT_NUMBER_CHANGE_COST)
    return {
        "enabled": await get_bool_setting(db, ACCOUNT_NUMBER_CHANGE_ENABLED),
        "cost": cost,
        "user_credits": balance,
        "can_afford": balance >= cost,
    }


async def change_account_number_service(
    *,
    user_id: str,
    license_code: str,
    new_account_number: str,
    db: AsyncSession,
) -> Dict[str, Any]:
    new_account_number = str(new_account_number or "").strip()
    if not license_code or not new_account_number:
        raise ValidationError("License code and new account number are required")
    if len(new_account_number) < 4:
        raise ValidationError("Account number must be at least 4 characters")
    if not await get_bool_setting(db, ACCOUNT_NUMBER_CHANGE_ENABLED):
        raise FeatureDisabled("Account number change feature is currently disabled")

    cost = await get_int_setting(db, ACCOUNT_NUMBER_CHANGE_COST)
    ref = await resolve_license_ref(db, license_code, owner_id=user_id)

    for model in (LicenseOrder, LicenseAccount):
        clash = await db.execute(
            select(model.id).where(
                model.user_id == user_id,
                model.account_number == new_account_number,
                model.code != ref.code,
            )
        )
        if clash.scalars().first():
            raise ValidationError("This account number is already in use with another license")

    old_account_number = (ref.account or ref.order).account_number
    try:
        remaining = await debit_credits(
            user_id,
            db,
            amount=cost,
            reason=(
                f"Account number changed from {old_account_number} to {new_account_number} "
                f"for license {ref.code}"
            ),
            actor=user_id,
            entry_type="account_change",
            reference_type="license",
            reference_id=ref.code,
        )
        for record in (ref.order, ref.account):
            if record is not None:
                record.account_number = new_account_number
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "account_number_changed user=%s code=%s cost=%s remaining=%s", user_id, ref.code, cost, remaining
    )
    await broadcaster.publish(
        LICENSE_UPDATED,
        {
            "action": "account_number_changed",
            "code": ref.code,
            "old_account_number": old_account_number,
            "new_account_number": new_account_number,
        },
        room=user_id,
    )
    await broadcaster.publish(
        CREDITS_UPDATED, {"balance": remaining, "delta": -cost, "reason": "account-number-change"}, room=user_id
    )
    return {
        "license_code": ref.code,
        "old_account_number": old_account_number,
        "new_account_number": new_account_number,
        "credits_deducted": cost,
        "remaining_credits": remaining,
    }
