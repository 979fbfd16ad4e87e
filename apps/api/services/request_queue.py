"""Admin approval queue for top-up and extension requests.

A request is claimed with a conditional ``UPDATE ... WHERE status = 'pending'``;
whoever gets the row wins and every later attempt sees ``InvalidState``. The
claim and the side effect it unlocks share one transaction, so a failed side
effect leaves the request pending.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Type, Union

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.extension_request import ExtensionRequest
from models.topup_request import TopUpRequest
from models.user import User
from services.broadcaster import (
    CREDITS_UPDATED,
    EXTENSION_REQUEST_UPDATED,
    LICENSE_UPDATED,
    TOPUP_STATUS_UPDATED,
    broadcaster,
)
from services.calendar_codec import now_utc
from services.credits import credit_credits
from services.errors import (
    DuplicatePendingRequest,
    InvalidState,
    LicenceError,
    NotFound,
    ValidationError,
)
from services.extensions import apply_extension
from services.license_ref import resolve_license_ref

logger = logging.getLogger(__name__)

REQUEST_STATUSES = ("pending", "approved", "rejected")
TOPUP_PAYMENT_METHODS = ("bank_transfer", "promptpay", "truemoney", "cash")
QueueModel = Union[Type[TopUpRequest], Type[ExtensionRequest]]


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_topup(request: TopUpRequest) -> Dict[str, Any]:
    return {
        "id": request.id,
        "user_id": request.user_id,
        "username": request.username,
        "amount": request.amount,
        "points": request.points,
        "payment_method": request.payment_method,
        "payment_proof": request.payment_proof,
        "transaction_ref": request.transaction_ref,
        "status": request.status,
        "rejection_reason": request.rejection_reason,
        "processed_by": request.processed_by,
        "processed_at": _iso(request.processed_at),
        "created_at": _iso(request.created_at),
    }


def serialize_extension_request(request: ExtensionRequest) -> Dict[str, Any]:
    return {
        "id": request.id,
        "user_id": request.user_id,
        "username": request.username,
        "license_code": request.license_code,
        "license_source": request.license_source,
        "current_expiry": request.current_expiry,
        "requested_plan": request.requested_plan,
        "requested_days": request.requested_days,
        "cumulative_plan_days": request.cumulative_plan_days,
        "total_extended_days": request.total_extended_days,
        "funding_mode": request.funding_mode,
        "credits_used": request.credits_used,
        "status": request.status,
        "rejection_reason": request.rejection_reason,
        "processed_by": request.processed_by,
        "processed_at": _iso(request.processed_at),
        "requested_at": _iso(request.requested_at),
    }


def _validate_status_filter(status: Optional[str]) -> Optional[str]:
    if status in (None, "", "all"):
        return None
    if status not in REQUEST_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(REQUEST_STATUSES)} or all")
    return status


async def create_topup_request(
    *,
    user_id: str,
    amount: int,
    payment_method: str,
    db: AsyncSession,
    payment_proof: Optional[str] = None,
    transaction_ref: Optional[str] = None,
) -> Dict[str, Any]:
    if int(amount) <= 0:
        raise ValidationError("Amount must be a positive number")
    if payment_method not in TOPUP_PAYMENT_METHODS:
        raise ValidationError(f"payment_method must be one of {', '.join(TOPUP_PAYMENT_METHODS)}")

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise NotFound("Account not found")

    pending = await db.execute(
        select(TopUpRequest.id).where(TopUpRequest.user_id == user_id, TopUpRequest.status == "pending")
    )
    if pending.scalars().first() is not None:
        raise DuplicatePendingRequest("You already have a pending top-up request")

    request = TopUpRequest(
        id=str(uuid.uuid4()),
        user_id=user.id,
        username=user.username,
        amount=int(amount),
        points=int(amount),
        payment_method=payment_method,
        payment_proof=payment_proof,
        transaction_ref=transaction_ref,
        status="pending",
    )
    try:
        db.add(request)
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise DuplicatePendingRequest("You already have a pending top-up request") from exc

    logger.info("topup_requested user=%s amount=%s request=%s", user.id, request.amount, request.id)
    await broadcaster.publish(
        TOPUP_STATUS_UPDATED,
        {"action": "created", "request_id": request.id, "status": "pending", "amount": request.amount},
        room=user.id,
    )
    return {"request_id": request.id, "status": "pending", "amount": request.amount, "points": request.points}


async def _load(db: AsyncSession, model: QueueModel, request_id: str) -> Any:
    result = await db.execute(select(model).where(model.id == request_id))
    request = result.scalar_one_or_none()
    if request is None:
        raise NotFound("Request not found")
    return request


async def _claim(
    db: AsyncSession,
    model: QueueModel,
    request: Any,
    *,
    status: str,
    admin_id: str,
    now: datetime,
    reason: Optional[str] = None,
) -> None:
    result = await db.execute(
        update(model)
        .where(model.id == request.id, model.status == "pending")
        .values(status=status, processed_at=now, processed_by=admin_id, rejection_reason=reason)
        .returning(model.id)
        .execution_options(synchronize_session=False)
    )
    if result.scalar_one_or_none() is None:
        raise InvalidState("Request already processed")
    await db.refresh(request)


def _require_reason(reason: Optional[str]) -> str:
    text = str(reason or "").strip()
    if not text:
        raise ValidationError("Rejection reason is required")
    return text


async def approve_topup(
    *,
    request_id: str,
    admin_id: str,
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    current = now or now_utc()
    request = await _load(db, TopUpRequest, request_id)
    try:
        await _claim(db, TopUpRequest, request, status="approved", admin_id=admin_id, now=current)
        balance = await credit_credits(
            request.user_id,
            db,
            amount=request.points,
            reason=f"Top-up approved ({request.payment_method})",
            actor=admin_id,
            entry_type="topup",
            reference_type="topup_request",
            reference_id=request.id,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("topup_approved request=%s user=%s points=%s admin=%s", request.id, request.user_id, request.points, admin_id)
    await broadcaster.publish(
        TOPUP_STATUS_UPDATED,
        {"action": "approved", "request_id": request.id, "status": "approved", "points": request.points},
        room=request.user_id,
    )
    await broadcaster.publish(
        CREDITS_UPDATED, {"balance": balance, "delta": request.points, "reason": "topup"}, room=request.user_id
    )
    return {**serialize_topup(request), "balance_after": balance}


async def reject_topup(
    *,
    request_id: str,
    reason: Optional[str],
    admin_id: str,
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    text = _require_reason(reason)
    request = await _load(db, TopUpRequest, request_id)
    try:
        await _claim(db, TopUpRequest, request, status="rejected", admin_id=admin_id, now=now or now_utc(), reason=text)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("topup_rejected request=%s user=%s admin=%s", request.id, request.user_id, admin_id)
    await broadcaster.publish(
        TOPUP_STATUS_UPDATED,
        {"action": "rejected", "request_id": request.id, "status": "rejected", "reason": text},
        room=request.user_id,
    )
    return serialize_topup(request)


async def approve_extension_request(
    *,
    request_id: str,
    admin_id: str,
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    current = now or now_utc()
    request = await _load(db, ExtensionRequest, request_id)
    try:
        await _claim(db, ExtensionRequest, request, status="approved", admin_id=admin_id, now=current)
        ref = await resolve_license_ref(db, request.license_code)
        account, _ = await apply_extension(db, ref, request.requested_days, actor=admin_id, now=current)
        request.license_account_id = account.id
        request.cumulative_plan_days = account.cumulative_plan_days
        request.total_extended_days = account.cumulative_plan_days - account.plan_days
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "extension_approved request=%s code=%s days=%s new_expiry=%s admin=%s",
        request.id,
        request.license_code,
        request.requested_days,
        account.expires_at,
        admin_id,
    )
    await broadcaster.publish(
        EXTENSION_REQUEST_UPDATED,
        {"action": "approved", "request_id": request.id, "status": "approved", "new_expiry": account.expires_at},
        room=request.user_id,
    )
    await broadcaster.publish(
        LICENSE_UPDATED,
        {"action": "extended", "code": account.code, "status": "valid", "expires_at": account.expires_at},
        room=request.user_id,
    )
    return {**serialize_extension_request(request), "new_expiry": account.expires_at}


async def reject_extension_request(
    *,
    request_id: str,
    reason: Optional[str],
    admin_id: str,
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    text = _require_reason(reason)
    request = await _load(db, ExtensionRequest, request_id)
    try:
        await _claim(
            db, ExtensionRequest, request, status="rejected", admin_id=admin_id, now=now or now_utc(), reason=text
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("extension_rejected request=%s code=%s admin=%s", request.id, request.license_code, admin_id)
    await broadcaster.publish(
        EXTENSION_REQUEST_UPDATED,
        {"action": "rejected", "request_id": request.id, "status": "rejected", "reason": text},
        room=request.user_id,
    )
    return serialize_extension_request(request)


async def bulk_process_requests(
    *,
    kind: str,
    action: str,
    request_ids: List[str],
    admin_id: str,
    db: AsyncSession,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Approve or reject many requests, each in its own transaction."""
    handlers = {
        ("topup", "approve"): approve_topup,
        ("topup", "reject"): reject_topup,
        ("extension", "approve"): approve_extension_request,
        ("extension", "reject"): reject_extension_request,
    }
    handler = handlers.get((kind, action))
    if handler is None:
        raise ValidationError("Invalid action. Use approve or reject.")
    if not request_ids:
        raise ValidationError("request_ids array required")
    if action == "reject":
        _require_reason(reason)

    processed: List[Dict[str, Any]] = []
    errors: List[Dict[str, Any]] = []
    for request_id in request_ids:
        kwargs: Dict[str, Any] = {"request_id": request_id, "admin_id": admin_id, "db": db, "now": now}
        if action == "reject":
            kwargs["reason"] = reason
        try:
            result = await handler(**kwargs)
            processed.append({"id": request_id, "status": result["status"]})
        except LicenceError as exc:
            await db.rollback()
            errors.append({"id": request_id, "error": exc.error_code, "detail": exc.detail})
        except SQLAlchemyError as exc:
            await db.rollback()
            logger.exception("Bulk %s %s failed for request %s", kind, action, request_id)
            errors.append({"id": request_id, "error": "internal_error", "detail": str(exc)})

    logger.info(
        "bulk_%s_%s admin=%s processed=%s errors=%s", kind, action, admin_id, len(processed), len(errors)
    )
    return {
        "action": action,
        "processed": processed,
        "errors": errors,
        "processed_count": len(processed),
        "error_count": len(errors),
    }


async def list_topup_requests(
    db: AsyncSession,
    *,
    status: Optional[str] = "pending",
    user_id: Optional[str] = None,
    limit: int = 100,
) -> List[Dict[str, Any]]:
    query = select(TopUpRequest)
    status_filter = _validate_status_filter(status)
    if status_filter:
        query = query.where(TopUpRequest.status == status_filter)
    if user_id:
        query = query.where(TopUpRequest.user_id == user_id)
    result = await db.execute(query.order_by(TopUpRequest.created_at.desc()).limit(limit))
    return [serialize_topup(row) for row in result.scalars().all()]


async def list_extension_requests(
    db: AsyncSession,
    *,
    status: Optional[str] = "pending",
    user_id: Optional[str] = None,
    limit: int = 100,
) -> List[Dict[str, Any]]:
    query = select(ExtensionRequest)
    status_filter = _validate_status_filter(status)
    if status_filter:
        query = query.where(ExtensionRequest.status == status_filter)
    if user_id:
        query = query.where(ExtensionRequest.user_id == user_id)
    result = await db.execute(query.order_by(ExtensionRequest.requested_at.desc()).limit(limit))
    return [serialize_extension_request(row) for row in result.scalars().all()]
