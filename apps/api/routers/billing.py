"""Billing router: top-up requests and credit balance."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import get_db
from models.user import User
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.credits import get_credit_summary
from services.request_queue import create_topup_request, list_topup_requests

router = APIRouter()
logger = logging.getLogger(__name__)


class TopUpCreateRequest(BaseModel):
    amount: int = Field(ge=1, le=1_000_000)
    payment_method: str = "bank_transfer"
    payment_proof: Optional[str] = Field(default=None, max_length=2048)
    transaction_ref: Optional[str] = Field(default=None, max_length=255)


async def _ensure_user(db: AsyncSession, auth: AuthContext) -> User:
    result = await db.execute(select(User).where(User.id == auth.user_id))
    user = result.scalar_one_or_none()
    if user:
        return user

    user = User(id=auth.user_id, username=auth.email or auth.user_id, email=auth.email)
    db.add(user)
    await db.flush()
    return user


@router.get("/credits")
async def credits_summary(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await _ensure_user(db, auth)
    return await get_credit_summary(auth.user_id, db)


@router.post("/topup")
async def submit_topup(
    request: TopUpCreateRequest,
    _rate_limit: None = Depends(rate_limit("billing_topup", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await _ensure_user(db, auth)
    return await create_topup_request(
        user_id=auth.user_id,
        amount=request.amount,
        payment_method=request.payment_method,
        payment_proof=request.payment_proof,
        transaction_ref=request.transaction_ref,
        db=db,
    )


@router.get("/topup")
async def topup_history(
    status: Optional[str] = Query(default="all"),
    limit: int = Query(default=50, ge=1, le=200),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    items = await list_topup_requests(db, status=status, user_id=auth.user_id, limit=limit)
    return {"count": len(items), "items": items}
