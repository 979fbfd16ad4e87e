"""Customer licence router: purchase, listing, extension, account number change."""

from __future__ import annotations

import logging
from typing import Optional, Union

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import get_db
from models.user import User
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.extensions import extend_license_service, get_extension_settings
from services.licenses import (
    change_account_number_service,
    get_account_change_settings,
    list_user_licenses,
    purchase_license_service,
)
from services.request_queue import list_extension_requests

router = APIRouter()
logger = logging.getLogger(__name__)


class PurchaseRequest(BaseModel):
    account_number: str = Field(min_length=4, max_length=64)
    platform: str = Field(min_length=1, max_length=64)
    plan: Union[int, str]
    payment_method: str = "money"


class ExtendRequest(BaseModel):
    days: Optional[int] = Field(default=None, ge=1, le=9999)
    plan_days: Optional[Union[int, str]] = None
    funding_mode: str = "credits"
    source: Optional[str] = None


class AccountNumberChangeRequest(BaseModel):
    license_code: str = Field(min_length=1)
    new_account_number: str = Field(min_length=4, max_length=64)


async def _ensure_user(db: AsyncSession, auth: AuthContext) -> User:
    result = await db.execute(select(User).where(User.id == auth.user_id))
    user = result.scalar_one_or_none()
    if user:
        return user

    user = User(id=auth.user_id, username=auth.email or auth.user_id, email=auth.email)
    db.add(user)
    await db.flush()
    return user


@router.post("/purchase")
async def purchase_license(
    request: PurchaseRequest,
    _rate_limit: None = Depends(rate_limit("license_purchase", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await _ensure_user(db, auth)
    return await purchase_license_service(
        user_id=auth.user_id,
        account_number=request.account_number,
        platform=request.platform,
        plan=request.plan,
        payment_method=request.payment_method,
        db=db,
    )


@router.get("")
async def my_licenses(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await list_user_licenses(auth.user_id, db)


@router.get("/extension-settings")
async def extension_settings(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await _ensure_user(db, auth)
    return await get_extension_settings(auth.user_id, db)


@router.get("/extension-requests")
async def my_extension_requests(
    status: Optional[str] = Query(default="all"),
    limit: int = Query(default=50, ge=1, le=200),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    items = await list_extension_requests(db, status=status, user_id=auth.user_id, limit=limit)
    return {"count": len(items), "items": items}


@router.get("/account-number-change-settings")
async def account_number_change_settings(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await _ensure_user(db, auth)
    return await get_account_change_settings(auth.user_id, db)


@router.post("/change-account-number")
async def change_account_number(
    request: AccountNumberChangeRequest,
    _rate_limit: None = Depends(rate_limit("license_account_change", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await change_account_number_service(
        user_id=auth.user_id,
        license_code=request.license_code,
        new_account_number=request.new_account_number,
        db=db,
    )


@router.post("/{license_id}/extend")
async def extend_license(
    license_id: str,
    request: ExtendRequest,
    _rate_limit: None = Depends(rate_limit("license_extend", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await extend_license_service(
        user_id=auth.user_id,
        license_id=license_id,
        days=request.days,
        plan_days=request.plan_days,
        funding_mode=request.funding_mode,
        source=request.source,
        db=db,
    )
