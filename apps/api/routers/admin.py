"""Admin router: approval queues, licence lifecycle, credits and catalog."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, require_admin
from routers.rate_limit import rate_limit
from services.credits import adjust_credits_service
from services.extensions import admin_extend_license_service
from services.licenses import (
    activate_order,
    admin_create_license,
    bulk_license_action,
    cancel_order,
    delete_license,
    list_admin_licenses,
    mark_order_paid,
    resume_license,
    suspend_license,
)
from services.plans import create_plan, list_plans, serialize_plan, update_plan
from services.request_queue import (
    approve_extension_request,
    approve_topup,
    bulk_process_requests,
    list_extension_requests,
    list_topup_requests,
    reject_extension_request,
    reject_topup,
)
from services.system_settings import list_settings, set_setting

router = APIRouter(dependencies=[Depends(rate_limit("admin", limit=600, window_seconds=3600))])
logger = logging.getLogger(__name__)


class RejectRequest(BaseModel):
    reason: str = ""


class BulkRequestAction(BaseModel):
    action: str
    request_ids: List[str] = Field(min_length=1, max_length=200)
    reason: Optional[str] = None


class AdminExtendRequest(BaseModel):
    days: int = Field(ge=1, le=9999)
    source: Optional[str] = None


class AdminCreateLicenseRequest(BaseModel):
    username: str = Field(min_length=1)
    platform: str = Field(min_length=1)
    account_number: str = Field(min_length=4)
    plan: Union[int, str]


class DeleteLicenseRequest(BaseModel):
    confirmation: str = ""


class BulkLicenseAction(BaseModel):
    action: str
    ids: List[str] = Field(min_length=1, max_length=200)
    confirmation: Optional[str] = None


class CreditAdjustRequest(BaseModel):
    username: str = Field(min_length=1)
    credits: int
    reason: str = ""


class PlanCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    days: Optional[int] = Field(default=None, ge=1)
    price: int = Field(default=0, ge=0)
    points: int = Field(default=0, ge=0)
    description: Optional[str] = None
    is_active: bool = True
    is_lifetime: bool = False
    sort_order: int = 0


class PlanUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    days: Optional[int] = Field(default=None, ge=1)
    price: Optional[int] = Field(default=None, ge=0)
    points: Optional[int] = Field(default=None, ge=0)
    description: Optional[str] = None
    is_active: Optional[bool] = None
    is_lifetime: Optional[bool] = None
    sort_order: Optional[int] = None


class SettingUpdateRequest(BaseModel):
    key: str
    value: Any


# Extension request queue


@router.get("/extension-requests")
async def admin_extension_requests(
    status: Optional[str] = Query(default="pending"),
    limit: int = Query(default=100, ge=1, le=500),
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    items = await list_extension_requests(db, status=status, limit=limit)
    return {"count": len(items), "items": items}


@router.post("/extension-requests/bulk")
async def admin_bulk_extension_requests(
    request: BulkRequestAction,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await bulk_process_requests(
        kind="extension",
        action=request.action,
        request_ids=request.request_ids,
        reason=request.reason,
        admin_id=admin.user_id,
        db=db,
    )


@router.post("/extension-requests/{request_id}/approve")
async def admin_approve_extension_request(
    request_id: str,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await approve_extension_request(request_id=request_id, admin_id=admin.user_id, db=db)


@router.post("/extension-requests/{request_id}/reject")
async def admin_reject_extension_request(
    request_id: str,
    request: RejectRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await reject_extension_request(
        request_id=request_id, reason=request.reason, admin_id=admin.user_id, db=db
    )


# Top-up queue


@router.get("/topups")
async def admin_topups(
    status: Optional[str] = Query(default="pending"),
    limit: int = Query(default=100, ge=1, le=500),
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    items = await list_topup_requests(db, status=status, limit=limit)
    return {"count": len(items), "items": items}


@router.post("/topups/bulk")
async def admin_bulk_topups(
    request: BulkRequestAction,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await bulk_process_requests(
        kind="topup",
        action=request.action,
        request_ids=request.request_ids,
        reason=request.reason,
        admin_id=admin.user_id,
        db=db,
    )


@router.post("/topups/{request_id}/approve")
async def admin_approve_topup(
    request_id: str,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await approve_topup(request_id=request_id, admin_id=admin.user_id, db=db)


@router.post("/topups/{request_id}/reject")
async def admin_reject_topup(
    request_id: str,
    request: RejectRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await reject_topup(request_id=request_id, reason=request.reason, admin_id=admin.user_id, db=db)


# Licence lifecycle


@router.get("/licenses")
async def admin_licenses(
    status: Optional[str] = Query(default=None),
    search: Optional[str] = Query(default=None, max_length=120),
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await list_admin_licenses(db, status=status, search=search)


@router.post("/licenses", status_code=201)
async def admin_grant_license(
    request: AdminCreateLicenseRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await admin_create_license(
        username=request.username,
        platform=request.platform,
        account_number=request.account_number,
        plan=request.plan,
        admin_id=admin.user_id,
        db=db,
    )


@router.post("/licenses/bulk")
async def admin_bulk_licenses(
    request: BulkLicenseAction,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await bulk_license_action(
        action=request.action,
        license_ids=request.ids,
        confirmation=request.confirmation,
        admin_id=admin.user_id,
        db=db,
    )


@router.post("/licenses/{license_id}/extend")
async def admin_extend_license(
    license_id: str,
    request: AdminExtendRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await admin_extend_license_service(
        license_id=license_id,
        days=request.days,
        source=request.source,
        admin_id=admin.user_id,
        db=db,
    )


@router.post("/licenses/{license_id}/suspend")
async def admin_suspend_license(
    license_id: str,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await suspend_license(license_id=license_id, admin_id=admin.user_id, db=db)


@router.post("/licenses/{license_id}/resume")
async def admin_resume_license(
    license_id: str,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await resume_license(license_id=license_id, admin_id=admin.user_id, db=db)


@router.delete("/licenses/{license_id}")
async def admin_delete_license(
    license_id: str,
    request: Optional[DeleteLicenseRequest] = None,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await delete_license(
        license_id=license_id,
        confirmation=request.confirmation if request else None,
        admin_id=admin.user_id,
        db=db,
    )


@router.post("/orders/{order_id}/paid")
async def admin_mark_order_paid(
    order_id: str,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await mark_order_paid(order_id=order_id, admin_id=admin.user_id, db=db)


@router.post("/orders/{order_id}/activate")
async def admin_activate_order(
    order_id: str,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await activate_order(order_id=order_id, admin_id=admin.user_id, db=db)


@router.post("/orders/{order_id}/cancel")
async def admin_cancel_order(
    order_id: str,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await cancel_order(order_id=order_id, admin_id=admin.user_id, db=db)


# Credits, catalog and settings


@router.post("/credits/adjust")
async def admin_adjust_credits(
    request: CreditAdjustRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await adjust_credits_service(
        identifier=request.username,
        delta=request.credits,
        reason=request.reason,
        actor=admin.user_id,
        db=db,
    )


@router.get("/plans")
async def admin_list_plans(
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    plans = await list_plans(db, active_only=False)
    return {"count": len(plans), "items": [serialize_plan(plan) for plan in plans]}


@router.post("/plans")
async def admin_create_plan(
    request: PlanCreateRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await create_plan(db, request.model_dump(), updated_by=admin.user_id)


@router.put("/plans/{plan_id}")
async def admin_update_plan(
    plan_id: str,
    request: PlanUpdateRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await update_plan(db, plan_id, request.model_dump(exclude_unset=True), updated_by=admin.user_id)


@router.get("/settings")
async def admin_list_settings(
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    items = await list_settings(db)
    return {"count": len(items), "items": items}


@router.put("/settings")
async def admin_update_setting(
    request: SettingUpdateRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await set_setting(db, request.key, request.value, updated_by=admin.user_id)
