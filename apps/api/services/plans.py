"""Plan catalog helpers (days <-> price/credit cost)."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.plan_setting import LIFETIME_PLAN_DAYS, PlanSetting
from services.errors import NotFound, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_PLANS = (
    {"name": "Trial", "days": 7, "price": 10, "points": 10, "description": "Perfect for testing our services", "sort_order": 1},
    {"name": "Monthly", "days": 30, "price": 35, "points": 35, "description": "Most popular monthly plan", "sort_order": 2},
    {"name": "Quarterly", "days": 90, "price": 90, "points": 90, "description": "Save more with quarterly plan", "sort_order": 3},
    {"name": "Semi-Annual", "days": 180, "price": 160, "points": 160, "description": "Great value for 6 months", "sort_order": 4},
    {"name": "Annual", "days": 365, "price": 300, "points": 300, "description": "Best value - full year access", "sort_order": 5},
    {
        "name": "Lifetime",
        "days": LIFETIME_PLAN_DAYS,
        "price": 500,
        "points": 500,
        "description": "One-time payment, lifetime access",
        "sort_order": 6,
        "is_lifetime": True,
    },
)


def is_lifetime_days(days: Optional[int]) -> bool:
    return int(days or 0) >= LIFETIME_PLAN_DAYS


def serialize_plan(plan: PlanSetting) -> Dict[str, Any]:
    return {
        "id": plan.id,
        "name": plan.name,
        "days": None if plan.is_lifetime else plan.days,
        "is_lifetime": bool(plan.is_lifetime),
        "price": plan.price,
        "points": plan.points,
        "description": plan.description,
        "is_active": bool(plan.is_active),
        "sort_order": plan.sort_order,
        "price_per_day": None if plan.is_lifetime else round(plan.price / max(plan.days, 1), 4),
    }


async def list_plans(db: AsyncSession, *, active_only: bool = True) -> List[PlanSetting]:
    query = select(PlanSetting)
    if active_only:
        query = query.where(PlanSetting.is_active.is_(True))
    result = await db.execute(query.order_by(PlanSetting.sort_order, PlanSetting.days))
    return list(result.scalars().all())


async def resolve_plan(db: AsyncSession, selector: Union[int, str, None]) -> PlanSetting:
    """Find the active plan for a day count or the ``"lifetime"`` selector."""
    if selector is None or str(selector).strip() == "":
        raise ValidationError("A plan must be selected")

    token = str(selector).strip().lower()
    if token == "lifetime":
        query = select(PlanSetting).where(PlanSetting.is_lifetime.is_(True), PlanSetting.is_active.is_(True))
    else:
        try:
            days = int(token)
        except ValueError as exc:
            raise ValidationError("Invalid plan format") from exc
        if days <= 0:
            raise ValidationError("Invalid plan format")
        query = select(PlanSetting).where(PlanSetting.days == days, PlanSetting.is_active.is_(True))

    result = await db.execute(query.order_by(PlanSetting.sort_order))
    plan = result.scalars().first()
    if not plan:
        raise ValidationError("Selected plan not available")
    return plan


def _validate_plan_fields(payload: Dict[str, Any]) -> None:
    if "name" in payload and not str(payload["name"] or "").strip():
        raise ValidationError("Plan name is required")
    for field in ("price", "points"):
        if field in payload and int(payload[field]) < 0:
            raise ValidationError(f"{field} must not be negative")
    if "days" in payload and payload["days"] is not None and int(payload["days"]) < 1:
        raise ValidationError("days must be at least 1")


async def create_plan(db: AsyncSession, payload: Dict[str, Any], *, updated_by: str) -> Dict[str, Any]:
    _validate_plan_fields(payload)
    is_lifetime = bool(payload.get("is_lifetime"))
    days = LIFETIME_PLAN_DAYS if is_lifetime else payload.get("days")
    if days is None:
        raise ValidationError("days is required for non-lifetime plans")
    plan = PlanSetting(
        id=str(uuid.uuid4()),
        name=str(payload["name"]).strip(),
        days=int(days),
        price=int(payload.get("price", 0)),
        points=int(payload.get("points", 0)),
        description=payload.get("description"),
        is_active=bool(payload.get("is_active", True)),
        is_lifetime=is_lifetime,
        sort_order=int(payload.get("sort_order", 0)),
        updated_by=updated_by,
    )
    db.add(plan)
    await db.commit()
    logger.info("plan_created id=%s days=%s points=%s by=%s", plan.id, plan.days, plan.points, updated_by)
    return serialize_plan(plan)


async def update_plan(
    db: AsyncSession,
    plan_id: str,
    payload: Dict[str, Any],
    *,
    updated_by: str,
) -> Dict[str, Any]:
    result = await db.execute(select(PlanSetting).where(PlanSetting.id == plan_id))
    plan = result.scalar_one_or_none()
    if not plan:
        raise NotFound("Plan not found")
    _validate_plan_fields(payload)

    for field in ("name", "price", "points", "description", "is_active", "sort_order"):
        if field in payload and payload[field] is not None:
            setattr(plan, field, payload[field])
    if payload.get("is_lifetime") is not None:
        plan.is_lifetime = bool(payload["is_lifetime"])
    if plan.is_lifetime:
        plan.days = LIFETIME_PLAN_DAYS
    elif payload.get("days") is not None:
        plan.days = int(payload["days"])
    plan.updated_by = updated_by
    await db.commit()
    return serialize_plan(plan)


async def seed_default_plans(db: AsyncSession) -> int:
    result = await db.execute(select(PlanSetting.id).limit(1))
    if result.scalar_one_or_none():
        return 0
    for entry in DEFAULT_PLANS:
        db.add(
            PlanSetting(
                id=str(uuid.uuid4()),
                name=entry["name"],
                days=entry["days"],
                price=entry["price"],
                points=entry["points"],
                description=entry["description"],
                sort_order=entry["sort_order"],
                is_active=True,
                is_lifetime=bool(entry.get("is_lifetime", False)),
                updated_by="system",
            )
        )
    await db.commit()
    return len(DEFAULT_PLANS)
