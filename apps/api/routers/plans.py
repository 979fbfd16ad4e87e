"""Public plan catalog."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from services.plans import list_plans, serialize_plan

router = APIRouter()


@router.get("")
async def public_plans(db: AsyncSession = Depends(get_db)):
    plans = await list_plans(db, active_only=True)
    return {"count": len(plans), "items": [serialize_plan(plan) for plan in plans]}
