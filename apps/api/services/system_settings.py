"""Runtime system settings with config-backed defaults."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.system_setting import SystemSetting
from services.errors import ValidationError


LICENSE_EXTENSION_ENABLED = "license_extension_enabled"
LICENSE_EXTENSION_COST_PER_DAY = "license_extension_cost_per_day"
LICENSE_EXTENSION_MAX_DAYS = "license_extension_max_days"
ACCOUNT_NUMBER_CHANGE_ENABLED = "account_number_change_enabled"
ACCOUNT_NUMBER_CHANGE_COST = "account_number_change_cost"


def _defaults() -> Dict[str, Dict[str, Any]]:
    return {
        ACCOUNT_NUMBER_CHANGE_COST: {
            "value": int(settings.ACCOUNT_NUMBER_CHANGE_COST),
            "description": "Cost in credits to change account number",
            "category": "pricing",
        },
        ACCOUNT_NUMBER_CHANGE_ENABLED: {
            "value": bool(settings.ACCOUNT_NUMBER_CHANGE_ENABLED),
            "description": "Enable/disable account number change feature",
            "category": "features",
        },
        LICENSE_EXTENSION_COST_PER_DAY: {
            "value": int(settings.LICENSE_EXTENSION_COST_PER_DAY),
            "description": "Cost in credits per day for licence extension",
            "category": "pricing",
        },
        LICENSE_EXTENSION_ENABLED: {
            "value": bool(settings.LICENSE_EXTENSION_ENABLED),
            "description": "Enable/disable licence extension feature",
            "category": "features",
        },
        LICENSE_EXTENSION_MAX_DAYS: {
            "value": int(settings.LICENSE_EXTENSION_MAX_DAYS),
            "description": "Maximum days allowed per customer extension",
            "category": "limits",
        },
    }


async def get_setting(db: AsyncSession, key: str, default: Any = None) -> Any:
    result = await db.execute(select(SystemSetting).where(SystemSetting.key == key))
    row = result.scalar_one_or_none()
    if row is not None and row.value is not None:
        return row.value
    if default is not None:
        return default
    fallback = _defaults().get(key)
    return fallback["value"] if fallback else None


async def get_int_setting(db: AsyncSession, key: str) -> int:
    value = await get_setting(db, key)
    try:
        return int(value)
    except (TypeError, ValueError):
        return int(_defaults()[key]["value"])


async def get_bool_setting(db: AsyncSession, key: str) -> bool:
    value = await get_setting(db, key)
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


async def list_settings(db: AsyncSession) -> List[Dict[str, Any]]:
    result = await db.execute(select(SystemSetting))
    stored = {row.key: row for row in result.scalars().all()}
    items = []
    for key, meta in _defaults().items():
        row = stored.get(key)
        items.append(
            {
                "key": key,
                "value": row.value if row is not None else meta["value"],
                "description": (row.description if row is not None else None) or meta["description"],
                "category": row.category if row is not None else meta["category"],
                "updated_by": row.updated_by if row is not None else None,
            }
        )
    return items


async def set_setting(
    db: AsyncSession,
    key: str,
    value: Any,
    *,
    updated_by: Optional[str] = None,
) -> Dict[str, Any]:
    meta = _defaults().get(key)
    if meta is None:
        raise ValidationError(f"Unknown system setting: {key}")
    if isinstance(meta["value"], bool):
        if not isinstance(value, bool):
            raise ValidationError(f"{key} must be a boolean")
    elif isinstance(meta["value"], int):
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValidationError(f"{key} must be a non-negative integer")

    result = await db.execute(select(SystemSetting).where(SystemSetting.key == key))
    row = result.scalar_one_or_none()
    if row is None:
        row = SystemSetting(key=key, description=meta["description"], category=meta["category"])
        db.add(row)
    row.value = value
    row.updated_by = updated_by
    await db.commit()
    return {"key": key, "value": value, "category": row.category, "updated_by": updated_by}


async def seed_default_settings(db: AsyncSession) -> int:
    result = await db.execute(select(SystemSetting.key))
    existing = set(result.scalars().all())
    created = 0
    for key, meta in _defaults().items():
        if key in existing:
            continue
        db.add(
            SystemSetting(
                key=key,
                value=meta["value"],
                description=meta["description"],
                category=meta["category"],
                updated_by="system",
            )
        )
        created += 1
    if created:
        await db.commit()
    return created
