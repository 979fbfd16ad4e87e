"""Credit ledger and balance accounting helpers.

``debit_credits`` and ``credit_credits`` never commit: they are building blocks
for a caller-owned unit of work. The debit is a single conditional UPDATE so two
concurrent spenders cannot both pass a stale balance check.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.credit_ledger import CreditLedger
from models.user import User
from services.broadcaster import CREDITS_UPDATED, broadcaster
from services.errors import InsufficientCredits, NotFound, ValidationError

logger = logging.getLogger(__name__)


async def get_credit_balance(user_id: str, db: AsyncSession) -> int:
    result = await db.execute(select(User.credit_balance).where(User.id == user_id))
    balance = result.scalar_one_or_none()
    if balance is None:
        raise NotFound("Account not found")
    return int(balance)


async def _insert_entry(
    user_id: str,
    db: AsyncSession,
    *,
    entry_type: str,
    delta_credits: int,
    balance_after: int,
    reason: Optional[str] = None,
    actor: Optional[str] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
) -> CreditLedger:
    entry = CreditLedger(
        id=str(uuid.uuid4()),
        user_id=user_id,
        entry_type=entry_type,
        delta_credits=int(delta_credits),
        balance_after=int(balance_after),
        reason=reason,
        actor=actor,
        reference_type=reference_type,
        reference_id=reference_id,
    )
    db.add(entry)
    await db.flush()
    return entry


async def debit_credits(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    reason: str,
    actor: Optional[str] = None,
    entry_type: str = "debit",
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
) -> int:
    """Decrement the balance if it covers ``amount`` and return the new balance."""
    cost = int(amount)
    if cost < 0:
        raise ValidationError("Debit amount must not be negative")
    if cost == 0:
        return await get_credit_balance(user_id, db)

    result = await db.execute(
        update(User)
        .where(User.id == user_id, User.credit_balance >= cost)
        .values(credit_balance=User.credit_balance - cost)
        .returning(User.credit_balance)
        .execution_options(synchronize_session=False)
    )
    new_balance = result.scalar_one_or_none()
    if new_balance is None:
        available = await get_credit_balance(user_id, db)
        raise InsufficientCredits(required=cost, available=available)

    await _insert_entry(
        user_id,
        db,
        entry_type=entry_type,
        delta_credits=-cost,
        balance_after=new_balance,
        reason=reason,
        actor=actor,
        reference_type=reference_type,
        reference_id=reference_id,
    )
    return int(new_balance)


async def credit_credits(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    reason: str,
    actor: Optional[str] = None,
    entry_type: str = "topup",
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
) -> int:
    """Increment the balance and return the new balance."""
    grant = int(amount)
    if grant < 0:
        raise ValidationError("Credit amount must not be negative")

    result = await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(credit_balance=User.credit_balance + grant)
        .returning(User.credit_balance)
        .execution_options(synchronize_session=False)
    )
    new_balance = result.scalar_one_or_none()
    if new_balance is None:
        raise NotFound("Account not found")

    await _insert_entry(
        user_id,
        db,
        entry_type=entry_type,
        delta_credits=grant,
        balance_after=new_balance,
        reason=reason,
        actor=actor,
        reference_type=reference_type,
        reference_id=reference_id,
    )
    return int(new_balance)


async def adjust_credits(
    user_id: str,
    db: AsyncSession,
    *,
    delta: int,
    reason: str,
    actor: Optional[str] = None,
) -> int:
    """Apply a signed manual adjustment; deductions may not overdraw."""
    change = int(delta)
    if change == 0:
        raise ValidationError("Credits must be a non-zero number")
    if not str(reason or "").strip():
        raise ValidationError("A reason is required for manual credit adjustments")
    if change > 0:
        return await credit_credits(
            user_id, db, amount=change, reason=reason, actor=actor, entry_type="adjustment"
        )
    return await debit_credits(
        user_id, db, amount=-change, reason=reason, actor=actor, entry_type="adjustment"
    )


async def find_account(db: AsyncSession, identifier: str) -> User:
    """Look up an account by id, username or email."""
    token = str(identifier or "").strip()
    if not token:
        raise ValidationError("Username or email is required")
    result = await db.execute(
        select(User).where((User.id == token) | (User.username == token) | (User.email == token))
    )
    user = result.scalars().first()
    if not user:
        raise NotFound("Account not found")
    return user


async def adjust_credits_service(
    *,
    identifier: str,
    delta: int,
    reason: str,
    actor: str,
    db: AsyncSession,
) -> Dict[str, Any]:
    user = await find_account(db, identifier)
    user_id = user.id
    try:
        balance_after = await adjust_credits(user_id, db, delta=delta, reason=reason, actor=actor)
    except Exception:
        await db.rollback()
        raise
    await db.commit()
    logger.info("credits_adjusted user=%s delta=%s balance=%s actor=%s", user_id, delta, balance_after, actor)

    await broadcaster.publish(
        CREDITS_UPDATED,
        {"balance": balance_after, "delta": int(delta), "reason": "admin-adjustment"},
        room=user_id,
    )
    return {
        "user_id": user_id,
        "username": user.username,
        "delta": int(delta),
        "balance_after": balance_after,
    }


async def get_credit_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    balance = await get_credit_balance(user_id, db)
    result = await db.execute(
        select(CreditLedger)
        .where(CreditLedger.user_id == user_id)
        .order_by(CreditLedger.created_at.desc())
        .limit(30)
    )
    entries = result.scalars().all()
    return {
        "balance": balance,
        "recent_entries": [
            {
                "id": entry.id,
                "entry_type": entry.entry_type,
                "delta_credits": entry.delta_credits,
                "balance_after": entry.balance_after,
                "reason": entry.reason,
                "reference_type": entry.reference_type,
                "reference_id": entry.reference_id,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ],
    }
