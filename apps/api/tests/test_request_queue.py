from datetime import datetime, timezone

import pytest
from sqlalchemy.future import select

from models.extension_request import ExtensionRequest
from models.license_account import LicenseAccount
from models.topup_request import TopUpRequest
from services.credits import get_credit_balance
from services.errors import DuplicatePendingRequest, InvalidState, NotFound, ValidationError
from services.extensions import extend_license_service
from services.licenses import suspend_license
from services.request_queue import (
    approve_extension_request,
    approve_topup,
    bulk_process_requests,
    create_topup_request,
    list_extension_requests,
    list_topup_requests,
    reject_extension_request,
    reject_topup,
)


NOW = datetime(2025, 2, 8, 16, 59, tzinfo=timezone.utc)


async def _topup(db, user_id, amount=100):
    return await create_topup_request(user_id=user_id, amount=amount, payment_method="bank_transfer", db=db)


async def _queue_extension(db, user_id, code, days=30):
    return await extend_license_service(
        user_id=user_id, license_id=code, days=days, funding_mode="admin_request", db=db, now=NOW
    )


async def _seed_account(db, user_id, code="QL-Q-1"):
    db.add(
        LicenseAccount(
            user_id=user_id,
            username=user_id,
            code=code,
            platform="mt5",
            account_number=f"acct-{code}",
            plan_days=30,
            cumulative_plan_days=30,
            status="valid",
            expires_at="10/03/2568 23:59",
        )
    )
    await db.commit()
    return code


async def _status(db, model, request_id):
    result = await db.execute(select(model.status).where(model.id == request_id))
    return result.scalar_one()


@pytest.mark.asyncio
async def test_topup_approval_credits_points_once(db_session, make_user, fake_redis):
    user_id = await make_user("alice")
    request = await _topup(db_session, user_id)
    assert request["status"] == "pending"

    approved = await approve_topup(request_id=request["request_id"], admin_id="admin-1", db=db_session, now=NOW)
    assert approved["status"] == "approved"
    assert approved["balance_after"] == 100
    assert approved["processed_by"] == "admin-1"

    with pytest.raises(InvalidState):
        await approve_topup(request_id=request["request_id"], admin_id="admin-2", db=db_session, now=NOW)
    with pytest.raises(InvalidState):
        await reject_topup(request_id=request["request_id"], reason="late", admin_id="admin-2", db=db_session, now=NOW)

    assert await get_credit_balance(user_id, db_session) == 100
    assert fake_redis.events(f":user:{user_id}") == [
        "topup-status-updated",
        "topup-status-updated",
        "credits-updated",
    ]


@pytest.mark.asyncio
async def test_single_pending_topup_per_account(db_session, make_user):
    user_id = await make_user("bob")
    first = await _topup(db_session, user_id)

    with pytest.raises(DuplicatePendingRequest):
        await _topup(db_session, user_id, amount=50)

    await reject_topup(request_id=first["request_id"], reason="proof unreadable", admin_id="admin-1", db=db_session, now=NOW)
    second = await _topup(db_session, user_id, amount=50)
    assert second["status"] == "pending"


@pytest.mark.asyncio
async def test_reject_without_reason_keeps_request_pending(db_session, make_user):
    user_id = await make_user("carol")
    request = await _topup(db_session, user_id)

    with pytest.raises(ValidationError):
        await reject_topup(request_id=request["request_id"], reason="  ", admin_id="admin-1", db=db_session, now=NOW)

    assert await _status(db_session, TopUpRequest, request["request_id"]) == "pending"


@pytest.mark.asyncio
async def test_topup_validation(db_session, make_user):
    user_id = await make_user("dave")
    with pytest.raises(ValidationError):
        await _topup(db_session, user_id, amount=0)
    with pytest.raises(ValidationError):
        await create_topup_request(user_id=user_id, amount=10, payment_method="iou", db=db_session)
    with pytest.raises(NotFound):
        await approve_topup(request_id="missing", admin_id="admin-1", db=db_session, now=NOW)


@pytest.mark.asyncio
async def test_extension_approval_applies_at_approval_time(db_session, make_user, fake_redis):
    user_id = await make_user("erin")
    code = await _seed_account(db_session, user_id)
    queued = await _queue_extension(db_session, user_id, code)

    approved = await approve_extension_request(
        request_id=queued["request_id"], admin_id="admin-1", db=db_session, now=NOW
    )

    assert approved["status"] == "approved"
    assert approved["new_expiry"] == "09/04/2568 23:59"
    assert approved["cumulative_plan_days"] == 60
    assert approved["total_extended_days"] == 30
    assert await get_credit_balance(user_id, db_session) == 0
    with pytest.raises(InvalidState):
        await approve_extension_request(request_id=queued["request_id"], admin_id="admin-1", db=db_session, now=NOW)
    assert "extension-request-updated" in fake_redis.events(f":user:{user_id}")


@pytest.mark.asyncio
async def test_failed_extension_approval_leaves_request_pending(db_session, make_user):
    user_id = await make_user("fred")
    code = await _seed_account(db_session, user_id)
    queued = await _queue_extension(db_session, user_id, code)
    await suspend_license(license_id=code, admin_id="admin-1", db=db_session, now=NOW)

    with pytest.raises(InvalidState):
        await approve_extension_request(request_id=queued["request_id"], admin_id="admin-1", db=db_session, now=NOW)

    assert await _status(db_session, ExtensionRequest, queued["request_id"]) == "pending"
    account = (await db_session.execute(select(LicenseAccount).where(LicenseAccount.code == code))).scalar_one()
    assert account.expires_at == "10/03/2568 23:59"


@pytest.mark.asyncio
async def test_rejected_extension_allows_a_new_request(db_session, make_user):
    user_id = await make_user("gina")
    code = await _seed_account(db_session, user_id)
    queued = await _queue_extension(db_session, user_id, code)

    rejected = await reject_extension_request(
        request_id=queued["request_id"], reason="not eligible", admin_id="admin-1", db=db_session, now=NOW
    )
    assert rejected["status"] == "rejected"
    assert rejected["rejection_reason"] == "not eligible"

    again = await _queue_extension(db_session, user_id, code, days=7)
    assert again["status"] == "pending"


@pytest.mark.asyncio
async def test_bulk_approve_reports_each_item(db_session, make_user):
    first_user = await make_user("hank")
    second_user = await make_user("iris")
    first = await _topup(db_session, first_user, amount=40)
    second = await _topup(db_session, second_user, amount=60)
    await approve_topup(request_id=second["request_id"], admin_id="admin-1", db=db_session, now=NOW)

    result = await bulk_process_requests(
        kind="topup",
        action="approve",
        request_ids=[first["request_id"], second["request_id"], "missing"],
        admin_id="admin-1",
        db=db_session,
        now=NOW,
    )

    assert result["processed_count"] == 1
    assert result["processed"] == [{"id": first["request_id"], "status": "approved"}]
    assert [error["error"] for error in result["errors"]] == ["invalid_state", "not_found"]
    assert await get_credit_balance(first_user, db_session) == 40
    assert await get_credit_balance(second_user, db_session) == 60


@pytest.mark.asyncio
async def test_bulk_reject_requires_reason(db_session, make_user):
    user_id = await make_user("jack")
    request = await _topup(db_session, user_id)

    with pytest.raises(ValidationError):
        await bulk_process_requests(
            kind="topup", action="reject", request_ids=[request["request_id"]], admin_id="admin-1", db=db_session
        )
    with pytest.raises(ValidationError):
        await bulk_process_requests(
            kind="topup", action="archive", request_ids=[request["request_id"]], admin_id="admin-1", db=db_session
        )


@pytest.mark.asyncio
async def test_listing_filters_by_status_and_owner(db_session, make_user):
    user_id = await make_user("kate")
    other_id = await make_user("liam")
    code = await _seed_account(db_session, user_id)
    await _queue_extension(db_session, user_id, code)
    mine = await _topup(db_session, user_id)
    await _topup(db_session, other_id)
    await approve_topup(request_id=mine["request_id"], admin_id="admin-1", db=db_session, now=NOW)

    pending_topups = await list_topup_requests(db_session, status="pending")
    assert [item["username"] for item in pending_topups] == ["liam"]
    own_history = await list_topup_requests(db_session, status="all", user_id=user_id)
    assert [item["status"] for item in own_history] == ["approved"]
    extensions = await list_extension_requests(db_session, status="pending", user_id=user_id)
    assert len(extensions) == 1
    with pytest.raises(ValidationError):
        await list_topup_requests(db_session, status="weird")
