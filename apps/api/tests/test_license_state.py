from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.future import select

from models.credit_ledger import CreditLedger
from models.license_account import LicenseAccount
from models.license_order import LicenseOrder
from models.plan_setting import LIFETIME_PLAN_DAYS
from services.credits import get_credit_balance
from services.errors import (
    FeatureDisabled,
    InsufficientCredits,
    InvalidState,
    NotFound,
    ValidationError,
)
from services.license_ref import effective_status, resolve_license_ref
from services.licenses import (
    activate_order,
    admin_create_license,
    bulk_license_action,
    cancel_order,
    change_account_number_service,
    delete_license,
    list_admin_licenses,
    list_user_licenses,
    mark_order_paid,
    purchase_license_service,
    resume_license,
    suspend_license,
)
from services.plans import seed_default_plans
from services.system_settings import (
    ACCOUNT_NUMBER_CHANGE_COST,
    ACCOUNT_NUMBER_CHANGE_ENABLED,
    set_setting,
)


NOW = datetime(2025, 2, 8, 16, 59, tzinfo=timezone.utc)  # 08/02/2568 23:59 in Bangkok


async def _purchase(db, user_id, *, plan=30, method="credits", account_number="12345678"):
    return await purchase_license_service(
        user_id=user_id,
        account_number=account_number,
        platform="mt5",
        plan=plan,
        payment_method=method,
        db=db,
        now=NOW,
    )


async def _account(db, code):
    result = await db.execute(select(LicenseAccount).where(LicenseAccount.code == code))
    return result.scalar_one_or_none()


async def _order(db, code):
    result = await db.execute(select(LicenseOrder).where(LicenseOrder.code == code))
    return result.scalar_one_or_none()


@pytest.mark.asyncio
async def test_money_purchase_walks_order_lifecycle(db_session, make_user, fake_redis):
    user_id = await make_user("alice")
    await seed_default_plans(db_session)

    purchase = await _purchase(db_session, user_id, method="money")
    assert purchase["status"] == "pending_payment"
    assert purchase["license_code"].startswith("QL-")
    assert purchase["price"] == 35
    assert await _account(db_session, purchase["license_code"]) is None

    with pytest.raises(InvalidState):
        await activate_order(order_id=purchase["order_id"], admin_id="admin-1", db=db_session, now=NOW)

    paid = await mark_order_paid(order_id=purchase["order_id"], admin_id="admin-1", db=db_session, now=NOW)
    assert paid["status"] == "paid"
    with pytest.raises(InvalidState):
        await mark_order_paid(order_id=purchase["order_id"], admin_id="admin-1", db=db_session, now=NOW)

    activated = await activate_order(order_id=purchase["order_id"], admin_id="admin-1", db=db_session, now=NOW)
    assert activated["status"] == "valid"
    assert activated["expires_at"] == "10/03/2568 23:59"
    assert activated["cumulative_plan_days"] == 30

    listing = await list_user_licenses(user_id, db_session, now=NOW)
    assert listing["count"] == 1
    assert listing["items"][0]["source"] == "account"
    assert "license-updated" in fake_redis.events(f":user:{user_id}")


@pytest.mark.asyncio
async def test_credit_purchase_activates_immediately(db_session, make_user, fake_redis):
    user_id = await make_user("bob", credits=50)
    await seed_default_plans(db_session)

    purchase = await _purchase(db_session, user_id)

    assert purchase["status"] == "activated"
    assert purchase["credits_used"] == 35
    assert purchase["remaining_credits"] == 15
    assert await get_credit_balance(user_id, db_session) == 15
    account = await _account(db_session, purchase["license_code"])
    assert account.status == "valid"
    assert account.expires_at == "10/03/2568 23:59"
    assert fake_redis.events(f":user:{user_id}") == ["license-updated", "credits-updated"]


@pytest.mark.asyncio
async def test_credit_purchase_without_funds_creates_nothing(db_session, make_user):
    user_id = await make_user("carol", credits=10)
    await seed_default_plans(db_session)

    with pytest.raises(InsufficientCredits) as excinfo:
        await _purchase(db_session, user_id)

    assert excinfo.value.required == 35
    assert excinfo.value.available == 10
    orders = await db_session.execute(select(LicenseOrder).where(LicenseOrder.user_id == user_id))
    assert orders.scalars().all() == []
    assert await get_credit_balance(user_id, db_session) == 10


@pytest.mark.asyncio
async def test_purchase_rejects_unknown_plan_and_method(db_session, make_user):
    user_id = await make_user("dave", credits=100)
    await seed_default_plans(db_session)

    with pytest.raises(ValidationError):
        await _purchase(db_session, user_id, plan=31)
    with pytest.raises(ValidationError):
        await _purchase(db_session, user_id, method="crypto")
    with pytest.raises(ValidationError):
        await _purchase(db_session, user_id, account_number="12")


@pytest.mark.asyncio
async def test_cancel_only_before_activation(db_session, make_user):
    user_id = await make_user("erin", credits=100)
    await seed_default_plans(db_session)

    pending = await _purchase(db_session, user_id, method="money")
    cancelled = await cancel_order(order_id=pending["order_id"], admin_id="admin-1", db=db_session, now=NOW)
    assert cancelled["status"] == "cancelled"

    active = await _purchase(db_session, user_id, account_number="87654321")
    with pytest.raises(InvalidState):
        await cancel_order(order_id=active["order_id"], admin_id="admin-1", db=db_session, now=NOW)


@pytest.mark.asyncio
async def test_expiry_is_derived_lazily_and_blocks_suspension(db_session, make_user):
    user_id = await make_user("frank", credits=100)
    await seed_default_plans(db_session)
    purchase = await _purchase(db_session, user_id)
    account = await _account(db_session, purchase["license_code"])

    later = NOW + timedelta(days=31)
    assert account.status == "valid"
    assert effective_status(account, NOW) == "valid"
    assert effective_status(account, later) == "expired"

    listing = await list_user_licenses(user_id, db_session, now=later)
    assert listing["items"][0]["status"] == "expired"

    with pytest.raises(InvalidState):
        await suspend_license(license_id=purchase["license_code"], admin_id="admin-1", db=db_session, now=later)


@pytest.mark.asyncio
async def test_lifetime_licence_never_expires(db_session, make_user):
    user_id = await make_user("gina", credits=500)
    await seed_default_plans(db_session)

    purchase = await _purchase(db_session, user_id, plan="lifetime")

    assert purchase["is_lifetime"] is True
    account = await _account(db_session, purchase["license_code"])
    assert account.plan_days == LIFETIME_PLAN_DAYS
    assert effective_status(account, NOW + timedelta(days=365 * 100)) == "valid"


@pytest.mark.asyncio
async def test_suspend_resume_round_trip(db_session, make_user, fake_redis):
    user_id = await make_user("hank", credits=100)
    await seed_default_plans(db_session)
    purchase = await _purchase(db_session, user_id)
    code = purchase["license_code"]

    suspended = await suspend_license(license_id=code, admin_id="admin-1", db=db_session, now=NOW)
    assert suspended["status"] == "suspended"
    assert effective_status(await _account(db_session, code), NOW + timedelta(days=90)) == "suspended"
    with pytest.raises(InvalidState):
        await suspend_license(license_id=code, admin_id="admin-1", db=db_session, now=NOW)

    resumed = await resume_license(license_id=code, admin_id="admin-1", db=db_session, now=NOW)
    assert resumed["status"] == "valid"
    with pytest.raises(InvalidState):
        await resume_license(license_id=code, admin_id="admin-1", db=db_session, now=NOW)


@pytest.mark.asyncio
async def test_resume_after_lapse_reads_expired(db_session, make_user):
    user_id = await make_user("iris", credits=100)
    await seed_default_plans(db_session)
    purchase = await _purchase(db_session, user_id)
    code = purchase["license_code"]

    await suspend_license(license_id=code, admin_id="admin-1", db=db_session, now=NOW)
    resumed = await resume_license(license_id=code, admin_id="admin-1", db=db_session, now=NOW + timedelta(days=60))

    assert resumed["status"] == "expired"
    assert (await _account(db_session, code)).status == "expired"


@pytest.mark.asyncio
async def test_delete_requires_confirmation_and_terminal_state(db_session, make_user):
    user_id = await make_user("jack", credits=100)
    await seed_default_plans(db_session)
    purchase = await _purchase(db_session, user_id)
    code = purchase["license_code"]

    with pytest.raises(ValidationError):
        await delete_license(license_id=code, confirmation="delete", admin_id="admin-1", db=db_session, now=NOW)
    with pytest.raises(InvalidState):
        await delete_license(license_id=code, confirmation="DELETE", admin_id="admin-1", db=db_session, now=NOW)

    await suspend_license(license_id=code, admin_id="admin-1", db=db_session, now=NOW)
    result = await delete_license(license_id=code, confirmation="DELETE", admin_id="admin-1", db=db_session, now=NOW)

    assert result == {"code": code, "deleted": True, "previous_status": "suspended"}
    assert await _account(db_session, code) is None
    assert await _order(db_session, code) is None
    with pytest.raises(NotFound):
        await resolve_license_ref(db_session, code)


@pytest.mark.asyncio
async def test_bulk_suspend_reports_per_item_outcome(db_session, make_user):
    user_id = await make_user("kate", credits=200)
    await seed_default_plans(db_session)
    first = await _purchase(db_session, user_id, account_number="11111111")
    second = await _purchase(db_session, user_id, account_number="22222222")

    result = await bulk_license_action(
        action="suspend",
        license_ids=[first["license_code"], "missing-code", second["license_code"]],
        admin_id="admin-1",
        db=db_session,
        now=NOW,
    )

    assert result["processed_count"] == 2
    assert result["error_count"] == 1
    assert result["errors"][0]["id"] == "missing-code"
    assert result["errors"][0]["error"] == "not_found"


@pytest.mark.asyncio
async def test_activated_legacy_order_is_materialised_on_write(db_session, make_user):
    user_id = await make_user("liam")
    db_session.add(
        LicenseOrder(
            user_id=user_id,
            username="liam",
            code="QL-LEGACY-1",
            platform="mt4",
            account_number="99999999",
            plan_days=30,
            source="admin",
            status="activated",
            expires_at="2025-03-10T16:59:00+00:00",
        )
    )
    await db_session.commit()

    ref = await resolve_license_ref(db_session, "QL-LEGACY-1", owner_id=user_id)
    assert ref.source == "order"
    assert ref.status(NOW) == "activated"

    suspended = await suspend_license(license_id="QL-LEGACY-1", admin_id="admin-1", db=db_session, now=NOW)
    assert suspended["status"] == "suspended"
    assert suspended["source"] == "account"
    ref = await resolve_license_ref(db_session, "QL-LEGACY-1")
    assert ref.source == "both"
    assert ref.account.created_by == "admin"


@pytest.mark.asyncio
async def test_licence_owned_by_someone_else_is_not_found(db_session, make_user):
    owner_id = await make_user("mia", credits=100)
    intruder_id = await make_user("noah")
    await seed_default_plans(db_session)
    purchase = await _purchase(db_session, owner_id)

    with pytest.raises(NotFound):
        await resolve_license_ref(db_session, purchase["license_code"], owner_id=intruder_id)


@pytest.mark.asyncio
async def test_change_account_number_charges_configured_cost(db_session, make_user, fake_redis):
    user_id = await make_user("olga", credits=200)
    await seed_default_plans(db_session)
    await set_setting(db_session, ACCOUNT_NUMBER_CHANGE_COST, 50, updated_by="admin-1")
    first = await _purchase(db_session, user_id, account_number="11111111")
    await _purchase(db_session, user_id, account_number="22222222")

    result = await change_account_number_service(
        user_id=user_id, license_code=first["license_code"], new_account_number="33333333", db=db_session
    )

    assert result["credits_deducted"] == 50
    assert result["remaining_credits"] == 200 - 35 - 35 - 50
    assert (await _account(db_session, first["license_code"])).account_number == "33333333"
    assert (await _order(db_session, first["license_code"])).account_number == "33333333"
    entries = await db_session.execute(
        select(CreditLedger).where(CreditLedger.user_id == user_id, CreditLedger.entry_type == "account_change")
    )
    assert len(entries.scalars().all()) == 1

    with pytest.raises(ValidationError):
        await change_account_number_service(
            user_id=user_id, license_code=first["license_code"], new_account_number="22222222", db=db_session
        )

    await set_setting(db_session, ACCOUNT_NUMBER_CHANGE_ENABLED, False, updated_by="admin-1")
    with pytest.raises(FeatureDisabled):
        await change_account_number_service(
            user_id=user_id, license_code=first["license_code"], new_account_number="44444444", db=db_session
        )


@pytest.mark.asyncio
async def test_admin_grant_is_free_and_marked_admin_created(db_session, make_user, fake_redis):
    user_id = await make_user("grace", credits=12)
    await seed_default_plans(db_session)

    granted = await admin_create_license(
        username="grace",
        platform="mt4",
        account_number="55550000",
        plan=30,
        admin_id="admin-1",
        db=db_session,
        now=NOW,
    )

    assert granted["created_by"] == "admin"
    assert granted["status"] == "valid"
    assert granted["expires_at"] == "10/03/2568 23:59"
    order = await _order(db_session, granted["code"])
    assert order.source == "admin"
    assert order.status == "activated"
    assert order.points_used == 0
    assert await get_credit_balance(user_id, db_session) == 12
    ledger = await db_session.execute(select(CreditLedger).where(CreditLedger.user_id == user_id))
    assert ledger.scalars().all() == []
    assert fake_redis.events(f":user:{user_id}") == ["license-updated"]

    with pytest.raises(ValidationError):
        await admin_create_license(
            username="grace",
            platform="mt4",
            account_number="55550000",
            plan=30,
            admin_id="admin-1",
            db=db_session,
            now=NOW,
        )
    with pytest.raises(NotFound):
        await admin_create_license(
            username="nobody",
            platform="mt4",
            account_number="55551111",
            plan=30,
            admin_id="admin-1",
            db=db_session,
            now=NOW,
        )


@pytest.mark.asyncio
async def test_admin_listing_filters_on_derived_status_and_search(db_session, make_user):
    heidi_id = await make_user("heidi", credits=100)
    ivan_id = await make_user("ivan")
    await seed_default_plans(db_session)

    active = await _purchase(db_session, heidi_id, account_number="11112222")
    pending = await _purchase(db_session, ivan_id, method="money", account_number="33334444")
    suspended = await _purchase(db_session, heidi_id, account_number="55556666")
    await suspend_license(license_id=suspended["license_code"], admin_id="admin-1", db=db_session, now=NOW)

    everything = await list_admin_licenses(db_session, now=NOW)
    assert everything["count"] == 3
    assert {item["code"] for item in everything["items"]} == {
        active["license_code"],
        pending["license_code"],
        suspended["license_code"],
    }

    pending_only = await list_admin_licenses(db_session, status="pending_payment", now=NOW)
    assert [item["code"] for item in pending_only["items"]] == [pending["license_code"]]
    assert pending_only["items"][0]["source"] == "order"

    searched = await list_admin_licenses(db_session, status="all", search="5555", now=NOW)
    assert [item["code"] for item in searched["items"]] == [suspended["license_code"]]
    assert searched["items"][0]["status"] == "suspended"

    later = NOW + timedelta(days=40)
    expired = await list_admin_licenses(db_session, status="expired", search="heidi", now=later)
    assert [item["code"] for item in expired["items"]] == [active["license_code"]]

    with pytest.raises(ValidationError):
        await list_admin_licenses(db_session, status="archived", now=NOW)
