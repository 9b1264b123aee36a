"""
Tests for the scheduled jobs: the nightly auto-switch sweep, the lease that
guards overlapping runs, payment request expiry and the soft-delete purge.
"""
from datetime import timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import backend.app.services.cron as cron_module
from backend.app.core.timeutils import utcnow
from backend.app.models.cron_lock import CronJobLock
from backend.app.models.merchant import MenuCategory, MenuItem
from backend.app.models.notification import NotificationOutbox
from backend.app.services.cron import JOB_CLEANUP, JOB_SUBSCRIPTIONS, CronService, TaskResult
from backend.tests.factories import (
    create_merchant,
    create_subscription,
    notification_kinds,
    reload_subscription,
    set_balance,
)


# ============================================
# AUTH
# ============================================

@pytest.mark.asyncio
async def test_cron_requires_secret(client: AsyncClient):
    response = await client.post("/cron/subscriptions")
    assert response.status_code == 401
    assert response.json()["code"] == "UNAUTHORIZED"


@pytest.mark.asyncio
async def test_cron_rejects_wrong_secret(client: AsyncClient):
    response = await client.post("/cron/subscriptions", headers={"Authorization": "Bearer nope"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_cron_accepts_get(client: AsyncClient, cron_headers):
    response = await client.get("/cron/subscription-cleanup", headers=cron_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["skipped"] is False
    assert data["job"] == JOB_CLEANUP
    assert [t["task"] for t in data["tasks"]] == ["expire_payment_requests", "purge_soft_deleted"]


# ============================================
# SWEEP
# ============================================

@pytest.mark.asyncio
async def test_sweep_suspends_lapsed_monthly_then_owner_switches_to_deposit(
    client: AsyncClient, test_session: AsyncSession, test_merchant, test_plan, cron_headers, owner_headers,
):
    await create_subscription(
        test_session, test_merchant, type="MONTHLY",
        current_period_start=utcnow() - timedelta(days=40),
        current_period_end=utcnow() - timedelta(days=10),
    )

    response = await client.post("/cron/subscriptions", headers=cron_headers)

    assert response.status_code == 200
    sweep = response.json()["tasks"][0]
    assert sweep["task"] == "auto_switch_sweep"
    assert sweep["count"] == 1
    assert sweep["actions"] == {"ENTER_GRACE": 1, "SUSPEND": 1}
    sub = await reload_subscription(test_session, test_merchant.id)
    assert sub.status == "SUSPENDED"
    assert sub.suspend_reason == "MONTHLY_EXPIRED"
    await test_session.refresh(test_merchant)
    assert test_merchant.is_open is False

    await set_balance(test_session, test_merchant, "150")
    switched = await client.post(
        "/subscription/switch", json={"targetType": "deposit"}, headers=owner_headers,
    )

    assert switched.status_code == 200
    data = switched.json()
    assert data["subscription"]["type"] == "DEPOSIT"
    assert data["subscription"]["status"] == "ACTIVE"
    assert data["subscription"]["suspendReason"] is None
    assert data["isOpen"] is True


@pytest.mark.asyncio
async def test_sweep_creates_missing_trials_and_skips_cancelled(
    test_session: AsyncSession, session_factory: async_sessionmaker, test_plan,
):
    await create_merchant(test_session, code="no-sub")
    cancelled = await create_merchant(test_session, code="gone")
    await create_subscription(test_session, cancelled, type="DEPOSIT", status="CANCELLED")

    run = await CronService(session_factory).run_subscription_job()

    sweep = run.tasks[0]
    assert sweep.count == 1
    assert sweep.actions == {"TRIAL_CREATED": 1}


@pytest.mark.asyncio
async def test_sweep_isolates_a_failing_merchant(
    test_session: AsyncSession, session_factory: async_sessionmaker, test_plan, monkeypatch,
):
    broken = await create_merchant(test_session, code="broken")
    healthy = await create_merchant(test_session, code="healthy")
    await create_subscription(test_session, broken, trial_ends_at=utcnow() - timedelta(days=10))
    await create_subscription(test_session, healthy, trial_ends_at=utcnow() - timedelta(days=10))

    real_run_check = cron_module.run_check

    async def flaky_run_check(session_factory, merchant_id, **kwargs):
        if merchant_id == broken.id:
            raise RuntimeError("database hiccup")
        return await real_run_check(session_factory, merchant_id, **kwargs)

    monkeypatch.setattr(cron_module, "run_check", flaky_run_check)

    run = await CronService(session_factory).run_subscription_job()

    sweep = run.tasks[0]
    assert run.success is False
    assert sweep.success is False
    assert sweep.errors == [{"merchantId": broken.id, "error": "database hiccup"}]
    assert sweep.actions == {"ENTER_GRACE": 1, "SUSPEND": 1}
    assert (await reload_subscription(test_session, healthy.id)).status == "SUSPENDED"
    assert (await reload_subscription(test_session, broken.id)).status == "ACTIVE"
    # The remaining tasks still ran
    assert [t.task for t in run.tasks] == [
        "auto_switch_sweep",
        "send_expiry_warnings",
        "send_low_balance_warnings",
        "expire_payment_requests",
    ]


# ============================================
# LEASE
# ============================================

@pytest.mark.asyncio
async def test_overlapping_run_is_skipped(
    client: AsyncClient, test_session: AsyncSession, test_merchant, test_plan, cron_headers,
):
    now = utcnow()
    test_session.add(CronJobLock(
        job_name=JOB_SUBSCRIPTIONS, run_id="other-run", locked_until=now + timedelta(minutes=10), started_at=now,
    ))
    await test_session.commit()

    response = await client.post("/cron/subscriptions", headers=cron_headers)

    assert response.status_code == 200
    assert response.json()["skipped"] is True
    assert response.json()["tasks"] == []
    lock = await test_session.get(CronJobLock, JOB_SUBSCRIPTIONS, populate_existing=True)
    assert lock.run_id == "other-run"


@pytest.mark.asyncio
async def test_lapsed_lease_is_taken_over_and_released(
    test_session: AsyncSession, session_factory: async_sessionmaker, test_plan,
):
    now = utcnow()
    test_session.add(CronJobLock(
        job_name=JOB_SUBSCRIPTIONS, run_id="crashed-run", locked_until=now - timedelta(minutes=1), started_at=now,
    ))
    await test_session.commit()

    run = await CronService(session_factory).run_subscription_job(now=now)

    assert run.skipped is False
    remaining = await test_session.execute(select(func.count()).select_from(CronJobLock))
    assert remaining.scalar_one() == 0


# ============================================
# CLEANUP
# ============================================

@pytest.mark.asyncio
async def test_cleanup_purges_rows_past_retention(
    test_session: AsyncSession, session_factory: async_sessionmaker, test_merchant,
):
    now = utcnow()
    old_category = MenuCategory(merchant_id=test_merchant.id, name="Seasonal", deleted_at=now - timedelta(days=31))
    recent_category = MenuCategory(merchant_id=test_merchant.id, name="Drinks", deleted_at=now - timedelta(days=5))
    test_session.add_all([old_category, recent_category])
    test_session.add_all([
        MenuItem(merchant_id=test_merchant.id, name="Es teh", deleted_at=now - timedelta(days=45)),
        MenuItem(merchant_id=test_merchant.id, name="Kopi susu", deleted_at=now - timedelta(days=2)),
        MenuItem(merchant_id=test_merchant.id, name="Nasi goreng"),
    ])
    await test_session.commit()

    run = await CronService(session_factory).run_cleanup_job(now=now)

    purge = run.tasks[1]
    assert purge.count == 2
    assert purge.actions == {"menu_items": 1, "menu_categories": 1}
    items = await test_session.execute(select(MenuItem.name).order_by(MenuItem.name))
    assert [row[0] for row in items.all()] == ["Kopi susu", "Nasi goreng"]


@pytest.mark.asyncio
async def test_lease_is_renewed_before_each_task(
    test_session: AsyncSession, session_factory: async_sessionmaker,
):
    now = utcnow()
    service = CronService(session_factory)
    seen = {}

    async def first_task(run_now):
        # Let the lease run down as if the task had taken the whole TTL
        async with session_factory() as session:
            lock = await session.get(CronJobLock, JOB_CLEANUP)
            lock.locked_until = run_now - timedelta(minutes=1)
            await session.commit()
        return TaskResult(task="first_task")

    async def second_task(run_now):
        async with session_factory() as session:
            lock = await session.get(CronJobLock, JOB_CLEANUP, populate_existing=True)
            seen["locked_until"] = lock.locked_until
        return TaskResult(task="second_task")

    run = await service._run_job(JOB_CLEANUP, [first_task, second_task], now)

    assert run.success is True
    assert seen["locked_until"] >= now + timedelta(seconds=service.settings.CRON_LOCK_TTL_SECONDS)


@pytest.mark.asyncio
async def test_run_stops_when_lease_was_taken_over(
    test_session: AsyncSession, session_factory: async_sessionmaker,
):
    now = utcnow()
    ran = []

    async def slow_task(run_now):
        async with session_factory() as session:
            lock = await session.get(CronJobLock, JOB_CLEANUP)
            lock.run_id = "newer-run"
            await session.commit()
        ran.append("slow_task")
        return TaskResult(task="slow_task")

    async def next_task(run_now):
        ran.append("next_task")
        return TaskResult(task="next_task")

    run = await CronService(session_factory)._run_job(JOB_CLEANUP, [slow_task, next_task], now)

    assert ran == ["slow_task"]
    assert run.success is False
    assert run.tasks[-1].task == "next_task"
    assert run.tasks[-1].errors == [{"error": "lease lost"}]
    # The newer run keeps its lease
    lock = await test_session.get(CronJobLock, JOB_CLEANUP, populate_existing=True)
    assert lock.run_id == "newer-run"


# ============================================
# WARNINGS
# ============================================

@pytest.mark.asyncio
async def test_expiry_warnings_at_seven_three_and_one_days(
    test_session: AsyncSession, session_factory: async_sessionmaker, test_plan,
):
    now = utcnow()
    trial_3d = await create_merchant(test_session, code="trial-three")
    trial_5d = await create_merchant(test_session, code="trial-five")
    monthly_7d = await create_merchant(test_session, code="monthly-seven")
    monthly_1d = await create_merchant(test_session, code="monthly-one")
    await create_subscription(test_session, trial_3d, trial_ends_at=now + timedelta(days=3))
    await create_subscription(test_session, trial_5d, trial_ends_at=now + timedelta(days=5))
    await create_subscription(test_session, monthly_7d, type="MONTHLY", current_period_end=now + timedelta(days=7))
    await create_subscription(test_session, monthly_1d, type="MONTHLY", current_period_end=now + timedelta(days=1))

    result = await CronService(session_factory).send_expiry_warnings(now)

    assert result.success is True
    assert result.count == 3
    assert await notification_kinds(test_session, trial_3d.id) == ["trial_ending"]
    assert await notification_kinds(test_session, trial_5d.id) == []
    assert await notification_kinds(test_session, monthly_7d.id) == ["monthly_expiring"]
    assert await notification_kinds(test_session, monthly_1d.id) == ["monthly_expiring"]
    row = await test_session.scalar(select(NotificationOutbox).where(NotificationOutbox.merchant_id == trial_3d.id))
    assert row.payload["days_remaining"] == 3


@pytest.mark.asyncio
async def test_expiry_warning_is_sent_once_per_threshold(
    test_session: AsyncSession, session_factory: async_sessionmaker, test_merchant, test_plan,
):
    now = utcnow()
    await create_subscription(test_session, test_merchant, trial_ends_at=now + timedelta(days=1))
    service = CronService(session_factory)

    await service.send_expiry_warnings(now)
    rerun = await service.send_expiry_warnings(now + timedelta(minutes=30))

    assert rerun.count == 0
    assert await notification_kinds(test_session, test_merchant.id) == ["trial_ending"]


@pytest.mark.asyncio
async def test_suspended_merchants_get_no_expiry_warning(
    test_session: AsyncSession, session_factory: async_sessionmaker, test_merchant, test_plan,
):
    now = utcnow()
    await create_subscription(
        test_session, test_merchant, type="MONTHLY", status="SUSPENDED",
        suspend_reason="Chargeback under review", current_period_end=now + timedelta(days=3),
    )

    result = await CronService(session_factory).send_expiry_warnings(now)

    assert result.count == 0


@pytest.mark.asyncio
async def test_low_balance_warning_below_ten_order_fees(
    test_session: AsyncSession, session_factory: async_sessionmaker, test_plan,
):
    now = utcnow()
    low = await create_merchant(test_session, code="low")
    healthy = await create_merchant(test_session, code="healthy")
    empty = await create_merchant(test_session, code="empty")
    for merchant, amount in ((low, "20000"), (healthy, "30000"), (empty, "0")):
        await create_subscription(test_session, merchant, type="DEPOSIT")
        await set_balance(test_session, merchant, amount)

    result = await CronService(session_factory).send_low_balance_warnings(now)

    assert result.count == 1
    assert await notification_kinds(test_session, low.id) == ["low_balance"]
    assert await notification_kinds(test_session, healthy.id) == []
    assert await notification_kinds(test_session, empty.id) == []
    row = await test_session.scalar(select(NotificationOutbox).where(NotificationOutbox.merchant_id == low.id))
    # 20000 / 2500 order fee
    assert row.payload["estimated_orders"] == 8


@pytest.mark.asyncio
async def test_low_balance_warning_waits_for_reminder_interval(
    test_session: AsyncSession, session_factory: async_sessionmaker, test_merchant, test_plan,
):
    now = utcnow()
    await create_subscription(test_session, test_merchant, type="DEPOSIT")
    await set_balance(test_session, test_merchant, "5000")
    service = CronService(session_factory)
    interval = timedelta(hours=service.settings.LOW_BALANCE_REMINDER_HOURS)

    first = await service.send_low_balance_warnings(now)
    next_night = await service.send_low_balance_warnings(now + timedelta(days=1))
    after_interval = await service.send_low_balance_warnings(now + interval + timedelta(hours=1))

    assert (first.count, next_night.count, after_interval.count) == (1, 0, 1)
    assert await notification_kinds(test_session, test_merchant.id) == ["low_balance", "low_balance"]


@pytest.mark.asyncio
async def test_low_balance_skips_currency_without_pricing(
    test_session: AsyncSession, session_factory: async_sessionmaker, test_plan,
):
    merchant = await create_merchant(test_session, code="sydney-cafe", currency="AUD", timezone="Australia/Sydney")
    await create_subscription(test_session, merchant, type="DEPOSIT")
    await set_balance(test_session, merchant, "1")

    result = await CronService(session_factory).send_low_balance_warnings(utcnow())

    assert result.success is True
    assert result.count == 0
