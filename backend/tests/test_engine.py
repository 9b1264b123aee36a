"""
Tests for applying auto-switch decisions against the database:
single-pass suspension, idempotence, stale decisions, store flag handling,
trial creation and the opportunistic check's failure isolation.
"""
import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import backend.app.services.auto_switch as auto_switch
from backend.app.core.settings import get_settings
from backend.app.core.timeutils import local_add_days, merchant_zone, next_local_midnight, utcnow
from backend.app.models.merchant import Merchant
from backend.app.services.auto_switch import (
    Action,
    AutoSwitchEngine,
    CheckResult,
    Decision,
    opportunistic_check,
    run_check,
)
from backend.app.services.balance import BalanceService
from backend.app.services.plans import PlanService
from backend.app.services.subscriptions import SubscriptionService
from backend.app.services.subscription_store import SubscriptionStore
from backend.tests.factories import (
    create_merchant,
    create_subscription,
    history_events,
    notification_kinds,
    reload_subscription,
    set_balance,
)


@pytest.mark.asyncio
async def test_lapsed_trial_is_suspended_in_one_check(
    test_session: AsyncSession, session_factory: async_sessionmaker, test_merchant: Merchant, test_plan,
):
    now = utcnow()
    await create_subscription(test_session, test_merchant, trial_ends_at=now - timedelta(days=10))

    result = await run_check(session_factory, test_merchant.id, source="test", now=now)

    assert result.actions == ["ENTER_GRACE", "SUSPEND"]
    assert result.status == "SUSPENDED"
    assert result.suspend_reason == "TRIAL_EXPIRED"
    assert result.store_closed is True

    sub = await reload_subscription(test_session, test_merchant.id)
    assert sub.status == "SUSPENDED"
    assert sub.suspend_reason == "TRIAL_EXPIRED"
    assert sub.in_grace_period is False
    await test_session.refresh(test_merchant)
    assert test_merchant.is_open is False
    assert await history_events(test_session, test_merchant.id) == ["GRACE_STARTED", "SUSPENDED"]
    assert await notification_kinds(test_session, test_merchant.id) == [
        "grace_period_started",
        "subscription_suspended",
    ]


@pytest.mark.asyncio
async def test_second_check_is_no_change(
    test_session: AsyncSession, session_factory: async_sessionmaker, test_merchant: Merchant, test_plan,
):
    now = utcnow()
    await create_subscription(test_session, test_merchant, trial_ends_at=now - timedelta(days=10))

    await run_check(session_factory, test_merchant.id, source="test", now=now)
    second = await run_check(session_factory, test_merchant.id, source="test", now=now)

    assert second.actions == []
    assert second.changed is False
    # No duplicate history or notifications
    assert await history_events(test_session, test_merchant.id) == ["GRACE_STARTED", "SUSPENDED"]
    assert len(await notification_kinds(test_session, test_merchant.id)) == 2


@pytest.mark.asyncio
async def test_empty_deposit_enters_grace_until_tonight(
    test_session: AsyncSession, session_factory: async_sessionmaker, test_merchant: Merchant, test_plan,
):
    now = utcnow()
    await create_subscription(test_session, test_merchant, type="DEPOSIT")

    result = await run_check(session_factory, test_merchant.id, source="test", now=now)

    assert result.actions == ["ENTER_GRACE"]
    assert result.status == "ACTIVE"
    sub = await reload_subscription(test_session, test_merchant.id)
    assert sub.in_grace_period is True
    assert now < sub.grace_ends_at <= now + timedelta(days=1)
    await test_session.refresh(test_merchant)
    assert test_merchant.is_open is True


@pytest.mark.asyncio
async def test_top_up_during_grace_exits_grace_without_notification(
    test_session: AsyncSession, session_factory: async_sessionmaker, test_merchant: Merchant, test_plan,
):
    now = utcnow()
    await create_subscription(
        test_session, test_merchant, type="DEPOSIT",
        in_grace_period=True, grace_ends_at=now + timedelta(hours=3),
    )
    await set_balance(test_session, test_merchant, "100000")

    result = await run_check(session_factory, test_merchant.id, source="test", now=now)

    assert result.actions == ["EXIT_GRACE"]
    sub = await reload_subscription(test_session, test_merchant.id)
    assert sub.in_grace_period is False
    assert sub.grace_ends_at is None
    assert await history_events(test_session, test_merchant.id) == ["GRACE_CLEARED"]
    assert await notification_kinds(test_session, test_merchant.id) == []


@pytest.mark.asyncio
async def test_reactivation_reopens_store(
    test_session: AsyncSession, session_factory: async_sessionmaker, test_plan,
):
    merchant = await create_merchant(test_session, is_open=False)
    await create_subscription(test_session, merchant, type="DEPOSIT", status="SUSPENDED")
    await set_balance(test_session, merchant, "150")

    result = await run_check(session_factory, merchant.id, source="test")

    assert result.actions == ["REACTIVATE"]
    assert result.store_opened is True
    sub = await reload_subscription(test_session, merchant.id)
    assert sub.status == "ACTIVE"
    assert sub.suspend_reason is None
    await test_session.refresh(merchant)
    assert merchant.is_open is True
    assert await notification_kinds(test_session, merchant.id) == ["subscription_reactivated"]


@pytest.mark.asyncio
async def test_reactivation_respects_manual_override(
    test_session: AsyncSession, session_factory: async_sessionmaker, test_plan,
):
    merchant = await create_merchant(test_session, is_open=False, is_manual_override=True)
    await create_subscription(test_session, merchant, type="DEPOSIT", status="SUSPENDED")
    await set_balance(test_session, merchant, "150")

    result = await run_check(session_factory, merchant.id, source="test")

    assert result.status == "ACTIVE"
    assert result.store_opened is False
    await test_session.refresh(merchant)
    assert merchant.is_open is False
    assert merchant.is_manual_override is True


@pytest.mark.asyncio
async def test_suspension_of_already_closed_store_leaves_flags(
    test_session: AsyncSession, session_factory: async_sessionmaker, test_plan,
):
    merchant = await create_merchant(test_session, is_open=False, is_manual_override=True)
    await create_subscription(test_session, merchant, trial_ends_at=utcnow() - timedelta(days=10))

    result = await run_check(session_factory, merchant.id, source="test")

    assert result.status == "SUSPENDED"
    assert result.store_closed is False
    await test_session.refresh(merchant)
    assert merchant.is_open is False
    assert merchant.is_manual_override is True


@pytest.mark.asyncio
async def test_missing_subscription_gets_a_trial(
    test_session: AsyncSession, session_factory: async_sessionmaker, test_merchant: Merchant, test_plan,
):
    now = utcnow()
    result = await run_check(session_factory, test_merchant.id, source="test", now=now)

    assert result.subscription_created is True
    assert result.actions == []
    sub = await reload_subscription(test_session, test_merchant.id)
    assert sub.type == "TRIAL"
    assert sub.status == "ACTIVE"
    assert sub.trial_ends_at == now + timedelta(days=test_plan.trial_days)
    assert await history_events(test_session, test_merchant.id) == ["CREATED"]


@pytest.mark.asyncio
async def test_stale_decision_is_a_no_op(
    test_session: AsyncSession, session_factory: async_sessionmaker, test_merchant: Merchant, test_plan,
):
    """A caller that decided on an old snapshot must not write a second transition."""
    now = utcnow()
    await create_subscription(test_session, test_merchant, type="DEPOSIT")

    async with session_factory() as late_session:
        plan = await PlanService(late_session).get_plan()
        observed = await SubscriptionStore(late_session).get(test_merchant.id)
        late_engine = AutoSwitchEngine(late_session, plan, source="test")

        first = await run_check(session_factory, test_merchant.id, source="test", now=now)
        assert first.actions == ["ENTER_GRACE"]

        decision = Decision(Action.ENTER_GRACE, "DEPOSIT_DEPLETED", now + timedelta(hours=1))
        applied = await late_engine.apply(
            observed, Decimal("0"), decision, now, CheckResult(merchant_id=test_merchant.id),
        )
        await late_session.commit()

    assert applied is False
    assert await history_events(test_session, test_merchant.id) == ["GRACE_STARTED"]
    assert await notification_kinds(test_session, test_merchant.id) == ["grace_period_started"]


@pytest.mark.asyncio
async def test_cancelled_subscription_is_never_touched(
    test_session: AsyncSession, session_factory: async_sessionmaker, test_merchant: Merchant, test_plan,
):
    await create_subscription(test_session, test_merchant, type="DEPOSIT", status="CANCELLED")

    result = await run_check(session_factory, test_merchant.id, source="test")

    assert result.actions == []
    assert result.status == "CANCELLED"
    assert await history_events(test_session, test_merchant.id) == []


@pytest.mark.asyncio
async def test_plan_defaults_apply_without_plan_row(
    test_session: AsyncSession, session_factory: async_sessionmaker, test_merchant: Merchant,
):
    now = utcnow()
    trial_end = now - timedelta(hours=1)
    await create_subscription(test_session, test_merchant, trial_ends_at=trial_end)

    result = await run_check(session_factory, test_merchant.id, source="test", now=now)

    assert result.actions == ["ENTER_GRACE"]
    sub = await reload_subscription(test_session, test_merchant.id)
    tz = merchant_zone(test_merchant.timezone)
    grace_days = get_settings().DEFAULT_GRACE_PERIOD_DAYS
    assert sub.grace_ends_at == next_local_midnight(local_add_days(trial_end, grace_days, tz), tz)


# ============================================
# FUNDED FALLBACK
# ============================================

@pytest.mark.asyncio
async def test_lapsed_trial_with_balance_moves_to_deposit(
    test_session: AsyncSession, session_factory: async_sessionmaker, test_merchant: Merchant, test_plan,
):
    now = utcnow()
    await create_subscription(test_session, test_merchant, trial_ends_at=now - timedelta(days=10))
    await set_balance(test_session, test_merchant, "500000")

    result = await run_check(session_factory, test_merchant.id, source="test", now=now)

    assert result.actions == ["ENTER_GRACE", "SWITCH_TYPE"]
    assert (result.type, result.status) == ("DEPOSIT", "ACTIVE")
    assert result.store_closed is False
    assert await history_events(test_session, test_merchant.id) == ["GRACE_STARTED", "MODE_SWITCHED"]
    assert await notification_kinds(test_session, test_merchant.id) == [
        "grace_period_started",
        "subscription_switched",
    ]
    await test_session.refresh(test_merchant)
    assert test_merchant.is_open is True

    again = await run_check(session_factory, test_merchant.id, source="test", now=now)
    assert again.actions == []


@pytest.mark.asyncio
async def test_empty_deposit_falls_back_to_active_monthly_period(
    test_session: AsyncSession, session_factory: async_sessionmaker, test_merchant: Merchant, test_plan,
):
    now = utcnow()
    await create_subscription(
        test_session, test_merchant, type="DEPOSIT",
        in_grace_period=True, grace_ends_at=now - timedelta(hours=1),
        current_period_start=now - timedelta(days=10), current_period_end=now + timedelta(days=20),
    )

    result = await run_check(session_factory, test_merchant.id, source="test", now=now)

    assert result.actions == ["SWITCH_TYPE"]
    sub = await reload_subscription(test_session, test_merchant.id)
    assert (sub.type, sub.status) == ("MONTHLY", "ACTIVE")
    assert sub.in_grace_period is False
    assert sub.grace_ends_at is None


@pytest.mark.asyncio
async def test_suspended_trial_with_balance_comes_back_on_deposit(
    test_session: AsyncSession, session_factory: async_sessionmaker, test_plan,
):
    now = utcnow()
    merchant = await create_merchant(test_session, is_open=False)
    await create_subscription(
        test_session, merchant, status="SUSPENDED", suspend_reason="TRIAL_EXPIRED",
        trial_ends_at=now - timedelta(days=10),
    )
    await set_balance(test_session, merchant, "500000")

    result = await run_check(session_factory, merchant.id, source="test", now=now)

    assert result.actions == ["SWITCH_TYPE"]
    assert result.store_opened is True
    sub = await reload_subscription(test_session, merchant.id)
    assert (sub.type, sub.status, sub.suspend_reason) == ("DEPOSIT", "ACTIVE", None)
    await test_session.refresh(merchant)
    assert merchant.is_open is True
    assert await history_events(test_session, merchant.id) == ["MODE_SWITCHED"]
    assert await notification_kinds(test_session, merchant.id) == ["subscription_switched"]


# ============================================
# LOCKING AND ROUND TRIPS
# ============================================

@pytest.mark.asyncio
async def test_check_reads_subscription_and_balance_under_row_locks(
    test_session: AsyncSession, session_factory: async_sessionmaker, test_merchant: Merchant, test_plan, monkeypatch,
):
    await create_subscription(test_session, test_merchant, type="DEPOSIT")
    reads = []
    real_get = SubscriptionStore.get
    real_balance = BalanceService.get_balance

    async def recording_get(self, merchant_id, for_update=False):
        reads.append(("subscription", for_update))
        return await real_get(self, merchant_id, for_update=for_update)

    async def recording_balance(self, merchant_id, currency, for_update=False):
        reads.append(("balance", for_update))
        return await real_balance(self, merchant_id, currency, for_update=for_update)

    monkeypatch.setattr(SubscriptionStore, "get", recording_get)
    monkeypatch.setattr(BalanceService, "get_balance", recording_balance)

    result = await run_check(session_factory, test_merchant.id, source="test")

    assert result.actions == ["ENTER_GRACE"]
    assert {kind for kind, _ in reads} == {"subscription", "balance"}
    assert all(locked for _, locked in reads)


@pytest.mark.asyncio
async def test_top_up_committed_before_check_prevents_grace(
    test_session: AsyncSession, session_factory: async_sessionmaker, test_merchant: Merchant, test_plan,
):
    await create_subscription(test_session, test_merchant, type="DEPOSIT")
    await BalanceService(test_session).adjust(test_merchant.id, "100", "IDR", description="Goodwill credit")
    await test_session.commit()

    result = await run_check(session_factory, test_merchant.id, source="test")

    assert result.actions == []
    assert await notification_kinds(test_session, test_merchant.id) == []


@pytest.mark.asyncio
async def test_manual_switch_to_deposit_then_check_is_no_change(
    test_session: AsyncSession, session_factory: async_sessionmaker, test_plan,
):
    now = utcnow()
    merchant = await create_merchant(test_session, is_open=False)
    await create_subscription(
        test_session, merchant, type="MONTHLY", status="SUSPENDED", suspend_reason="MONTHLY_EXPIRED",
        current_period_end=now - timedelta(days=10),
    )
    await set_balance(test_session, merchant, "150")

    await SubscriptionService(test_session).manual_switch(merchant.id, "DEPOSIT", now=now)
    await test_session.commit()
    result = await run_check(session_factory, merchant.id, source="test", now=now)

    assert result.actions == []
    assert (result.type, result.status) == ("DEPOSIT", "ACTIVE")
    assert await history_events(test_session, merchant.id) == ["MANUAL_SWITCH"]


@pytest.mark.asyncio
async def test_manual_switch_to_monthly_then_check_is_no_change(
    test_session: AsyncSession, session_factory: async_sessionmaker, test_merchant: Merchant, test_plan,
):
    now = utcnow()
    await create_subscription(
        test_session, test_merchant, type="DEPOSIT",
        current_period_start=now - timedelta(days=5), current_period_end=now + timedelta(days=25),
    )

    await SubscriptionService(test_session).manual_switch(test_merchant.id, "MONTHLY", now=now)
    await test_session.commit()
    result = await run_check(session_factory, test_merchant.id, source="test", now=now)

    assert result.actions == []
    assert (result.type, result.status) == ("MONTHLY", "ACTIVE")


# ============================================
# OPPORTUNISTIC CHECK
# ============================================

@pytest.mark.asyncio
async def test_opportunistic_check_swallows_errors(session_factory: async_sessionmaker):
    result = await opportunistic_check(session_factory, 424242, source="test")
    assert result is None


@pytest.mark.asyncio
async def test_opportunistic_check_times_out(
    session_factory: async_sessionmaker, test_merchant: Merchant, monkeypatch,
):
    async def slow_check(*args, **kwargs):
        await asyncio.sleep(1)

    monkeypatch.setattr(auto_switch, "run_check", slow_check)
    monkeypatch.setattr(get_settings(), "AUTO_SWITCH_CHECK_TIMEOUT_SECONDS", 0.01)

    result = await opportunistic_check(session_factory, test_merchant.id, source="test")
    assert result is None


def test_services_package_exposes_engine_entry_points():
    import backend.app.services as services

    assert services.run_check is run_check
    assert services.AutoSwitchEngine is AutoSwitchEngine
    assert services.BalanceService is BalanceService
    assert services.SubscriptionService is SubscriptionService
    for name in services.__all__:
        assert hasattr(services, name), name
