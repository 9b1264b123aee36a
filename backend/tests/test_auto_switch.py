"""
Unit tests for the auto-switch decision function and the pending-suspension
projection. No database: subscriptions are transient model instances and
`now` is always explicit.
"""
from datetime import timedelta, timezone
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest

from backend.app.models.subscription import MerchantSubscription
from backend.app.services.auto_switch import Action, decide, grace_deadline
from backend.app.services.pending_suspension import pending_suspension
from backend.app.services.plans import CurrencyPricing, PlanSettings
from backend.app.core.timeutils import merchant_zone, next_local_midnight
from backend.tests.factories import at

JAKARTA = ZoneInfo("Asia/Jakarta")
BERLIN = ZoneInfo("Europe/Berlin")

PLAN = PlanSettings(
    trial_days=30,
    trial_grace_days=3,
    monthly_grace_days=5,
    deposit_grace_days=0,
    payment_request_expiry_hours=24,
    pricing={"IDR": CurrencyPricing(deposit_minimum=Decimal("50000"), order_fee=Decimal("2500"), monthly_price=Decimal("100000"))},
)

TRIAL_END = at(2026, 6, 1, 5)


def make_sub(type="TRIAL", status="ACTIVE", **fields) -> MerchantSubscription:
    fields.setdefault("in_grace_period", False)
    return MerchantSubscription(merchant_id=1, type=type, status=status, **fields)


# ============================================
# TRIAL
# ============================================

def test_trial_before_end_is_no_change():
    sub = make_sub(trial_ends_at=TRIAL_END)
    assert decide(sub, Decimal("0"), TRIAL_END, PLAN, JAKARTA).action == Action.NO_CHANGE


def test_trial_one_second_after_end_enters_grace():
    sub = make_sub(trial_ends_at=TRIAL_END)
    decision = decide(sub, Decimal("0"), TRIAL_END + timedelta(seconds=1), PLAN, JAKARTA)
    assert decision.action == Action.ENTER_GRACE
    assert decision.reason == "TRIAL_EXPIRED"
    # Anchored at the expiry (12:00 WIB on Jun 1), ending at local midnight three days on
    assert decision.grace_ends_at == at(2026, 6, 4, 17)


def test_trial_in_grace_suspends_after_grace_end():
    grace_end = TRIAL_END + timedelta(days=3)
    sub = make_sub(trial_ends_at=TRIAL_END, in_grace_period=True, grace_ends_at=grace_end)

    assert decide(sub, Decimal("0"), grace_end, PLAN, JAKARTA).action == Action.NO_CHANGE

    decision = decide(sub, Decimal("0"), grace_end + timedelta(seconds=1), PLAN, JAKARTA)
    assert decision.action == Action.SUSPEND
    assert decision.reason == "TRIAL_EXPIRED"


def test_trial_grace_ends_at_local_midnight_across_dst():
    # 2026-03-29 Berlin moves from CET (+1) to CEST (+2); midnight closing Mar 29 is 22:00 UTC.
    trial_end = at(2026, 3, 26, 12)
    deadline = grace_deadline("TRIAL_EXPIRED", trial_end, PLAN, BERLIN)
    assert deadline == at(2026, 3, 29, 22)


def test_grace_never_ends_mid_business_day():
    # 10:00 WIB expiry: grace ends at 00:00 WIB, not at 10:00 three days later
    trial_end = at(2026, 3, 1, 3)
    deadline = grace_deadline("TRIAL_EXPIRED", trial_end, PLAN, JAKARTA)
    local = deadline.replace(tzinfo=timezone.utc).astimezone(JAKARTA)
    assert (local.hour, local.minute) == (0, 0)
    assert local.date().isoformat() == "2026-03-05"


# ============================================
# MONTHLY
# ============================================

def test_monthly_without_period_enters_grace_from_now():
    now = at(2026, 6, 10, 3)
    sub = make_sub(type="MONTHLY", current_period_end=None)
    decision = decide(sub, Decimal("0"), now, PLAN, JAKARTA)
    assert decision.action == Action.ENTER_GRACE
    assert decision.reason == "MONTHLY_EXPIRED"
    assert decision.grace_ends_at == at(2026, 6, 15, 17)


def test_monthly_active_period_is_no_change():
    now = at(2026, 6, 10, 3)
    sub = make_sub(type="MONTHLY", current_period_end=now + timedelta(days=1))
    assert decide(sub, Decimal("0"), now, PLAN, JAKARTA).action == Action.NO_CHANGE


def test_monthly_in_grace_renewed_exits_grace():
    now = at(2026, 6, 10, 3)
    sub = make_sub(
        type="MONTHLY",
        current_period_end=now + timedelta(days=30),
        in_grace_period=True,
        grace_ends_at=now + timedelta(days=2),
    )
    assert decide(sub, Decimal("0"), now, PLAN, JAKARTA).action == Action.EXIT_GRACE


# ============================================
# DEPOSIT
# ============================================

def test_deposit_empty_enters_grace_until_local_midnight():
    now = at(2026, 5, 10, 10)  # 17:00 in Jakarta
    sub = make_sub(type="DEPOSIT")
    decision = decide(sub, Decimal("0"), now, PLAN, JAKARTA)
    assert decision.action == Action.ENTER_GRACE
    assert decision.reason == "DEPOSIT_DEPLETED"
    assert decision.grace_ends_at == at(2026, 5, 10, 17)  # 00:00 May 11 WIB


def test_deposit_midnight_follows_merchant_day_not_utc_day():
    now = at(2026, 5, 10, 18)  # already 01:00 on May 11 in Jakarta
    sub = make_sub(type="DEPOSIT")
    decision = decide(sub, Decimal("0"), now, PLAN, JAKARTA)
    assert decision.grace_ends_at == at(2026, 5, 11, 17)


def test_deposit_negative_balance_counts_as_depleted():
    sub = make_sub(type="DEPOSIT")
    assert decide(sub, Decimal("-1"), at(2026, 5, 10), PLAN, JAKARTA).action == Action.ENTER_GRACE


def test_deposit_with_balance_is_no_change():
    sub = make_sub(type="DEPOSIT")
    assert decide(sub, Decimal("0.01"), at(2026, 5, 10), PLAN, JAKARTA).action == Action.NO_CHANGE


# ============================================
# SUSPENDED / CANCELLED / NONE
# ============================================

def test_suspended_deposit_topped_up_reactivates():
    sub = make_sub(type="DEPOSIT", status="SUSPENDED", suspend_reason="DEPOSIT_DEPLETED", suspended_at=at(2026, 5, 1))
    assert decide(sub, Decimal("150"), at(2026, 5, 10), PLAN, JAKARTA).action == Action.REACTIVATE


def test_suspended_while_condition_holds_is_no_change():
    sub = make_sub(
        trial_ends_at=TRIAL_END,
        status="SUSPENDED",
        suspend_reason="TRIAL_EXPIRED",
        suspended_at=TRIAL_END + timedelta(days=4),
    )
    assert decide(sub, Decimal("0"), TRIAL_END + timedelta(days=5), PLAN, JAKARTA).action == Action.NO_CHANGE


def test_admin_suspension_is_never_lifted_automatically():
    sub = make_sub(type="DEPOSIT", status="SUSPENDED", suspend_reason="Chargeback under review")
    assert decide(sub, Decimal("500000"), at(2026, 5, 10), PLAN, JAKARTA).action == Action.NO_CHANGE


@pytest.mark.parametrize("type", ["TRIAL", "MONTHLY", "DEPOSIT"])
def test_cancelled_is_terminal(type):
    sub = make_sub(type=type, status="CANCELLED", trial_ends_at=TRIAL_END, current_period_end=None)
    assert decide(sub, Decimal("0"), TRIAL_END + timedelta(days=60), PLAN, JAKARTA).action == Action.NO_CHANGE


def test_type_none_is_no_change():
    sub = make_sub(type="NONE")
    assert decide(sub, Decimal("0"), at(2026, 5, 10), PLAN, JAKARTA).action == Action.NO_CHANGE


def test_per_reason_grace_days_are_independent():
    plan = PLAN.model_copy(update={"trial_grace_days": 0, "monthly_grace_days": 7})
    trial = decide(make_sub(trial_ends_at=TRIAL_END), Decimal("0"), TRIAL_END + timedelta(hours=1), plan, JAKARTA)
    monthly = decide(
        make_sub(type="MONTHLY", current_period_end=TRIAL_END), Decimal("0"), TRIAL_END + timedelta(hours=1), plan, JAKARTA,
    )
    assert trial.grace_ends_at == at(2026, 6, 1, 17)
    assert monthly.grace_ends_at == at(2026, 6, 8, 17)


# ============================================
# FUNDED FALLBACK
# ============================================

def lapsed(sub_type="TRIAL", **fields) -> MerchantSubscription:
    """In a grace period that ran out a day before AFTER_GRACE."""
    fields.setdefault("trial_ends_at", TRIAL_END)
    return make_sub(type=sub_type, in_grace_period=True, grace_ends_at=TRIAL_END + timedelta(days=4), **fields)


AFTER_GRACE = TRIAL_END + timedelta(days=5)


def test_expired_trial_with_balance_still_gets_grace_first():
    decision = decide(make_sub(trial_ends_at=TRIAL_END), Decimal("500000"), TRIAL_END + timedelta(hours=1), PLAN, JAKARTA)
    assert decision.action == Action.ENTER_GRACE


def test_lapsed_trial_with_balance_switches_to_deposit():
    decision = decide(lapsed(), Decimal("500000"), AFTER_GRACE, PLAN, JAKARTA)
    assert decision.action == Action.SWITCH_TYPE
    assert decision.target_type == "DEPOSIT"
    assert decision.reason == "TRIAL_EXPIRED"


def test_active_monthly_period_wins_over_deposit():
    sub = lapsed(current_period_end=AFTER_GRACE + timedelta(days=20))
    decision = decide(sub, Decimal("500000"), AFTER_GRACE, PLAN, JAKARTA)
    assert decision.action == Action.SWITCH_TYPE
    assert decision.target_type == "MONTHLY"


def test_empty_deposit_with_active_period_switches_to_monthly():
    sub = lapsed("DEPOSIT", current_period_end=AFTER_GRACE + timedelta(days=20))
    decision = decide(sub, Decimal("0"), AFTER_GRACE, PLAN, JAKARTA)
    assert decision.action == Action.SWITCH_TYPE
    assert decision.target_type == "MONTHLY"
    assert decision.reason == "DEPOSIT_DEPLETED"


def test_expired_monthly_with_balance_switches_to_deposit():
    sub = lapsed("MONTHLY", current_period_end=TRIAL_END)
    decision = decide(sub, Decimal("150"), AFTER_GRACE, PLAN, JAKARTA)
    assert decision.action == Action.SWITCH_TYPE
    assert decision.target_type == "DEPOSIT"


def test_lapsed_period_is_not_a_fallback():
    sub = lapsed("DEPOSIT", current_period_end=AFTER_GRACE - timedelta(seconds=1))
    assert decide(sub, Decimal("0"), AFTER_GRACE, PLAN, JAKARTA).action == Action.SUSPEND


def test_suspended_trial_with_balance_comes_back_on_deposit():
    sub = make_sub(trial_ends_at=TRIAL_END, status="SUSPENDED", suspend_reason="TRIAL_EXPIRED")
    decision = decide(sub, Decimal("500000"), AFTER_GRACE, PLAN, JAKARTA)
    assert decision.action == Action.SWITCH_TYPE
    assert decision.target_type == "DEPOSIT"


def test_admin_suspension_ignores_funded_fallback():
    sub = make_sub(
        trial_ends_at=TRIAL_END, status="SUSPENDED", suspend_reason="Chargeback under review",
        current_period_end=AFTER_GRACE + timedelta(days=20),
    )
    assert decide(sub, Decimal("500000"), AFTER_GRACE, PLAN, JAKARTA).action == Action.NO_CHANGE


# ============================================
# PENDING SUSPENSION
# ============================================

def test_pending_for_empty_deposit():
    result = pending_suspension(make_sub(type="DEPOSIT"), Decimal("0"), at(2026, 5, 10, 10), PLAN, JAKARTA)
    assert result.pending is True
    assert result.reason == "DEPOSIT_DEPLETED"


def test_pending_when_grace_ends_tonight():
    now = at(2026, 5, 10, 10)
    sub = make_sub(type="DEPOSIT", in_grace_period=True, grace_ends_at=next_local_midnight(now, JAKARTA))
    result = pending_suspension(sub, Decimal("0"), now, PLAN, JAKARTA)
    assert result.pending is True
    assert result.reason == "DEPOSIT_DEPLETED"


def test_not_pending_when_grace_ends_after_tonight():
    now = TRIAL_END + timedelta(hours=1)
    sub = make_sub(trial_ends_at=TRIAL_END, in_grace_period=True, grace_ends_at=TRIAL_END + timedelta(days=3))
    assert pending_suspension(sub, Decimal("0"), now, PLAN, JAKARTA).pending is False


def test_not_pending_for_healthy_or_suspended_merchant():
    healthy = make_sub(trial_ends_at=TRIAL_END)
    suspended = make_sub(type="DEPOSIT", status="SUSPENDED", suspend_reason="DEPOSIT_DEPLETED")
    assert pending_suspension(healthy, Decimal("0"), TRIAL_END - timedelta(days=1), PLAN, JAKARTA).pending is False
    assert pending_suspension(suspended, Decimal("0"), at(2026, 5, 10), PLAN, JAKARTA).pending is False


def test_pending_suspension_does_not_mutate():
    sub = make_sub(type="DEPOSIT")
    pending_suspension(sub, Decimal("0"), at(2026, 5, 10), PLAN, JAKARTA)
    assert sub.in_grace_period is False
    assert sub.grace_ends_at is None
    assert sub.status == "ACTIVE"


def test_unknown_merchant_zone_falls_back_to_default():
    assert merchant_zone("Mars/Olympus_Mons") == JAKARTA
    assert merchant_zone(None) == JAKARTA


def test_not_pending_when_a_funded_plan_takes_over():
    now = TRIAL_END + timedelta(hours=1)
    in_grace = make_sub(trial_ends_at=TRIAL_END, in_grace_period=True, grace_ends_at=next_local_midnight(now, JAKARTA))
    not_yet = make_sub(trial_ends_at=TRIAL_END)
    assert pending_suspension(in_grace, Decimal("500000"), now, PLAN, JAKARTA).pending is False
    assert pending_suspension(not_yet, Decimal("500000"), now, PLAN, JAKARTA).pending is False
    assert pending_suspension(not_yet, Decimal("0"), now, PLAN, JAKARTA).pending is True
