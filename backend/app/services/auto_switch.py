"""
Auto-switch engine.

`decide` is a pure function of the persisted subscription, the deposit
balance, the plan settings and an explicit `now`. `AutoSwitchEngine`
applies decisions with a guarded UPDATE inside the caller's transaction,
so concurrent callers that computed the same decision collapse into one
write (and one history entry, one notification).

Two entry points share the apply step: the opportunistic check on read
paths (short timeout, never fails the request) and the nightly sweep.

When grace lapses the merchant is moved to another plan they have already
funded (an active monthly period first, then a positive deposit) before
suspension is considered. The check holds row locks on the subscription,
the merchant and the balance while it decides, so a credit or debit
committed mid-check cannot leave a decision built on a stale balance.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.constants import (
    AUTO_SUSPEND_REASONS,
    Actor,
    HistoryEvent,
    SubscriptionStatus,
    SubscriptionType,
    SuspendReason,
)
from backend.app.core.logging import get_logger, merchant_context
from backend.app.core.metrics import auto_switch_check_failures_total, subscription_transitions_total
from backend.app.core.settings import get_settings
from backend.app.core.timeutils import local_add_days, merchant_zone, next_local_midnight, utcnow
from backend.app.models.subscription import MerchantSubscription
from backend.app.services.balance import BalanceService
from backend.app.services.cache import CacheService
from backend.app.services.notifications import (
    GracePeriodStarted,
    NotificationService,
    SubscriptionReactivated,
    SubscriptionSuspended,
    SubscriptionSwitched,
)
from backend.app.services.plans import PlanService, PlanSettings
from backend.app.services.subscription_store import SubscriptionStore

logger = get_logger(__name__)

# A lapsed grace can need ENTER_GRACE then SUSPEND (or SWITCH_TYPE) in one check.
MAX_STEPS_PER_CHECK = 3


class Action(str, Enum):
    NO_CHANGE = "NO_CHANGE"
    ENTER_GRACE = "ENTER_GRACE"
    EXIT_GRACE = "EXIT_GRACE"
    SWITCH_TYPE = "SWITCH_TYPE"
    SUSPEND = "SUSPEND"
    REACTIVATE = "REACTIVATE"


@dataclass(frozen=True)
class Decision:
    action: Action
    reason: Optional[str] = None
    grace_ends_at: Optional[datetime] = None
    target_type: Optional[str] = None


NO_CHANGE = Decision(Action.NO_CHANGE)


@dataclass
class CheckResult:
    merchant_id: int
    actions: list[str] = field(default_factory=list)
    status: Optional[str] = None
    type: Optional[str] = None
    suspend_reason: Optional[str] = None
    subscription_created: bool = False
    store_closed: bool = False
    store_opened: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.actions) or self.subscription_created


def suspension_condition(
    subscription: MerchantSubscription,
    balance: Decimal,
    now: datetime,
) -> Optional[tuple[str, datetime]]:
    """(reason, anchor) when the plan's resource has run out, else None.

    The anchor is the instant the condition began: the trial/period end,
    or `now` for a missing period or an empty deposit.
    """
    sub_type = subscription.type
    if sub_type == SubscriptionType.TRIAL.value:
        if subscription.trial_ends_at is not None and now > subscription.trial_ends_at:
            return SuspendReason.TRIAL_EXPIRED.value, subscription.trial_ends_at
        return None
    if sub_type == SubscriptionType.MONTHLY.value:
        if subscription.current_period_end is None:
            return SuspendReason.MONTHLY_EXPIRED.value, now
        if now > subscription.current_period_end:
            return SuspendReason.MONTHLY_EXPIRED.value, subscription.current_period_end
        return None
    if sub_type == SubscriptionType.DEPOSIT.value:
        if balance <= 0:
            return SuspendReason.DEPOSIT_DEPLETED.value, now
        return None
    return None


def funded_fallback(subscription: MerchantSubscription, balance: Decimal, now: datetime) -> Optional[str]:
    """Another plan the merchant has already paid for, or None.

    An active monthly period wins over a positive deposit balance. The
    merchant's current plan is never offered as its own fallback.
    """
    sub_type = subscription.type
    period_end = subscription.current_period_end
    if sub_type != SubscriptionType.MONTHLY.value and period_end is not None and period_end > now:
        return SubscriptionType.MONTHLY.value
    if sub_type != SubscriptionType.DEPOSIT.value and balance > 0:
        return SubscriptionType.DEPOSIT.value
    return None


def grace_deadline(reason: str, anchor: datetime, plan: PlanSettings, tz: ZoneInfo) -> datetime:
    """When grace for `reason` ends, in naive UTC.

    Grace always ends at a merchant-local midnight: the one closing the
    local day N days after the anchor (N = 0 means the anchor's own day).
    Days are counted on the wall clock, so a DST change does not move it.
    """
    days = plan.grace_days_for(reason)
    return next_local_midnight(local_add_days(anchor, days, tz), tz)


def decide(
    subscription: MerchantSubscription,
    balance: Decimal,
    now: datetime,
    plan: PlanSettings,
    tz: ZoneInfo,
) -> Decision:
    status = subscription.status
    if status == SubscriptionStatus.CANCELLED.value or subscription.type == SubscriptionType.NONE.value:
        return NO_CHANGE

    condition = suspension_condition(subscription, balance, now)

    if status == SubscriptionStatus.SUSPENDED.value:
        # Admin suspensions carry free-text reasons and are lifted by an admin only.
        if subscription.suspend_reason not in AUTO_SUSPEND_REASONS:
            return NO_CHANGE
        if condition is None:
            return Decision(Action.REACTIVATE)
        fallback = funded_fallback(subscription, balance, now)
        if fallback is not None:
            return Decision(Action.SWITCH_TYPE, condition[0], target_type=fallback)
        return NO_CHANGE

    if condition is None:
        if subscription.in_grace_period:
            return Decision(Action.EXIT_GRACE)
        return NO_CHANGE

    reason, anchor = condition
    if not subscription.in_grace_period:
        return Decision(Action.ENTER_GRACE, reason, grace_deadline(reason, anchor, plan, tz))
    if subscription.grace_ends_at is None or now > subscription.grace_ends_at:
        fallback = funded_fallback(subscription, balance, now)
        if fallback is not None:
            return Decision(Action.SWITCH_TYPE, reason, target_type=fallback)
        return Decision(Action.SUSPEND, reason)
    return NO_CHANGE


def _update_values(decision: Decision, now: datetime) -> dict[str, Any]:
    if decision.action == Action.ENTER_GRACE:
        return {"in_grace_period": True, "grace_ends_at": decision.grace_ends_at, "updated_at": now}
    if decision.action == Action.EXIT_GRACE:
        return {"in_grace_period": False, "grace_ends_at": None, "updated_at": now}
    if decision.action == Action.SUSPEND:
        return {
            "status": SubscriptionStatus.SUSPENDED.value,
            "suspend_reason": decision.reason,
            "suspended_at": now,
            "in_grace_period": False,
            "grace_ends_at": None,
            "updated_at": now,
        }
    if decision.action == Action.SWITCH_TYPE:
        return {
            "type": decision.target_type,
            "status": SubscriptionStatus.ACTIVE.value,
            "suspend_reason": None,
            "suspended_at": None,
            "in_grace_period": False,
            "grace_ends_at": None,
            "updated_at": now,
        }
    if decision.action == Action.REACTIVATE:
        return {
            "status": SubscriptionStatus.ACTIVE.value,
            "suspend_reason": None,
            "suspended_at": None,
            "in_grace_period": False,
            "grace_ends_at": None,
            "updated_at": now,
        }
    raise ValueError(f"Nothing to apply for {decision.action}")


def _isoformat(moment: Optional[datetime]) -> Optional[str]:
    return moment.isoformat() if moment else None


class AutoSwitchEngine:
    """Applies decisions inside the caller's session; the caller commits."""

    def __init__(self, session: AsyncSession, plan: PlanSettings, source: str = "request"):
        self.session = session
        self.plan = plan
        self.source = source
        self.store = SubscriptionStore(session)
        self.balances = BalanceService(session)
        self.notifications = NotificationService(session)

    async def apply(
        self,
        subscription: MerchantSubscription,
        balance: Decimal,
        decision: Decision,
        now: datetime,
        result: CheckResult,
    ) -> bool:
        """Write one decision. Returns False when the row moved on under us."""
        merchant_id = subscription.merchant_id
        old_type, old_status = subscription.type, subscription.status

        applied = await self.store.guarded_update(subscription, _update_values(decision, now))
        if not applied:
            logger.info("Stale auto-switch decision skipped", merchant_id=merchant_id, action=decision.action.value)
            return False

        if decision.action == Action.ENTER_GRACE:
            entry = await self.store.record_history(
                merchant_id, HistoryEvent.GRACE_STARTED, Actor.SYSTEM,
                old_type=old_type, old_status=old_status, new_type=old_type, new_status=old_status,
                reason=decision.reason, balance_snapshot=balance,
                metadata={"grace_ends_at": decision.grace_ends_at.isoformat()},
                now=now,
            )
            await self.notifications.enqueue(
                merchant_id,
                GracePeriodStarted(reason=decision.reason, grace_ends_at=decision.grace_ends_at),
                dedupe_key=f"history:{entry.id}",
            )
        elif decision.action == Action.EXIT_GRACE:
            await self.store.record_history(
                merchant_id, HistoryEvent.GRACE_CLEARED, Actor.SYSTEM,
                old_type=old_type, old_status=old_status, new_type=old_type, new_status=old_status,
                reason="Condition cleared during grace period", balance_snapshot=balance, now=now,
            )
        elif decision.action == Action.SUSPEND:
            entry = await self.store.record_history(
                merchant_id, HistoryEvent.SUSPENDED, Actor.SYSTEM,
                old_type=old_type, old_status=old_status,
                new_type=old_type, new_status=SubscriptionStatus.SUSPENDED.value,
                reason=decision.reason, balance_snapshot=balance, now=now,
            )
            await self.notifications.enqueue(
                merchant_id,
                SubscriptionSuspended(reason=decision.reason, subscription_type=old_type),
                dedupe_key=f"history:{entry.id}",
            )
            result.store_closed = await self.store.close_store(merchant_id) or result.store_closed
        elif decision.action == Action.SWITCH_TYPE:
            entry = await self.store.record_history(
                merchant_id, HistoryEvent.MODE_SWITCHED, Actor.SYSTEM,
                old_type=old_type, old_status=old_status,
                new_type=decision.target_type, new_status=SubscriptionStatus.ACTIVE.value,
                reason=f"{decision.reason}: switched to funded {decision.target_type} plan",
                balance_snapshot=balance,
                metadata={"current_period_end": _isoformat(subscription.current_period_end)},
                now=now,
            )
            await self.notifications.enqueue(
                merchant_id,
                SubscriptionSwitched(
                    reason=decision.reason, from_type=old_type, to_type=decision.target_type,
                ),
                dedupe_key=f"history:{entry.id}",
            )
            # An active merchant's store is left as the owner set it.
            if old_status == SubscriptionStatus.SUSPENDED.value:
                result.store_opened = await self.store.reopen_store(merchant_id) or result.store_opened
        elif decision.action == Action.REACTIVATE:
            entry = await self.store.record_history(
                merchant_id, HistoryEvent.REACTIVATED, Actor.SYSTEM,
                old_type=old_type, old_status=old_status,
                new_type=old_type, new_status=SubscriptionStatus.ACTIVE.value,
                reason=f"{subscription.suspend_reason} resolved", balance_snapshot=balance, now=now,
            )
            await self.notifications.enqueue(
                merchant_id,
                SubscriptionReactivated(subscription_type=old_type),
                dedupe_key=f"history:{entry.id}",
            )
            result.store_opened = await self.store.reopen_store(merchant_id) or result.store_opened

        subscription_transitions_total.labels(action=decision.action.value, source=self.source).inc()
        logger.info(
            "Subscription transition applied",
            merchant_id=merchant_id,
            action=decision.action.value,
            reason=decision.reason,
            target_type=decision.target_type,
            source=self.source,
        )
        return True

    async def check_and_apply(self, merchant_id: int, now: Optional[datetime] = None) -> CheckResult:
        """
        Decide and apply until NO_CHANGE, all within the current transaction.

        Locks are taken subscription, then merchant, then balance: the same
        order payment verification uses, and a superset of what credits and
        debits take. They are held until the caller commits.

        Args:
            merchant_id: Merchant to check
            now: Evaluation time (naive UTC); defaults to the current time

        Returns:
            CheckResult listing the applied actions and the final state
        """
        now = now or utcnow()
        merchant = await self.store.get_merchant(merchant_id)
        tz = merchant_zone(merchant.timezone)
        result = CheckResult(merchant_id=merchant_id)

        subscription = await self.store.get(merchant_id, for_update=True)
        if subscription is None:
            subscription = await self.store.create_trial(merchant_id, self.plan.trial_days, now=now)
            result.subscription_created = True

        for _ in range(MAX_STEPS_PER_CHECK):
            balance = await self.balances.get_balance(merchant_id, merchant.currency, for_update=True)
            decision = decide(subscription, balance, now, self.plan, tz)
            if decision.action == Action.NO_CHANGE:
                break
            if not await self.apply(subscription, balance, decision, now, result):
                break
            result.actions.append(decision.action.value)
            subscription = await self.store.get(merchant_id, for_update=True)

        result.status = subscription.status
        result.type = subscription.type
        result.suspend_reason = subscription.suspend_reason
        return result


async def run_check(
    session_factory: async_sessionmaker,
    merchant_id: int,
    *,
    source: str,
    cache: Optional[CacheService] = None,
    plan: Optional[PlanSettings] = None,
    now: Optional[datetime] = None,
) -> CheckResult:
    """One merchant's decide+apply in its own transaction."""
    async with session_factory() as session:
        try:
            if plan is None:
                plan = await PlanService(session, cache).get_plan()
            engine = AutoSwitchEngine(session, plan, source=source)
            result = await engine.check_and_apply(merchant_id, now=now)
            await session.commit()
            return result
        except Exception:
            await session.rollback()
            raise


async def opportunistic_check(
    session_factory: async_sessionmaker,
    merchant_id: int,
    *,
    source: str = "request",
    cache: Optional[CacheService] = None,
    now: Optional[datetime] = None,
) -> Optional[CheckResult]:
    """Best-effort check piggybacked on a read. Never raises; returns None on failure."""
    timeout = get_settings().AUTO_SWITCH_CHECK_TIMEOUT_SECONDS
    with merchant_context(merchant_id, source=source):
        try:
            return await asyncio.wait_for(
                run_check(session_factory, merchant_id, source=source, cache=cache, now=now),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            auto_switch_check_failures_total.labels(source=source).inc()
            logger.warning("Auto-switch check timed out", timeout=timeout)
        except Exception as e:
            auto_switch_check_failures_total.labels(source=source).inc()
            logger.warning("Auto-switch check failed", error=str(e), error_type=type(e).__name__)
    return None
