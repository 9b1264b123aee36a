"""Read-only projection: will this merchant be suspended at the next cutoff?"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional
from zoneinfo import ZoneInfo

from backend.app.core.constants import SubscriptionStatus
from backend.app.core.timeutils import next_local_midnight
from backend.app.models.subscription import MerchantSubscription
from backend.app.services.auto_switch import Action, decide, funded_fallback, suspension_condition
from backend.app.services.plans import PlanSettings


@dataclass(frozen=True)
class PendingSuspension:
    pending: bool
    reason: Optional[str] = None


NOT_PENDING = PendingSuspension(False)


def pending_suspension(
    subscription: MerchantSubscription,
    balance: Decimal,
    now: datetime,
    plan: PlanSettings,
    tz: ZoneInfo,
) -> PendingSuspension:
    decision = decide(subscription, balance, now, plan, tz)
    if decision.action == Action.SUSPEND:
        return PendingSuspension(True, decision.reason)

    if subscription.status != SubscriptionStatus.ACTIVE.value:
        return NOT_PENDING
    condition = suspension_condition(subscription, balance, now)
    if condition is None:
        return NOT_PENDING
    # A funded fallback plan takes over when grace lapses.
    if funded_fallback(subscription, balance, now) is not None:
        return NOT_PENDING
    if decision.action == Action.ENTER_GRACE:
        return PendingSuspension(True, decision.reason)
    # Grace lapses before (or at) the coming merchant-local midnight.
    if subscription.in_grace_period and subscription.grace_ends_at is not None:
        if subscription.grace_ends_at <= next_local_midnight(now, tz):
            return PendingSuspension(True, condition[0])
    return NOT_PENDING
