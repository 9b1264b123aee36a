"""
Subscription service: dashboard overview, owner manual switch, switch
options, history and super-admin overrides.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.constants import (
    Actor,
    HistoryEvent,
    SubscriptionStatus,
    SubscriptionType,
)
from backend.app.core.exceptions import ConflictError, ValidationError
from backend.app.core.logging import get_logger
from backend.app.core.timeutils import merchant_zone, utcnow
from backend.app.models.merchant import Merchant
from backend.app.models.subscription import MerchantSubscription, SubscriptionHistory
from backend.app.services.balance import BalanceService
from backend.app.services.cache import CacheService
from backend.app.services.pending_suspension import PendingSuspension, pending_suspension
from backend.app.services.plans import CurrencyPricing, PlanService
from backend.app.services.subscription_store import SubscriptionStore

logger = get_logger(__name__)

SWITCHABLE_TYPES = (SubscriptionType.DEPOSIT.value, SubscriptionType.MONTHLY.value)


class SubscriptionCancelledError(ConflictError):
    def __init__(self, merchant_id: int):
        super().__init__(
            f"Subscription of merchant {merchant_id} is cancelled",
            code="SUBSCRIPTION_CANCELLED",
        )


@dataclass
class SubscriptionOverview:
    merchant: Merchant
    subscription: Optional[MerchantSubscription]
    balance: Optional[Decimal]
    pricing: Optional[CurrencyPricing]
    pending: PendingSuspension


@dataclass
class SwitchOptions:
    current_type: str
    status: str
    balance: Decimal
    currency: str
    monthly_ends_at: Optional[datetime]
    can_switch_to_deposit: bool
    can_switch_to_monthly: bool


@dataclass
class AdminOverride:
    type: Optional[str] = None
    status: Optional[str] = None
    extend_trial_days: Optional[int] = None
    suspend_reason: Optional[str] = None
    reactivate: bool = False
    note: Optional[str] = None


class SubscriptionService:
    def __init__(self, session: AsyncSession, cache: Optional[CacheService] = None):
        self.session = session
        self.store = SubscriptionStore(session)
        self.balances = BalanceService(session)
        self.plans = PlanService(session, cache)

    async def get_overview(self, merchant_id: int, now: Optional[datetime] = None) -> SubscriptionOverview:
        """Read-only view; the opportunistic check runs before this, in its own transaction."""
        now = now or utcnow()
        merchant = await self.store.get_merchant(merchant_id)
        subscription = await self.store.get(merchant_id)
        plan = await self.plans.get_plan()
        balance = await self.balances.get_balance(merchant_id, merchant.currency)

        pending = PendingSuspension(False)
        if subscription is not None:
            pending = pending_suspension(subscription, balance, now, plan, merchant_zone(merchant.timezone))

        show_balance = subscription is not None and subscription.type == SubscriptionType.DEPOSIT.value
        return SubscriptionOverview(
            merchant=merchant,
            subscription=subscription,
            balance=balance if show_balance else None,
            pricing=plan.pricing.get(merchant.currency.upper()),
            pending=pending,
        )

    async def get_switch_options(self, merchant_id: int, now: Optional[datetime] = None) -> SwitchOptions:
        now = now or utcnow()
        merchant = await self.store.get_merchant(merchant_id)
        subscription = await self.store.require(merchant_id)
        balance = await self.balances.get_balance(merchant_id, merchant.currency)
        monthly_active = subscription.current_period_end is not None and subscription.current_period_end > now
        cancelled = subscription.status == SubscriptionStatus.CANCELLED.value
        return SwitchOptions(
            current_type=subscription.type,
            status=subscription.status,
            balance=balance,
            currency=merchant.currency,
            monthly_ends_at=subscription.current_period_end,
            can_switch_to_deposit=not cancelled and balance > 0,
            can_switch_to_monthly=not cancelled and monthly_active,
        )

    async def manual_switch(
        self,
        merchant_id: int,
        target_type: str,
        now: Optional[datetime] = None,
    ) -> MerchantSubscription:
        """
        Owner-initiated plan change, gated on the target plan's resource.

        Args:
            merchant_id: Merchant switching plans
            target_type: DEPOSIT (needs a positive balance) or MONTHLY (needs an unexpired period)

        Returns:
            The ACTIVE subscription on the target plan with grace cleared
        """
        now = now or utcnow()
        if target_type not in SWITCHABLE_TYPES:
            raise ValidationError(
                f"Cannot switch to {target_type}; choose DEPOSIT or MONTHLY",
                code="INVALID_TARGET_TYPE",
            )

        merchant = await self.store.get_merchant(merchant_id)
        subscription = await self.store.require(merchant_id, for_update=True)
        if subscription.status == SubscriptionStatus.CANCELLED.value:
            raise SubscriptionCancelledError(merchant_id)

        balance = await self.balances.get_balance(merchant_id, merchant.currency, for_update=True)
        if target_type == SubscriptionType.MONTHLY.value:
            if subscription.current_period_end is None or subscription.current_period_end <= now:
                raise ConflictError("No active monthly period to switch to", code="MONTHLY_NOT_ACTIVE")
        elif balance <= 0:
            raise ConflictError("Deposit balance is empty", code="DEPOSIT_EMPTY")

        old_type, old_status = subscription.type, subscription.status
        subscription.type = target_type
        subscription.status = SubscriptionStatus.ACTIVE.value
        subscription.suspend_reason = None
        subscription.suspended_at = None
        subscription.in_grace_period = False
        subscription.grace_ends_at = None
        subscription.updated_at = now
        await self.session.flush()

        store_opened = await self.store.reopen_store(merchant_id)
        await self.store.record_history(
            merchant_id, HistoryEvent.MANUAL_SWITCH, Actor.OWNER,
            old_type=old_type, old_status=old_status,
            new_type=target_type, new_status=SubscriptionStatus.ACTIVE.value,
            reason=f"Owner switched to {target_type}",
            balance_snapshot=balance,
            metadata={"store_opened": store_opened},
            now=now,
        )
        logger.info(
            "Manual subscription switch",
            merchant_id=merchant_id,
            old_type=old_type,
            new_type=target_type,
            store_opened=store_opened,
        )
        return subscription

    async def get_history(self, merchant_id: int, limit: int = 20, offset: int = 0) -> tuple[List[SubscriptionHistory], int]:
        return await self.store.list_history(merchant_id, limit=limit, offset=offset)

    async def admin_override(
        self,
        merchant_id: int,
        override: AdminOverride,
        admin: str = "admin",
        now: Optional[datetime] = None,
    ) -> MerchantSubscription:
        """Direct super-admin edit: type, status, trial extension, suspend or reactivate."""
        now = now or utcnow()
        if override.reactivate and override.suspend_reason:
            raise ValidationError("Cannot suspend and reactivate at once", code="CONFLICTING_OVERRIDE")
        if override.type is not None and override.type not in {t.value for t in SubscriptionType}:
            raise ValidationError(f"Unknown subscription type {override.type}", code="INVALID_TYPE")
        if override.status is not None and override.status not in {s.value for s in SubscriptionStatus}:
            raise ValidationError(f"Unknown subscription status {override.status}", code="INVALID_STATUS")
        if override.status == SubscriptionStatus.SUSPENDED.value and not override.suspend_reason:
            raise ValidationError("Suspending requires a reason", code="SUSPEND_REASON_REQUIRED")
        if override.extend_trial_days is not None and override.extend_trial_days <= 0:
            raise ValidationError("extendTrialDays must be positive", code="INVALID_TRIAL_EXTENSION")

        merchant = await self.store.get_merchant(merchant_id)
        subscription = await self.store.require(merchant_id, for_update=True)
        if subscription.status == SubscriptionStatus.CANCELLED.value:
            raise SubscriptionCancelledError(merchant_id)

        old_type, old_status = subscription.type, subscription.status
        changes: dict[str, object] = {}

        if override.type is not None and override.type != subscription.type:
            subscription.type = override.type
            changes["type"] = override.type

        if override.extend_trial_days:
            if subscription.type != SubscriptionType.TRIAL.value:
                raise ValidationError("Merchant is not on a trial", code="NOT_TRIAL")
            base = subscription.trial_ends_at or now
            subscription.trial_ends_at = base + timedelta(days=override.extend_trial_days)
            changes["trial_ends_at"] = subscription.trial_ends_at.isoformat()

        if changes:
            # Grace is recomputed by the next check against the new plan state.
            subscription.in_grace_period = False
            subscription.grace_ends_at = None

        store_closed = store_opened = False
        if override.suspend_reason:
            subscription.status = SubscriptionStatus.SUSPENDED.value
            subscription.suspend_reason = override.suspend_reason
            subscription.suspended_at = now
            subscription.in_grace_period = False
            subscription.grace_ends_at = None
            changes["suspend_reason"] = override.suspend_reason
        elif override.reactivate or override.status == SubscriptionStatus.ACTIVE.value:
            subscription.status = SubscriptionStatus.ACTIVE.value
            subscription.suspend_reason = None
            subscription.suspended_at = None
            subscription.in_grace_period = False
            subscription.grace_ends_at = None
            changes["status"] = SubscriptionStatus.ACTIVE.value
        elif override.status == SubscriptionStatus.CANCELLED.value:
            subscription.status = SubscriptionStatus.CANCELLED.value
            subscription.in_grace_period = False
            subscription.grace_ends_at = None
            changes["status"] = SubscriptionStatus.CANCELLED.value

        if not changes:
            raise ValidationError("Nothing to change", code="EMPTY_OVERRIDE")

        subscription.updated_at = now
        await self.session.flush()

        if subscription.status == SubscriptionStatus.SUSPENDED.value and old_status != subscription.status:
            store_closed = await self.store.close_store(merchant_id)
        elif subscription.status == SubscriptionStatus.ACTIVE.value and old_status == SubscriptionStatus.SUSPENDED.value:
            store_opened = await self.store.reopen_store(merchant_id)
        elif subscription.status == SubscriptionStatus.CANCELLED.value:
            store_closed = await self.store.close_store(merchant_id)

        balance = await self.balances.get_balance(merchant_id, merchant.currency)
        await self.store.record_history(
            merchant_id, HistoryEvent.ADMIN_OVERRIDE, Actor.ADMIN,
            old_type=old_type, old_status=old_status,
            new_type=subscription.type, new_status=subscription.status,
            reason=override.note or override.suspend_reason,
            balance_snapshot=balance,
            metadata={"changes": changes, "by": admin, "store_closed": store_closed, "store_opened": store_opened},
            now=now,
        )
        logger.info("Admin subscription override", merchant_id=merchant_id, changes=changes)
        return subscription
