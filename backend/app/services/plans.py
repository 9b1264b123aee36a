"""
Plan settings: trial length, grace days per suspension reason, payment
request expiry and per-currency pricing. Stored as one admin-editable row,
cached in Redis. Without a row the engine falls back to the DEFAULT_*
settings; pricing has no built-in fallback.
"""
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.constants import SuspendReason
from backend.app.core.exceptions import ValidationError
from backend.app.core.logging import get_logger
from backend.app.core.settings import get_settings
from backend.app.core.timeutils import utcnow
from backend.app.models.subscription import SubscriptionPlan
from backend.app.services.cache import CacheService

logger = get_logger(__name__)

DEFAULT_PLAN_KEY = "default"


class CurrencyPricing(BaseModel):
    deposit_minimum: Decimal = Field(..., ge=0)
    order_fee: Decimal = Field(..., ge=0)
    monthly_price: Decimal = Field(..., gt=0)


class PlanSettings(BaseModel):
    trial_days: int = Field(..., ge=0)
    trial_grace_days: int = Field(..., ge=0)
    monthly_grace_days: int = Field(..., ge=0)
    deposit_grace_days: int = Field(..., ge=0)
    payment_request_expiry_hours: int = Field(..., ge=1)
    pricing: dict[str, CurrencyPricing] = Field(default_factory=dict)

    @field_validator("pricing")
    @classmethod
    def upper_currency_codes(cls, v: dict[str, CurrencyPricing]) -> dict[str, CurrencyPricing]:
        return {code.upper(): p for code, p in v.items()}

    @classmethod
    def defaults(cls) -> "PlanSettings":
        s = get_settings()
        return cls(
            trial_days=s.DEFAULT_TRIAL_DAYS,
            trial_grace_days=s.DEFAULT_GRACE_PERIOD_DAYS,
            monthly_grace_days=s.DEFAULT_GRACE_PERIOD_DAYS,
            deposit_grace_days=s.DEFAULT_DEPOSIT_GRACE_DAYS,
            payment_request_expiry_hours=s.PAYMENT_REQUEST_EXPIRY_HOURS,
        )

    def grace_days_for(self, reason: str) -> int:
        if reason == SuspendReason.TRIAL_EXPIRED.value:
            return self.trial_grace_days
        if reason == SuspendReason.MONTHLY_EXPIRED.value:
            return self.monthly_grace_days
        if reason == SuspendReason.DEPOSIT_DEPLETED.value:
            return self.deposit_grace_days
        raise ValueError(f"Unknown suspension reason: {reason}")

    def pricing_for(self, currency: str) -> CurrencyPricing:
        pricing = self.pricing.get(currency.upper())
        if pricing is None:
            raise ValidationError(
                f"No pricing configured for currency {currency}",
                code="PLAN_NOT_CONFIGURED",
            )
        return pricing


class PlanService:
    """Loads and updates plan settings. Cache errors never fail a request."""

    def __init__(self, session: AsyncSession, cache: Optional[CacheService] = None):
        self.session = session
        self.cache = cache

    async def _load_row(self) -> Optional[SubscriptionPlan]:
        result = await self.session.execute(
            select(SubscriptionPlan).where(SubscriptionPlan.plan_key == DEFAULT_PLAN_KEY)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _from_row(row: SubscriptionPlan) -> PlanSettings:
        return PlanSettings(
            trial_days=row.trial_days,
            trial_grace_days=row.trial_grace_days,
            monthly_grace_days=row.monthly_grace_days,
            deposit_grace_days=row.deposit_grace_days,
            payment_request_expiry_hours=row.payment_request_expiry_hours,
            pricing=row.pricing or {},
        )

    async def get_plan(self) -> PlanSettings:
        if self.cache is not None:
            try:
                cached = await self.cache.get_plan(DEFAULT_PLAN_KEY)
                if cached:
                    return PlanSettings.model_validate(cached)
            except Exception as e:
                logger.warning("Plan cache read failed", error=str(e))

        row = await self._load_row()
        plan = self._from_row(row) if row else PlanSettings.defaults()

        if self.cache is not None and row is not None:
            try:
                await self.cache.set_plan(plan.model_dump(mode="json"), DEFAULT_PLAN_KEY)
            except Exception as e:
                logger.warning("Plan cache write failed", error=str(e))
        return plan

    async def update_plan(self, plan: PlanSettings) -> PlanSettings:
        """Upsert the plan row. Caller commits; cache is invalidated after."""
        row = await self._load_row()
        if row is None:
            row = SubscriptionPlan(plan_key=DEFAULT_PLAN_KEY)
            self.session.add(row)
        row.trial_days = plan.trial_days
        row.trial_grace_days = plan.trial_grace_days
        row.monthly_grace_days = plan.monthly_grace_days
        row.deposit_grace_days = plan.deposit_grace_days
        row.payment_request_expiry_hours = plan.payment_request_expiry_hours
        row.pricing = plan.model_dump(mode="json")["pricing"]
        row.updated_at = utcnow()
        await self.session.flush()
        logger.info("Subscription plan updated", currencies=sorted(plan.pricing))
        return plan

    async def invalidate_cache(self) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.invalidate_plan(DEFAULT_PLAN_KEY)
        except Exception as e:
            logger.warning("Plan cache invalidation failed", error=str(e))
