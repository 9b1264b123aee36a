"""
Merchant onboarding and storefront lookup.
Onboarding creates the merchant together with its TRIAL subscription.
"""
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.constants import Actor
from backend.app.core.exceptions import ConflictError, NotFoundError, ValidationError
from backend.app.core.logging import get_logger
from backend.app.core.settings import get_settings
from backend.app.core.timeutils import utcnow
from backend.app.models.merchant import Merchant
from backend.app.models.subscription import MerchantSubscription
from backend.app.services.cache import CacheService
from backend.app.services.plans import PlanService
from backend.app.services.subscription_store import SubscriptionStore

logger = get_logger(__name__)


class MerchantService:
    def __init__(self, session: AsyncSession, cache: Optional[CacheService] = None):
        self.session = session
        self.store = SubscriptionStore(session)
        self.plans = PlanService(session, cache)

    async def create_merchant(
        self,
        code: str,
        name: str,
        currency: Optional[str] = None,
        timezone: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> tuple[Merchant, MerchantSubscription]:
        now = now or utcnow()
        code = code.strip().lower()
        if not code:
            raise ValidationError("Merchant code is required", code="INVALID_CODE")
        if timezone:
            try:
                ZoneInfo(timezone)
            except (ZoneInfoNotFoundError, ValueError):
                raise ValidationError(f"Unknown time zone {timezone}", code="INVALID_TIMEZONE")

        existing = await self.session.execute(select(Merchant.id).where(Merchant.code == code))
        if existing.scalar_one_or_none() is not None:
            raise ConflictError(f"Merchant code {code} is taken", code="MERCHANT_CODE_TAKEN")

        merchant = Merchant(
            code=code,
            name=name,
            currency=(currency or get_settings().DEFAULT_CURRENCY).upper(),
            timezone=timezone,
            is_open=True,
            is_manual_override=False,
            is_active=True,
            created_at=now,
        )
        self.session.add(merchant)
        await self.session.flush()

        plan = await self.plans.get_plan()
        subscription = await self.store.create_trial(merchant.id, plan.trial_days, now=now, actor=Actor.ADMIN)
        logger.info("Merchant onboarded", merchant_id=merchant.id, code=code, currency=merchant.currency)
        return merchant, subscription

    async def get_by_code(self, code: str) -> Merchant:
        result = await self.session.execute(
            select(Merchant)
            .where(Merchant.code == code.lower(), Merchant.deleted_at.is_(None))
            .execution_options(populate_existing=True)
        )
        merchant = result.scalar_one_or_none()
        if merchant is None:
            raise NotFoundError("Merchant", code)
        return merchant
