"""
Subscription record store: reads and guarded writes of the per-merchant
subscription row, its append-only history and the store open flag.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.constants import Actor, HistoryEvent, SubscriptionStatus, SubscriptionType
from backend.app.core.exceptions import NotFoundError
from backend.app.core.logging import get_logger
from backend.app.core.timeutils import utcnow
from backend.app.models.merchant import Merchant
from backend.app.models.subscription import MerchantSubscription, SubscriptionHistory

logger = get_logger(__name__)


class SubscriptionStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_merchant(self, merchant_id: int) -> Merchant:
        result = await self.session.execute(
            select(Merchant)
            .where(Merchant.id == merchant_id, Merchant.deleted_at.is_(None))
            .execution_options(populate_existing=True)
        )
        merchant = result.scalar_one_or_none()
        if merchant is None:
            raise NotFoundError("Merchant", merchant_id)
        return merchant

    async def get(self, merchant_id: int, for_update: bool = False) -> Optional[MerchantSubscription]:
        """Always re-reads the row so a guarded UPDATE elsewhere is visible."""
        query = (
            select(MerchantSubscription)
            .where(MerchantSubscription.merchant_id == merchant_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def require(self, merchant_id: int, for_update: bool = False) -> MerchantSubscription:
        sub = await self.get(merchant_id, for_update=for_update)
        if sub is None:
            raise NotFoundError("Subscription", merchant_id)
        return sub

    async def create_trial(
        self,
        merchant_id: int,
        trial_days: int,
        now: Optional[datetime] = None,
        actor: Actor = Actor.SYSTEM,
    ) -> MerchantSubscription:
        now = now or utcnow()
        sub = MerchantSubscription(
            merchant_id=merchant_id,
            type=SubscriptionType.TRIAL.value,
            status=SubscriptionStatus.ACTIVE.value,
            trial_started_at=now,
            trial_ends_at=now + timedelta(days=trial_days),
            in_grace_period=False,
            created_at=now,
            updated_at=now,
        )
        self.session.add(sub)
        await self.session.flush()
        await self.record_history(
            merchant_id,
            HistoryEvent.CREATED,
            actor,
            new_type=sub.type,
            new_status=sub.status,
            reason=f"Trial started for {trial_days} days",
            now=now,
        )
        logger.info("Trial subscription created", merchant_id=merchant_id, trial_ends_at=sub.trial_ends_at.isoformat())
        return sub

    async def guarded_update(self, observed: MerchantSubscription, values: dict[str, Any]) -> bool:
        """UPDATE only if status/type/grace flag still match what the caller observed.

        A stale caller (another request or the sweep got there first) updates
        zero rows and must treat its decision as a no-op.
        """
        result = await self.session.execute(
            update(MerchantSubscription)
            .where(
                MerchantSubscription.id == observed.id,
                MerchantSubscription.status == observed.status,
                MerchantSubscription.type == observed.type,
                MerchantSubscription.in_grace_period == observed.in_grace_period,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def record_history(
        self,
        merchant_id: int,
        event: HistoryEvent,
        actor: Actor,
        *,
        old_type: Optional[str] = None,
        old_status: Optional[str] = None,
        new_type: Optional[str] = None,
        new_status: Optional[str] = None,
        reason: Optional[str] = None,
        balance_snapshot: Optional[Decimal] = None,
        metadata: Optional[dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> SubscriptionHistory:
        entry = SubscriptionHistory(
            merchant_id=merchant_id,
            event_type=event.value,
            actor=actor.value,
            old_type=old_type,
            old_status=old_status,
            new_type=new_type,
            new_status=new_status,
            reason=reason,
            balance_snapshot=balance_snapshot,
            event_metadata=metadata,
            created_at=now or utcnow(),
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def list_history(self, merchant_id: int, limit: int = 20, offset: int = 0) -> tuple[List[SubscriptionHistory], int]:
        total = await self.session.scalar(
            select(func.count(SubscriptionHistory.id)).where(SubscriptionHistory.merchant_id == merchant_id)
        )
        result = await self.session.execute(
            select(SubscriptionHistory)
            .where(SubscriptionHistory.merchant_id == merchant_id)
            .order_by(SubscriptionHistory.created_at.desc(), SubscriptionHistory.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), total or 0

    # -- Store open flag ------------------------------------------------------

    async def close_store(self, merchant_id: int) -> bool:
        """Force the storefront closed. A store already closed (manual override) is left alone."""
        result = await self.session.execute(
            update(Merchant)
            .where(Merchant.id == merchant_id, Merchant.is_open.is_(True))
            .values(is_open=False)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def reopen_store(self, merchant_id: int) -> bool:
        """Reopen after reactivation unless the owner holds a manual override."""
        result = await self.session.execute(
            update(Merchant)
            .where(
                Merchant.id == merchant_id,
                Merchant.is_open.is_(False),
                Merchant.is_manual_override.is_(False),
            )
            .values(is_open=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
