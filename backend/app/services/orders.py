"""
Order completion. In deposit mode the plan's per-order fee is debited in
the same transaction that marks the order completed; an insufficient
balance rejects the completion and nothing is written.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.constants import OrderStatus, SubscriptionType, ZERO
from backend.app.core.exceptions import ConflictError, NotFoundError
from backend.app.core.logging import get_logger
from backend.app.core.timeutils import utcnow
from backend.app.models.balance import BalanceTransaction
from backend.app.models.order import Order
from backend.app.services.balance import BalanceService
from backend.app.services.cache import CacheService
from backend.app.services.plans import PlanService
from backend.app.services.subscription_store import SubscriptionStore

logger = get_logger(__name__)


class InvalidOrderStatusError(ConflictError):
    def __init__(self, order_id: int, current_status: str):
        super().__init__(
            f"Order {order_id} has status '{current_status}', expected '{OrderStatus.PENDING.value}'",
            code="INVALID_STATUS",
        )


class OrderService:
    def __init__(self, session: AsyncSession, cache: Optional[CacheService] = None):
        self.session = session
        self.balances = BalanceService(session)
        self.store = SubscriptionStore(session)
        self.plans = PlanService(session, cache)

    async def _get_order_for_update(self, merchant_id: int, order_id: int) -> Order:
        """Get order with row-level lock so it cannot be completed (and charged) twice."""
        result = await self.session.execute(
            select(Order)
            .where(Order.id == order_id, Order.merchant_id == merchant_id)
            .with_for_update()
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    async def complete_order(
        self,
        merchant_id: int,
        order_id: int,
        now: Optional[datetime] = None,
    ) -> tuple[Order, Optional[BalanceTransaction]]:
        now = now or utcnow()
        order = await self._get_order_for_update(merchant_id, order_id)
        if order.status != OrderStatus.PENDING.value:
            raise InvalidOrderStatusError(order_id, order.status)

        fee_tx = None
        subscription = await self.store.get(merchant_id)
        if subscription is not None and subscription.type == SubscriptionType.DEPOSIT.value:
            plan = await self.plans.get_plan()
            fee = plan.pricing_for(order.currency).order_fee
            if fee > ZERO:
                fee_tx = await self.balances.debit(
                    merchant_id, fee, order.currency,
                    description=f"Order fee for {order.order_number}",
                    order_id=order.id,
                )

        order.status = OrderStatus.COMPLETED.value
        order.completed_at = now
        await self.session.flush()
        logger.info(
            "Order completed",
            merchant_id=merchant_id,
            order_id=order_id,
            fee=str(-fee_tx.amount) if fee_tx else None,
        )
        return order, fee_tx
