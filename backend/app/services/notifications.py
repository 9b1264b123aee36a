"""
In-app notifications for billing events.

Payloads are a closed tagged union (discriminator `kind`) validated on
write and on read; `render_notification` matches every kind explicitly.
Rows are deduplicated by a key derived from the history entry that
produced them, so a transition is announced exactly once. The nightly
warnings (trial ending, monthly expiring, low balance) key on merchant,
threshold and date instead.
"""
from datetime import datetime
from decimal import Decimal
from typing import Annotated, List, Literal, Optional, Union, assert_never

from pydantic import BaseModel, Field, TypeAdapter
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import NotFoundError
from backend.app.core.logging import get_logger
from backend.app.core.timeutils import utcnow
from backend.app.models.notification import NotificationOutbox

logger = get_logger(__name__)

_REASON_TEXT = {
    "TRIAL_EXPIRED": "your free trial has ended",
    "MONTHLY_EXPIRED": "your monthly subscription has expired",
    "DEPOSIT_DEPLETED": "your deposit balance is empty",
}


class SubscriptionSuspended(BaseModel):
    kind: Literal["subscription_suspended"] = "subscription_suspended"
    reason: str
    subscription_type: str


class SubscriptionReactivated(BaseModel):
    kind: Literal["subscription_reactivated"] = "subscription_reactivated"
    subscription_type: str


class SubscriptionSwitched(BaseModel):
    kind: Literal["subscription_switched"] = "subscription_switched"
    reason: str
    from_type: str
    to_type: str


class TrialEnding(BaseModel):
    kind: Literal["trial_ending"] = "trial_ending"
    days_remaining: int
    trial_ends_at: datetime


class MonthlyExpiring(BaseModel):
    kind: Literal["monthly_expiring"] = "monthly_expiring"
    days_remaining: int
    period_ends_at: datetime


class LowBalance(BaseModel):
    kind: Literal["low_balance"] = "low_balance"
    balance: Decimal
    currency: str
    estimated_orders: int


class GracePeriodStarted(BaseModel):
    kind: Literal["grace_period_started"] = "grace_period_started"
    reason: str
    grace_ends_at: datetime


class PaymentVerified(BaseModel):
    kind: Literal["payment_verified"] = "payment_verified"
    payment_request_id: int
    request_type: str
    amount: Decimal
    currency: str
    months: Optional[int] = None


class PaymentRejected(BaseModel):
    kind: Literal["payment_rejected"] = "payment_rejected"
    payment_request_id: int
    reason: str


NotificationPayload = Annotated[
    Union[
        SubscriptionSuspended,
        SubscriptionReactivated,
        SubscriptionSwitched,
        GracePeriodStarted,
        TrialEnding,
        MonthlyExpiring,
        LowBalance,
        PaymentVerified,
        PaymentRejected,
    ],
    Field(discriminator="kind"),
]

payload_adapter: TypeAdapter[NotificationPayload] = TypeAdapter(NotificationPayload)


class RenderedNotification(BaseModel):
    title: str
    body: str


def render_notification(payload: NotificationPayload) -> RenderedNotification:
    match payload:
        case SubscriptionSuspended(reason=reason):
            why = _REASON_TEXT.get(reason, reason)
            return RenderedNotification(
                title="Subscription suspended",
                body=f"Your store has been closed because {why}.",
            )
        case SubscriptionReactivated(subscription_type=sub_type):
            return RenderedNotification(
                title="Subscription reactivated",
                body=f"Your {sub_type.lower()} plan is active again.",
            )
        case SubscriptionSwitched(reason=reason, to_type=to_type):
            why = _REASON_TEXT.get(reason, reason)
            return RenderedNotification(
                title="Plan switched",
                body=f"Because {why}, your store now runs on your {to_type.lower()} plan.",
            )
        case TrialEnding(days_remaining=days, trial_ends_at=ends):
            return RenderedNotification(
                title=f"Trial ends in {days} day(s)",
                body=f"Your free trial ends at {ends.isoformat()} UTC. Top up or subscribe to keep your store open.",
            )
        case MonthlyExpiring(days_remaining=days, period_ends_at=ends):
            return RenderedNotification(
                title=f"Subscription expires in {days} day(s)",
                body=f"Your monthly subscription ends at {ends.isoformat()} UTC. Renew to keep your store open.",
            )
        case LowBalance(balance=balance, currency=currency, estimated_orders=orders):
            return RenderedNotification(
                title="Low balance",
                body=f"Your balance of {balance} {currency} covers about {orders} more order(s). Top up soon.",
            )
        case GracePeriodStarted(reason=reason, grace_ends_at=ends):
            why = _REASON_TEXT.get(reason, reason)
            return RenderedNotification(
                title="Action required",
                body=f"Your store stays open until {ends.isoformat()} UTC although {why}.",
            )
        case PaymentVerified(request_type="MONTHLY_SUBSCRIPTION", months=months):
            return RenderedNotification(
                title="Payment verified",
                body=f"Your subscription was extended by {months} month(s).",
            )
        case PaymentVerified(amount=amount, currency=currency):
            return RenderedNotification(
                title="Payment verified",
                body=f"{amount} {currency} was added to your balance.",
            )
        case PaymentRejected(reason=reason):
            return RenderedNotification(
                title="Payment rejected",
                body=f"Your payment could not be verified: {reason}",
            )
        case _:
            assert_never(payload)


class NotificationService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def enqueue(
        self,
        merchant_id: int,
        payload: NotificationPayload,
        dedupe_key: str,
        now: Optional[datetime] = None,
    ) -> Optional[NotificationOutbox]:
        """Insert once per dedupe key; returns None when already queued."""
        existing = await self.session.execute(
            select(NotificationOutbox.id).where(NotificationOutbox.dedupe_key == dedupe_key)
        )
        if existing.scalar_one_or_none() is not None:
            return None
        row = NotificationOutbox(
            merchant_id=merchant_id,
            kind=payload.kind,
            payload=payload.model_dump(mode="json"),
            dedupe_key=dedupe_key,
            created_at=now or utcnow(),
        )
        self.session.add(row)
        await self.session.flush()
        logger.info("Notification queued", merchant_id=merchant_id, kind=payload.kind)
        return row

    async def sent_since(self, merchant_id: int, kind: str, since: datetime) -> bool:
        result = await self.session.execute(
            select(NotificationOutbox.id)
            .where(
                NotificationOutbox.merchant_id == merchant_id,
                NotificationOutbox.kind == kind,
                NotificationOutbox.created_at >= since,
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def list_for_merchant(
        self,
        merchant_id: int,
        unread_only: bool = False,
        limit: int = 50,
    ) -> List[tuple[NotificationOutbox, RenderedNotification]]:
        query = select(NotificationOutbox).where(NotificationOutbox.merchant_id == merchant_id)
        if unread_only:
            query = query.where(NotificationOutbox.read_at.is_(None))
        query = query.order_by(NotificationOutbox.created_at.desc(), NotificationOutbox.id.desc()).limit(limit)
        result = await self.session.execute(query)
        rows = result.scalars().all()
        return [(row, render_notification(payload_adapter.validate_python(row.payload))) for row in rows]

    async def mark_read(self, merchant_id: int, notification_id: int) -> None:
        result = await self.session.execute(
            update(NotificationOutbox)
            .where(
                NotificationOutbox.id == notification_id,
                NotificationOutbox.merchant_id == merchant_id,
            )
            .values(read_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise NotFoundError("Notification", notification_id)
