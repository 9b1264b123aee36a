"""
Payment request workflow for manually confirmed bank transfers.

    PENDING --confirm--> CONFIRMED --verify--> VERIFIED
                         CONFIRMED --reject--> REJECTED
    PENDING|CONFIRMED --cancel--> CANCELLED
    PENDING --timeout--> EXPIRED

Every transition is a guarded UPDATE on the expected prior status, so a
double click or two admins verifying at once change the row only once.
Verification credits the balance or extends the monthly period in the
same transaction that marks the request VERIFIED.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.constants import (
    AUTO_SUSPEND_REASONS,
    MAX_MONTHS,
    MIN_MONTHS,
    OPEN_PAYMENT_REQUEST_STATUSES,
    Actor,
    HistoryEvent,
    PaymentRequestStatus,
    PaymentRequestType,
    SubscriptionStatus,
    SubscriptionType,
    ZERO,
)
from backend.app.core.exceptions import ConflictError, NotFoundError, ValidationError
from backend.app.core.logging import get_logger
from backend.app.core.metrics import payment_requests_total
from backend.app.core.timeutils import utcnow
from backend.app.models.payment_request import PaymentRequest
from backend.app.services.balance import BalanceService, to_money
from backend.app.services.cache import CacheService
from backend.app.services.notifications import NotificationService, PaymentRejected, PaymentVerified
from backend.app.services.plans import PlanService
from backend.app.services.subscription_store import SubscriptionStore

logger = get_logger(__name__)


class PaymentRequestNotFoundError(NotFoundError):
    def __init__(self, request_id: int):
        super().__init__("Payment request", request_id, code="PAYMENT_REQUEST_NOT_FOUND")


class OpenPaymentRequestExistsError(ConflictError):
    def __init__(self, merchant_id: int):
        super().__init__(
            f"Merchant {merchant_id} already has an open payment request",
            code="PAYMENT_REQUEST_OPEN",
        )


class InvalidPaymentRequestStatusError(ConflictError):
    def __init__(self, request_id: int, current: str, action: str):
        super().__init__(
            f"Payment request {request_id} is {current} and cannot be {action}",
            code="INVALID_STATUS",
        )


class PaymentRequestService:
    def __init__(self, session: AsyncSession, cache: Optional[CacheService] = None):
        self.session = session
        self.store = SubscriptionStore(session)
        self.balances = BalanceService(session)
        self.plans = PlanService(session, cache)
        self.notifications = NotificationService(session)

    # -- Helpers ---------------------------------------------------------------

    async def _get(self, request_id: int, merchant_id: Optional[int] = None) -> PaymentRequest:
        query = (
            select(PaymentRequest)
            .where(PaymentRequest.id == request_id)
            .execution_options(populate_existing=True)
        )
        if merchant_id is not None:
            query = query.where(PaymentRequest.merchant_id == merchant_id)
        result = await self.session.execute(query)
        request = result.scalar_one_or_none()
        if request is None:
            raise PaymentRequestNotFoundError(request_id)
        return request

    async def _transition(
        self,
        request_id: int,
        from_statuses: tuple[str, ...],
        action: str,
        merchant_id: Optional[int] = None,
        **values,
    ) -> PaymentRequest:
        """Guarded status change; explains the failure when the row was not in `from_statuses`."""
        query = (
            update(PaymentRequest)
            .where(PaymentRequest.id == request_id, PaymentRequest.status.in_(from_statuses))
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        if merchant_id is not None:
            query = query.where(PaymentRequest.merchant_id == merchant_id)
        result = await self.session.execute(query)
        request = await self._get(request_id, merchant_id)
        if result.rowcount != 1:
            raise InvalidPaymentRequestStatusError(request_id, request.status, action)
        payment_requests_total.labels(status=request.status).inc()
        return request

    async def _expire_stale_for_merchant(self, merchant_id: int, now: datetime) -> int:
        result = await self.session.execute(
            update(PaymentRequest)
            .where(
                PaymentRequest.merchant_id == merchant_id,
                PaymentRequest.status == PaymentRequestStatus.PENDING.value,
                PaymentRequest.expires_at < now,
            )
            .values(status=PaymentRequestStatus.EXPIRED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    # -- Owner operations -------------------------------------------------------

    async def create(
        self,
        merchant_id: int,
        request_type: str,
        amount: Optional[Decimal] = None,
        months: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> PaymentRequest:
        now = now or utcnow()
        if request_type not in {t.value for t in PaymentRequestType}:
            raise ValidationError(f"Unknown payment request type {request_type}", code="INVALID_TYPE")

        merchant = await self.store.get_merchant(merchant_id)
        subscription = await self.store.get(merchant_id)
        if subscription is not None and subscription.status == SubscriptionStatus.CANCELLED.value:
            raise ConflictError("Subscription is cancelled", code="SUBSCRIPTION_CANCELLED")

        plan = await self.plans.get_plan()
        pricing = plan.pricing_for(merchant.currency)

        if request_type == PaymentRequestType.DEPOSIT_TOPUP.value:
            if months is not None:
                raise ValidationError("months applies to monthly subscriptions only", code="INVALID_MONTHS")
            if amount is None:
                raise ValidationError("amount is required for a deposit top-up", code="AMOUNT_REQUIRED")
            amount = to_money(amount)
            if amount <= ZERO or amount < pricing.deposit_minimum:
                raise ValidationError(
                    f"Minimum top-up is {pricing.deposit_minimum} {merchant.currency}",
                    code="AMOUNT_BELOW_MINIMUM",
                )
        else:
            months = months if months is not None else MIN_MONTHS
            if not MIN_MONTHS <= months <= MAX_MONTHS:
                raise ValidationError(
                    f"months must be between {MIN_MONTHS} and {MAX_MONTHS}",
                    code="INVALID_MONTHS",
                )
            amount = to_money(pricing.monthly_price * months)

        await self._expire_stale_for_merchant(merchant_id, now)
        open_request = await self.session.execute(
            select(PaymentRequest.id).where(
                PaymentRequest.merchant_id == merchant_id,
                PaymentRequest.status.in_(OPEN_PAYMENT_REQUEST_STATUSES),
            )
        )
        if open_request.first() is not None:
            raise OpenPaymentRequestExistsError(merchant_id)

        request = PaymentRequest(
            merchant_id=merchant_id,
            type=request_type,
            status=PaymentRequestStatus.PENDING.value,
            amount=amount,
            currency=merchant.currency,
            months_requested=months,
            expires_at=now + timedelta(hours=plan.payment_request_expiry_hours),
            created_at=now,
            updated_at=now,
        )
        self.session.add(request)
        try:
            await self.session.flush()
        except IntegrityError:
            # Lost the race against a concurrent create; the partial unique index decided.
            raise OpenPaymentRequestExistsError(merchant_id)

        payment_requests_total.labels(status=request.status).inc()
        logger.info(
            "Payment request created",
            merchant_id=merchant_id,
            request_id=request.id,
            type=request_type,
            amount=str(amount),
        )
        return request

    async def list_for_merchant(self, merchant_id: int, limit: int = 20) -> List[PaymentRequest]:
        result = await self.session.execute(
            select(PaymentRequest)
            .where(PaymentRequest.merchant_id == merchant_id)
            .order_by(PaymentRequest.created_at.desc(), PaymentRequest.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def confirm(
        self,
        merchant_id: int,
        request_id: int,
        transfer_notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PaymentRequest:
        """Owner claims the bank transfer is done."""
        now = now or utcnow()
        request = await self._get(request_id, merchant_id)
        if request.status == PaymentRequestStatus.PENDING.value and request.expires_at < now:
            raise ValidationError("Payment request has expired", code="REQUEST_EXPIRED")
        request = await self._transition(
            request_id,
            (PaymentRequestStatus.PENDING.value,),
            "confirmed",
            merchant_id=merchant_id,
            status=PaymentRequestStatus.CONFIRMED.value,
            confirmed_at=now,
            transfer_notes=transfer_notes,
        )
        logger.info("Payment request confirmed", merchant_id=merchant_id, request_id=request_id)
        return request

    async def cancel(self, merchant_id: int, request_id: int, now: Optional[datetime] = None) -> PaymentRequest:
        now = now or utcnow()
        await self._get(request_id, merchant_id)
        request = await self._transition(
            request_id,
            OPEN_PAYMENT_REQUEST_STATUSES,
            "cancelled",
            merchant_id=merchant_id,
            status=PaymentRequestStatus.CANCELLED.value,
            cancelled_at=now,
        )
        logger.info("Payment request cancelled", merchant_id=merchant_id, request_id=request_id)
        return request

    # -- Admin operations -------------------------------------------------------

    async def list_for_verification(self, status: str = PaymentRequestStatus.CONFIRMED.value, limit: int = 50) -> List[PaymentRequest]:
        result = await self.session.execute(
            select(PaymentRequest)
            .where(PaymentRequest.status == status)
            .order_by(PaymentRequest.confirmed_at.asc(), PaymentRequest.id.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def verify(self, request_id: int, admin: str = "admin", now: Optional[datetime] = None) -> PaymentRequest:
        """
        Mark VERIFIED and settle it. The caller commits once; any failure rolls back both.

        Args:
            request_id: A CONFIRMED payment request
            admin: Name recorded as verified_by

        Returns:
            The VERIFIED request; a top-up is credited, a monthly payment extends the period
        """
        now = now or utcnow()
        request = await self._transition(
            request_id,
            (PaymentRequestStatus.CONFIRMED.value,),
            "verified",
            status=PaymentRequestStatus.VERIFIED.value,
            verified_at=now,
            verified_by=admin,
        )
        merchant_id = request.merchant_id
        subscription = await self.store.require(merchant_id, for_update=True)
        old_type, old_status = subscription.type, subscription.status
        balance = await self.balances.get_balance(merchant_id, request.currency)

        if request.type == PaymentRequestType.DEPOSIT_TOPUP.value:
            await self.balances.credit(
                merchant_id, request.amount, request.currency,
                description=f"Top-up via payment request #{request.id}",
                payment_request_id=request.id,
                created_by=admin,
            )
            balance = await self.balances.get_balance(merchant_id, request.currency)
            monthly_active = (
                subscription.type == SubscriptionType.MONTHLY.value
                and subscription.current_period_end is not None
                and subscription.current_period_end > now
            )
            target_type = subscription.type if monthly_active else SubscriptionType.DEPOSIT.value
        else:
            period_end = subscription.current_period_end
            if period_end is None or period_end < now:
                subscription.current_period_start = now
                base = now
            else:
                base = period_end
            subscription.current_period_end = base + relativedelta(months=request.months_requested or 1)
            keep_deposit = subscription.type == SubscriptionType.DEPOSIT.value and balance > ZERO
            target_type = subscription.type if keep_deposit else SubscriptionType.MONTHLY.value

        if subscription.status != SubscriptionStatus.CANCELLED.value:
            subscription.type = target_type
            subscription.in_grace_period = False
            subscription.grace_ends_at = None
            # Admin suspensions (free-text reason) stay until an admin lifts them.
            if subscription.status == SubscriptionStatus.SUSPENDED.value and subscription.suspend_reason in AUTO_SUSPEND_REASONS:
                subscription.status = SubscriptionStatus.ACTIVE.value
                subscription.suspend_reason = None
                subscription.suspended_at = None
        subscription.updated_at = now
        await self.session.flush()

        store_opened = False
        if old_status == SubscriptionStatus.SUSPENDED.value and subscription.status == SubscriptionStatus.ACTIVE.value:
            store_opened = await self.store.reopen_store(merchant_id)

        entry = await self.store.record_history(
            merchant_id, HistoryEvent.PAYMENT_RECEIVED, Actor.ADMIN,
            old_type=old_type, old_status=old_status,
            new_type=subscription.type, new_status=subscription.status,
            reason=f"Payment request #{request.id} verified",
            balance_snapshot=balance,
            metadata={
                "payment_request_id": request.id,
                "amount": str(request.amount),
                "currency": request.currency,
                "months": request.months_requested,
                "store_opened": store_opened,
            },
            now=now,
        )
        await self.notifications.enqueue(
            merchant_id,
            PaymentVerified(
                payment_request_id=request.id,
                request_type=request.type,
                amount=request.amount,
                currency=request.currency,
                months=request.months_requested,
            ),
            dedupe_key=f"history:{entry.id}",
        )
        if subscription.type != old_type:
            await self.store.record_history(
                merchant_id, HistoryEvent.MODE_SWITCHED, Actor.SYSTEM,
                old_type=old_type, old_status=old_status,
                new_type=subscription.type, new_status=subscription.status,
                reason=f"Switched to {subscription.type} on verified payment",
                balance_snapshot=balance,
                metadata={"payment_request_id": request.id},
                now=now,
            )
        logger.info(
            "Payment request verified",
            merchant_id=merchant_id,
            request_id=request.id,
            type=request.type,
            new_type=subscription.type,
            new_status=subscription.status,
        )
        return request

    async def reject(
        self,
        request_id: int,
        reason: str,
        admin: str = "admin",
        now: Optional[datetime] = None,
    ) -> PaymentRequest:
        now = now or utcnow()
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required", code="REASON_REQUIRED")
        request = await self._transition(
            request_id,
            (PaymentRequestStatus.CONFIRMED.value,),
            "rejected",
            status=PaymentRequestStatus.REJECTED.value,
            rejected_at=now,
            rejection_reason=reason.strip(),
            verified_by=admin,
        )
        entry = await self.store.record_history(
            request.merchant_id, HistoryEvent.PAYMENT_REJECTED, Actor.ADMIN,
            reason=reason.strip(),
            metadata={"payment_request_id": request.id},
            now=now,
        )
        await self.notifications.enqueue(
            request.merchant_id,
            PaymentRejected(payment_request_id=request.id, reason=reason.strip()),
            dedupe_key=f"history:{entry.id}",
        )
        logger.info("Payment request rejected", merchant_id=request.merchant_id, request_id=request.id)
        return request

    # -- Scheduled --------------------------------------------------------------

    async def expire_stale(self, now: Optional[datetime] = None) -> int:
        """PENDING requests never confirmed before expires_at become EXPIRED."""
        now = now or utcnow()
        result = await self.session.execute(
            update(PaymentRequest)
            .where(
                PaymentRequest.status == PaymentRequestStatus.PENDING.value,
                PaymentRequest.expires_at < now,
            )
            .values(status=PaymentRequestStatus.EXPIRED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            payment_requests_total.labels(status=PaymentRequestStatus.EXPIRED.value).inc(result.rowcount)
            logger.info("Expired stale payment requests", count=result.rowcount)
        return result.rowcount
