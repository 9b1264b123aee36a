"""
Merchant dashboard endpoints: payment requests, balance, notifications,
order completion. All routes need X-Merchant-Token; writes that move money
need the owner role.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.api.deps import get_cache, get_session
from backend.app.core.auth import MerchantPrincipal, require_merchant, require_owner
from backend.app.core.exceptions import ServiceError
from backend.app.core.limiter import limiter
from backend.app.core.logging import get_logger
from backend.app.schemas import (
    BalanceResponse,
    BalanceTransactionOut,
    NotificationList,
    NotificationOut,
    OrderCompleteResponse,
    PaymentRequestConfirm,
    PaymentRequestCreate,
    PaymentRequestList,
    PaymentRequestOut,
)
from backend.app.services.balance import BalanceService
from backend.app.services.cache import CacheService
from backend.app.services.notifications import NotificationService
from backend.app.services.orders import OrderService
from backend.app.services.payment_requests import PaymentRequestService
from backend.app.services.subscription_store import SubscriptionStore

logger = get_logger(__name__)

router = APIRouter()


# --- Payment requests ---

@router.post("/payment-request", response_model=PaymentRequestOut, status_code=201)
@limiter.limit("10/minute")
async def create_payment_request(
    request: Request,
    data: PaymentRequestCreate,
    session: AsyncSession = Depends(get_session),
    cache: CacheService = Depends(get_cache),
    principal: MerchantPrincipal = Depends(require_owner),
):
    """Open a deposit top-up or monthly payment request. One open request per merchant."""
    service = PaymentRequestService(session, cache)
    try:
        payment_request = await service.create(
            principal.merchant_id,
            data.type.upper(),
            amount=data.amount,
            months=data.months,
        )
        await session.commit()
    except ServiceError:
        await session.rollback()
        raise
    return PaymentRequestOut.model_validate(payment_request)


@router.get("/payment-request", response_model=PaymentRequestList)
async def list_payment_requests(
    limit: int = Query(20, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
    principal: MerchantPrincipal = Depends(require_merchant),
):
    items = await PaymentRequestService(session).list_for_merchant(principal.merchant_id, limit=limit)
    return PaymentRequestList(items=[PaymentRequestOut.model_validate(i) for i in items])


@router.post("/payment-request/{request_id}/confirm", response_model=PaymentRequestOut)
async def confirm_payment_request(
    request_id: int,
    data: Optional[PaymentRequestConfirm] = None,
    session: AsyncSession = Depends(get_session),
    principal: MerchantPrincipal = Depends(require_owner),
):
    """Owner reports the bank transfer as sent; the request moves to the verification queue."""
    try:
        payment_request = await PaymentRequestService(session).confirm(
            principal.merchant_id,
            request_id,
            transfer_notes=data.transfer_notes if data else None,
        )
        await session.commit()
    except ServiceError:
        await session.rollback()
        raise
    return PaymentRequestOut.model_validate(payment_request)


@router.post("/payment-request/{request_id}/cancel", response_model=PaymentRequestOut)
async def cancel_payment_request(
    request_id: int,
    session: AsyncSession = Depends(get_session),
    principal: MerchantPrincipal = Depends(require_owner),
):
    try:
        payment_request = await PaymentRequestService(session).cancel(principal.merchant_id, request_id)
        await session.commit()
    except ServiceError:
        await session.rollback()
        raise
    return PaymentRequestOut.model_validate(payment_request)


# --- Balance ---

@router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    limit: int = Query(20, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
    principal: MerchantPrincipal = Depends(require_merchant),
):
    merchant = await SubscriptionStore(session).get_merchant(principal.merchant_id)
    balances = BalanceService(session)
    row = await balances.get_balance_row(merchant.id, merchant.currency)
    transactions = await balances.list_transactions(merchant.id, limit=limit)
    return BalanceResponse(
        currency=merchant.currency,
        balance=row.balance if row else 0,
        last_topup_at=row.last_topup_at if row else None,
        transactions=[BalanceTransactionOut.model_validate(t) for t in transactions],
    )


# --- Notifications ---

@router.get("/notifications", response_model=NotificationList)
async def list_notifications(
    unread_only: bool = Query(False, alias="unreadOnly"),
    limit: int = Query(50, ge=1, le=200),
    session: AsyncSession = Depends(get_session),
    principal: MerchantPrincipal = Depends(require_merchant),
):
    rows = await NotificationService(session).list_for_merchant(
        principal.merchant_id, unread_only=unread_only, limit=limit,
    )
    return NotificationList(items=[
        NotificationOut(
            id=row.id,
            kind=row.kind,
            title=rendered.title,
            body=rendered.body,
            payload=row.payload,
            created_at=row.created_at,
            read_at=row.read_at,
        )
        for row, rendered in rows
    ])


@router.post("/notifications/{notification_id}/read")
async def mark_notification_read(
    notification_id: int,
    session: AsyncSession = Depends(get_session),
    principal: MerchantPrincipal = Depends(require_merchant),
):
    try:
        await NotificationService(session).mark_read(principal.merchant_id, notification_id)
        await session.commit()
    except ServiceError:
        await session.rollback()
        raise
    return {"success": True}


# --- Orders ---

@router.post("/orders/{order_id}/complete", response_model=OrderCompleteResponse)
async def complete_order(
    order_id: int,
    session: AsyncSession = Depends(get_session),
    cache: CacheService = Depends(get_cache),
    principal: MerchantPrincipal = Depends(require_merchant),
):
    """Complete a pending order; deposit-mode merchants are charged the per-order fee."""
    try:
        order, fee_tx = await OrderService(session, cache).complete_order(principal.merchant_id, order_id)
        await session.commit()
    except ServiceError:
        await session.rollback()
        raise
    return OrderCompleteResponse(
        order_id=order.id,
        status=order.status,
        fee_charged=-fee_tx.amount if fee_tx else None,
        balance_after=fee_tx.balance_after if fee_tx else None,
    )
