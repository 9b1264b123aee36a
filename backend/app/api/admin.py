"""
Super-admin endpoints: merchant onboarding, subscription overrides,
payment request verification, balance corrections and plan settings.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.api.deps import get_cache, get_session
from backend.app.core.constants import PaymentRequestStatus
from backend.app.core.exceptions import InternalError, ServiceError, UnauthorizedError
from backend.app.core.logging import get_logger
from backend.app.core.settings import get_settings
from backend.app.schemas import (
    AdminSubscriptionUpdate,
    BalanceAdjustRequest,
    BalanceTransactionOut,
    MerchantCreate,
    MerchantCreated,
    PaymentRequestList,
    PaymentRequestOut,
    PaymentRequestReject,
    PlanSettingsBody,
    PlanSettingsResponse,
    PricingOut,
    SubscriptionOut,
)
from backend.app.services.balance import BalanceService
from backend.app.services.cache import CacheService
from backend.app.services.merchants import MerchantService
from backend.app.services.payment_requests import PaymentRequestService
from backend.app.services.plans import PlanService, PlanSettings
from backend.app.services.subscription_store import SubscriptionStore
from backend.app.services.subscriptions import AdminOverride, SubscriptionService

router = APIRouter()
logger = get_logger(__name__)

ADMIN_ACTOR = "admin"


async def require_admin_token(x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token")):
    """Require admin token. If ADMIN_SECRET is not configured, reject all requests (fail-closed)."""
    secret = get_settings().ADMIN_SECRET
    if not secret:
        logger.warning("ADMIN_SECRET not configured, admin endpoints are blocked")
        raise InternalError("Admin panel not configured", code="ADMIN_NOT_CONFIGURED", status_code=503)
    if not x_admin_token or x_admin_token != secret:
        raise UnauthorizedError("Invalid or missing admin token", code="INVALID_ADMIN_TOKEN")


def _plan_response(plan: PlanSettings) -> PlanSettingsResponse:
    return PlanSettingsResponse(
        trial_days=plan.trial_days,
        trial_grace_days=plan.trial_grace_days,
        monthly_grace_days=plan.monthly_grace_days,
        deposit_grace_days=plan.deposit_grace_days,
        payment_request_expiry_hours=plan.payment_request_expiry_hours,
        pricing={code: PricingOut.model_validate(p.model_dump()) for code, p in plan.pricing.items()},
    )


# ============================================
# MERCHANTS
# ============================================

@router.post("/merchants", response_model=MerchantCreated, status_code=201)
async def create_merchant(
    data: MerchantCreate,
    session: AsyncSession = Depends(get_session),
    cache: CacheService = Depends(get_cache),
):
    """Onboard a merchant; a TRIAL subscription starts immediately."""
    try:
        merchant, subscription = await MerchantService(session, cache).create_merchant(
            data.code, data.name, currency=data.currency, timezone=data.timezone,
        )
        await session.commit()
    except ServiceError:
        await session.rollback()
        raise
    return MerchantCreated(
        merchant_id=merchant.id,
        code=merchant.code,
        currency=merchant.currency,
        subscription=SubscriptionOut.model_validate(subscription),
    )


@router.put("/merchants/{merchant_id}/subscription", response_model=SubscriptionOut)
async def update_merchant_subscription(
    merchant_id: int,
    data: AdminSubscriptionUpdate,
    session: AsyncSession = Depends(get_session),
    cache: CacheService = Depends(get_cache),
):
    """Direct override: change type, extend the trial, suspend with a reason, or reactivate."""
    override = AdminOverride(
        type=data.type.upper() if data.type else None,
        status=data.status.upper() if data.status else None,
        extend_trial_days=data.extend_trial_days,
        suspend_reason=data.suspend_reason,
        reactivate=data.reactivate,
        note=data.note,
    )
    try:
        subscription = await SubscriptionService(session, cache).admin_override(merchant_id, override, admin=ADMIN_ACTOR)
        await session.commit()
    except ServiceError:
        await session.rollback()
        raise
    return SubscriptionOut.model_validate(subscription)


@router.post("/merchants/{merchant_id}/balance/adjust", response_model=BalanceTransactionOut)
async def adjust_merchant_balance(
    merchant_id: int,
    data: BalanceAdjustRequest,
    session: AsyncSession = Depends(get_session),
):
    """Manual correction of a deposit balance. Negative amounts never overdraw."""
    try:
        merchant = await SubscriptionStore(session).get_merchant(merchant_id)
        tx = await BalanceService(session).adjust(
            merchant.id, data.amount, merchant.currency, data.description, created_by=ADMIN_ACTOR,
        )
        await session.commit()
    except ServiceError:
        await session.rollback()
        raise
    return BalanceTransactionOut.model_validate(tx)


# ============================================
# PAYMENT REQUESTS
# ============================================

@router.get("/payment-requests", response_model=PaymentRequestList)
async def list_payment_requests(
    status: str = Query(PaymentRequestStatus.CONFIRMED.value),
    limit: int = Query(50, ge=1, le=200),
    session: AsyncSession = Depends(get_session),
):
    """Verification queue; confirmed requests oldest first."""
    items = await PaymentRequestService(session).list_for_verification(status=status.upper(), limit=limit)
    return PaymentRequestList(items=[PaymentRequestOut.model_validate(i) for i in items])


@router.post("/payment-requests/{request_id}/verify", response_model=PaymentRequestOut)
async def verify_payment_request(
    request_id: int,
    session: AsyncSession = Depends(get_session),
    cache: CacheService = Depends(get_cache),
):
    try:
        payment_request = await PaymentRequestService(session, cache).verify(request_id, admin=ADMIN_ACTOR)
        await session.commit()
    except ServiceError:
        await session.rollback()
        raise
    return PaymentRequestOut.model_validate(payment_request)


@router.post("/payment-requests/{request_id}/reject", response_model=PaymentRequestOut)
async def reject_payment_request(
    request_id: int,
    data: PaymentRequestReject,
    session: AsyncSession = Depends(get_session),
):
    try:
        payment_request = await PaymentRequestService(session).reject(request_id, data.reason, admin=ADMIN_ACTOR)
        await session.commit()
    except ServiceError:
        await session.rollback()
        raise
    return PaymentRequestOut.model_validate(payment_request)


# ============================================
# PLAN SETTINGS
# ============================================

@router.get("/subscription-plan", response_model=PlanSettingsResponse)
async def get_subscription_plan(
    session: AsyncSession = Depends(get_session),
    cache: CacheService = Depends(get_cache),
):
    plan = await PlanService(session, cache).get_plan()
    return _plan_response(plan)


@router.put("/subscription-plan", response_model=PlanSettingsResponse)
async def update_subscription_plan(
    data: PlanSettingsBody,
    session: AsyncSession = Depends(get_session),
    cache: CacheService = Depends(get_cache),
):
    """Replace trial length, grace days, request expiry and per-currency pricing."""
    plans = PlanService(session, cache)
    plan = PlanSettings.model_validate(data.model_dump())
    try:
        await plans.update_plan(plan)
        await session.commit()
    except ServiceError:
        await session.rollback()
        raise
    await plans.invalidate_cache()
    return _plan_response(plan)
