"""
Merchant dashboard subscription endpoints.
GET /subscription runs the opportunistic auto-switch check before reading.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.api.deps import get_cache, get_session, get_session_factory
from backend.app.core.auth import MerchantPrincipal, require_merchant, require_owner
from backend.app.core.exceptions import ServiceError
from backend.app.core.logging import get_logger
from backend.app.schemas import (
    HistoryEntryOut,
    HistoryResponse,
    PricingOut,
    SubscriptionOut,
    SubscriptionResponse,
    SwitchOptionsResponse,
    SwitchRequest,
    SwitchResponse,
)
from backend.app.services.auto_switch import opportunistic_check
from backend.app.services.cache import CacheService
from backend.app.services.subscription_store import SubscriptionStore
from backend.app.services.subscriptions import SubscriptionService

logger = get_logger(__name__)

router = APIRouter()


@router.get("", response_model=SubscriptionResponse)
async def get_subscription(
    session: AsyncSession = Depends(get_session),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    cache: CacheService = Depends(get_cache),
    principal: MerchantPrincipal = Depends(require_merchant),
):
    """Current plan, balance (deposit mode), pricing and pending-suspension warning."""
    await opportunistic_check(session_factory, principal.merchant_id, source="dashboard", cache=cache)

    overview = await SubscriptionService(session, cache).get_overview(principal.merchant_id)
    return SubscriptionResponse(
        merchant_id=principal.merchant_id,
        subscription=SubscriptionOut.model_validate(overview.subscription) if overview.subscription else None,
        currency=overview.merchant.currency,
        balance=overview.balance,
        pricing=PricingOut.model_validate(overview.pricing.model_dump()) if overview.pricing else None,
        pending_suspension=overview.pending.pending,
        pending_suspension_reason=overview.pending.reason,
        is_open=overview.merchant.is_open,
    )


@router.post("/switch", response_model=SwitchResponse)
async def switch_subscription(
    data: SwitchRequest,
    session: AsyncSession = Depends(get_session),
    cache: CacheService = Depends(get_cache),
    principal: MerchantPrincipal = Depends(require_owner),
):
    """Owner switches between DEPOSIT and MONTHLY."""
    service = SubscriptionService(session, cache)
    try:
        subscription = await service.manual_switch(principal.merchant_id, data.target_type.upper())
        await session.commit()
    except ServiceError:
        await session.rollback()
        raise
    merchant = await SubscriptionStore(session).get_merchant(principal.merchant_id)
    return SwitchResponse(
        subscription=SubscriptionOut.model_validate(subscription),
        is_open=merchant.is_open,
    )


@router.get("/switch-options", response_model=SwitchOptionsResponse)
async def get_switch_options(
    session: AsyncSession = Depends(get_session),
    principal: MerchantPrincipal = Depends(require_merchant),
):
    options = await SubscriptionService(session).get_switch_options(principal.merchant_id)
    return SwitchOptionsResponse(
        current_type=options.current_type,
        status=options.status,
        balance=options.balance,
        currency=options.currency,
        monthly_ends_at=options.monthly_ends_at,
        can_switch_to_deposit=options.can_switch_to_deposit,
        can_switch_to_monthly=options.can_switch_to_monthly,
    )


@router.get("/history", response_model=HistoryResponse)
async def get_subscription_history(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    session: AsyncSession = Depends(get_session),
    principal: MerchantPrincipal = Depends(require_merchant),
):
    items, total = await SubscriptionService(session).get_history(principal.merchant_id, limit=limit, offset=offset)
    return HistoryResponse(
        items=[HistoryEntryOut.model_validate(i) for i in items],
        total=total,
        limit=limit,
        offset=offset,
    )
