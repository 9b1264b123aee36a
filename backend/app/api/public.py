from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.api.deps import get_cache, get_session, get_session_factory
from backend.app.core.constants import SubscriptionStatus
from backend.app.schemas import PublicMerchantOut
from backend.app.services.auto_switch import opportunistic_check
from backend.app.services.cache import CacheService
from backend.app.services.merchants import MerchantService
from backend.app.services.subscription_store import SubscriptionStore

router = APIRouter()


@router.get("/merchants/{code}", response_model=PublicMerchantOut)
async def get_public_merchant(
    code: str,
    session: AsyncSession = Depends(get_session),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    cache: CacheService = Depends(get_cache),
):
    """Storefront view. Customers see the store closed as soon as the subscription lapses."""
    merchant = await MerchantService(session, cache).get_by_code(code)
    await opportunistic_check(session_factory, merchant.id, source="storefront", cache=cache)

    # Re-read: the check may have closed the store.
    merchant = await MerchantService(session, cache).get_by_code(code)
    subscription = await SubscriptionStore(session).get(merchant.id)
    active = subscription is not None and subscription.status == SubscriptionStatus.ACTIVE.value
    return PublicMerchantOut(
        code=merchant.code,
        name=merchant.name,
        currency=merchant.currency,
        is_open=merchant.is_open,
        accepting_orders=active and merchant.is_open and merchant.is_active,
    )
