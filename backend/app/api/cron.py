"""
Cron trigger endpoints for the external scheduler.

Authorization: Bearer <CRON_SECRET>. An unset secret rejects every call.
Both POST and GET trigger the job; overlapping triggers are skipped.
"""
import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header
from sqlalchemy.ext.asyncio import async_sessionmaker

from backend.app.api.deps import get_cache, get_session_factory
from backend.app.core.exceptions import UnauthorizedError
from backend.app.core.logging import get_logger
from backend.app.core.settings import get_settings
from backend.app.schemas import CronRunResponse, CronTaskOut
from backend.app.services.cache import CacheService
from backend.app.services.cron import CronRunResult, CronService

router = APIRouter()
logger = get_logger(__name__)


async def require_cron_secret(authorization: Optional[str] = Header(None)):
    secret = get_settings().CRON_SECRET
    if not secret:
        logger.warning("CRON_SECRET not configured, cron endpoints are blocked")
        raise UnauthorizedError("Cron secret not configured", code="UNAUTHORIZED")
    expected = f"Bearer {secret}"
    if not authorization or not hmac.compare_digest(authorization.encode(), expected.encode()):
        raise UnauthorizedError("Invalid cron credentials", code="UNAUTHORIZED")


def _to_response(run: CronRunResult) -> CronRunResponse:
    return CronRunResponse(
        success=run.success,
        skipped=run.skipped,
        job=run.job,
        duration_ms=run.duration_ms,
        tasks=[
            CronTaskOut(task=t.task, success=t.success, count=t.count, actions=t.actions, errors=t.errors)
            for t in run.tasks
        ],
    )


@router.api_route(
    "/subscriptions",
    methods=["GET", "POST"],
    response_model=CronRunResponse,
    dependencies=[Depends(require_cron_secret)],
)
async def run_subscriptions(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    cache: CacheService = Depends(get_cache),
):
    """Sweep every merchant through the auto-switch engine, then expire stale payment requests."""
    run = await CronService(session_factory, cache).run_subscription_job()
    return _to_response(run)


@router.api_route(
    "/subscription-cleanup",
    methods=["GET", "POST"],
    response_model=CronRunResponse,
    dependencies=[Depends(require_cron_secret)],
)
async def run_subscription_cleanup(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    cache: CacheService = Depends(get_cache),
):
    run = await CronService(session_factory, cache).run_cleanup_job()
    return _to_response(run)
