"""
Scheduled jobs triggered by the external scheduler.

- subscriptions: sweep every non-cancelled merchant through the auto-switch
  engine, queue trial-ending, monthly-expiring and low-balance warnings,
  then expire stale payment requests.
- subscription-cleanup: expire stale payment requests and purge
  soft-deleted catalog rows past the retention window.

Each job holds a lease row in `cron_job_locks`; a trigger that finds the
lease held returns `skipped` without doing any work. The lease is renewed
before every task, so CRON_LOCK_TTL_SECONDS bounds a single task rather
than the whole run; a run that finds its lease taken over stops. Merchants
are swept concurrently, each in its own transaction; one merchant's failure
is recorded and the sweep continues. Nothing is retried inside a run.
"""
import asyncio
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, List, Optional

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from backend.app.core.constants import EXPIRY_WARNING_DAYS, SubscriptionStatus, SubscriptionType
from backend.app.core.logging import get_logger, merchant_context
from backend.app.core.metrics import cron_sweep_duration_seconds
from backend.app.core.settings import get_settings
from backend.app.core.timeutils import merchant_zone, to_local, utcnow
from backend.app.models.balance import MerchantBalance
from backend.app.models.cron_lock import CronJobLock
from backend.app.models.merchant import Merchant, MenuCategory, MenuItem
from backend.app.models.subscription import MerchantSubscription
from backend.app.services.auto_switch import run_check
from backend.app.services.cache import CacheService
from backend.app.services.notifications import (
    LowBalance,
    MonthlyExpiring,
    NotificationPayload,
    NotificationService,
    TrialEnding,
)
from backend.app.services.payment_requests import PaymentRequestService
from backend.app.services.plans import PlanService

logger = get_logger(__name__)

JOB_SUBSCRIPTIONS = "subscriptions"
JOB_CLEANUP = "subscription-cleanup"


@dataclass
class TaskResult:
    task: str
    success: bool = True
    count: int = 0
    actions: dict[str, int] = field(default_factory=dict)
    errors: List[dict[str, Any]] = field(default_factory=list)


@dataclass
class CronRunResult:
    job: str
    success: bool = True
    skipped: bool = False
    duration_ms: int = 0
    tasks: List[TaskResult] = field(default_factory=list)


@dataclass(frozen=True)
class WarningCandidate:
    merchant_id: int
    payload: NotificationPayload
    dedupe_key: str


class CronService:
    def __init__(self, session_factory: async_sessionmaker, cache: Optional[CacheService] = None):
        self.session_factory = session_factory
        self.cache = cache
        self.settings = get_settings()

    # -- Overlap guard ------------------------------------------------------------

    async def acquire_lock(self, job_name: str, now: datetime) -> Optional[str]:
        """Take the job lease: insert it, or take over one whose lease has lapsed."""
        run_id = str(uuid.uuid4())
        locked_until = now + timedelta(seconds=self.settings.CRON_LOCK_TTL_SECONDS)
        async with self.session_factory() as session:
            session.add(CronJobLock(job_name=job_name, run_id=run_id, locked_until=locked_until, started_at=now))
            try:
                await session.commit()
                return run_id
            except IntegrityError:
                await session.rollback()

            result = await session.execute(
                update(CronJobLock)
                .where(CronJobLock.job_name == job_name, CronJobLock.locked_until < now)
                .values(run_id=run_id, locked_until=locked_until, started_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return run_id if result.rowcount == 1 else None

    async def renew_lock(self, job_name: str, run_id: str, now: datetime) -> bool:
        """Push the lease out by another TTL. False once another run has taken it over."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(CronJobLock)
                .where(CronJobLock.job_name == job_name, CronJobLock.run_id == run_id)
                .values(locked_until=now + timedelta(seconds=self.settings.CRON_LOCK_TTL_SECONDS))
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount == 1

    async def release_lock(self, job_name: str, run_id: str) -> None:
        async with self.session_factory() as session:
            await session.execute(
                delete(CronJobLock).where(CronJobLock.job_name == job_name, CronJobLock.run_id == run_id)
            )
            await session.commit()

    async def _run_job(
        self,
        job_name: str,
        tasks: List[Callable[[datetime], Awaitable[TaskResult]]],
        now: Optional[datetime],
    ) -> CronRunResult:
        started = time.monotonic()
        now = now or utcnow()
        run_id = await self.acquire_lock(job_name, now)
        if run_id is None:
            logger.info("Cron job already running, skipping", job=job_name)
            return CronRunResult(job=job_name, skipped=True)

        run = CronRunResult(job=job_name)
        try:
            for index, task in enumerate(tasks):
                if index > 0:
                    elapsed = timedelta(seconds=time.monotonic() - started)
                    if not await self.renew_lock(job_name, run_id, now + elapsed):
                        logger.error("Cron lease lost, stopping run", job=job_name, next_task=task.__name__)
                        run.tasks.append(
                            TaskResult(task=task.__name__, success=False, errors=[{"error": "lease lost"}])
                        )
                        break
                try:
                    result = await task(now)
                except Exception as e:
                    logger.error("Cron task failed", job=job_name, task=task.__name__, error=str(e))
                    result = TaskResult(task=task.__name__, success=False, errors=[{"error": str(e)}])
                run.tasks.append(result)
        finally:
            await self.release_lock(job_name, run_id)

        run.success = all(t.success for t in run.tasks)
        run.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info("Cron job finished", job=job_name, success=run.success, duration_ms=run.duration_ms)
        return run

    # -- Jobs -----------------------------------------------------------------------

    async def run_subscription_job(self, now: Optional[datetime] = None) -> CronRunResult:
        return await self._run_job(
            JOB_SUBSCRIPTIONS,
            [
                self.auto_switch_sweep,
                self.send_expiry_warnings,
                self.send_low_balance_warnings,
                self.expire_payment_requests,
            ],
            now,
        )

    async def run_cleanup_job(self, now: Optional[datetime] = None) -> CronRunResult:
        return await self._run_job(JOB_CLEANUP, [self.expire_payment_requests, self.purge_soft_deleted], now)

    # -- Tasks ----------------------------------------------------------------------

    async def _sweep_merchant_ids(self) -> List[int]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Merchant.id)
                .outerjoin(MerchantSubscription, MerchantSubscription.merchant_id == Merchant.id)
                .where(
                    Merchant.deleted_at.is_(None),
                    or_(
                        MerchantSubscription.id.is_(None),
                        MerchantSubscription.status != SubscriptionStatus.CANCELLED.value,
                    ),
                )
                .order_by(Merchant.id)
            )
            return [row[0] for row in result.all()]

    async def auto_switch_sweep(self, now: datetime) -> TaskResult:
        started = time.monotonic()
        merchant_ids = await self._sweep_merchant_ids()
        async with self.session_factory() as session:
            plan = await PlanService(session, self.cache).get_plan()

        semaphore = asyncio.Semaphore(self.settings.CRON_SWEEP_CONCURRENCY)
        actions: Counter = Counter()
        errors: List[dict[str, Any]] = []

        async def sweep_one(merchant_id: int) -> None:
            async with semaphore:
                with merchant_context(merchant_id, source="cron"):
                    try:
                        result = await run_check(
                            self.session_factory, merchant_id, source="cron", plan=plan, now=now,
                        )
                    except Exception as e:
                        logger.error("Sweep failed for merchant", error=str(e), error_type=type(e).__name__)
                        errors.append({"merchantId": merchant_id, "error": str(e)})
                        return
                    actions.update(result.actions)
                    if result.subscription_created:
                        actions["TRIAL_CREATED"] += 1

        await asyncio.gather(*(sweep_one(mid) for mid in merchant_ids))
        cron_sweep_duration_seconds.observe(time.monotonic() - started)

        logger.info(
            "Auto-switch sweep finished",
            merchants=len(merchant_ids),
            actions=dict(actions),
            failures=len(errors),
        )
        return TaskResult(
            task="auto_switch_sweep",
            success=not errors,
            count=len(merchant_ids),
            actions=dict(actions),
            errors=errors,
        )

    async def _queue_warnings(self, task: str, candidates: List[WarningCandidate], now: datetime) -> TaskResult:
        """Queue each warning in its own transaction; one failure does not stop the rest."""
        queued = 0
        errors: List[dict[str, Any]] = []
        for candidate in candidates:
            with merchant_context(candidate.merchant_id, source="cron"):
                async with self.session_factory() as session:
                    try:
                        row = await NotificationService(session).enqueue(
                            candidate.merchant_id, candidate.payload, dedupe_key=candidate.dedupe_key, now=now,
                        )
                        await session.commit()
                    except Exception as e:
                        await session.rollback()
                        logger.error("Warning not queued", kind=candidate.payload.kind, error=str(e))
                        errors.append({"merchantId": candidate.merchant_id, "error": str(e)})
                        continue
                if row is not None:
                    queued += 1
        logger.info("Warnings queued", task=task, candidates=len(candidates), queued=queued, failures=len(errors))
        return TaskResult(task=task, success=not errors, count=queued, errors=errors)

    async def send_expiry_warnings(self, now: datetime) -> TaskResult:
        """
        Warn active TRIAL and MONTHLY merchants 7, 3 and 1 merchant-local days
        before their trial or paid period ends.

        Deduplicated per merchant, threshold and end date: a rerun on the same
        night queues nothing, while an extended trial or renewed period is
        warned again against its new end date.
        """
        horizon = now + timedelta(days=max(EXPIRY_WARNING_DAYS) + 1)
        async with self.session_factory() as session:
            result = await session.execute(
                select(
                    MerchantSubscription.merchant_id,
                    MerchantSubscription.type,
                    MerchantSubscription.trial_ends_at,
                    MerchantSubscription.current_period_end,
                    Merchant.timezone,
                )
                .join(Merchant, Merchant.id == MerchantSubscription.merchant_id)
                .where(
                    Merchant.deleted_at.is_(None),
                    MerchantSubscription.status == SubscriptionStatus.ACTIVE.value,
                    or_(
                        and_(
                            MerchantSubscription.type == SubscriptionType.TRIAL.value,
                            MerchantSubscription.trial_ends_at > now,
                            MerchantSubscription.trial_ends_at <= horizon,
                        ),
                        and_(
                            MerchantSubscription.type == SubscriptionType.MONTHLY.value,
                            MerchantSubscription.current_period_end > now,
                            MerchantSubscription.current_period_end <= horizon,
                        ),
                    ),
                )
                .order_by(MerchantSubscription.merchant_id)
            )
            rows = result.all()

        candidates: List[WarningCandidate] = []
        for merchant_id, sub_type, trial_ends_at, period_end, tz_name in rows:
            tz = merchant_zone(tz_name)
            ends = trial_ends_at if sub_type == SubscriptionType.TRIAL.value else period_end
            end_date = to_local(ends, tz).date()
            days = (end_date - to_local(now, tz).date()).days
            if days not in EXPIRY_WARNING_DAYS:
                continue
            if sub_type == SubscriptionType.TRIAL.value:
                payload: NotificationPayload = TrialEnding(days_remaining=days, trial_ends_at=ends)
                prefix = "trial-ending"
            else:
                payload = MonthlyExpiring(days_remaining=days, period_ends_at=ends)
                prefix = "monthly-expiring"
            candidates.append(
                WarningCandidate(merchant_id, payload, f"{prefix}:{merchant_id}:{days}:{end_date.isoformat()}")
            )
        return await self._queue_warnings("send_expiry_warnings", candidates, now)

    async def send_low_balance_warnings(self, now: datetime) -> TaskResult:
        """
        Warn active DEPOSIT merchants whose positive balance covers
        LOW_BALANCE_ORDER_THRESHOLD order fees or fewer.

        A merchant is warned at most once per LOW_BALANCE_REMINDER_HOURS.
        Currencies without pricing, or with a zero order fee, are skipped.
        """
        async with self.session_factory() as session:
            plan = await PlanService(session, self.cache).get_plan()
            result = await session.execute(
                select(MerchantBalance.merchant_id, MerchantBalance.currency, MerchantBalance.balance, Merchant.timezone)
                .join(Merchant, Merchant.id == MerchantBalance.merchant_id)
                .join(MerchantSubscription, MerchantSubscription.merchant_id == Merchant.id)
                .where(
                    Merchant.deleted_at.is_(None),
                    MerchantBalance.currency == Merchant.currency,
                    MerchantBalance.balance > 0,
                    MerchantSubscription.type == SubscriptionType.DEPOSIT.value,
                    MerchantSubscription.status == SubscriptionStatus.ACTIVE.value,
                )
                .order_by(MerchantBalance.merchant_id)
            )
            rows = result.all()

            since = now - timedelta(hours=self.settings.LOW_BALANCE_REMINDER_HOURS)
            notifications = NotificationService(session)
            candidates: List[WarningCandidate] = []
            for merchant_id, currency, balance, tz_name in rows:
                pricing = plan.pricing.get(currency.upper())
                if pricing is None or pricing.order_fee <= 0:
                    continue
                if balance > pricing.order_fee * self.settings.LOW_BALANCE_ORDER_THRESHOLD:
                    continue
                if await notifications.sent_since(merchant_id, "low_balance", since):
                    continue
                local_day = to_local(now, merchant_zone(tz_name)).date()
                payload = LowBalance(
                    balance=balance,
                    currency=currency,
                    estimated_orders=int(balance // pricing.order_fee),
                )
                candidates.append(
                    WarningCandidate(merchant_id, payload, f"low-balance:{merchant_id}:{local_day.isoformat()}")
                )
        return await self._queue_warnings("send_low_balance_warnings", candidates, now)

    async def expire_payment_requests(self, now: datetime) -> TaskResult:
        async with self.session_factory() as session:
            count = await PaymentRequestService(session, self.cache).expire_stale(now)
            await session.commit()
        return TaskResult(task="expire_payment_requests", count=count)

    async def purge_soft_deleted(self, now: datetime) -> TaskResult:
        """Permanently delete catalog rows soft-deleted longer than the retention window."""
        cutoff = now - timedelta(days=self.settings.SOFT_DELETE_RETENTION_DAYS)
        async with self.session_factory() as session:
            items = await session.execute(
                delete(MenuItem).where(MenuItem.deleted_at.is_not(None), MenuItem.deleted_at < cutoff)
            )
            categories = await session.execute(
                delete(MenuCategory).where(MenuCategory.deleted_at.is_not(None), MenuCategory.deleted_at < cutoff)
            )
            await session.commit()
        count = items.rowcount + categories.rowcount
        logger.info("Purged soft-deleted catalog rows", items=items.rowcount, categories=categories.rowcount)
        return TaskResult(
            task="purge_soft_deleted",
            count=count,
            actions={"menu_items": items.rowcount, "menu_categories": categories.rowcount},
        )
