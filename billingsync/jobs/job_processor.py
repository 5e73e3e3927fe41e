import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from billingsync.core.circuit_breaker import CircuitBreaker
from billingsync.core.config import settings
from billingsync.jobs.subscription_sync import SubscriptionSyncJob
from billingsync.schemas.job import JobBatchResult
from billingsync.schemas.sync import SyncResult
from billingsync.services.retry_handler import RetryHandler

logger = logging.getLogger(__name__)


class JobProcessor:
    """
    Background scheduler for the job queue and the daily sync.

    One instance per process, owned by the app container. A batch that is
    still running when the next tick fires is never overlapped.
    """

    def __init__(
        self,
        retry_handler: RetryHandler,
        sync_job: SubscriptionSyncJob,
        database_breaker: CircuitBreaker,
        *,
        initial_delay: float = 1.0,
    ):
        self.retry_handler = retry_handler
        self.sync_job = sync_job
        self.database_breaker = database_breaker
        self.initial_delay = initial_delay
        self.interval_seconds: Optional[float] = None
        self.is_processing = False
        self.worker_task: Optional[asyncio.Task] = None
        self.daily_sync_task: Optional[asyncio.Task] = None
        self.daily_sync_hour: Optional[int] = None
        self.next_daily_sync_at: Optional[datetime] = None
        self.last_batch: Optional[JobBatchResult] = None

    @property
    def is_running(self) -> bool:
        return self.worker_task is not None and not self.worker_task.done()

    @property
    def daily_sync_scheduled(self) -> bool:
        return self.daily_sync_task is not None and not self.daily_sync_task.done()

    async def start(self, interval_seconds: Optional[float] = None) -> None:
        """Start the background worker and, if it isn't already scheduled, the daily sync"""
        if not self.daily_sync_scheduled:
            self.schedule_daily_sync(self.daily_sync_hour)

        if self.is_running:
            logger.info("ℹ️ Job processor already running")
            return
        self.interval_seconds = interval_seconds or settings.job_interval_seconds
        self.worker_task = asyncio.create_task(self._worker())
        logger.info(f"🚀 Job processor started with {self.interval_seconds}s interval")

    async def stop(self) -> None:
        """Cancel the worker and the daily sync schedule"""
        for task in (self.worker_task, self.daily_sync_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self.worker_task = None
        self.daily_sync_task = None
        self.next_daily_sync_at = None
        self.interval_seconds = None
        logger.info("🛑 Job processor stopped")

    async def _worker(self) -> None:
        await asyncio.sleep(self.initial_delay)
        while True:
            if not self.is_processing:
                await self.process_jobs()
            await asyncio.sleep(self.interval_seconds)

    async def process_jobs(self) -> Optional[JobBatchResult]:
        """Run one batch of pending jobs. Never raises; None if a batch is already in flight."""
        if self.is_processing:
            return None

        self.is_processing = True
        try:
            self.last_batch = await self.database_breaker.execute(self.retry_handler.process_pending_jobs)
            return self.last_batch
        except Exception as e:
            logger.error(f"❌ Error processing jobs: {str(e)}")
            return None
        finally:
            self.is_processing = False

    async def run_daily_sync(self) -> SyncResult:
        logger.info("🌙 Running daily subscription synchronization...")
        result = await self.sync_job.sync_subscriptions()
        logger.info(
            f"📊 Daily sync completed: total={result.total_subscriptions}, synced={result.synced_count}, "
            f"discrepancies={result.discrepancies_found}, errors={result.errors_count}"
        )
        if result.discrepancies:
            logger.warning(f"⚠️ Subscription discrepancies found: {[d.model_dump() for d in result.discrepancies]}")
        if result.errors:
            logger.error(f"❌ Subscription sync errors: {[e.model_dump() for e in result.errors]}")

        await self.retry_handler.prune_expired_records()
        return result

    @staticmethod
    def next_run_at(hour: int, now: Optional[datetime] = None) -> datetime:
        """Next local ``hour:00`` strictly after ``now``"""
        now = now or datetime.now()
        run_at = now.replace(hour=hour, minute=0, second=0, microsecond=0)
        if run_at <= now:
            run_at += timedelta(days=1)
        return run_at

    def schedule_daily_sync(self, hour: Optional[int] = None) -> datetime:
        if self.daily_sync_scheduled:
            self.daily_sync_task.cancel()

        hour = settings.daily_sync_hour if hour is None else hour
        self.daily_sync_hour = hour
        self.next_daily_sync_at = self.next_run_at(hour)
        self.daily_sync_task = asyncio.create_task(self._daily_sync_loop())
        logger.info(f"📅 Daily sync scheduled for {self.next_daily_sync_at.isoformat()}")
        return self.next_daily_sync_at

    async def _daily_sync_loop(self) -> None:
        while True:
            delay = max(0.0, (self.next_daily_sync_at - datetime.now()).total_seconds())
            await asyncio.sleep(delay)
            try:
                await self.run_daily_sync()
            except Exception as e:
                logger.exception(f"❌ Fatal error in daily sync: {e}")
            self.next_daily_sync_at += timedelta(days=1)

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_running": self.is_running,
            "is_processing": self.is_processing,
            "interval_seconds": self.interval_seconds if self.is_running else 0,
            "daily_sync_scheduled": self.daily_sync_scheduled,
            "next_daily_sync_at": self.next_daily_sync_at.isoformat() if self.next_daily_sync_at else None,
            "last_batch": self.last_batch.model_dump() if self.last_batch else None,
        }
