import asyncio
import enum
import logging
import random
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar, Union

from pydantic import BaseModel, ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billingsync.core.circuit_breaker import CircuitBreaker
from billingsync.core.config import settings
from billingsync.core.database import UnitOfWork
from billingsync.core.exceptions import (
    InvalidJobPayloadError,
    NonRetryableJobError,
    UnknownJobTypeError,
)
from billingsync.crud.job import job_crud
from billingsync.crud.payment import payment_crud
from billingsync.crud.processed_webhook import processed_webhook_crud
from billingsync.crud.subscription import subscription_crud
from billingsync.models.base import utc_now
from billingsync.models.job import Job, JobStatus, JobType
from billingsync.models.payment import PaymentStatus
from billingsync.schemas.job import (
    JOB_PAYLOAD_MODELS,
    CustomerCreatePayload,
    JobBatchResult,
    JobCreate,
    PaymentVerifyPayload,
    RetryOptions,
    SubscriptionFetchPayload,
)
from billingsync.services.razorpay_service import RazorpayService
from billingsync.utils.utils import from_unix, merge_metadata

logger = logging.getLogger(__name__)

T = TypeVar("T")
Executor = Callable[[Any], Awaitable[Any]]

# Backoff applied between attempts of a queued job
JOB_RETRY_OPTIONS = RetryOptions(base_delay=1.0, max_delay=300.0, jitter=True)


class JobOutcome(str, enum.Enum):
    COMPLETED = "completed"
    RESCHEDULED = "rescheduled"
    FAILED = "failed"
    SKIPPED = "skipped"


class RetryHandler:
    """Retries work two ways: inline with exponential backoff, or by queueing
    a durable Job that ``process_pending_jobs`` picks up later.

    Job types map to executors through ``_executors``. Components that own a
    job type's logic (sync job, webhook handler, payment service) register
    their executor on construction.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        razorpay: RazorpayService,
        breaker: CircuitBreaker,
        *,
        batch_size: Optional[int] = None,
        stale_after_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.razorpay = razorpay
        self.breaker = breaker
        self.batch_size = batch_size or settings.job_batch_size
        self.stale_after_seconds = stale_after_seconds or settings.job_stale_after_seconds
        self._sleep = sleep
        self._clock = clock
        self._executors: Dict[JobType, Executor] = {
            JobType.SUBSCRIPTION_FETCH: self._fetch_subscription,
            JobType.PAYMENT_VERIFY: self._verify_payment,
            JobType.CUSTOMER_CREATE: self._create_customer,
        }

    def register_executor(self, job_type: JobType, executor: Executor) -> None:
        self._executors[job_type] = executor

    # ------------------------------------------------------------------
    # Inline retries
    # ------------------------------------------------------------------

    @staticmethod
    def calculate_delay(attempt: int, options: RetryOptions) -> float:
        """Seconds to wait before retry number ``attempt`` (1-based).

        Jitter is applied to the raw exponential value before clamping, so
        the jittered bands of consecutive attempts never overlap and the
        delay stays non-decreasing.
        """
        delay = options.base_delay * (2 ** (attempt - 1))
        if options.jitter:
            delay *= 1 + random.uniform(-0.25, 0.25)
        return min(max(delay, options.base_delay), options.max_delay)

    async def retry_with_backoff(
        self,
        operation: Callable[[], Awaitable[T]],
        options: Optional[RetryOptions] = None,
    ) -> T:
        """Run ``operation`` up to ``max_retries + 1`` times, raising the last error"""
        options = options or RetryOptions()
        last_error: Optional[Exception] = None

        for attempt in range(options.max_retries + 1):
            try:
                return await operation()
            except Exception as e:
                last_error = e
                if attempt == options.max_retries:
                    break
                delay = self.calculate_delay(attempt + 1, options)
                logger.warning(
                    f"⚠️ Attempt {attempt + 1}/{options.max_retries + 1} failed: {e}. "
                    f"Retrying in {delay:.2f}s"
                )
                await self._sleep(delay)

        logger.error(f"❌ All {options.max_retries + 1} attempts failed: {last_error}")
        raise last_error

    # ------------------------------------------------------------------
    # Durable jobs
    # ------------------------------------------------------------------

    async def create_retry_job(
        self,
        job_type: JobType,
        payload: Union[BaseModel, Dict[str, Any]],
        options: Optional[RetryOptions] = None,
        *,
        db: Optional[AsyncSession] = None,
    ) -> Job:
        """Queue a pending job; pass ``db`` to enqueue inside the caller's transaction"""
        options = options or RetryOptions()
        if isinstance(payload, BaseModel):
            payload = payload.model_dump(mode="json")

        job_in = JobCreate(
            type=job_type.value,
            payload=payload,
            max_retries=options.max_retries,
            next_attempt_at=self._clock() + timedelta(seconds=options.base_delay),
        )

        if db is not None:
            job = await job_crud.create(db, obj_in=job_in)
        else:
            async with UnitOfWork(self.session_factory) as uow:
                job = await job_crud.create(uow.session, obj_in=job_in)

        logger.info(f"📥 Queued {job_type.value} job {job.id} (max_retries={options.max_retries})")
        return job

    async def process_pending_jobs(self) -> JobBatchResult:
        """Reclaim stale jobs, then run one batch of due jobs"""
        result = JobBatchResult()
        now = self._clock()

        async with UnitOfWork(self.session_factory) as uow:
            result.reclaimed, result.failed = await job_crud.reclaim_stale(
                uow.session, stale_before=now - timedelta(seconds=self.stale_after_seconds), now=now
            )
            jobs = await job_crud.get_due(uow.session, now=now, limit=self.batch_size)

        if result.reclaimed or result.failed:
            logger.warning(
                f"♻️ Stale jobs stuck in processing: {result.reclaimed} reclaimed, "
                f"{result.failed} failed with no retries left"
            )

        for job in jobs:
            outcome = await self.process_job(job)
            result.processed += 1
            setattr(result, outcome.value, getattr(result, outcome.value) + 1)

        if jobs:
            logger.info(
                f"📊 Job batch: {result.processed} processed, {result.completed} completed, "
                f"{result.rescheduled} rescheduled, {result.failed} failed"
            )
        return result

    async def process_job(self, job: Job) -> JobOutcome:
        """Claim, execute and record one job. Never raises."""
        try:
            async with UnitOfWork(self.session_factory) as uow:
                claimed = await job_crud.claim(uow.session, job.id)
            if not claimed:
                logger.info(f"⏭️ Job {job.id} already claimed, skipping")
                return JobOutcome.SKIPPED

            try:
                await self._dispatch(job)
            except Exception as e:
                return await self._record_failure(job, e)

            async with UnitOfWork(self.session_factory) as uow:
                await job_crud.set_fields(
                    uow.session,
                    job.id,
                    {"status": JobStatus.COMPLETED, "completed_at": self._clock(), "error": None},
                )
            logger.info(f"✅ Job {job.id} ({job.type}) completed")
            return JobOutcome.COMPLETED
        except Exception as e:
            # Bookkeeping failed; a job left in processing is reclaimed by a later batch
            logger.exception(f"❌ Could not record outcome of job {job.id}: {e}")
            return JobOutcome.SKIPPED

    async def _dispatch(self, job: Job) -> None:
        try:
            job_type = JobType(job.type)
        except ValueError:
            raise UnknownJobTypeError(job.type)

        executor = self._executors.get(job_type)
        if executor is None:
            raise UnknownJobTypeError(job.type)

        try:
            payload = JOB_PAYLOAD_MODELS[job_type].model_validate(job.payload or {})
        except PydanticValidationError as e:
            raise InvalidJobPayloadError(f"Invalid {job.type} payload: {e}") from e

        await executor(payload)

    async def _record_failure(self, job: Job, error: Exception) -> JobOutcome:
        retry_count = job.retry_count + 1

        if isinstance(error, NonRetryableJobError) or retry_count > job.max_retries:
            async with UnitOfWork(self.session_factory) as uow:
                await job_crud.set_fields(
                    uow.session,
                    job.id,
                    {"status": JobStatus.FAILED, "failed_at": self._clock(), "error": str(error)},
                )
            logger.error(
                f"❌ Job {job.id} ({job.type}) failed permanently after "
                f"{job.retry_count + 1} attempt(s): {error}"
            )
            return JobOutcome.FAILED

        delay = self.calculate_delay(retry_count, JOB_RETRY_OPTIONS)
        async with UnitOfWork(self.session_factory) as uow:
            await job_crud.set_fields(
                uow.session,
                job.id,
                {
                    "status": JobStatus.PENDING,
                    "retry_count": retry_count,
                    "next_attempt_at": self._clock() + timedelta(seconds=delay),
                    "error": str(error),
                },
            )
        logger.warning(
            f"🔁 Job {job.id} ({job.type}) failed, retry {retry_count}/{job.max_retries} "
            f"in {delay:.1f}s: {error}"
        )
        return JobOutcome.RESCHEDULED

    async def prune_expired_records(self) -> Dict[str, int]:
        """Delete finished jobs and ledger rows past their retention windows"""
        now = self._clock()
        async with UnitOfWork(self.session_factory) as uow:
            jobs = await job_crud.prune(uow.session, older_than=now - timedelta(days=settings.job_ttl_days))
            webhooks = await processed_webhook_crud.prune(
                uow.session, older_than=now - timedelta(days=settings.processed_webhook_ttl_days)
            )
        if jobs or webhooks:
            logger.info(f"🧹 Pruned {jobs} job(s) and {webhooks} processed webhook(s)")
        return {"jobs": jobs, "processed_webhooks": webhooks}

    # ------------------------------------------------------------------
    # Built-in executors
    # ------------------------------------------------------------------

    async def _fetch_subscription(self, payload: SubscriptionFetchPayload) -> None:
        data = await self.breaker.execute(lambda: self.razorpay.fetch_subscription(payload.subscription_id))

        async with UnitOfWork(self.session_factory) as uow:
            subscription = await subscription_crud.get_by_razorpay_id(uow.session, payload.subscription_id)
            if subscription is None:
                logger.warning(f"⚠️ Fetched subscription {payload.subscription_id} has no local record")
                return
            await subscription_crud.update(
                uow.session,
                db_obj=subscription,
                obj_in={
                    "current_period_start": from_unix(data.get("current_start")) or subscription.current_period_start,
                    "current_period_end": from_unix(data.get("current_end")) or subscription.current_period_end,
                    "meta_data": merge_metadata(
                        subscription.meta_data,
                        last_razorpay_status=data.get("status"),
                        last_fetched_at=self._clock().isoformat(),
                    ),
                },
            )

    async def _verify_payment(self, payload: PaymentVerifyPayload) -> None:
        data = await self.breaker.execute(lambda: self.razorpay.fetch_payment(payload.payment_id))

        async with UnitOfWork(self.session_factory) as uow:
            payment = await payment_crud.get_by_razorpay_id(uow.session, payload.payment_id)
            if payment is None:
                logger.warning(f"⚠️ Verified payment {payload.payment_id} has no local record")
                return

            updates: Dict[str, Any] = {"method": data.get("method") or payment.method}
            try:
                provider_status = PaymentStatus(data.get("status"))
            except ValueError:
                provider_status = None
            # refunds are applied by PaymentService; don't let a fetch undo them
            if provider_status and payment.status != PaymentStatus.REFUNDED:
                updates["status"] = provider_status
                if provider_status == PaymentStatus.CAPTURED and payment.captured_at is None:
                    updates["captured_at"] = from_unix(data.get("created_at")) or self._clock()
            await payment_crud.update(uow.session, db_obj=payment, obj_in=updates)

    async def _create_customer(self, payload: CustomerCreatePayload) -> None:
        customer = await self.breaker.execute(
            lambda: self.razorpay.create_customer(
                name=payload.name,
                email=payload.email,
                contact=payload.contact,
                notes=payload.notes,
            )
        )
        logger.info(f"👤 Created Razorpay customer {customer.get('id')} for {payload.email}")
