from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import async_sessionmaker

from billingsync.core.circuit_breaker import CircuitBreaker, build_database_breaker, build_razorpay_breaker
from billingsync.jobs.job_processor import JobProcessor
from billingsync.jobs.subscription_sync import SubscriptionSyncJob
from billingsync.services.payment_service import PaymentService
from billingsync.services.razorpay_service import RazorpayService
from billingsync.services.retry_handler import RetryHandler
from billingsync.services.subscription_service import SubscriptionService
from billingsync.services.webhook_handler import WebhookHandler


@dataclass
class BillingContainer:
    """Process-wide billing components, built once in the app lifespan"""

    razorpay: RazorpayService
    razorpay_breaker: CircuitBreaker
    database_breaker: CircuitBreaker
    retry_handler: RetryHandler
    webhook_handler: WebhookHandler
    sync_job: SubscriptionSyncJob
    job_processor: JobProcessor
    subscription_service: SubscriptionService
    payment_service: PaymentService


def build_container(
    session_factory: async_sessionmaker,
    razorpay: Optional[RazorpayService] = None,
    *,
    razorpay_breaker: Optional[CircuitBreaker] = None,
    database_breaker: Optional[CircuitBreaker] = None,
) -> BillingContainer:
    razorpay = razorpay or RazorpayService()
    razorpay_breaker = razorpay_breaker or build_razorpay_breaker()
    database_breaker = database_breaker or build_database_breaker()

    retry_handler = RetryHandler(session_factory, razorpay, razorpay_breaker)
    # these register their job executors on the retry handler
    webhook_handler = WebhookHandler(session_factory, retry_handler)
    sync_job = SubscriptionSyncJob(session_factory, razorpay, razorpay_breaker, retry_handler)
    payment_service = PaymentService(session_factory, razorpay, razorpay_breaker, retry_handler)

    return BillingContainer(
        razorpay=razorpay,
        razorpay_breaker=razorpay_breaker,
        database_breaker=database_breaker,
        retry_handler=retry_handler,
        webhook_handler=webhook_handler,
        sync_job=sync_job,
        job_processor=JobProcessor(retry_handler, sync_job, database_breaker),
        subscription_service=SubscriptionService(session_factory, razorpay, razorpay_breaker, retry_handler),
        payment_service=payment_service,
    )


def get_container(request: Request) -> BillingContainer:
    container = getattr(request.app.state, "container", None)
    if not container:
        raise RuntimeError("Application container not initialised.")
    return container


def get_subscription_service(container: BillingContainer = Depends(get_container)) -> SubscriptionService:
    return container.subscription_service


def get_payment_service(container: BillingContainer = Depends(get_container)) -> PaymentService:
    return container.payment_service
