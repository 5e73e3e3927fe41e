import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from billingsync.core.config import settings
from billingsync.core.database import UnitOfWork
from billingsync.core.exceptions import UnknownSubscriptionError, WebhookPayloadError
from billingsync.crud.payment import payment_crud
from billingsync.crud.processed_webhook import processed_webhook_crud
from billingsync.crud.subscription import subscription_crud
from billingsync.crud.user import user_crud
from billingsync.models.base import utc_now
from billingsync.models.job import JobType
from billingsync.models.payment import PaymentStatus
from billingsync.models.subscription import Subscription, SubscriptionStatus
from billingsync.schemas.job import RetryOptions, WebhookRetryPayload
from billingsync.schemas.payment import PaymentCreate
from billingsync.schemas.subscription import SubscriptionCreate
from billingsync.schemas.webhook import (
    ProcessedWebhookCreate,
    RazorpayWebhookEvent,
    SubscriptionEntity,
    WebhookEventType,
    WebhookResult,
)
from billingsync.services.retry_handler import RetryHandler
from billingsync.utils.utils import from_unix, merge_metadata

logger = logging.getLogger(__name__)

EventHandler = Callable[[UnitOfWork, RazorpayWebhookEvent], Awaitable[str]]

WEBHOOK_RETRY_OPTIONS = RetryOptions(max_retries=3, base_delay=5.0)


class WebhookHandler:
    """Applies Razorpay webhook events exactly once.

    Each delivery is keyed by ``generate_webhook_id``. The ledger row and the
    event's side effects commit in one transaction, so a duplicate delivery
    either finds the row and returns early or loses the unique-constraint
    race and rolls back.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        retry_handler: RetryHandler,
        *,
        grace_period_days: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.retry_handler = retry_handler
        self.grace_period_days = grace_period_days if grace_period_days is not None else settings.grace_period_days
        self._clock = clock
        self._handlers: Dict[WebhookEventType, EventHandler] = {
            WebhookEventType.SUBSCRIPTION_CHARGED: self._handle_subscription_charged,
            WebhookEventType.SUBSCRIPTION_AUTHENTICATED: self._handle_subscription_authenticated,
            WebhookEventType.SUBSCRIPTION_ACTIVATED: self._handle_subscription_activated,
            WebhookEventType.SUBSCRIPTION_CANCELLED: self._handle_subscription_cancelled,
            WebhookEventType.SUBSCRIPTION_PAUSED: self._handle_subscription_paused,
            WebhookEventType.SUBSCRIPTION_RESUMED: self._handle_subscription_resumed,
            WebhookEventType.PAYMENT_FAILED: self._handle_payment_failed,
        }
        retry_handler.register_executor(JobType.WEBHOOK_RETRY, self._retry_webhook)

    @staticmethod
    def generate_webhook_id(event: RazorpayWebhookEvent) -> str:
        subscription = event.subscription
        payment = event.payment
        components = [
            event.event,
            str(event.created_at),
            subscription.id if subscription else "",
            payment.id if payment else "",
            event.account_id or "",
        ]
        return "_".join(c for c in components if c)

    async def is_processed(self, webhook_id: str) -> bool:
        async with self.session_factory() as db:
            return await processed_webhook_crud.get_by_webhook_id(db, webhook_id) is not None

    async def process_webhook(self, event: RazorpayWebhookEvent, *, schedule_retry: bool = True) -> WebhookResult:
        """Apply one webhook delivery.

        Raises the handler's error after queueing a ``webhook_retry`` job
        (unless ``schedule_retry`` is False, as when the job itself is
        re-processing the event).
        """
        webhook_id = self.generate_webhook_id(event)

        if await self.is_processed(webhook_id):
            logger.info(f"🔁 Webhook {webhook_id} already processed, skipping")
            return WebhookResult(success=True, message="Already processed")

        try:
            async with UnitOfWork(self.session_factory) as uow:
                # ledger row goes in first so a concurrent duplicate fails on the unique index
                await processed_webhook_crud.create(
                    uow.session,
                    obj_in=ProcessedWebhookCreate(
                        webhook_id=webhook_id,
                        event_type=event.event,
                        subscription_id=event.subscription.id if event.subscription else None,
                        payment_id=event.payment.id if event.payment else None,
                        meta_data={"created_at": event.created_at, "account_id": event.account_id},
                    ),
                )
                message = await self._dispatch(uow, event)
        except Exception as e:
            if isinstance(e, IntegrityError) and await self.is_processed(webhook_id):
                logger.info(f"🔁 Webhook {webhook_id} was applied by a concurrent delivery")
                return WebhookResult(success=True, message="Already processed")

            logger.error(f"❌ Webhook {event.event} ({webhook_id}) failed: {e}")
            if schedule_retry:
                await self._schedule_retry(webhook_id, event, e)
            raise

        logger.info(f"✅ Webhook {event.event} processed: {message}")
        return WebhookResult(success=True, message=message)

    async def _dispatch(self, uow: UnitOfWork, event: RazorpayWebhookEvent) -> str:
        try:
            handler = self._handlers.get(WebhookEventType(event.event))
        except ValueError:
            handler = None

        if handler is None:
            logger.info(f"ℹ️ Unhandled webhook event: {event.event}")
            return "Event not handled"
        return await handler(uow, event)

    async def _schedule_retry(self, webhook_id: str, event: RazorpayWebhookEvent, error: Exception) -> None:
        try:
            await self.retry_handler.create_retry_job(
                JobType.WEBHOOK_RETRY,
                WebhookRetryPayload(
                    webhook_id=webhook_id,
                    webhook_data=event.model_dump(mode="json"),
                    error=str(error),
                ),
                WEBHOOK_RETRY_OPTIONS,
            )
        except Exception as queue_error:
            logger.exception(f"❌ Could not queue retry for webhook {webhook_id}: {queue_error}")

    async def _retry_webhook(self, payload: WebhookRetryPayload) -> None:
        event = RazorpayWebhookEvent.model_validate(payload.webhook_data)
        await self.process_webhook(event, schedule_retry=False)

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    @staticmethod
    def _require_subscription_entity(event: RazorpayWebhookEvent) -> SubscriptionEntity:
        if event.subscription is None:
            raise WebhookPayloadError(f"Subscription entity missing in {event.event} webhook")
        return event.subscription

    async def _update_subscription(self, uow: UnitOfWork, razorpay_subscription_id: str, values: dict) -> Optional[Subscription]:
        subscription = await subscription_crud.get_by_razorpay_id(uow.session, razorpay_subscription_id)
        if subscription is None:
            logger.warning(f"⚠️ Webhook for unknown subscription {razorpay_subscription_id}")
            return None
        return await subscription_crud.update(
            uow.session,
            db_obj=subscription,
            obj_in={**values, "last_webhook_at": self._clock()},
        )

    async def _handle_subscription_charged(self, uow: UnitOfWork, event: RazorpayWebhookEvent) -> str:
        entity = self._require_subscription_entity(event)
        payment = event.payment
        if payment is None:
            raise WebhookPayloadError("Payment entity missing in subscription.charged webhook")

        now = self._clock()
        subscription = await subscription_crud.get_by_razorpay_id(uow.session, entity.id)
        if subscription is None:
            user_id = entity.notes.get("user_id")
            if not user_id:
                raise UnknownSubscriptionError(f"Subscription not found: {entity.id}")
            logger.info(f"🆕 Creating missing subscription {entity.id} for user {user_id}")
            subscription = await subscription_crud.create(
                uow.session,
                obj_in=SubscriptionCreate(
                    user_id=UUID(str(user_id)),
                    razorpay_subscription_id=entity.id,
                    razorpay_customer_id=entity.customer_id,
                    plan_id=entity.plan_id or settings.razorpay_plan_id,
                ),
            )

        subscription = await subscription_crud.update(
            uow.session,
            db_obj=subscription,
            obj_in={
                "status": SubscriptionStatus.ACTIVE,
                "current_period_start": from_unix(entity.current_start),
                "current_period_end": from_unix(entity.current_end),
                "grace_period_end": None,
                "last_webhook_at": now,
                "meta_data": merge_metadata(
                    subscription.meta_data,
                    razorpay_status=entity.status,
                    last_charge_at=now.isoformat(),
                ),
            },
        )

        if await payment_crud.get_by_razorpay_id(uow.session, payment.id) is None:
            await payment_crud.create(
                uow.session,
                obj_in=PaymentCreate(
                    user_id=subscription.user_id,
                    subscription_id=subscription.id,
                    razorpay_payment_id=payment.id,
                    razorpay_order_id=payment.order_id,
                    amount=payment.amount,
                    currency=payment.currency,
                    status=PaymentStatus.CAPTURED,
                    method=payment.method,
                    gateway_data=payment.model_dump(mode="json"),
                    notes=payment.notes,
                    captured_at=from_unix(payment.created_at) or now,
                ),
            )

        await user_crud.upgrade_to_pro(uow.session, subscription.user_id, subscription.id, billed=True)
        return "Subscription charged processed"

    async def _handle_subscription_authenticated(self, uow: UnitOfWork, event: RazorpayWebhookEvent) -> str:
        entity = self._require_subscription_entity(event)
        await self._update_subscription(uow, entity.id, {"status": SubscriptionStatus.AUTHENTICATED})
        return "Subscription authenticated"

    async def _handle_subscription_activated(self, uow: UnitOfWork, event: RazorpayWebhookEvent) -> str:
        entity = self._require_subscription_entity(event)
        subscription = await self._update_subscription(
            uow,
            entity.id,
            {
                "status": SubscriptionStatus.ACTIVE,
                "current_period_start": from_unix(entity.current_start),
                "current_period_end": from_unix(entity.current_end),
            },
        )
        if subscription:
            await user_crud.upgrade_to_pro(uow.session, subscription.user_id, subscription.id)
        return "Subscription activated"

    async def _handle_subscription_cancelled(self, uow: UnitOfWork, event: RazorpayWebhookEvent) -> str:
        entity = self._require_subscription_entity(event)
        subscription = await self._update_subscription(
            uow,
            entity.id,
            {"status": SubscriptionStatus.CANCELLED, "cancelled_at": self._clock()},
        )
        if subscription:
            await user_crud.downgrade_to_free(uow.session, subscription.user_id, subscription.id)
        return "Subscription cancelled"

    async def _handle_subscription_paused(self, uow: UnitOfWork, event: RazorpayWebhookEvent) -> str:
        entity = self._require_subscription_entity(event)
        await self._update_subscription(
            uow,
            entity.id,
            {"status": SubscriptionStatus.PAUSED, "paused_at": self._clock()},
        )
        return "Subscription paused"

    async def _handle_subscription_resumed(self, uow: UnitOfWork, event: RazorpayWebhookEvent) -> str:
        entity = self._require_subscription_entity(event)
        subscription = await self._update_subscription(
            uow,
            entity.id,
            {"status": SubscriptionStatus.ACTIVE, "paused_at": None},
        )
        if subscription:
            await user_crud.upgrade_to_pro(uow.session, subscription.user_id, subscription.id)
        return "Subscription resumed"

    async def _handle_payment_failed(self, uow: UnitOfWork, event: RazorpayWebhookEvent) -> str:
        payment = event.payment
        if payment is None:
            raise WebhookPayloadError("Payment entity missing in payment.failed webhook")

        subscription = None
        if payment.subscription_id:
            subscription = await subscription_crud.get_by_razorpay_id(uow.session, payment.subscription_id)
        if subscription is None:
            logger.warning(f"⚠️ Failed payment {payment.id} has no local subscription")
            return "Payment failure processed"

        now = self._clock()
        # no downgrade here: the sync job expires the grace period
        await subscription_crud.update(
            uow.session,
            db_obj=subscription,
            obj_in={
                "status": SubscriptionStatus.PAST_DUE,
                "grace_period_end": now + timedelta(days=self.grace_period_days),
                "last_webhook_at": now,
                "meta_data": merge_metadata(
                    subscription.meta_data,
                    last_failed_payment=now.isoformat(),
                    failure_reason=payment.error_reason,
                ),
            },
        )

        if await payment_crud.get_by_razorpay_id(uow.session, payment.id) is None:
            await payment_crud.create(
                uow.session,
                obj_in=PaymentCreate(
                    user_id=subscription.user_id,
                    subscription_id=subscription.id,
                    razorpay_payment_id=payment.id,
                    razorpay_order_id=payment.order_id,
                    amount=payment.amount,
                    currency=payment.currency,
                    status=PaymentStatus.FAILED,
                    method=payment.method,
                    gateway_data=payment.model_dump(mode="json"),
                    notes=payment.notes,
                    failure_reason=payment.error_reason,
                    failed_at=from_unix(payment.created_at) or now,
                ),
            )
        return "Payment failure processed"
