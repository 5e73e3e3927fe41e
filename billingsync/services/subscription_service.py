import logging
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import async_sessionmaker

from billingsync.core.circuit_breaker import CircuitBreaker
from billingsync.core.config import settings
from billingsync.core.database import UnitOfWork
from billingsync.core.exceptions import ValidationError
from billingsync.crud.subscription import subscription_crud
from billingsync.crud.user import user_crud
from billingsync.models.base import utc_now
from billingsync.models.job import JobType
from billingsync.models.subscription import SubscriptionStatus
from billingsync.schemas.job import CustomerCreatePayload
from billingsync.schemas.subscription import (
    CancelSubscriptionResponse,
    CreateSubscriptionResponse,
    SubscriptionCreate,
    SubscriptionResponse,
    SubscriptionStatusResponse,
)
from billingsync.services.razorpay_service import RazorpayService
from billingsync.services.retry_handler import RetryHandler
from billingsync.utils.utils import from_unix, merge_metadata

logger = logging.getLogger(__name__)

CANCELLABLE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.AUTHENTICATED)


class SubscriptionService:
    """User-initiated subscription lifecycle: create, cancel, inspect"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        razorpay: RazorpayService,
        breaker: CircuitBreaker,
        retry_handler: RetryHandler,
    ):
        self.session_factory = session_factory
        self.razorpay = razorpay
        self.breaker = breaker
        self.retry_handler = retry_handler

    async def create_subscription(self, user_id: UUID, contact: Optional[str] = None) -> CreateSubscriptionResponse:
        """
        Create a Razorpay customer and subscription for the user and store it
        locally as ``created``. Access is granted later by the activation or
        charge webhook.
        """
        async with self.session_factory() as db:
            user = await user_crud.get(db, id=user_id)

        customer_payload = CustomerCreatePayload(
            name=user.name or "",
            email=user.email,
            contact=contact,
            notes={"user_id": str(user.id)},
        )
        try:
            customer = await self.breaker.execute(
                lambda: self.razorpay.create_customer(
                    name=customer_payload.name,
                    email=customer_payload.email,
                    contact=customer_payload.contact,
                    notes=customer_payload.notes,
                )
            )
        except Exception as e:
            logger.error(f"❌ Razorpay customer creation failed for {user.email}: {e}")
            await self.retry_handler.create_retry_job(JobType.CUSTOMER_CREATE, customer_payload)
            raise

        plan_id = settings.razorpay_plan_id
        razorpay_subscription = await self.breaker.execute(
            lambda: self.razorpay.create_subscription(
                plan_id=plan_id,
                customer_id=customer["id"],
                total_count=settings.razorpay_total_count,
                notes={"user_id": str(user.id)},
            )
        )

        try:
            status = SubscriptionStatus(razorpay_subscription.get("status") or SubscriptionStatus.CREATED.value)
        except ValueError:
            status = SubscriptionStatus.CREATED

        async with UnitOfWork(self.session_factory) as uow:
            subscription = await subscription_crud.create(
                uow.session,
                obj_in=SubscriptionCreate(
                    user_id=user.id,
                    razorpay_subscription_id=razorpay_subscription["id"],
                    razorpay_customer_id=customer["id"],
                    plan_id=plan_id,
                    status=status,
                    current_period_start=from_unix(razorpay_subscription.get("current_start")),
                    current_period_end=from_unix(razorpay_subscription.get("current_end")),
                    meta_data={"short_url": razorpay_subscription.get("short_url")},
                ),
            )

        logger.info(f"🆕 Created subscription {subscription.razorpay_subscription_id} for user {user.id}")
        return CreateSubscriptionResponse(
            success=True,
            subscription_id=subscription.razorpay_subscription_id,
            status=subscription.status,
            short_url=razorpay_subscription.get("short_url"),
        )

    async def cancel_subscription(
        self,
        user_id: UUID,
        cancel_at_cycle_end: bool = False,
        reason: Optional[str] = None
    ) -> CancelSubscriptionResponse:
        """
        Cancel at Razorpay first, then mirror locally. Immediate cancellation
        downgrades the user now; cycle-end cancellation keeps access until
        Razorpay's own cancelled webhook arrives.
        """
        async with self.session_factory() as db:
            await user_crud.get(db, id=user_id)
            subscription = await subscription_crud.get_latest_for_user(db, user_id, CANCELLABLE_STATUSES)

        if subscription is None:
            raise ValidationError("No active subscription found")

        razorpay_subscription = await self.breaker.execute(
            lambda: self.razorpay.cancel_subscription(
                subscription.razorpay_subscription_id,
                cancel_at_cycle_end=cancel_at_cycle_end,
            )
        )

        now = utc_now()
        async with UnitOfWork(self.session_factory) as uow:
            local = await subscription_crud.get(uow.session, id=subscription.id)
            await subscription_crud.update(
                uow.session,
                db_obj=local,
                obj_in={
                    "status": SubscriptionStatus.CANCELLED,
                    "cancelled_at": now,
                    "meta_data": merge_metadata(
                        local.meta_data,
                        cancellation_reason=reason,
                        cancel_at_cycle_end=cancel_at_cycle_end,
                        razorpay_status=razorpay_subscription.get("status"),
                    ),
                },
            )
            if not cancel_at_cycle_end:
                await user_crud.downgrade_to_free(uow.session, user_id, local.id)

        logger.info(
            f"🛑 Subscription {subscription.razorpay_subscription_id} cancelled for user {user_id} "
            f"(cycle_end={cancel_at_cycle_end}, reason={reason})"
        )
        return CancelSubscriptionResponse(
            success=True,
            message=(
                "Subscription will be cancelled at the end of current billing cycle"
                if cancel_at_cycle_end
                else "Subscription cancelled immediately"
            ),
            subscription_status=razorpay_subscription.get("status"),
            access_ends_at=(subscription.current_period_end or now) if cancel_at_cycle_end else now,
        )

    async def get_status(self, user_id: UUID) -> SubscriptionStatusResponse:
        async with self.session_factory() as db:
            user = await user_crud.get(db, id=user_id)
            subscription = await subscription_crud.get_latest_for_user(db, user_id)

        if subscription is None:
            return SubscriptionStatusResponse(
                success=True,
                subscription_tier=user.subscription_tier.value,
                has_access=user.is_pro,
                can_cancel=False,
            )

        return SubscriptionStatusResponse(
            success=True,
            subscription_tier=user.subscription_tier.value,
            has_access=user.is_pro,
            can_cancel=subscription.status in CANCELLABLE_STATUSES,
            subscription=SubscriptionResponse.model_validate(subscription),
        )
