import logging
import math
from datetime import datetime
from typing import Any, Dict, Optional, Tuple
from uuid import UUID

from sqlalchemy.ext.asyncio import async_sessionmaker

from billingsync.core.circuit_breaker import CircuitBreaker
from billingsync.core.database import UnitOfWork
from billingsync.core.exceptions import (
    CircuitOpenError,
    ForbiddenError,
    NonRetryableJobError,
    NotFoundError,
    RazorpayError,
    RefundError,
)
from billingsync.crud.payment import payment_crud
from billingsync.crud.subscription import subscription_crud
from billingsync.crud.user import user_crud
from billingsync.models.base import utc_now
from billingsync.models.job import JobType
from billingsync.models.payment import Payment, PaymentStatus, REFUNDABLE_STATUSES
from billingsync.models.subscription import SubscriptionStatus
from billingsync.schemas.auth import TokenData
from billingsync.schemas.job import RefundProcessPayload
from billingsync.schemas.payment import (
    PaymentHistoryResponse,
    PaymentResponse,
    PaymentSummary,
    RefundDetails,
    RefundResponse,
)
from billingsync.services.razorpay_service import RazorpayService
from billingsync.services.retry_handler import RetryHandler
from billingsync.utils.utils import merge_metadata

logger = logging.getLogger(__name__)


class PaymentService:
    """Refunds and payment lookups"""

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
        retry_handler.register_executor(JobType.REFUND_PROCESS, self._process_queued_refund)

    @staticmethod
    def _validate_refund(payment: Payment, amount: Optional[int]) -> int:
        if payment.status == PaymentStatus.REFUNDED:
            raise RefundError("Payment has already been refunded")
        if payment.status not in REFUNDABLE_STATUSES:
            raise RefundError("Payment is not eligible for refund")

        refund_amount = amount or payment.remaining_amount
        if refund_amount <= 0:
            raise RefundError("Nothing left to refund")
        if refund_amount > payment.remaining_amount:
            raise RefundError("Refund amount exceeds remaining refundable amount")
        return refund_amount

    async def refund_payment(self, request: RefundProcessPayload, *, queue_on_failure: bool = True) -> RefundResponse:
        """
        Refund a payment at Razorpay and apply it locally.

        A transient provider failure (network, 5xx, open circuit) queues a
        ``refund_process`` job and returns a queued response instead of
        raising. Validation problems raise ``RefundError``.
        """
        async with self.session_factory() as db:
            payment = await payment_crud.get_by_razorpay_id(db, request.payment_id)
        if payment is None:
            raise NotFoundError("Payment")

        refund_amount = self._validate_refund(payment, request.amount)
        notes = {
            **request.notes,
            "reason": request.reason,
            "user_id": str(payment.user_id),
            "processed_by": request.processed_by,
        }

        try:
            refund = await self.breaker.execute(
                lambda: self.razorpay.create_refund(
                    request.payment_id,
                    amount=refund_amount,
                    speed=request.speed,
                    notes=notes,
                )
            )
        except (RazorpayError, CircuitOpenError) as e:
            if isinstance(e, RazorpayError) and e.status_code is not None and e.status_code < 500:
                raise RefundError(f"Razorpay rejected the refund: {e.description}") from e
            if not queue_on_failure:
                raise
            logger.warning(f"⚠️ Refund for {request.payment_id} failed at Razorpay, queueing: {e}")
            await self.retry_handler.create_retry_job(
                JobType.REFUND_PROCESS,
                request.model_copy(update={"amount": refund_amount}),
            )
            return RefundResponse(
                success=True,
                queued=True,
                message="Refund queued; the payment provider is unavailable",
            )

        payment, cancel_subscription_id = await self._apply_refund(request, refund_amount, refund)

        if cancel_subscription_id:
            # local state is already cancelled; Razorpay catches up or the sync job flags it
            try:
                await self.breaker.execute(
                    lambda: self.razorpay.cancel_subscription(cancel_subscription_id, cancel_at_cycle_end=False)
                )
            except Exception as e:
                logger.error(f"❌ Failed to cancel subscription {cancel_subscription_id} at Razorpay after refund: {e}")

        logger.info(
            f"💸 Refunded {refund_amount} on {request.payment_id} "
            f"(refund {refund.get('id')}, payment now {payment.status.value})"
        )
        return RefundResponse(
            success=True,
            refund=RefundDetails(
                id=refund.get("id"),
                amount=refund_amount,
                currency=refund.get("currency"),
                status=refund.get("status"),
                speed=refund.get("speed_requested") or request.speed,
            ),
            payment=PaymentSummary(
                id=payment.id,
                status=payment.status,
                total_refunded=payment.refund_amount,
                remaining_amount=payment.remaining_amount,
            ),
        )

    async def _apply_refund(
        self,
        request: RefundProcessPayload,
        refund_amount: int,
        refund: Dict[str, Any]
    ) -> Tuple[Payment, Optional[str]]:
        """Record the refund; a full refund also ends the subscription and access"""
        now = utc_now()
        cancel_subscription_id = None

        async with UnitOfWork(self.session_factory) as uow:
            payment = await payment_crud.get_by_razorpay_id(uow.session, request.payment_id, for_update=True)
            total_refunded = (payment.refund_amount or 0) + refund_amount
            if total_refunded > payment.amount:
                logger.warning(
                    f"⚠️ Refunds on {request.payment_id} add up to {total_refunded}, "
                    f"more than the payment amount {payment.amount}; capping"
                )
                total_refunded = payment.amount
            is_full_refund = total_refunded >= payment.amount

            await payment_crud.update(
                uow.session,
                db_obj=payment,
                obj_in={
                    "status": PaymentStatus.REFUNDED if is_full_refund else payment.status,
                    "refund_id": refund.get("id"),
                    "refund_amount": total_refunded,
                    "refunded_at": now,
                    "refund_reason": request.reason,
                    "notes": merge_metadata(
                        payment.notes,
                        refund={
                            "razorpay_refund_id": refund.get("id"),
                            "refund_speed": request.speed,
                            "refund_reason": request.reason,
                            "processed_by": request.processed_by,
                            "processed_at": now.isoformat(),
                        },
                    ),
                },
            )

            if is_full_refund and payment.subscription_id:
                subscription = await subscription_crud.get(uow.session, id=payment.subscription_id, raise_if_not_found=False)
                if subscription:
                    if subscription.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.AUTHENTICATED):
                        await subscription_crud.update(
                            uow.session,
                            db_obj=subscription,
                            obj_in={
                                "status": SubscriptionStatus.CANCELLED,
                                "cancelled_at": now,
                                "meta_data": merge_metadata(
                                    subscription.meta_data,
                                    cancellation_reason="Full refund processed",
                                    refund_id=refund.get("id"),
                                ),
                            },
                        )
                        cancel_subscription_id = subscription.razorpay_subscription_id
                    await user_crud.downgrade_to_free(uow.session, subscription.user_id, subscription.id)

        return payment, cancel_subscription_id

    async def _process_queued_refund(self, payload: RefundProcessPayload) -> None:
        try:
            await self.refund_payment(payload, queue_on_failure=False)
        except (RefundError, NotFoundError) as e:
            raise NonRetryableJobError(str(getattr(e, "detail", e))) from e

    async def get_payment_history(
        self,
        user_id: UUID,
        *,
        page: int = 1,
        limit: int = 10,
        status: Optional[PaymentStatus] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> PaymentHistoryResponse:
        """A user's payments, newest first"""
        filters: Dict[str, Any] = {"user_id": user_id}
        if status:
            filters["status"] = status
        created_range = {}
        if start_date:
            created_range["gte"] = start_date
        if end_date:
            created_range["lte"] = end_date
        if created_range:
            filters["created_at"] = created_range

        async with self.session_factory() as db:
            payments, total = await payment_crud.get_multi(
                db, skip=(page - 1) * limit, limit=limit, filters=filters
            )

        total_pages = math.ceil(total / limit) if total else 0
        return PaymentHistoryResponse(
            payments=[PaymentResponse.model_validate(p) for p in payments],
            total=total,
            page=page,
            limit=limit,
            total_pages=total_pages,
            has_next_page=page < total_pages,
            has_prev_page=page > 1,
        )

    async def get_payment(self, razorpay_payment_id: str, current_user: TokenData) -> PaymentResponse:
        async with self.session_factory() as db:
            payment = await payment_crud.get_by_razorpay_id(db, razorpay_payment_id)
        if payment is None:
            raise NotFoundError("Payment")
        if not current_user.is_admin and str(payment.user_id) != current_user.user_id:
            raise ForbiddenError()
        return PaymentResponse.model_validate(payment)
