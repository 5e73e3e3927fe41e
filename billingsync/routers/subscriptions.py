import logging

from fastapi import APIRouter, HTTPException, Depends, status, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from billingsync.core.auth import get_current_user, user_uuid
from billingsync.core.container import BillingContainer, get_container, get_subscription_service
from billingsync.core.exceptions import BillingError, handle_database_errors
from billingsync.schemas.auth import TokenData
from billingsync.schemas.subscription import (
    CancelSubscriptionRequest,
    CancelSubscriptionResponse,
    CreateSubscriptionResponse,
    SubscriptionStatusResponse,
)
from billingsync.schemas.webhook import RazorpayWebhookEvent
from billingsync.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter()

SIGNATURE_HEADER = "X-Razorpay-Signature"


@router.post("/webhook")
async def razorpay_webhook(request: Request, container: BillingContainer = Depends(get_container)):
    """Receive signed Razorpay webhooks"""
    payload = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    logger.info(f"🔔 Received Razorpay webhook: {len(payload)} bytes")

    if not signature:
        logger.warning(f"❌ Missing {SIGNATURE_HEADER} header")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Missing {SIGNATURE_HEADER} header"
        )

    if not container.razorpay.verify_webhook_signature(payload, signature):
        logger.warning("❌ Invalid webhook signature")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook signature"
        )

    try:
        event = RazorpayWebhookEvent.model_validate_json(payload)
    except PydanticValidationError as e:
        logger.warning(f"❌ Unparseable webhook body: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook payload"
        )

    try:
        result = await container.webhook_handler.process_webhook(event)
    except Exception as e:
        # a retry job has been queued; Razorpay will also redeliver
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "message": str(e)},
        )

    return JSONResponse(content=result.model_dump())


@router.post("/create", response_model=CreateSubscriptionResponse)
async def create_subscription(
    current_user: TokenData = Depends(get_current_user),
    subscription_service: SubscriptionService = Depends(get_subscription_service),
):
    """Start a pro subscription for the current user"""
    try:
        return await subscription_service.create_subscription(user_uuid(current_user))
    except HTTPException:
        raise
    except BillingError as e:
        logger.error(f"❌ Subscription creation failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Subscription creation failed"
        )


@router.post("/cancel", response_model=CancelSubscriptionResponse)
async def cancel_subscription(
    cancel_request: CancelSubscriptionRequest,
    current_user: TokenData = Depends(get_current_user),
    subscription_service: SubscriptionService = Depends(get_subscription_service),
):
    """Cancel the current user's subscription, now or at cycle end"""
    try:
        return await subscription_service.cancel_subscription(
            user_uuid(current_user),
            cancel_at_cycle_end=cancel_request.cancel_at_cycle_end,
            reason=cancel_request.reason,
        )
    except HTTPException:
        raise
    except BillingError as e:
        logger.error(f"❌ Failed to cancel subscription with Razorpay: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to cancel subscription with payment provider"
        )


@router.get("/status", response_model=SubscriptionStatusResponse)
@handle_database_errors
async def subscription_status(
    current_user: TokenData = Depends(get_current_user),
    subscription_service: SubscriptionService = Depends(get_subscription_service),
):
    return await subscription_service.get_status(user_uuid(current_user))
