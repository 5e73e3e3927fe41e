import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, Depends, Query, status

from billingsync.core.auth import get_current_user, require_admin, user_uuid
from billingsync.core.container import get_payment_service
from billingsync.core.exceptions import BillingError, RefundError, handle_database_errors
from billingsync.models.payment import PaymentStatus
from billingsync.schemas.auth import TokenData
from billingsync.schemas.job import RefundProcessPayload
from billingsync.schemas.payment import PaymentHistoryResponse, PaymentResponse, RefundRequest, RefundResponse
from billingsync.services.payment_service import PaymentService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/refund", response_model=RefundResponse)
async def refund_payment(
    refund_request: RefundRequest,
    admin: TokenData = Depends(require_admin),
    payment_service: PaymentService = Depends(get_payment_service),
):
    """Refund a payment in full or in part (operators only)"""
    try:
        return await payment_service.refund_payment(
            RefundProcessPayload(
                payment_id=refund_request.payment_id,
                amount=refund_request.amount,
                speed=refund_request.speed,
                reason=refund_request.reason,
                notes=refund_request.notes,
                processed_by=admin.user_id,
            )
        )
    except HTTPException:
        raise
    except RefundError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except BillingError as e:
        logger.error(f"❌ Refund failed for {refund_request.payment_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to process refund with payment provider"
        )


@router.get("/history", response_model=PaymentHistoryResponse)
@handle_database_errors
async def payment_history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    payment_status: Optional[PaymentStatus] = Query(None, alias="status"),
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    current_user: TokenData = Depends(get_current_user),
    payment_service: PaymentService = Depends(get_payment_service),
):
    """The current user's payments, newest first"""
    return await payment_service.get_payment_history(
        user_uuid(current_user),
        page=page,
        limit=limit,
        status=payment_status,
        start_date=start_date,
        end_date=end_date,
    )


@router.get("/{razorpay_payment_id}", response_model=PaymentResponse)
async def get_payment(
    razorpay_payment_id: str,
    current_user: TokenData = Depends(get_current_user),
    payment_service: PaymentService = Depends(get_payment_service),
):
    """Payment and refund history for one payment"""
    return await payment_service.get_payment(razorpay_payment_id, current_user)
