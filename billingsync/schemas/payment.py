from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict, Any, List
from datetime import datetime
from uuid import UUID

from billingsync.models.payment import PaymentStatus


class PaymentCreate(BaseModel):
    user_id: UUID
    subscription_id: UUID
    razorpay_payment_id: str
    razorpay_order_id: Optional[str] = None
    amount: int
    currency: str = "INR"
    status: PaymentStatus
    method: Optional[str] = None
    gateway_data: Dict[str, Any] = Field(default_factory=dict)
    notes: Dict[str, Any] = Field(default_factory=dict)
    failure_reason: Optional[str] = None
    captured_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None


class RefundRequest(BaseModel):
    payment_id: str = Field(..., description="Razorpay payment id")
    amount: Optional[int] = Field(None, gt=0, description="Paise; defaults to the remaining amount")
    speed: str = "normal"
    reason: Optional[str] = None
    notes: Dict[str, Any] = Field(default_factory=dict)


class RefundDetails(BaseModel):
    id: Optional[str] = None
    amount: int
    currency: Optional[str] = None
    status: Optional[str] = None
    speed: Optional[str] = None


class PaymentSummary(BaseModel):
    id: UUID
    status: PaymentStatus
    total_refunded: int
    remaining_amount: int


class RefundResponse(BaseModel):
    success: bool
    queued: bool = False
    message: Optional[str] = None
    refund: Optional[RefundDetails] = None
    payment: Optional[PaymentSummary] = None


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    razorpay_payment_id: str
    amount: int
    currency: str
    status: PaymentStatus
    refund_amount: int
    refund_percentage: float
    refunded_at: Optional[datetime] = None
    refund_reason: Optional[str] = None
    method: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime


class PaymentHistoryResponse(BaseModel):
    payments: List[PaymentResponse]
    total: int
    page: int
    limit: int
    total_pages: int
    has_next_page: bool
    has_prev_page: bool
