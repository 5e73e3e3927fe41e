from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict, Any, List
from enum import Enum


class WebhookEventType(str, Enum):
    SUBSCRIPTION_CHARGED = "subscription.charged"
    SUBSCRIPTION_AUTHENTICATED = "subscription.authenticated"
    SUBSCRIPTION_ACTIVATED = "subscription.activated"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_PAUSED = "subscription.paused"
    SUBSCRIPTION_RESUMED = "subscription.resumed"
    PAYMENT_FAILED = "payment.failed"


class SubscriptionEntity(BaseModel):
    """Razorpay subscription object (only the fields we read are declared)"""
    model_config = ConfigDict(extra="allow")

    id: str
    status: Optional[str] = None
    plan_id: Optional[str] = None
    customer_id: Optional[str] = None
    current_start: Optional[int] = None
    current_end: Optional[int] = None
    ended_at: Optional[int] = None
    charge_at: Optional[int] = None
    updated_at: Optional[int] = None
    notes: Dict[str, Any] = Field(default_factory=dict)


class PaymentEntity(BaseModel):
    """Razorpay payment object"""
    model_config = ConfigDict(extra="allow")

    id: str
    amount: int = 0
    currency: str = "INR"
    status: Optional[str] = None
    order_id: Optional[str] = None
    invoice_id: Optional[str] = None
    subscription_id: Optional[str] = None
    method: Optional[str] = None
    error_code: Optional[str] = None
    error_reason: Optional[str] = None
    error_description: Optional[str] = None
    created_at: Optional[int] = None
    notes: Dict[str, Any] = Field(default_factory=dict)


class SubscriptionWrapper(BaseModel):
    entity: SubscriptionEntity


class PaymentWrapper(BaseModel):
    entity: PaymentEntity


class WebhookPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    subscription: Optional[SubscriptionWrapper] = None
    payment: Optional[PaymentWrapper] = None


class RazorpayWebhookEvent(BaseModel):
    """Signed webhook body as delivered by Razorpay"""
    model_config = ConfigDict(extra="allow")

    event: str
    created_at: int
    account_id: Optional[str] = None
    entity: str = "event"
    contains: List[str] = Field(default_factory=list)
    payload: WebhookPayload = Field(default_factory=WebhookPayload)

    @property
    def subscription(self) -> Optional[SubscriptionEntity]:
        return self.payload.subscription.entity if self.payload.subscription else None

    @property
    def payment(self) -> Optional[PaymentEntity]:
        return self.payload.payment.entity if self.payload.payment else None


class WebhookResult(BaseModel):
    success: bool
    message: str


class ProcessedWebhookCreate(BaseModel):
    webhook_id: str
    event_type: str
    subscription_id: Optional[str] = None
    payment_id: Optional[str] = None
    meta_data: Dict[str, Any] = Field(default_factory=dict)
