from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict, Any
from datetime import datetime
from uuid import UUID

from billingsync.models.subscription import SubscriptionStatus


class SubscriptionCreate(BaseModel):
    user_id: UUID
    razorpay_subscription_id: str
    razorpay_customer_id: Optional[str] = None
    plan_id: str
    status: SubscriptionStatus = SubscriptionStatus.CREATED
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    meta_data: Dict[str, Any] = Field(default_factory=dict)


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    razorpay_subscription_id: str
    plan_id: str
    status: SubscriptionStatus
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    grace_period_end: Optional[datetime] = None
    is_in_grace_period: bool = False
    last_sync_at: Optional[datetime] = None


class CreateSubscriptionResponse(BaseModel):
    success: bool
    subscription_id: str
    status: SubscriptionStatus
    short_url: Optional[str] = None


class CancelSubscriptionRequest(BaseModel):
    cancel_at_cycle_end: bool = False
    reason: Optional[str] = None


class CancelSubscriptionResponse(BaseModel):
    success: bool
    message: str
    subscription_status: Optional[str] = None
    access_ends_at: Optional[datetime] = None


class SubscriptionStatusResponse(BaseModel):
    success: bool
    subscription_tier: str
    has_access: bool
    can_cancel: bool
    subscription: Optional[SubscriptionResponse] = None
