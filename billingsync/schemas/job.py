from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict, Any
from datetime import datetime
from uuid import UUID

from billingsync.models.job import JobType, JobStatus


class RetryOptions(BaseModel):
    max_retries: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    jitter: bool = True  # spread retries so callers don't stampede together


class JobCreate(BaseModel):
    type: str
    payload: Dict[str, Any]
    max_retries: int = 3
    next_attempt_at: datetime
    status: JobStatus = JobStatus.PENDING


class JobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: str
    status: JobStatus
    retry_count: int
    max_retries: int
    next_attempt_at: datetime
    error: Optional[str] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None


class JobBatchResult(BaseModel):
    processed: int = 0
    completed: int = 0
    rescheduled: int = 0
    failed: int = 0
    skipped: int = 0
    reclaimed: int = 0


# Typed payloads, decoded from Job.payload at dispatch time

class SubscriptionSyncPayload(BaseModel):
    subscription_id: str  # Razorpay id
    local_subscription_id: Optional[str] = None


class SubscriptionFetchPayload(BaseModel):
    subscription_id: str


class PaymentVerifyPayload(BaseModel):
    payment_id: str


class WebhookRetryPayload(BaseModel):
    webhook_id: str
    webhook_data: Dict[str, Any]
    error: Optional[str] = None


class CustomerCreatePayload(BaseModel):
    name: str = ""
    email: str
    contact: Optional[str] = None
    notes: Dict[str, Any] = Field(default_factory=dict)


class RefundProcessPayload(BaseModel):
    payment_id: str
    amount: Optional[int] = None
    speed: str = "normal"
    reason: Optional[str] = None
    notes: Dict[str, Any] = Field(default_factory=dict)
    processed_by: Optional[str] = None


JOB_PAYLOAD_MODELS = {
    JobType.SUBSCRIPTION_SYNC: SubscriptionSyncPayload,
    JobType.SUBSCRIPTION_FETCH: SubscriptionFetchPayload,
    JobType.PAYMENT_VERIFY: PaymentVerifyPayload,
    JobType.WEBHOOK_RETRY: WebhookRetryPayload,
    JobType.CUSTOMER_CREATE: CustomerCreatePayload,
    JobType.REFUND_PROCESS: RefundProcessPayload,
}
