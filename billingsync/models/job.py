from sqlalchemy import Column, String, Integer, DateTime, Text, Uuid, JSON, Index, Enum as SQLEnum
import uuid
import enum
from .base import Base, TimestampMixin


class JobType(str, enum.Enum):
    SUBSCRIPTION_SYNC = "subscription_sync"
    SUBSCRIPTION_FETCH = "subscription_fetch"
    PAYMENT_VERIFY = "payment_verify"
    WEBHOOK_RETRY = "webhook_retry"
    CUSTOMER_CREATE = "customer_create"
    REFUND_PROCESS = "refund_process"


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Job(Base, TimestampMixin):
    """Durable unit of deferred / retryable work"""
    __tablename__ = "jobs"
    __table_args__ = (
        Index("ix_jobs_status_next_attempt", "status", "next_attempt_at"),
        Index("ix_jobs_type_status", "type", "status"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4, index=True)
    # Plain string so a row with an unrecognised type can still be loaded and failed
    type = Column(String(50), nullable=False, index=True)
    status = Column(
        SQLEnum(JobStatus, native_enum=False, length=16, values_callable=lambda e: [m.value for m in e]),
        default=JobStatus.PENDING,
        nullable=False,
        index=True,
    )
    payload = Column(JSON, nullable=False, default=dict)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    next_attempt_at = Column(DateTime, nullable=False)
    error = Column(Text, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    meta_data = Column("metadata", JSON, nullable=False, default=dict)
