from sqlalchemy import Column, String, DateTime, ForeignKey, Uuid, JSON, Index, Enum as SQLEnum
import uuid
import enum
from .base import Base, TimestampMixin, utc_now


class SubscriptionStatus(str, enum.Enum):
    """Razorpay subscription states plus our own grace-period terminal state"""
    CREATED = "created"
    AUTHENTICATED = "authenticated"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    UNPAID = "unpaid"
    HALTED = "halted"
    PAUSED = "paused"
    COMPLETED = "completed"
    # Set by the sync job when we stop waiting for a failed payment to recover
    EXPIRED_GRACE_PERIOD = "expired_grace_period"


# Statuses the reconciliation job polls Razorpay for
LIVE_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.AUTHENTICATED,
)

# Statuses Razorpay reports once a subscription has ended for good
TERMINAL_PROVIDER_STATUSES = (
    SubscriptionStatus.CANCELLED,
    SubscriptionStatus.EXPIRED,
)


class Subscription(Base, TimestampMixin):
    """One user's recurring billing agreement, mirrored from Razorpay"""
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_user_status", "user_id", "status"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4, index=True)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    razorpay_subscription_id = Column(String(255), nullable=False, unique=True, index=True)
    razorpay_customer_id = Column(String(255), nullable=True, index=True)
    plan_id = Column(String(100), nullable=False)
    status = Column(
        SQLEnum(SubscriptionStatus, native_enum=False, length=32, values_callable=lambda e: [m.value for m in e]),
        default=SubscriptionStatus.CREATED,
        nullable=False,
        index=True,
    )

    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    paused_at = Column(DateTime, nullable=True)
    grace_period_end = Column(DateTime, nullable=True)
    grace_period_expired_at = Column(DateTime, nullable=True)
    last_sync_at = Column(DateTime, nullable=True)
    last_webhook_at = Column(DateTime, nullable=True)

    # Audit trail of Razorpay fields and sync markers
    meta_data = Column("metadata", JSON, nullable=False, default=dict)

    @property
    def is_in_grace_period(self) -> bool:
        return (
            self.status == SubscriptionStatus.PAST_DUE
            and self.grace_period_end is not None
            and utc_now() < self.grace_period_end
        )
