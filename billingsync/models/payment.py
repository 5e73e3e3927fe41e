from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Uuid, JSON, Enum as SQLEnum
import uuid
import enum
from .base import Base, TimestampMixin


class PaymentStatus(str, enum.Enum):
    CREATED = "created"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    REFUNDED = "refunded"
    FAILED = "failed"


REFUNDABLE_STATUSES = (PaymentStatus.CAPTURED, PaymentStatus.AUTHORIZED)


class Payment(Base, TimestampMixin):
    """A single Razorpay charge attempt; kept forever for audit"""
    __tablename__ = "payments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4, index=True)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    subscription_id = Column(Uuid, ForeignKey("subscriptions.id"), nullable=False, index=True)
    razorpay_payment_id = Column(String(255), nullable=False, unique=True, index=True)
    razorpay_order_id = Column(String(255), nullable=True, index=True)

    amount = Column(Integer, nullable=False)  # paise
    currency = Column(String(3), nullable=False, default="INR")
    status = Column(
        SQLEnum(PaymentStatus, native_enum=False, length=16, values_callable=lambda e: [m.value for m in e]),
        default=PaymentStatus.CREATED,
        nullable=False,
        index=True,
    )
    method = Column(String(32), nullable=True)

    # Refunds (refund_amount is cumulative and never decreases)
    refund_id = Column(String(255), nullable=True)
    refund_amount = Column(Integer, nullable=False, default=0)
    refunded_at = Column(DateTime, nullable=True)
    refund_reason = Column(String(500), nullable=True)

    failure_reason = Column(String(500), nullable=True)
    captured_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)

    gateway_data = Column(JSON, nullable=False, default=dict)  # raw Razorpay entity, written once
    notes = Column(JSON, nullable=False, default=dict)

    @property
    def remaining_amount(self) -> int:
        return self.amount - (self.refund_amount or 0)

    @property
    def refund_percentage(self) -> float:
        if not self.amount:
            return 0.0
        return (self.refund_amount or 0) / self.amount * 100
