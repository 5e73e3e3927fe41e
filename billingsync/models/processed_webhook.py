from sqlalchemy import Column, String, DateTime, Uuid, JSON, Index
import uuid
from .base import Base, TimestampMixin, utc_now


class ProcessedWebhook(Base, TimestampMixin):
    """Idempotency ledger: one row per webhook delivery we have applied"""
    __tablename__ = "processed_webhooks"
    __table_args__ = (
        Index("ix_processed_webhooks_event_processed", "event_type", "processed_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4, index=True)
    webhook_id = Column(String(512), nullable=False, unique=True, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    processed_at = Column(DateTime, nullable=False, default=utc_now, index=True)

    # Razorpay ids carried by the event
    subscription_id = Column(String(255), nullable=True, index=True)
    payment_id = Column(String(255), nullable=True, index=True)

    meta_data = Column("metadata", JSON, nullable=False, default=dict)
