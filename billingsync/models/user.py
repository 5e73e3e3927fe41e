from sqlalchemy import Column, String, DateTime, ForeignKey, Uuid, Enum as SQLEnum
import uuid
import enum
from .base import Base, TimestampMixin


class SubscriptionTier(str, enum.Enum):
    FREE = "free"
    PRO = "pro"


class User(Base, TimestampMixin):
    """Local account; only the subscription fields matter to billing"""
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4, index=True)
    email = Column(String(255), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=True)

    # Cached from subscription state: pro iff subscription_id points at an active or in-grace subscription
    subscription_tier = Column(
        SQLEnum(SubscriptionTier, native_enum=False, length=16, values_callable=lambda e: [m.value for m in e]),
        default=SubscriptionTier.FREE,
        nullable=False,
        index=True,
    )
    subscription_id = Column(
        Uuid,
        ForeignKey("subscriptions.id", use_alter=True, name="fk_users_subscription_id"),
        nullable=True,
        index=True,
    )
    last_billing_at = Column(DateTime, nullable=True)

    @property
    def is_pro(self) -> bool:
        return self.subscription_tier == SubscriptionTier.PRO
