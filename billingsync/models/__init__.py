# Database models package

from .base import Base, TimestampMixin, utc_now
from .user import User, SubscriptionTier
from .subscription import Subscription, SubscriptionStatus, LIVE_STATUSES, TERMINAL_PROVIDER_STATUSES
from .payment import Payment, PaymentStatus, REFUNDABLE_STATUSES
from .job import Job, JobType, JobStatus
from .processed_webhook import ProcessedWebhook

__all__ = [
    'Base',
    'TimestampMixin',
    'utc_now',
    'User',
    'SubscriptionTier',
    'Subscription',
    'SubscriptionStatus',
    'LIVE_STATUSES',
    'TERMINAL_PROVIDER_STATUSES',
    'Payment',
    'PaymentStatus',
    'REFUNDABLE_STATUSES',
    'Job',
    'JobType',
    'JobStatus',
    'ProcessedWebhook',
]
