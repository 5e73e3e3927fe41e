# CRUD operations package

from .user import user_crud
from .subscription import subscription_crud
from .payment import payment_crud
from .job import job_crud
from .processed_webhook import processed_webhook_crud

__all__ = [
    'user_crud',
    'subscription_crud',
    'payment_crud',
    'job_crud',
    'processed_webhook_crud',
]
