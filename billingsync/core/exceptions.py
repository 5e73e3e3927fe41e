from fastapi import HTTPException, status
from functools import wraps
from typing import Callable, Optional


class DatabaseError(HTTPException):
    """Custom exception for database errors"""
    def __init__(self, detail: str = "Database operation failed"):
        super().__init__(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)

class NotFoundError(HTTPException):
    """Custom exception for not found errors"""
    def __init__(self, resource: str = "Resource"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=f"{resource} not found")

class ForbiddenError(HTTPException):
    """Custom exception for forbidden errors"""
    def __init__(self, detail: str = "Not authorized to access this resource"):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)

class ValidationError(HTTPException):
    """Custom exception for validation errors"""
    def __init__(self, detail: str = "Validation failed"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)

def handle_database_errors(func: Callable) -> Callable:
    """Decorator to handle database errors"""
    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except HTTPException:
            raise
        except Exception as e:
            raise DatabaseError(f"Database operation failed: {str(e)}")
    return wrapper


# Domain errors raised below the HTTP layer

class BillingError(Exception):
    """Base class for billing subsystem errors"""


class CircuitOpenError(BillingError):
    def __init__(self, name: str = "circuit"):
        super().__init__(f"Circuit breaker '{name}' is OPEN - service unavailable")
        self.name = name


class RazorpayError(BillingError):
    """A failed call to the Razorpay API"""
    def __init__(self, description: str, *, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(description)
        self.description = description
        self.status_code = status_code
        self.code = code or "RAZORPAY_ERROR"


class RefundError(BillingError):
    """A refund request that can never succeed as submitted"""


class NonRetryableJobError(BillingError):
    """A job failure that indicates a defect rather than a transient fault"""


class UnknownJobTypeError(NonRetryableJobError):
    def __init__(self, job_type: str):
        super().__init__(f"Unknown job type: {job_type}")
        self.job_type = job_type


class InvalidJobPayloadError(NonRetryableJobError):
    pass


class WebhookPayloadError(NonRetryableJobError):
    """A webhook event lacks an entity its handler requires; redelivering it cannot help"""


class UnknownSubscriptionError(BillingError):
    """A webhook names a subscription that isn't stored locally yet"""
