import hashlib
import hmac
import json
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from billingsync.core.circuit_breaker import CircuitBreaker, CircuitBreakerOptions
from billingsync.core.container import build_container
from billingsync.core.database import UnitOfWork, init_db
from billingsync.core.exceptions import RazorpayError
from billingsync.models import Job, Payment, PaymentStatus, Subscription, SubscriptionStatus, SubscriptionTier, User, utc_now
from billingsync.services.razorpay_service import RazorpayService

WEBHOOK_SECRET = "whsec_test"


class FakeClock:
    """Monotonic clock the tests advance by hand"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRazorpayService(RazorpayService):
    """In-memory Razorpay: set ``fail_with`` to make every call raise"""

    def __init__(self):
        super().__init__(key_id="rzp_test", key_secret="secret", webhook_secret=WEBHOOK_SECRET)
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.payments: Dict[str, Dict[str, Any]] = {}
        self.calls: List[str] = []
        self.fail_with: Optional[Exception] = None
        self._counter = 0

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter}"

    def _record(self, name: str) -> None:
        self.calls.append(name)
        if self.fail_with is not None:
            raise self.fail_with

    async def create_customer(self, name, email, contact=None, notes=None):
        self._record("create_customer")
        return {"id": self._next_id("cust"), "name": name, "email": email}

    async def create_subscription(self, plan_id, customer_id, total_count, notes=None):
        self._record("create_subscription")
        sub_id = self._next_id("sub")
        data = {"id": sub_id, "plan_id": plan_id, "customer_id": customer_id, "status": "created",
                "short_url": f"https://rzp.io/i/{sub_id}", "notes": notes or {}}
        self.subscriptions[sub_id] = data
        return data

    async def fetch_subscription(self, subscription_id):
        self._record("fetch_subscription")
        if subscription_id not in self.subscriptions:
            raise RazorpayError("The id provided does not exist", status_code=400, code="BAD_REQUEST_ERROR")
        return self.subscriptions[subscription_id]

    async def cancel_subscription(self, subscription_id, cancel_at_cycle_end=False):
        self._record("cancel_subscription")
        data = self.subscriptions.setdefault(subscription_id, {"id": subscription_id})
        data["status"] = "active" if cancel_at_cycle_end else "cancelled"
        return data

    async def fetch_payment(self, payment_id):
        self._record("fetch_payment")
        return self.payments[payment_id]

    async def create_refund(self, payment_id, amount=None, speed="normal", notes=None):
        self._record("create_refund")
        return {"id": self._next_id("rfnd"), "amount": amount, "currency": "INR",
                "status": "processed", "speed_requested": speed}

    def provider_subscription(self, sub_id: str, status: str, **extra) -> Dict[str, Any]:
        data = {"id": sub_id, "status": status, "current_start": 1_700_000_000,
                "current_end": 1_702_592_000, "updated_at": 1_700_000_100}
        data.update(extra)
        self.subscriptions[sub_id] = data
        return data


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def charged_event(sub_id: str = "sub_1", pay_id: str = "pay_1", created_at: int = 1_700_000_500, **sub_fields) -> Dict[str, Any]:
    subscription = {"id": sub_id, "status": "active", "plan_id": "plan_pro_monthly",
                    "current_start": 1_700_000_000, "current_end": 1_702_592_000, "notes": {}}
    subscription.update(sub_fields)
    return {
        "entity": "event",
        "account_id": "acc_1",
        "event": "subscription.charged",
        "contains": ["subscription", "payment"],
        "created_at": created_at,
        "payload": {
            "subscription": {"entity": subscription},
            "payment": {"entity": {"id": pay_id, "amount": 49900, "currency": "INR", "status": "captured",
                                   "order_id": "order_1", "method": "card", "created_at": created_at}},
        },
    }


def subscription_event(event: str, sub_id: str = "sub_1", created_at: int = 1_700_000_600) -> Dict[str, Any]:
    return {
        "entity": "event",
        "account_id": "acc_1",
        "event": event,
        "contains": ["subscription"],
        "created_at": created_at,
        "payload": {"subscription": {"entity": {"id": sub_id, "status": event.split(".")[1],
                                                 "current_start": 1_700_000_000, "current_end": 1_702_592_000}}},
    }


def payment_failed_event(sub_id: str = "sub_1", pay_id: str = "pay_fail_1", created_at: int = 1_700_000_700) -> Dict[str, Any]:
    return {
        "entity": "event",
        "account_id": "acc_1",
        "event": "payment.failed",
        "contains": ["payment"],
        "created_at": created_at,
        "payload": {"payment": {"entity": {"id": pay_id, "amount": 49900, "currency": "INR", "status": "failed",
                                           "subscription_id": sub_id, "error_reason": "payment_declined",
                                           "created_at": created_at}}},
    }


def as_body(event: Dict[str, Any]) -> bytes:
    return json.dumps(event).encode()


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def razorpay():
    return FakeRazorpayService()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def razorpay_breaker(clock):
    return CircuitBreaker(CircuitBreakerOptions(failure_threshold=5, timeout=60, monitoring_period=300), name="razorpay", clock=clock)


@pytest.fixture
def container(session_factory, razorpay, razorpay_breaker, clock):
    container = build_container(
        session_factory,
        razorpay,
        razorpay_breaker=razorpay_breaker,
        database_breaker=CircuitBreaker(CircuitBreakerOptions(failure_threshold=3, timeout=30, monitoring_period=180), name="database", clock=clock),
    )

    async def no_sleep(_delay):
        return None

    container.retry_handler._sleep = no_sleep
    return container


@pytest.fixture
def make_user(session_factory):
    async def _make_user(email: str = "user@example.com", **fields) -> User:
        async with UnitOfWork(session_factory) as uow:
            user = User(email=email, name=fields.pop("name", "Test User"), **fields)
            uow.session.add(user)
            await uow.session.flush()
        return user
    return _make_user


@pytest.fixture
def make_subscription(session_factory):
    async def _make_subscription(user: User, razorpay_id: str = "sub_1", status=SubscriptionStatus.ACTIVE, link_user: bool = True, **fields) -> Subscription:
        async with UnitOfWork(session_factory) as uow:
            subscription = Subscription(
                user_id=user.id,
                razorpay_subscription_id=razorpay_id,
                plan_id="plan_pro_monthly",
                status=status,
                **fields,
            )
            uow.session.add(subscription)
            await uow.session.flush()
            if link_user:
                await uow.session.execute(
                    update(User).where(User.id == user.id).values(
                        subscription_tier=SubscriptionTier.PRO, subscription_id=subscription.id
                    )
                )
        return subscription
    return _make_subscription


@pytest.fixture
def make_payment(session_factory):
    async def _make_payment(subscription: Subscription, razorpay_id: str = "pay_1", amount: int = 49900,
                            status=PaymentStatus.CAPTURED, **fields) -> Payment:
        async with UnitOfWork(session_factory) as uow:
            payment = Payment(
                user_id=subscription.user_id,
                subscription_id=subscription.id,
                razorpay_payment_id=razorpay_id,
                amount=amount,
                status=status,
                **fields,
            )
            uow.session.add(payment)
            await uow.session.flush()
        return payment
    return _make_payment


@pytest.fixture
def backdate(session_factory):
    """Force updated_at on a row (onupdate would otherwise overwrite it)"""
    async def _backdate(model, row_id, days: float = 0, **values) -> None:
        async with UnitOfWork(session_factory) as uow:
            await uow.session.execute(
                update(model).where(model.id == row_id).values(
                    updated_at=utc_now() - timedelta(days=days), **values
                )
            )
    return _backdate


@pytest.fixture
def fetch(session_factory):
    async def _fetch(model, **filters):
        from sqlalchemy import select
        async with session_factory() as db:
            query = select(model)
            for field, value in filters.items():
                query = query.where(getattr(model, field) == value)
            result = await db.execute(query)
            return list(result.scalars().all())
    return _fetch


@pytest.fixture
def make_job(session_factory):
    async def _make_job(job_type: str, payload: Dict[str, Any], max_retries: int = 3,
                        next_attempt_at: Optional[datetime] = None) -> Job:
        async with UnitOfWork(session_factory) as uow:
            job = Job(type=job_type, payload=payload, max_retries=max_retries,
                      next_attempt_at=next_attempt_at or utc_now() - timedelta(seconds=1))
            uow.session.add(job)
            await uow.session.flush()
        return job
    return _make_job
