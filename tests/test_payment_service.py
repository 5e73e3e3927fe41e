from datetime import timedelta

import pytest

from billingsync.core.exceptions import ForbiddenError, NotFoundError, RazorpayError, RefundError
from billingsync.models import Job, JobStatus, Payment, PaymentStatus, Subscription, SubscriptionStatus, SubscriptionTier, User, utc_now
from billingsync.schemas.auth import TokenData
from billingsync.schemas.job import RefundProcessPayload
from billingsync.services.payment_service import PaymentService


@pytest.fixture
def payments(container):
    return container.payment_service


@pytest.fixture
async def paid(make_user, make_subscription, make_payment):
    user = await make_user()
    subscription = await make_subscription(user, "sub_1")
    payment = await make_payment(subscription, "pay_1", amount=49900)
    return user, subscription, payment


async def test_full_refund_cancels_subscription_and_downgrades(payments, razorpay, paid, fetch):
    user, subscription, _ = paid

    response = await payments.refund_payment(RefundProcessPayload(payment_id="pay_1", reason="requested_by_customer"))

    assert response.success and not response.queued
    assert response.refund.amount == 49900
    assert response.payment.status == PaymentStatus.REFUNDED
    assert response.payment.remaining_amount == 0

    [payment] = await fetch(Payment, razorpay_payment_id="pay_1")
    assert payment.status == PaymentStatus.REFUNDED
    assert payment.refund_amount == 49900
    assert payment.refund_reason == "requested_by_customer"
    assert payment.notes["refund"]["razorpay_refund_id"] == response.refund.id

    [stored] = await fetch(Subscription, id=subscription.id)
    assert stored.status == SubscriptionStatus.CANCELLED
    assert stored.meta_data["cancellation_reason"] == "Full refund processed"
    [stored_user] = await fetch(User, id=user.id)
    assert stored_user.subscription_tier == SubscriptionTier.FREE
    assert razorpay.calls == ["create_refund", "cancel_subscription"]


async def test_partial_refunds_accumulate(payments, razorpay, paid, fetch):
    user, subscription, _ = paid

    first = await payments.refund_payment(RefundProcessPayload(payment_id="pay_1", amount=10000))
    second = await payments.refund_payment(RefundProcessPayload(payment_id="pay_1", amount=15000))

    assert first.payment.total_refunded == 10000
    assert second.payment.total_refunded == 25000
    assert second.payment.remaining_amount == 24900

    [payment] = await fetch(Payment, razorpay_payment_id="pay_1")
    assert payment.status == PaymentStatus.CAPTURED
    assert payment.refund_amount == 25000
    [stored] = await fetch(Subscription, id=subscription.id)
    assert stored.status == SubscriptionStatus.ACTIVE
    [stored_user] = await fetch(User, id=user.id)
    assert stored_user.subscription_tier == SubscriptionTier.PRO
    assert "cancel_subscription" not in razorpay.calls


async def test_refund_over_remaining_amount_is_rejected(payments, razorpay, paid):
    await payments.refund_payment(RefundProcessPayload(payment_id="pay_1", amount=40000))

    with pytest.raises(RefundError, match="exceeds"):
        await payments.refund_payment(RefundProcessPayload(payment_id="pay_1", amount=10000))
    assert razorpay.calls == ["create_refund"]


async def test_concurrent_partial_refunds_never_exceed_payment_amount(payments, paid, fetch, monkeypatch):
    await payments.refund_payment(RefundProcessPayload(payment_id="pay_1", amount=30000))
    # a second request that validated against the row before the first one was applied
    monkeypatch.setattr(PaymentService, "_validate_refund", staticmethod(lambda payment, amount: amount))

    response = await payments.refund_payment(RefundProcessPayload(payment_id="pay_1", amount=30000))

    assert response.payment.total_refunded == 49900
    assert response.payment.remaining_amount == 0
    [payment] = await fetch(Payment, razorpay_payment_id="pay_1")
    assert payment.refund_amount == payment.amount
    assert payment.status == PaymentStatus.REFUNDED


async def test_refunded_payment_cannot_be_refunded_again(payments, paid):
    await payments.refund_payment(RefundProcessPayload(payment_id="pay_1"))

    with pytest.raises(RefundError, match="already been refunded"):
        await payments.refund_payment(RefundProcessPayload(payment_id="pay_1"))


async def test_failed_payment_is_not_refundable(payments, make_user, make_subscription, make_payment):
    user = await make_user()
    subscription = await make_subscription(user, "sub_1")
    await make_payment(subscription, "pay_failed", status=PaymentStatus.FAILED)

    with pytest.raises(RefundError, match="not eligible"):
        await payments.refund_payment(RefundProcessPayload(payment_id="pay_failed"))


async def test_unknown_payment_raises_not_found(payments):
    with pytest.raises(NotFoundError):
        await payments.refund_payment(RefundProcessPayload(payment_id="pay_nope"))


async def test_provider_rejection_is_a_refund_error(payments, razorpay, paid, fetch):
    razorpay.fail_with = RazorpayError("The payment has been fully refunded already", status_code=400)

    with pytest.raises(RefundError, match="Razorpay rejected"):
        await payments.refund_payment(RefundProcessPayload(payment_id="pay_1"))
    assert await fetch(Job) == []


async def test_provider_outage_queues_refund_job(container, payments, razorpay, paid, fetch, backdate):
    razorpay.fail_with = RazorpayError("Service unavailable", status_code=503)

    response = await payments.refund_payment(RefundProcessPayload(payment_id="pay_1", reason="duplicate"))

    assert response.success and response.queued
    [job] = await fetch(Job)
    assert job.type == "refund_process"
    assert job.payload["amount"] == 49900
    assert job.payload["reason"] == "duplicate"
    [payment] = await fetch(Payment, razorpay_payment_id="pay_1")
    assert payment.refund_amount == 0

    # provider recovers; the queued job completes the refund
    razorpay.fail_with = None
    await backdate(Job, job.id, next_attempt_at=utc_now() - timedelta(seconds=1))
    result = await container.retry_handler.process_pending_jobs()

    assert result.completed == 1
    [payment] = await fetch(Payment, razorpay_payment_id="pay_1")
    assert payment.status == PaymentStatus.REFUNDED


async def test_queued_refund_that_became_invalid_fails_without_retry(container, payments, paid, make_job, fetch):
    await payments.refund_payment(RefundProcessPayload(payment_id="pay_1"))
    job = await make_job("refund_process", {"payment_id": "pay_1", "amount": 100}, max_retries=5)

    result = await container.retry_handler.process_pending_jobs()

    assert result.failed == 1
    [stored] = await fetch(Job, id=job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.retry_count == 0
    assert "already been refunded" in stored.error


async def test_get_payment_enforces_ownership(payments, paid, make_user):
    user, _, _ = paid
    stranger = await make_user("stranger@example.com")

    owned = await payments.get_payment("pay_1", TokenData(user_id=str(user.id)))
    assert owned.razorpay_payment_id == "pay_1"
    assert owned.refund_percentage == 0.0

    as_admin = await payments.get_payment("pay_1", TokenData(user_id=str(stranger.id), role="admin"))
    assert as_admin.amount == 49900

    with pytest.raises(ForbiddenError):
        await payments.get_payment("pay_1", TokenData(user_id=str(stranger.id)))


async def test_payment_history_pages_and_filters(payments, make_user, make_subscription, make_payment, backdate):
    user = await make_user()
    subscription = await make_subscription(user, "sub_1")
    for i in range(3):
        await make_payment(subscription, f"pay_ok_{i}")
    failed = await make_payment(subscription, "pay_failed", status=PaymentStatus.FAILED)
    await backdate(Payment, failed.id, created_at=utc_now() - timedelta(days=40))

    other = await make_user("other@example.com")
    await make_payment(await make_subscription(other, "sub_2"), "pay_other")

    first_page = await payments.get_payment_history(user.id, page=1, limit=2)
    assert first_page.total == 4
    assert first_page.total_pages == 2
    assert first_page.has_next_page and not first_page.has_prev_page
    assert len(first_page.payments) == 2

    only_failed = await payments.get_payment_history(user.id, status=PaymentStatus.FAILED)
    assert [p.razorpay_payment_id for p in only_failed.payments] == ["pay_failed"]

    recent = await payments.get_payment_history(user.id, start_date=utc_now() - timedelta(days=7))
    assert recent.total == 3
    assert "pay_other" not in [p.razorpay_payment_id for p in recent.payments]
