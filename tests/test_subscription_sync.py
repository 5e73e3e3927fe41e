from datetime import timedelta

import pytest

from billingsync.jobs.subscription_sync import SubscriptionSyncJob
from billingsync.models import Job, Subscription, SubscriptionStatus, SubscriptionTier, User, utc_now
from billingsync.schemas.sync import SyncResult


@pytest.fixture
def sync_job(container) -> SubscriptionSyncJob:
    return container.sync_job


@pytest.mark.parametrize(
    "local, provider, expected",
    [
        ("active", "active", False),
        ("active", "past_due", True),
        ("past_due", "active", True),
        ("active", "cancelled", True),
        ("past_due", "expired", True),
        ("authenticated", "cancelled", True),
        ("active", "halted", False),
        ("authenticated", "active", False),
        ("active", "paused", False),
    ],
)
def test_should_update_status(local, provider, expected):
    assert SubscriptionSyncJob.should_update_status(local, provider) is expected


async def test_missed_payment_failure_marks_past_due_and_keeps_access(sync_job, razorpay, make_user, make_subscription, fetch):
    user = await make_user()
    subscription = await make_subscription(user, "sub_1", status=SubscriptionStatus.ACTIVE)
    razorpay.provider_subscription("sub_1", "past_due")

    result = await sync_job.sync_subscriptions()

    assert result.total_subscriptions == 1
    assert result.synced_count == 1
    assert result.discrepancies_found == 1
    assert result.discrepancies[0].action == "marked_subscription_past_due"

    [stored] = await fetch(Subscription, id=subscription.id)
    assert stored.status == SubscriptionStatus.PAST_DUE
    assert stored.grace_period_end > utc_now()
    assert stored.last_sync_at is not None
    assert stored.meta_data["last_razorpay_status"] == "past_due"
    assert stored.meta_data["synced_from_razorpay"] is True

    [stored_user] = await fetch(User, id=user.id)
    assert stored_user.subscription_tier == SubscriptionTier.PRO


async def test_recovered_payment_restores_active(sync_job, razorpay, make_user, make_subscription, fetch):
    user = await make_user()
    subscription = await make_subscription(
        user, "sub_1", status=SubscriptionStatus.PAST_DUE, link_user=False,
        grace_period_end=utc_now() + timedelta(days=2),
    )
    razorpay.provider_subscription("sub_1", "active")

    result = await sync_job.sync_subscriptions()

    assert result.discrepancies[0].action == "upgraded_user_to_pro"
    [stored] = await fetch(Subscription, id=subscription.id)
    assert stored.status == SubscriptionStatus.ACTIVE
    assert stored.grace_period_end is None
    assert stored.current_period_end is not None
    [stored_user] = await fetch(User, id=user.id)
    assert stored_user.subscription_tier == SubscriptionTier.PRO
    assert stored_user.subscription_id == subscription.id


async def test_second_run_finds_nothing_to_fix(sync_job, razorpay, make_user, make_subscription):
    user = await make_user()
    await make_subscription(user, "sub_1", status=SubscriptionStatus.ACTIVE)
    razorpay.provider_subscription("sub_1", "past_due")

    first = await sync_job.sync_subscriptions()
    second = await sync_job.sync_subscriptions()

    assert first.discrepancies_found == 1
    assert second.discrepancies_found == 0
    assert second.synced_count == 1


async def test_provider_cancellation_downgrades_user(sync_job, razorpay, make_user, make_subscription, fetch):
    user = await make_user()
    subscription = await make_subscription(user, "sub_1", status=SubscriptionStatus.ACTIVE)
    razorpay.provider_subscription("sub_1", "cancelled")

    result = await sync_job.sync_subscriptions()

    assert result.discrepancies[0].action == "downgraded_user_to_free"
    [stored] = await fetch(Subscription, id=subscription.id)
    assert stored.status == SubscriptionStatus.CANCELLED
    assert stored.cancelled_at is not None
    [stored_user] = await fetch(User, id=user.id)
    assert stored_user.subscription_tier == SubscriptionTier.FREE
    assert stored_user.subscription_id is None

async def test_provider_cancellation_of_old_subscription_keeps_current_access(sync_job, razorpay, make_user, make_subscription, fetch):
    user = await make_user()
    await make_subscription(user, "sub_old", link_user=False)
    current = await make_subscription(user, "sub_new")
    razorpay.provider_subscription("sub_old", "cancelled")
    razorpay.provider_subscription("sub_new", "active")

    result = await sync_job.sync_subscriptions()

    assert [(d.subscription_id, d.action) for d in result.discrepancies] == [("sub_old", "updated_status_to_cancelled")]
    [old] = await fetch(Subscription, razorpay_subscription_id="sub_old")
    assert old.status == SubscriptionStatus.CANCELLED
    [stored_user] = await fetch(User, id=user.id)
    assert stored_user.subscription_tier == SubscriptionTier.PRO
    assert stored_user.subscription_id == current.id



async def test_unlisted_provider_status_is_left_alone(sync_job, razorpay, make_user, make_subscription, fetch):
    user = await make_user()
    subscription = await make_subscription(user, "sub_1", status=SubscriptionStatus.ACTIVE)
    razorpay.provider_subscription("sub_1", "halted")

    result = await sync_job.sync_subscriptions()

    assert result.discrepancies_found == 0
    [stored] = await fetch(Subscription, id=subscription.id)
    assert stored.status == SubscriptionStatus.ACTIVE
    assert stored.meta_data["last_razorpay_status"] == "halted"


async def test_expired_grace_period_downgrades_user(sync_job, make_user, make_subscription, backdate, fetch):
    user = await make_user()
    subscription = await make_subscription(user, "sub_1", status=SubscriptionStatus.PAST_DUE)
    await backdate(Subscription, subscription.id, days=4)

    result = SyncResult()
    await sync_job.expire_grace_periods(result)

    assert result.discrepancies_found == 1
    assert result.discrepancies[0].action == "downgraded_after_grace_period"
    [stored] = await fetch(Subscription, id=subscription.id)
    assert stored.status == SubscriptionStatus.EXPIRED_GRACE_PERIOD
    assert stored.grace_period_expired_at is not None
    [stored_user] = await fetch(User, id=user.id)
    assert stored_user.subscription_tier == SubscriptionTier.FREE

async def test_grace_expiry_of_old_subscription_keeps_current_access(sync_job, make_user, make_subscription, backdate, fetch):
    user = await make_user()
    old = await make_subscription(user, "sub_old", status=SubscriptionStatus.PAST_DUE, link_user=False)
    current = await make_subscription(user, "sub_new")
    await backdate(Subscription, old.id, days=4)

    result = SyncResult()
    await sync_job.expire_grace_periods(result)

    assert [d.action for d in result.discrepancies] == ["expired_grace_period"]
    [stored_old] = await fetch(Subscription, id=old.id)
    assert stored_old.status == SubscriptionStatus.EXPIRED_GRACE_PERIOD
    [stored_user] = await fetch(User, id=user.id)
    assert stored_user.subscription_tier == SubscriptionTier.PRO
    assert stored_user.subscription_id == current.id



async def test_grace_period_still_running_keeps_access(sync_job, make_user, make_subscription, backdate, fetch):
    user = await make_user()
    subscription = await make_subscription(user, "sub_1", status=SubscriptionStatus.PAST_DUE)
    await backdate(Subscription, subscription.id, days=1)

    result = SyncResult()
    await sync_job.expire_grace_periods(result)

    assert result.discrepancies_found == 0
    [stored_user] = await fetch(User, id=user.id)
    assert stored_user.subscription_tier == SubscriptionTier.PRO


async def test_full_sync_expires_grace_period_despite_stamping(sync_job, razorpay, make_user, make_subscription, backdate, fetch):
    user = await make_user()
    subscription = await make_subscription(user, "sub_1", status=SubscriptionStatus.PAST_DUE)
    await backdate(Subscription, subscription.id, days=4)
    razorpay.provider_subscription("sub_1", "past_due")

    result = await sync_job.sync_subscriptions()

    assert result.synced_count == 1
    assert [d.action for d in result.discrepancies] == ["downgraded_after_grace_period"]
    [stored] = await fetch(Subscription, id=subscription.id)
    assert stored.status == SubscriptionStatus.EXPIRED_GRACE_PERIOD
    [stored_user] = await fetch(User, id=user.id)
    assert stored_user.subscription_tier == SubscriptionTier.FREE


async def test_fetch_failure_is_recorded_and_queued(sync_job, make_user, make_subscription, fetch):
    user = await make_user()
    await make_subscription(user, "sub_missing", status=SubscriptionStatus.ACTIVE)
    other = await make_user("other@example.com")
    await make_subscription(other, "sub_ok", status=SubscriptionStatus.ACTIVE)
    sync_job.razorpay.provider_subscription("sub_ok", "active")

    result = await sync_job.sync_subscriptions()

    assert result.total_subscriptions == 2
    assert result.synced_count == 1
    assert result.errors_count == 1
    assert result.errors[0].subscription_id == "sub_missing"

    [job] = await fetch(Job)
    assert job.type == "subscription_sync"
    assert job.payload["subscription_id"] == "sub_missing"


async def test_non_live_subscriptions_are_not_polled(sync_job, razorpay, make_user, make_subscription):
    user = await make_user()
    await make_subscription(user, "sub_done", status=SubscriptionStatus.CANCELLED, link_user=False)

    result = await sync_job.sync_subscriptions()

    assert result.total_subscriptions == 0
    assert razorpay.calls == []


async def test_sync_report_counts_statuses(sync_job, razorpay, make_user, make_subscription):
    for i, status in enumerate([
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.EXPIRED,
        SubscriptionStatus.CREATED,
    ]):
        user = await make_user(f"user{i}@example.com")
        await make_subscription(user, f"sub_{i}", status=status, link_user=False,
                                grace_period_end=utc_now() + timedelta(days=3))
        razorpay.provider_subscription(f"sub_{i}", status.value)

    await sync_job.sync_subscriptions()
    report = await sync_job.generate_sync_report()

    assert report.total_subscriptions == 6
    assert report.active_subscriptions == 2
    assert report.past_due_subscriptions == 1
    assert report.cancelled_subscriptions == 2
    assert report.last_sync_results.total_subscriptions == 3


async def test_sync_job_type_resyncs_one_subscription(container, razorpay, make_user, make_subscription, make_job, fetch):
    user = await make_user()
    subscription = await make_subscription(user, "sub_1", status=SubscriptionStatus.ACTIVE)
    razorpay.provider_subscription("sub_1", "past_due")
    await make_job("subscription_sync", {"subscription_id": "sub_1"})

    result = await container.retry_handler.process_pending_jobs()

    assert result.completed == 1
    [stored] = await fetch(Subscription, id=subscription.id)
    assert stored.status == SubscriptionStatus.PAST_DUE
