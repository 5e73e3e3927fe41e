import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from billingsync.core.circuit_breaker import CircuitBreaker
from billingsync.core.config import settings
from billingsync.core.database import UnitOfWork
from billingsync.crud.subscription import subscription_crud
from billingsync.crud.user import user_crud
from billingsync.models.base import utc_now
from billingsync.models.job import JobType
from billingsync.models.subscription import Subscription, SubscriptionStatus, TERMINAL_PROVIDER_STATUSES
from billingsync.schemas.job import SubscriptionSyncPayload
from billingsync.schemas.sync import SyncDiscrepancy, SyncReport, SyncResult
from billingsync.services.razorpay_service import RazorpayService
from billingsync.services.retry_handler import RetryHandler
from billingsync.utils.utils import from_unix, merge_metadata

logger = logging.getLogger(__name__)

TERMINAL_STATUS_VALUES = {s.value for s in TERMINAL_PROVIDER_STATUSES}


class SubscriptionSyncJob:
    """
    Reconciles local subscriptions with Razorpay.

    Webhooks can be lost or arrive out of order; this job polls Razorpay
    for every live subscription, corrects the documented status
    mismatches, then downgrades users whose grace period has run out.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        razorpay: RazorpayService,
        breaker: CircuitBreaker,
        retry_handler: RetryHandler,
        *,
        grace_period_days: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.razorpay = razorpay
        self.breaker = breaker
        self.retry_handler = retry_handler
        self.grace_period_days = grace_period_days if grace_period_days is not None else settings.grace_period_days
        self._clock = clock
        self.last_result: Optional[SyncResult] = None
        retry_handler.register_executor(JobType.SUBSCRIPTION_SYNC, self._sync_from_job)

    @property
    def grace_period(self) -> timedelta:
        return timedelta(days=self.grace_period_days)

    async def sync_subscriptions(self) -> SyncResult:
        logger.info("🔄 Starting subscription synchronization...")
        result = SyncResult()

        async with self.session_factory() as db:
            subscriptions = await subscription_crud.get_live(db)
        result.total_subscriptions = len(subscriptions)
        logger.info(f"📋 Found {len(subscriptions)} subscriptions to sync")

        for subscription in subscriptions:
            try:
                await self.sync_single(subscription, result)
                result.synced_count += 1
            except Exception as e:
                logger.error(f"❌ Failed to sync subscription {subscription.razorpay_subscription_id}: {e}")
                result.add_error(subscription.razorpay_subscription_id, str(e))
                try:
                    await self.retry_handler.create_retry_job(
                        JobType.SUBSCRIPTION_SYNC,
                        SubscriptionSyncPayload(
                            subscription_id=subscription.razorpay_subscription_id,
                            local_subscription_id=str(subscription.id),
                        ),
                    )
                except Exception as queue_error:
                    logger.exception(f"❌ Could not queue sync retry for {subscription.razorpay_subscription_id}: {queue_error}")

        await self.expire_grace_periods(result)

        logger.info(
            f"✅ Subscription sync completed: total={result.total_subscriptions}, synced={result.synced_count}, "
            f"discrepancies={result.discrepancies_found}, errors={result.errors_count}"
        )
        self.last_result = result
        return result

    async def sync_single(self, subscription: Subscription, result: SyncResult) -> None:
        """Fetch one subscription from Razorpay, reconcile if needed and stamp the check"""
        data = await self.breaker.execute(
            lambda: self.razorpay.fetch_subscription(subscription.razorpay_subscription_id)
        )
        if not data:
            raise ValueError("Razorpay returned no subscription data")

        razorpay_status = data.get("status") or ""

        async with UnitOfWork(self.session_factory) as uow:
            local = await subscription_crud.get(uow.session, id=subscription.id)
            local_status = local.status.value

            if self.should_update_status(local_status, razorpay_status):
                logger.warning(
                    f"⚠️ Status discrepancy for {local.razorpay_subscription_id}: "
                    f"local={local_status}, razorpay={razorpay_status}"
                )
                action = await self.reconcile(uow, local, data)
                result.add_discrepancy(
                    SyncDiscrepancy(
                        subscription_id=local.razorpay_subscription_id,
                        local_status=local_status,
                        razorpay_status=razorpay_status,
                        action=action,
                    )
                )

            stamp: Dict[str, Any] = {
                "last_sync_at": self._clock(),
                "meta_data": merge_metadata(
                    local.meta_data,
                    last_razorpay_status=razorpay_status,
                    last_sync_result="success",
                ),
            }
            # Stamping bumps updated_at, so pin an undated grace window to when it really started
            if local.status == SubscriptionStatus.PAST_DUE and local.grace_period_end is None:
                stamp["grace_period_end"] = local.updated_at + self.grace_period
            await subscription_crud.update(uow.session, db_obj=local, obj_in=stamp)

    @staticmethod
    def should_update_status(local_status: str, razorpay_status: str) -> bool:
        if local_status == razorpay_status:
            return False
        # Razorpay ending a subscription always wins
        if razorpay_status in TERMINAL_STATUS_VALUES:
            return True
        if razorpay_status == SubscriptionStatus.ACTIVE.value and local_status == SubscriptionStatus.PAST_DUE.value:
            return True
        if razorpay_status == SubscriptionStatus.PAST_DUE.value and local_status == SubscriptionStatus.ACTIVE.value:
            return True
        return False

    async def reconcile(self, uow: UnitOfWork, subscription: Subscription, data: Dict[str, Any]) -> str:
        """Apply Razorpay's status to the subscription and its user; returns the action taken"""
        now = self._clock()
        status = SubscriptionStatus(data["status"])
        values: Dict[str, Any] = {
            "status": status,
            "current_period_start": from_unix(data.get("current_start")) or subscription.current_period_start,
            "current_period_end": from_unix(data.get("current_end")) or subscription.current_period_end,
            "meta_data": merge_metadata(
                subscription.meta_data,
                synced_from_razorpay=True,
                razorpay_updated_at=(from_unix(data.get("updated_at")) or now).isoformat(),
            ),
        }

        if status in TERMINAL_PROVIDER_STATUSES:
            values["cancelled_at"] = now
            downgraded = await user_crud.downgrade_to_free(uow.session, subscription.user_id, subscription.id)
            action = "downgraded_user_to_free" if downgraded else f"updated_status_to_{status.value}"
        elif status == SubscriptionStatus.ACTIVE:
            values["grace_period_end"] = None
            await user_crud.upgrade_to_pro(uow.session, subscription.user_id, subscription.id)
            action = "upgraded_user_to_pro"
        elif status == SubscriptionStatus.PAST_DUE:
            # keep access during the grace period
            values["grace_period_end"] = now + self.grace_period
            action = "marked_subscription_past_due"
        else:
            action = f"updated_status_to_{status.value}"

        await subscription_crud.update(uow.session, db_obj=subscription, obj_in=values)
        logger.info(f"🔧 Reconciled subscription {subscription.razorpay_subscription_id}: {action}")
        return action

    async def expire_grace_periods(self, result: SyncResult) -> None:
        now = self._clock()
        async with self.session_factory() as db:
            expired = await subscription_crud.get_grace_period_expired(
                db, now=now, stale_before=now - self.grace_period
            )

        for subscription in expired:
            try:
                async with UnitOfWork(self.session_factory) as uow:
                    downgraded = await user_crud.downgrade_to_free(uow.session, subscription.user_id, subscription.id)
                    await subscription_crud.update_by_id(
                        uow.session,
                        id=subscription.id,
                        obj_in={
                            "status": SubscriptionStatus.EXPIRED_GRACE_PERIOD,
                            "grace_period_expired_at": now,
                        },
                    )
            except Exception as e:
                logger.error(f"❌ Failed to expire grace period for {subscription.razorpay_subscription_id}: {e}")
                result.add_error(subscription.razorpay_subscription_id, str(e))
                continue

            logger.warning(
                f"⏰ Grace period expired for subscription {subscription.razorpay_subscription_id}"
                f"{', user downgraded' if downgraded else ''}"
            )
            result.add_discrepancy(
                SyncDiscrepancy(
                    subscription_id=subscription.razorpay_subscription_id,
                    local_status=SubscriptionStatus.PAST_DUE.value,
                    razorpay_status="grace_period_expired",
                    action="downgraded_after_grace_period" if downgraded else "expired_grace_period",
                )
            )

    async def generate_sync_report(self) -> SyncReport:
        async with self.session_factory() as db:
            total = await subscription_crud.count(db)
            active = await subscription_crud.count(db, filters={"status": SubscriptionStatus.ACTIVE})
            past_due = await subscription_crud.count(db, filters={"status": SubscriptionStatus.PAST_DUE})
            cancelled = await subscription_crud.count(db, filters={"status": list(TERMINAL_PROVIDER_STATUSES)})

        return SyncReport(
            total_subscriptions=total,
            active_subscriptions=active,
            past_due_subscriptions=past_due,
            cancelled_subscriptions=cancelled,
            last_sync_results=self.last_result,
        )

    async def _sync_from_job(self, payload: SubscriptionSyncPayload) -> None:
        async with self.session_factory() as db:
            subscription = await subscription_crud.get_by_razorpay_id(db, payload.subscription_id)
        if subscription is None:
            logger.warning(f"⚠️ Sync job for unknown subscription {payload.subscription_id}")
            return
        await self.sync_single(subscription, SyncResult())
