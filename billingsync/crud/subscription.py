from typing import Optional, List, Sequence
from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_, or_

from billingsync.crud.base import CRUDBase
from billingsync.models.subscription import Subscription, SubscriptionStatus, LIVE_STATUSES
from billingsync.schemas.subscription import SubscriptionCreate
from pydantic import BaseModel


class CRUDSubscription(CRUDBase[Subscription, SubscriptionCreate, BaseModel]):
    async def get_by_razorpay_id(self, db: AsyncSession, razorpay_subscription_id: str) -> Optional[Subscription]:
        result = await db.execute(
            select(self.model).where(self.model.razorpay_subscription_id == razorpay_subscription_id)
        )
        return result.scalar_one_or_none()

    async def get_latest_for_user(
        self,
        db: AsyncSession,
        user_id,
        statuses: Optional[Sequence[SubscriptionStatus]] = None
    ) -> Optional[Subscription]:
        """Most recent subscription for a user, optionally restricted to some statuses"""
        query = select(self.model).where(self.model.user_id == user_id)
        if statuses:
            query = query.where(self.model.status.in_(statuses))
        result = await db.execute(query.order_by(self.model.created_at.desc()).limit(1))
        return result.scalar_one_or_none()

    async def get_live(self, db: AsyncSession) -> List[Subscription]:
        """Subscriptions the reconciliation job should check against Razorpay"""
        result = await db.execute(
            select(self.model)
            .where(
                and_(
                    self.model.status.in_(LIVE_STATUSES),
                    self.model.razorpay_subscription_id.is_not(None),
                    self.model.razorpay_subscription_id != "",
                )
            )
            .order_by(self.model.created_at.asc())
        )
        return list(result.scalars().all())

    async def get_grace_period_expired(
        self,
        db: AsyncSession,
        *,
        now: datetime,
        stale_before: datetime
    ) -> List[Subscription]:
        """past_due subscriptions whose grace window has run out.

        Rows with an explicit grace_period_end use it; older rows without one
        fall back to how long ago they were last updated.
        """
        result = await db.execute(
            select(self.model).where(
                and_(
                    self.model.status == SubscriptionStatus.PAST_DUE,
                    or_(
                        self.model.grace_period_end <= now,
                        and_(
                            self.model.grace_period_end.is_(None),
                            self.model.updated_at <= stale_before,
                        ),
                    ),
                )
            )
        )
        return list(result.scalars().all())


subscription_crud = CRUDSubscription(Subscription)
