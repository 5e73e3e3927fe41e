from typing import Optional, Any
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import update, and_

from billingsync.crud.base import CRUDBase
from billingsync.models.base import utc_now
from billingsync.models.user import User, SubscriptionTier
from pydantic import BaseModel


class CRUDUser(CRUDBase[User, BaseModel, BaseModel]):
    async def upgrade_to_pro(self, db: AsyncSession, user_id: Any, subscription_id: Any, *, billed: bool = False) -> Optional[User]:
        """Grant pro access and point the user at this subscription"""
        values = {
            "subscription_tier": SubscriptionTier.PRO,
            "subscription_id": subscription_id,
        }
        if billed:
            values["last_billing_at"] = utc_now()
        return await self.update_by_id(db, id=user_id, obj_in=values, raise_if_not_found=False)

    async def downgrade_to_free(self, db: AsyncSession, user_id: Any, subscription_id: Any) -> bool:
        """
        Drop to free and clear the subscription back-reference, but only while
        the user still points at ``subscription_id``. Ending an old
        subscription must not strip access granted by a newer one.
        """
        result = await db.execute(
            update(self.model)
            .where(and_(self.model.id == user_id, self.model.subscription_id == subscription_id))
            .values(subscription_tier=SubscriptionTier.FREE, subscription_id=None, updated_at=utc_now())
        )
        return result.rowcount > 0


user_crud = CRUDUser(User)
