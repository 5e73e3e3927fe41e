from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from typing import Optional
from datetime import datetime

from billingsync.crud.base import CRUDBase
from billingsync.models.processed_webhook import ProcessedWebhook
from billingsync.schemas.webhook import ProcessedWebhookCreate
from pydantic import BaseModel


class CRUDProcessedWebhook(CRUDBase[ProcessedWebhook, ProcessedWebhookCreate, BaseModel]):
    async def get_by_webhook_id(self, db: AsyncSession, webhook_id: str) -> Optional[ProcessedWebhook]:
        result = await db.execute(
            select(self.model).where(self.model.webhook_id == webhook_id)
        )
        return result.scalar_one_or_none()

    async def prune(self, db: AsyncSession, *, older_than: datetime) -> int:
        """Drop ledger rows outside the anti-replay window"""
        return await self.remove_where(db, self.model.processed_at < older_than)


processed_webhook_crud = CRUDProcessedWebhook(ProcessedWebhook)
