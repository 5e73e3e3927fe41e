from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from billingsync.crud.base import CRUDBase
from billingsync.models.payment import Payment
from billingsync.schemas.payment import PaymentCreate
from pydantic import BaseModel


class CRUDPayment(CRUDBase[Payment, PaymentCreate, BaseModel]):
    async def get_by_razorpay_id(
        self,
        db: AsyncSession,
        razorpay_payment_id: str,
        *,
        for_update: bool = False
    ) -> Optional[Payment]:
        query = select(self.model).where(self.model.razorpay_payment_id == razorpay_payment_id)
        if for_update:
            # row lock on Postgres so concurrent refunds apply one after the other
            query = query.with_for_update()
        result = await db.execute(query)
        return result.scalar_one_or_none()


payment_crud = CRUDPayment(Payment)
