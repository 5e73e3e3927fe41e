from typing import List, Any, Dict, Tuple
from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, and_, or_

from billingsync.crud.base import CRUDBase
from billingsync.models.base import utc_now
from billingsync.models.job import Job, JobStatus
from billingsync.schemas.job import JobCreate
from pydantic import BaseModel


class CRUDJob(CRUDBase[Job, JobCreate, BaseModel]):
    async def get_due(self, db: AsyncSession, *, now: datetime, limit: int = 10) -> List[Job]:
        """Pending jobs whose next attempt time has arrived, oldest first"""
        result = await db.execute(
            select(self.model)
            .where(
                and_(
                    self.model.status == JobStatus.PENDING,
                    self.model.next_attempt_at <= now,
                )
            )
            .order_by(self.model.next_attempt_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def claim(self, db: AsyncSession, job_id: Any) -> bool:
        """pending -> processing; False when another worker got there first"""
        result = await db.execute(
            update(self.model)
            .where(and_(self.model.id == job_id, self.model.status == JobStatus.PENDING))
            .values(status=JobStatus.PROCESSING, updated_at=utc_now())
        )
        return result.rowcount > 0

    async def set_fields(self, db: AsyncSession, job_id: Any, values: Dict[str, Any]) -> None:
        values = {**values, "updated_at": utc_now()}
        await db.execute(update(self.model).where(self.model.id == job_id).values(**values))

    async def reclaim_stale(self, db: AsyncSession, *, stale_before: datetime, now: datetime) -> Tuple[int, int]:
        """
        Recover jobs stuck in processing (worker died mid-job).

        The lost run counts as a failed attempt: jobs with retries left go back
        to pending with ``retry_count`` bumped, the rest are failed. Returns
        ``(reclaimed, failed)``.
        """
        stale = and_(
            self.model.status == JobStatus.PROCESSING,
            self.model.updated_at <= stale_before,
        )
        exhausted = await db.execute(
            update(self.model)
            .where(and_(stale, self.model.retry_count >= self.model.max_retries))
            .values(
                status=JobStatus.FAILED,
                failed_at=now,
                error="Worker stopped while processing; retries exhausted",
                updated_at=utc_now(),
            )
        )
        reclaimed = await db.execute(
            update(self.model)
            .where(stale)
            .values(
                status=JobStatus.PENDING,
                retry_count=self.model.retry_count + 1,
                next_attempt_at=now,
                error="Worker stopped while processing",
                updated_at=utc_now(),
            )
        )
        return reclaimed.rowcount or 0, exhausted.rowcount or 0

    async def prune(self, db: AsyncSession, *, older_than: datetime) -> int:
        """Delete completed/failed jobs past their retention window"""
        return await self.remove_where(
            db,
            or_(
                and_(self.model.status == JobStatus.COMPLETED, self.model.completed_at < older_than),
                and_(self.model.status == JobStatus.FAILED, self.model.failed_at < older_than),
            ),
        )


job_crud = CRUDJob(Job)
