"""Job ledger repository."""

from sqlalchemy import select

from taxflow.db.models.job import JobRow
from taxflow.repositories.base import BaseRepository


class JobRepository(BaseRepository[JobRow]):
    model = JobRow
    pk = "job_id"

    async def list_by_type(self, job_type: str) -> list[JobRow]:
        stmt = select(JobRow).where(JobRow.job_type == job_type).order_by(JobRow.created_at)
        return list((await self.session.execute(stmt)).scalars().all())
