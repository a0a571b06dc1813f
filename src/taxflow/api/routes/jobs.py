"""Job status polling endpoint."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from taxflow.db.base import as_utc
from taxflow.dependencies import get_db
from taxflow.errors.exceptions import NotFoundError
from taxflow.models.job import JobStatusModel
from taxflow.repositories.job_repo import JobRepository

router = APIRouter(tags=["Jobs"])


@router.get("/jobs/{job_id}")
async def get_job_status(
    job_id: str,
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await JobRepository(db).get(job_id)
    if not row:
        raise NotFoundError("Job", job_id)

    return JobStatusModel(
        job_id=row.job_id,
        queue_name=row.queue_name,
        job_type=row.job_type,
        status=row.status,
        tenant_id=row.tenant_id,
        retry_count=row.retry_count,
        run_at=as_utc(row.run_at),
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
        trace_id=row.trace_id,
        result=row.result,
        errors=row.errors,
    ).model_dump(mode="json", exclude_none=True)
