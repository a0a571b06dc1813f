"""Base worker interface for async job processing."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from taxflow.config import settings
from taxflow.models.enums import JobStatus
from taxflow.repositories.job_repo import JobRepository
from taxflow.workers.queue import JobQueue, enqueue_job

logger = logging.getLogger(__name__)


@dataclass
class WorkerContext:
    """Shared infrastructure handed to every worker instance."""

    queue: JobQueue
    http_client: httpx.AsyncClient | None = None
    redis: object | None = None


class BaseWorker(ABC):
    """Abstract base class for job workers."""

    max_retries: int = settings.job_max_retries

    def __init__(self, context: WorkerContext):
        self.context = context

    @abstractmethod
    async def process(self, job_id: str, payload: dict, session: AsyncSession) -> dict:
        """Process a job and return a result summary stored on the job row."""
        ...

    async def execute(self, job_id: str, payload: dict, session: AsyncSession) -> None:
        """Execute the full job lifecycle: running -> process -> succeeded/failed."""
        repo = JobRepository(session)
        job = await repo.get(job_id)
        if not job:
            logger.warning("Job %s has no ledger row; skipping", job_id)
            return
        if job.status == JobStatus.SUCCEEDED:
            logger.info("Job %s already succeeded; ignoring duplicate", job_id)
            return

        retry_count = (payload or {}).get("_retry_count", 0)
        job_type, queue_name = job.job_type, job.queue_name

        job.status = JobStatus.RUNNING
        job.updated_at = datetime.now(timezone.utc)
        await session.commit()

        try:
            result = await self.process(job_id, payload, session)
        except Exception as exc:
            await session.rollback()
            await self._handle_failure(job_id, job_type, queue_name, payload, retry_count, exc, session)
            return

        job = await repo.get(job_id)
        job.status = JobStatus.SUCCEEDED
        job.result = result
        job.errors = None
        job.updated_at = datetime.now(timezone.utc)
        await session.commit()
        logger.info("Job %s succeeded (type=%s)", job_id, job.job_type)

    async def _handle_failure(
        self,
        job_id: str,
        job_type: str,
        queue_name: str,
        payload: dict,
        retry_count: int,
        exc: Exception,
        session: AsyncSession,
    ) -> None:
        logger.exception("Job %s failed (type=%s, retry=%d)", job_id, job_type, retry_count)
        job = await JobRepository(session).get(job_id)
        job.status = JobStatus.FAILED
        job.errors = [
            {
                "code": "WORKER_ERROR",
                "message": str(exc),
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "retry_count": retry_count,
            }
        ]
        job.updated_at = datetime.now(timezone.utc)
        await session.commit()

        if retry_count < self.max_retries:
            # Re-queue as a fresh ledger entry so each run keeps its own record
            await enqueue_job(
                session,
                self.context.queue,
                queue_name,
                job_type,
                {**payload, "_retry_count": retry_count + 1},
                tenant_id=job.tenant_id,
                trace_id=job.trace_id,
            )
