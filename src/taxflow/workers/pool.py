"""Fixed-size pool of asyncio tasks pulling jobs from a named queue."""

import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taxflow.config import settings
from taxflow.logging_config import bind_job_context, clear_log_context
from taxflow.workers.base import WorkerContext
from taxflow.workers.queue import WEBHOOK_QUEUE, JobQueue, QueuedJob
from taxflow.workers.registry import get_worker

logger = logging.getLogger(__name__)


class WorkerPool:
    """Runs ``concurrency`` consumers; each handles one job at a time.

    Jobs from the same queue run in parallel with no ordering between them.
    A failing job never stops its consumer.
    """

    def __init__(
        self,
        queue: JobQueue,
        session_factory: async_sessionmaker[AsyncSession],
        context: WorkerContext,
        queue_name: str = WEBHOOK_QUEUE,
        concurrency: int | None = None,
        poll_interval: float | None = None,
    ):
        self.queue = queue
        self.session_factory = session_factory
        self.context = context
        self.queue_name = queue_name
        self.concurrency = concurrency or settings.worker_concurrency
        self.poll_interval = poll_interval or settings.worker_poll_interval
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._consume(i), name=f"{self.queue_name}-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.info("Worker pool started (queue=%s, concurrency=%d)", self.queue_name, self.concurrency)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Worker pool stopped (queue=%s)", self.queue_name)

    async def run_once(self) -> bool:
        """Handle a single due job, if any. Returns True if one ran."""
        job = await self.queue.pop_due(self.queue_name)
        if job is None:
            return False
        await self._handle(job)
        return True

    async def drain(self, max_jobs: int = 1000) -> int:
        """Run due jobs until none remain or ``max_jobs`` have run."""
        count = 0
        while count < max_jobs and await self.run_once():
            count += 1
        return count

    async def _consume(self, index: int) -> None:
        while True:
            try:
                job = await self.queue.dequeue(self.queue_name, timeout=self.poll_interval)
                if job is not None:
                    await self._handle(job)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("Worker %d on %s errored: %s", index, self.queue_name, exc)
                await asyncio.sleep(self.poll_interval)

    async def _handle(self, job: QueuedJob) -> None:
        worker = get_worker(job.job_type, self.context)
        if worker is None:
            logger.error("No worker registered for job type %s (job=%s)", job.job_type, job.job_id)
            return

        bind_job_context(job.job_id, job.job_type)
        try:
            async with self.session_factory() as session:
                await worker.execute(job.job_id, job.payload, session)
        except Exception as exc:
            logger.exception("Job %s (type=%s) could not be completed: %s", job.job_id, job.job_type, exc)
        finally:
            clear_log_context()
