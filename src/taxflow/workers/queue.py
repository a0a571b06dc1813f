"""Delayed job queue backed by Redis sorted sets, with an in-process fallback.

Jobs are scored by the epoch second at which they become due. A consumer
claims a due job by removing it from the set; with Redis only the caller whose
``ZREM`` succeeds owns the job, so concurrent workers never run the same push
twice. Delivery is still at-least-once overall (the sweep and manual retries
may push the same logical work again), which the workers tolerate.
"""

import asyncio
import heapq
import itertools
import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from taxflow.errors.exceptions import QueueEnqueueError
from taxflow.models.enums import JobStatus
from taxflow.repositories.job_repo import JobRepository
from taxflow.services.id_generator import generate_id

logger = logging.getLogger(__name__)

WEBHOOK_QUEUE = "webhooks"

# Job names on the webhooks queue
DISPATCH_EVENT_JOB = "deliver-webhook-event"
DELIVER_WEBHOOK_JOB = "deliver-webhook"
RETRY_DELIVERY_JOB = "retry-webhook-delivery"


@dataclass(frozen=True)
class JobHandle:
    job_id: str
    queue_name: str
    job_type: str
    run_at: datetime


@dataclass
class QueuedJob:
    job_id: str
    queue_name: str
    job_type: str
    payload: dict = field(default_factory=dict)
    run_at: float = 0.0

    def to_json(self) -> str:
        return json.dumps(
            {
                "job_id": self.job_id,
                "queue_name": self.queue_name,
                "job_type": self.job_type,
                "payload": self.payload,
                "run_at": self.run_at,
            },
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> "QueuedJob":
        return cls(**json.loads(raw))


class JobQueue(ABC):
    """Named delayed queues."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock

    @abstractmethod
    async def push(self, job: QueuedJob) -> None:
        ...

    @abstractmethod
    async def pop_due(self, queue_name: str) -> QueuedJob | None:
        """Claim the earliest job whose run-at time has passed, if any."""
        ...

    @abstractmethod
    async def size(self, queue_name: str) -> int:
        ...

    async def enqueue(
        self,
        queue_name: str,
        job_name: str,
        payload: dict,
        delay: float | None = None,
        job_id: str | None = None,
    ) -> JobHandle:
        run_at = self.clock() + max(delay or 0.0, 0.0)
        job = QueuedJob(
            job_id=job_id or generate_id("job_"),
            queue_name=queue_name,
            job_type=job_name,
            payload=payload,
            run_at=run_at,
        )
        await self.push(job)
        return JobHandle(
            job_id=job.job_id,
            queue_name=queue_name,
            job_type=job_name,
            run_at=datetime.fromtimestamp(run_at, tz=timezone.utc),
        )

    async def dequeue(self, queue_name: str, timeout: float = 1.0, poll_interval: float = 0.1) -> QueuedJob | None:
        """Wait up to ``timeout`` seconds for a due job."""
        deadline = time.monotonic() + timeout
        while True:
            job = await self.pop_due(queue_name)
            if job is not None:
                return job
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(poll_interval, remaining))

    async def close(self) -> None:
        return None


class InProcessJobQueue(JobQueue):
    """Heap-per-queue implementation for local mode and tests."""

    def __init__(self, clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self._heaps: dict[str, list[tuple[float, int, QueuedJob]]] = {}
        self._seq = itertools.count()

    async def push(self, job: QueuedJob) -> None:
        heap = self._heaps.setdefault(job.queue_name, [])
        heapq.heappush(heap, (job.run_at, next(self._seq), job))

    async def pop_due(self, queue_name: str) -> QueuedJob | None:
        heap = self._heaps.get(queue_name)
        if not heap or heap[0][0] > self.clock():
            return None
        return heapq.heappop(heap)[2]

    async def size(self, queue_name: str) -> int:
        return len(self._heaps.get(queue_name, []))

    def pending(self, queue_name: str) -> list[QueuedJob]:
        """Snapshot of queued jobs in run-at order."""
        return [entry[2] for entry in sorted(self._heaps.get(queue_name, []))]


class RedisJobQueue(JobQueue):
    """Sorted-set implementation: one key per queue, scored by run-at epoch."""

    def __init__(self, redis, prefix: str = "taxflow:queue", clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self.redis = redis
        self.prefix = prefix

    def _key(self, queue_name: str) -> str:
        return f"{self.prefix}:{queue_name}"

    async def push(self, job: QueuedJob) -> None:
        await self.redis.zadd(self._key(job.queue_name), {job.to_json(): job.run_at})

    async def pop_due(self, queue_name: str) -> QueuedJob | None:
        key = self._key(queue_name)
        members = await self.redis.zrangebyscore(key, "-inf", self.clock(), start=0, num=1)
        if not members:
            return None
        member = members[0]
        if await self.redis.zrem(key, member) != 1:
            # Claimed by another consumer between the range and the removal
            return None
        return QueuedJob.from_json(member)

    async def size(self, queue_name: str) -> int:
        return await self.redis.zcard(self._key(queue_name))

    async def close(self) -> None:
        await self.redis.close()


async def enqueue_job(
    session: AsyncSession,
    queue: JobQueue,
    queue_name: str,
    job_type: str,
    payload: dict,
    delay: float | None = None,
    tenant_id: str | None = None,
    trace_id: str | None = None,
) -> JobHandle:
    """Record a job in the ledger, commit, then push it onto the queue.

    The commit happens before the push so a worker never pops a job id (or an
    event/delivery it references) that is not yet visible. Commits whatever
    else the session holds.

    Raises:
        QueueEnqueueError: the push failed; the ledger row is marked failed.
    """
    job_id = generate_id("job_")
    run_at = datetime.fromtimestamp(queue.clock() + max(delay or 0.0, 0.0), tz=timezone.utc)

    repo = JobRepository(session)
    row = await repo.create(
        job_id=job_id,
        queue_name=queue_name,
        job_type=job_type,
        tenant_id=tenant_id,
        status=JobStatus.QUEUED,
        payload=payload,
        retry_count=payload.get("_retry_count", 0),
        run_at=run_at,
        trace_id=trace_id or f"trc_{job_id[4:]}",
    )
    await session.commit()

    try:
        handle = await queue.enqueue(queue_name, job_type, payload, delay=delay, job_id=job_id)
    except Exception as exc:
        logger.error("Failed to enqueue %s job %s on %s: %s", job_type, job_id, queue_name, exc)
        row.status = JobStatus.FAILED
        row.errors = [
            {
                "code": "QUEUE_ENQUEUE_FAILURE",
                "message": str(exc),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        ]
        await session.commit()
        raise QueueEnqueueError(queue_name, job_type, str(exc)) from exc

    logger.debug("Enqueued %s job %s on %s (delay=%s)", job_type, job_id, queue_name, delay)
    return handle
