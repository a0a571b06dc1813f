"""Tests for the delayed job queue and the job ledger."""

from unittest.mock import AsyncMock

import pytest

from taxflow.errors.exceptions import QueueEnqueueError
from taxflow.repositories.job_repo import JobRepository
from taxflow.workers.queue import InProcessJobQueue, QueuedJob, RedisJobQueue, enqueue_job


class BrokenQueue(InProcessJobQueue):
    async def push(self, job):
        raise ConnectionError("queue backend unavailable")


@pytest.mark.asyncio
async def test_delayed_job_not_due_until_clock_passes(queue, clock):
    await queue.enqueue("webhooks", "deliver-webhook", {"n": 1}, delay=30)
    assert await queue.pop_due("webhooks") is None
    assert await queue.size("webhooks") == 1

    clock.advance(30)
    job = await queue.pop_due("webhooks")
    assert job is not None
    assert job.payload == {"n": 1}
    assert await queue.size("webhooks") == 0


@pytest.mark.asyncio
async def test_due_jobs_pop_in_run_at_order(queue, clock):
    await queue.enqueue("webhooks", "b", {}, delay=5)
    await queue.enqueue("webhooks", "a", {})
    await queue.enqueue("webhooks", "c", {}, delay=10)
    clock.advance(10)
    order = [(await queue.pop_due("webhooks")).job_type for _ in range(3)]
    assert order == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_dequeue_times_out_when_empty(queue):
    assert await queue.dequeue("webhooks", timeout=0.01, poll_interval=0.005) is None


@pytest.mark.asyncio
async def test_queues_are_isolated_by_name(queue):
    await queue.enqueue("webhooks", "x", {})
    assert await queue.pop_due("reports") is None
    assert await queue.size("webhooks") == 1


def test_queued_job_json():
    job = QueuedJob(job_id="job_1", queue_name="webhooks", job_type="deliver-webhook", payload={"a": 1}, run_at=5.0)
    assert QueuedJob.from_json(job.to_json()) == job


@pytest.mark.asyncio
async def test_enqueue_job_records_ledger_row(db_session, queue):
    handle = await enqueue_job(db_session, queue, "webhooks", "deliver-webhook-event", {"event_id": "whev_1"},
                               tenant_id="ten_acme", trace_id="trc_abc")
    row = await JobRepository(db_session).get(handle.job_id)
    assert row.status == "queued"
    assert row.payload == {"event_id": "whev_1"}
    assert row.trace_id == "trc_abc"
    assert queue.pending("webhooks")[0].job_id == handle.job_id


@pytest.mark.asyncio
async def test_enqueue_failure_marks_row_failed(db_session, clock):
    broken = BrokenQueue(clock=clock)
    with pytest.raises(QueueEnqueueError) as exc_info:
        await enqueue_job(db_session, broken, "webhooks", "deliver-webhook-event", {"event_id": "whev_1"})

    assert exc_info.value.code == "QUEUE_ENQUEUE_FAILURE"
    rows = await JobRepository(db_session).list_by_type("deliver-webhook-event")
    assert len(rows) == 1
    assert rows[0].status == "failed"
    assert rows[0].errors[0]["code"] == "QUEUE_ENQUEUE_FAILURE"


@pytest.mark.asyncio
async def test_redis_queue_push_scores_by_run_at(clock):
    redis = AsyncMock()
    q = RedisJobQueue(redis, clock=clock)
    handle = await q.enqueue("webhooks", "deliver-webhook", {"x": 1}, delay=10)

    key, mapping = redis.zadd.call_args.args
    assert key == "taxflow:queue:webhooks"
    (member, score), = mapping.items()
    assert score == clock.now + 10
    assert QueuedJob.from_json(member).job_id == handle.job_id


@pytest.mark.asyncio
async def test_redis_queue_claims_only_when_zrem_wins(clock):
    member = QueuedJob(job_id="job_1", queue_name="webhooks", job_type="t", run_at=clock.now).to_json()
    redis = AsyncMock()
    redis.zrangebyscore.return_value = [member]

    redis.zrem.return_value = 0
    q = RedisJobQueue(redis, clock=clock)
    assert await q.pop_due("webhooks") is None

    redis.zrem.return_value = 1
    job = await q.pop_due("webhooks")
    assert job.job_id == "job_1"
    redis.zrangebyscore.assert_awaited_with("taxflow:queue:webhooks", "-inf", clock.now, start=0, num=1)
