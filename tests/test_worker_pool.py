"""Tests for the worker pool, registry, and job lifecycle."""

import asyncio

import pytest

from taxflow.repositories.job_repo import JobRepository
from taxflow.workers import registry
from taxflow.workers.base import BaseWorker
from taxflow.workers.queue import enqueue_job
from taxflow.workers.webhook_workers import DispatchEventWorker


class EchoWorker(BaseWorker):
    calls: list[dict] = []

    async def process(self, job_id, payload, session):
        EchoWorker.calls.append(payload)
        return {"echo": payload.get("value")}


class ExplodingWorker(BaseWorker):
    max_retries = 1

    async def process(self, job_id, payload, session):
        raise RuntimeError("boom")


@pytest.fixture(autouse=True)
def _test_workers():
    registry.register_worker("echo", EchoWorker)
    registry.register_worker("explode", ExplodingWorker)
    EchoWorker.calls = []
    yield
    registry.unregister_worker("echo")
    registry.unregister_worker("explode")


async def _job(session_factory, job_id):
    async with session_factory() as session:
        return await JobRepository(session).get(job_id)


async def _jobs_of_type(session_factory, job_type):
    async with session_factory() as session:
        return await JobRepository(session).list_by_type(job_type)


def test_registry_maps_webhook_jobs(worker_context):
    worker = registry.get_worker("deliver-webhook-event", worker_context)
    assert isinstance(worker, DispatchEventWorker)
    assert worker.context is worker_context
    assert registry.get_worker("no-such-job", worker_context) is None


@pytest.mark.asyncio
async def test_run_once_marks_job_succeeded(pool, queue, session_factory):
    async with session_factory() as session:
        handle = await enqueue_job(session, queue, "webhooks", "echo", {"value": 7})

    assert await pool.run_once() is True
    assert await pool.run_once() is False

    assert EchoWorker.calls == [{"value": 7}]
    job = await _job(session_factory, handle.job_id)
    assert job.status == "succeeded"
    assert job.result == {"echo": 7}


@pytest.mark.asyncio
async def test_duplicate_push_of_succeeded_job_is_ignored(pool, queue, session_factory):
    async with session_factory() as session:
        handle = await enqueue_job(session, queue, "webhooks", "echo", {"value": 1})
    await queue.enqueue("webhooks", "echo", {"value": 1}, job_id=handle.job_id)

    assert await pool.drain() == 2
    assert len(EchoWorker.calls) == 1


@pytest.mark.asyncio
async def test_unknown_job_type_is_dropped(pool, queue):
    await queue.enqueue("webhooks", "no-such-job", {})
    assert await pool.drain() == 1
    assert await queue.size("webhooks") == 0


@pytest.mark.asyncio
async def test_failed_job_is_requeued_until_max_retries(pool, queue, session_factory):
    async with session_factory() as session:
        handle = await enqueue_job(session, queue, "webhooks", "explode", {"value": 1})

    assert await pool.drain() == 2

    jobs = await _jobs_of_type(session_factory, "explode")
    assert len(jobs) == 2
    assert all(j.status == "failed" for j in jobs)
    first = await _job(session_factory, handle.job_id)
    assert first.errors[0]["message"] == "boom"
    assert first.errors[0]["retry_count"] == 0
    retry = next(j for j in jobs if j.job_id != handle.job_id)
    assert retry.payload == {"value": 1, "_retry_count": 1}
    assert retry.trace_id == first.trace_id


@pytest.mark.asyncio
async def test_started_pool_consumes_in_background(pool, queue, session_factory):
    async with session_factory() as session:
        handle = await enqueue_job(session, queue, "webhooks", "echo", {"value": 3})

    await pool.start()
    assert pool.running
    for _ in range(50):
        if EchoWorker.calls:
            break
        await asyncio.sleep(0.02)
    await pool.stop()

    assert not pool.running
    assert EchoWorker.calls == [{"value": 3}]
    assert (await _job(session_factory, handle.job_id)).status == "succeeded"
