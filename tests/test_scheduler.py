"""Tests for the stale pending-event sweep."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from conftest import TENANT
from taxflow.events.publisher import EventPublisher
from taxflow.repositories.webhook_repo import WebhookEventRepository
from taxflow.workers.queue import DISPATCH_EVENT_JOB
from taxflow.workers.scheduler import sweep_stale_pending_events

LATER = timedelta(minutes=10)


async def _pending_event(session_factory, queue) -> str:
    async with session_factory() as session:
        event = await EventPublisher(session, queue).publish(
            tenant_id=TENANT,
            event_type="compliance.alert",
            entity_type="client",
            entity_id="cli_001",
            payload={"message": "GSTR-3B due in 3 days"},
        )
    # Simulate a lost dispatch job
    await queue.pop_due("webhooks")
    return event.event_id


@pytest.mark.asyncio
async def test_sweep_reenqueues_stale_pending_event(session_factory, queue):
    event_id = await _pending_event(session_factory, queue)

    count = await sweep_stale_pending_events(
        session_factory, queue, older_than_seconds=300, now=datetime.now(timezone.utc) + LATER
    )

    assert count == 1
    [job] = queue.pending("webhooks")
    assert job.job_type == DISPATCH_EVENT_JOB
    assert job.payload == {"event_id": event_id}


@pytest.mark.asyncio
async def test_sweep_skips_recent_and_settled_events(session_factory, queue):
    event_id = await _pending_event(session_factory, queue)
    assert await sweep_stale_pending_events(session_factory, queue, older_than_seconds=300) == 0

    async with session_factory() as session:
        repo = WebhookEventRepository(session)
        await repo.set_status(await repo.get(event_id), "delivered")
        await session.commit()
    assert await sweep_stale_pending_events(
        session_factory, queue, older_than_seconds=300, now=datetime.now(timezone.utc) + LATER
    ) == 0
    assert queue.pending("webhooks") == []


@pytest.mark.asyncio
async def test_sweep_respects_redis_lock(session_factory, queue):
    event_id = await _pending_event(session_factory, queue)
    redis = AsyncMock()
    redis.set.return_value = False

    count = await sweep_stale_pending_events(
        session_factory, queue, redis=redis, older_than_seconds=300, now=datetime.now(timezone.utc) + LATER
    )
    assert count == 0
    assert queue.pending("webhooks") == []
    redis.set.assert_awaited_once_with(f"taxflow:sweep:lock:{event_id}", "1", nx=True, ex=300)

    redis.set.return_value = True
    count = await sweep_stale_pending_events(
        session_factory, queue, redis=redis, older_than_seconds=300, now=datetime.now(timezone.utc) + LATER
    )
    assert count == 1
