"""Background reconciliation of events and retries whose jobs never reached the queue."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from taxflow.config import settings
from taxflow.errors.exceptions import QueueEnqueueError
from taxflow.events.delivery import DeliveryEngine
from taxflow.repositories.webhook_repo import WebhookDeliveryRepository, WebhookEventRepository
from taxflow.workers.queue import DISPATCH_EVENT_JOB, WEBHOOK_QUEUE, JobQueue, enqueue_job

logger = logging.getLogger(__name__)


async def sweep_stale_pending_events(
    session_factory,
    queue: JobQueue,
    redis=None,
    older_than_seconds: int | None = None,
    now: datetime | None = None,
) -> int:
    """Re-enqueue dispatch jobs for events still pending past the threshold. Returns enqueue count."""
    age = older_than_seconds if older_than_seconds is not None else settings.pending_event_sweep_age_seconds
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(seconds=age)
    enqueued = 0

    async with session_factory() as session:
        stale = await WebhookEventRepository(session).list_stale_pending(cutoff)
        targets = [(e.event_id, e.tenant_id) for e in stale]

        for event_id, tenant_id in targets:
            # Distributed lock via Redis SET NX so only one instance re-enqueues an event
            if redis:
                locked = await redis.set(f"taxflow:sweep:lock:{event_id}", "1", nx=True, ex=max(age, 1))
                if not locked:
                    logger.debug("Event %s already being reconciled by another instance", event_id)
                    continue

            try:
                await enqueue_job(
                    session,
                    queue,
                    WEBHOOK_QUEUE,
                    DISPATCH_EVENT_JOB,
                    {"event_id": event_id},
                    tenant_id=tenant_id,
                    trace_id=f"sweep_{event_id}",
                )
                enqueued += 1
                logger.info("Re-enqueued dispatch for stale pending event %s", event_id)
            except QueueEnqueueError as exc:
                logger.warning("Failed to re-enqueue event %s: %s", event_id, exc.message)

    return enqueued


async def sweep_stranded_retries(
    session_factory,
    queue: JobQueue,
    redis=None,
    older_than_seconds: int | None = None,
    now: datetime | None = None,
) -> int:
    """Queue the next attempt for retrying deliveries overdue by the threshold. Returns enqueue count."""
    age = older_than_seconds if older_than_seconds is not None else settings.pending_event_sweep_age_seconds
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(seconds=age)
    enqueued = 0

    async with session_factory() as session:
        engine = DeliveryEngine(session, queue)
        for row in await WebhookDeliveryRepository(session).list_stranded_retries(cutoff):
            delivery_id = row.delivery_id
            if redis:
                locked = await redis.set(f"taxflow:retry-sweep:lock:{delivery_id}", "1", nx=True, ex=max(age, 1))
                if not locked:
                    logger.debug("Delivery %s already being reconciled by another instance", delivery_id)
                    continue

            try:
                if await engine.resume_retry(row):
                    enqueued += 1
            except QueueEnqueueError as exc:
                logger.warning("Failed to reschedule retry for delivery %s: %s", delivery_id, exc.message)

    return enqueued


async def run_scheduler(app) -> None:
    """Background task that periodically runs the pending-event and stranded-retry sweeps."""
    interval = settings.scheduler_poll_interval
    logger.info("Reconciliation scheduler started (poll_interval=%ds)", interval)

    while True:
        try:
            await asyncio.sleep(interval)

            session_factory = getattr(app.state, "db_session_factory", None)
            queue = getattr(app.state, "job_queue", None)
            if not session_factory or not queue:
                continue

            count = await sweep_stale_pending_events(
                session_factory, queue, redis=getattr(app.state, "redis", None)
            )
            if count:
                logger.info("Scheduler re-enqueued %d pending event(s)", count)

            count = await sweep_stranded_retries(
                session_factory, queue, redis=getattr(app.state, "redis", None)
            )
            if count:
                logger.info("Scheduler rescheduled %d stranded delivery retries", count)

        except asyncio.CancelledError:
            logger.info("Reconciliation scheduler stopped")
            break
        except Exception as exc:
            logger.exception("Scheduler error: %s", exc)
