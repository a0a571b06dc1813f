"""Workers for the webhooks queue: dispatch fan-out, delivery, and retry."""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from taxflow.errors.exceptions import DeliveryNotFoundError, EventNotFoundError
from taxflow.events.delivery import DeliveryEngine
from taxflow.events.subscriptions import resolve_subscribers
from taxflow.logging_config import bind_job_context
from taxflow.models.enums import DeliveryStatus, EventStatus
from taxflow.repositories.webhook_repo import WebhookDeliveryRepository, WebhookEventRepository
from taxflow.workers.base import BaseWorker
from taxflow.workers.queue import DELIVER_WEBHOOK_JOB, DISPATCH_EVENT_JOB, WEBHOOK_QUEUE, enqueue_job

logger = logging.getLogger(__name__)


def _delivery_result(row) -> dict:
    if row is None:
        return {"delivery_id": None, "status": "superseded"}
    return {
        "delivery_id": row.delivery_id,
        "attempt_number": row.attempt_number,
        "status": row.status,
        "will_retry": row.will_retry,
    }


class DispatchEventWorker(BaseWorker):
    """Resolves an event's subscribers and enqueues one delivery job per endpoint."""

    async def process(self, job_id: str, payload: dict, session: AsyncSession) -> dict:
        event_id = payload["event_id"]
        events = WebhookEventRepository(session)
        event = await events.get(event_id)
        if not event:
            raise EventNotFoundError(event_id)
        bind_job_context(job_id, DISPATCH_EVENT_JOB, event.correlation_id)

        if event.status in (EventStatus.DELIVERED, EventStatus.FAILED):
            logger.info("Event %s already %s; dispatch skipped", event_id, event.status)
            return {"event_id": event_id, "skipped": True}

        if event.status == EventStatus.PENDING:
            subscribers = await resolve_subscribers(session, event.tenant_id, event.event_type)
            event.target_endpoint_ids = [s.endpoint_id for s in subscribers]
            if not subscribers:
                await events.set_status(event, EventStatus.DELIVERED)
                await session.commit()
                logger.info("Event %s has no subscribers; marked delivered", event_id)
                return {"event_id": event_id, "endpoints": 0}
            await events.set_status(event, EventStatus.PROCESSING)
            targets = list(event.target_endpoint_ids)
        else:
            # Re-run of an interrupted fan-out: only endpoints with no attempt yet
            deliveries = WebhookDeliveryRepository(session)
            targets = [
                endpoint_id
                for endpoint_id in event.target_endpoint_ids or []
                if await deliveries.latest_attempt_number(event_id, endpoint_id) == 0
            ]

        tenant_id, correlation_id = event.tenant_id, event.correlation_id
        for endpoint_id in targets:
            await enqueue_job(
                session,
                self.context.queue,
                WEBHOOK_QUEUE,
                DELIVER_WEBHOOK_JOB,
                {"event_id": event_id, "endpoint_id": endpoint_id, "attempt_number": 1},
                tenant_id=tenant_id,
                trace_id=f"trc_{correlation_id.replace('-', '')[:16]}",
            )
        await session.commit()
        logger.info("Event %s fanned out to %d endpoint(s)", event_id, len(targets))
        return {"event_id": event_id, "endpoints": len(targets)}


class DeliverWebhookWorker(BaseWorker):
    """One delivery attempt for one (event, endpoint)."""

    async def process(self, job_id: str, payload: dict, session: AsyncSession) -> dict:
        engine = DeliveryEngine(session, self.context.queue, self.context.http_client)
        row = await engine.deliver(
            payload["event_id"],
            payload["endpoint_id"],
            payload.get("attempt_number", 1),
        )
        return _delivery_result(row)


class RetryDeliveryWorker(BaseWorker):
    """Next attempt after a failed delivery, scheduled or manual."""

    async def process(self, job_id: str, payload: dict, session: AsyncSession) -> dict:
        delivery_id = payload["delivery_id"]
        deliveries = WebhookDeliveryRepository(session)
        previous = await deliveries.get(delivery_id)
        if not previous:
            raise DeliveryNotFoundError(delivery_id)

        event_id, endpoint_id = previous.event_id, previous.endpoint_id
        engine = DeliveryEngine(session, self.context.queue, self.context.http_client)
        if payload.get("manual"):
            if previous.status == DeliveryStatus.SUCCESS:
                logger.info("Delivery %s already succeeded; manual retry dropped", delivery_id)
                return {"delivery_id": delivery_id, "skipped": True}
            next_attempt = await deliveries.latest_attempt_number(event_id, endpoint_id) + 1
        else:
            next_attempt = previous.attempt_number + 1
            existing = await deliveries.get_attempt(event_id, endpoint_id, next_attempt)
            if existing:
                logger.info("Attempt %d after delivery %s already exists; retry skipped", next_attempt, delivery_id)
                await engine.resume_retry(existing)
                return {"delivery_id": delivery_id, "skipped": True}

        row = await engine.deliver(event_id, endpoint_id, next_attempt)
        return _delivery_result(row)
