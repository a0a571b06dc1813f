"""Event publisher: persists a webhook event and enqueues its dispatch job."""

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from taxflow.db.models.webhook import WebhookEventRow
from taxflow.errors.exceptions import QueueEnqueueError, ValidationError
from taxflow.models.enums import EntityType, EventSource, EventStatus, WebhookEventType
from taxflow.repositories.webhook_repo import WebhookEventRepository
from taxflow.services.id_generator import generate_correlation_id, generate_id
from taxflow.workers.queue import DISPATCH_EVENT_JOB, WEBHOOK_QUEUE, JobQueue, enqueue_job

logger = logging.getLogger(__name__)


class EventPublisher:
    def __init__(self, session: AsyncSession, queue: JobQueue):
        self.session = session
        self.queue = queue
        self.events = WebhookEventRepository(session)

    async def publish(
        self,
        tenant_id: str,
        event_type: str,
        entity_type: str,
        entity_id: str,
        payload: dict[str, Any],
        source: str = EventSource.MANUAL,
        trace_id: str | None = None,
    ) -> WebhookEventRow:
        """Persist an event in ``pending`` and enqueue exactly one dispatch job.

        Raises:
            ValidationError: unknown event type, entity type or source, or the
                wildcard ``*`` used as a concrete event type.
            QueueEnqueueError: the event is stored but no dispatch job exists;
                the pending-event sweep re-enqueues it.
        """
        self._validate(event_type, entity_type, source)
        correlation_id = generate_correlation_id()

        event = await self.events.create(
            event_id=generate_id("whev_"),
            tenant_id=tenant_id,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            data=payload,
            source=source,
            correlation_id=correlation_id,
            status=EventStatus.PENDING,
        )
        logger.info(
            "Webhook event %s created (type=%s, tenant=%s, correlation_id=%s)",
            event.event_id, event_type, tenant_id, correlation_id,
        )

        try:
            await enqueue_job(
                self.session,
                self.queue,
                WEBHOOK_QUEUE,
                DISPATCH_EVENT_JOB,
                {"event_id": event.event_id},
                tenant_id=tenant_id,
                trace_id=trace_id,
            )
        except QueueEnqueueError:
            logger.error(
                "Webhook event %s persisted without a dispatch job; awaiting reconciliation sweep",
                event.event_id,
            )
            raise

        return event

    @staticmethod
    def _validate(event_type: str, entity_type: str, source: str) -> None:
        if event_type == WebhookEventType.ALL or event_type not in WebhookEventType._value2member_map_:
            raise ValidationError(f"Unknown event type '{event_type}'")
        if entity_type not in EntityType._value2member_map_:
            raise ValidationError(f"Unknown entity type '{entity_type}'")
        if source not in EventSource._value2member_map_:
            raise ValidationError(f"Unknown event source '{source}'")
