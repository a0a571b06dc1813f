"""Webhook endpoint, event, and delivery API routes."""

import logging
import secrets
from typing import Any

import httpx
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, HttpUrl
from sqlalchemy.ext.asyncio import AsyncSession

from taxflow.config import settings
from taxflow.dependencies import (
    get_actor_id,
    get_db,
    get_http_client,
    get_job_queue,
    get_tenant_id,
    get_trace_id,
)
from taxflow.errors.exceptions import (
    DeliveryNotFoundError,
    EndpointNotFoundError,
    EventNotFoundError,
    ValidationError,
)
from taxflow.events.delivery import DeliveryEngine
from taxflow.events.publisher import EventPublisher
from taxflow.events.subscriptions import endpoint_summary
from taxflow.models.enums import DeliveryStatus, EntityType, EventSource, WebhookEventType
from taxflow.models.webhook import (
    DeliveryDetailModel,
    DeliveryModel,
    EndpointCreated,
    RetryPolicy,
    WebhookEventModel,
)
from taxflow.repositories.webhook_repo import (
    WebhookDeliveryRepository,
    WebhookEndpointRepository,
    WebhookEventRepository,
)
from taxflow.services.id_generator import generate_id
from taxflow.workers.queue import RETRY_DELIVERY_JOB, WEBHOOK_QUEUE, JobQueue, enqueue_job

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


class EndpointCreate(BaseModel):
    url: HttpUrl
    description: str | None = Field(None, max_length=500)
    events: list[WebhookEventType] = Field(default_factory=list)
    subscribe_to_all: bool = False
    is_test_mode: bool = False
    headers: dict[str, str] | None = None
    metadata: dict[str, Any] | None = None
    retry_policy: RetryPolicy | None = None


class EndpointUpdate(BaseModel):
    url: HttpUrl | None = None
    description: str | None = Field(None, max_length=500)
    events: list[WebhookEventType] | None = None
    subscribe_to_all: bool | None = None
    is_active: bool | None = None
    is_test_mode: bool | None = None
    headers: dict[str, str] | None = None
    metadata: dict[str, Any] | None = None
    retry_policy: RetryPolicy | None = None


class EventPublish(BaseModel):
    event_type: WebhookEventType
    entity_type: EntityType
    entity_id: str = Field(min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)
    source: EventSource = EventSource.MANUAL


def _subscription(events: list[WebhookEventType], subscribe_to_all: bool) -> tuple[list[str], bool]:
    """Normalize the wildcard: ``*`` in the event list means subscribe to all."""
    if WebhookEventType.ALL in events:
        subscribe_to_all = True
    concrete = sorted({str(e) for e in events if e != WebhookEventType.ALL})
    if not concrete and not subscribe_to_all:
        raise ValidationError("An endpoint must subscribe to at least one event type")
    return concrete, subscribe_to_all


def _delivery_dict(row) -> dict:
    return DeliveryModel.model_validate(row).model_dump(mode="json")


async def _endpoint_or_404(db: AsyncSession, tenant_id: str, endpoint_id: str):
    row = await WebhookEndpointRepository(db).get_for_tenant(tenant_id, endpoint_id)
    if not row:
        raise EndpointNotFoundError(endpoint_id)
    return row


# --- Endpoints ---


@router.post("/endpoints", status_code=201)
async def create_endpoint(
    body: EndpointCreate,
    db: AsyncSession = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    actor: str = Depends(get_actor_id),
) -> dict:
    events, subscribe_to_all = _subscription(body.events, body.subscribe_to_all)
    policy = body.retry_policy or RetryPolicy(
        max_retries=settings.webhook_default_max_retries,
        initial_backoff_ms=settings.webhook_default_initial_backoff_ms,
        max_backoff_ms=settings.webhook_default_max_backoff_ms,
    )
    secret = secrets.token_hex(32)

    row = await WebhookEndpointRepository(db).create(
        endpoint_id=generate_id("whe_"),
        tenant_id=tenant_id,
        created_by=actor,
        url=str(body.url),
        description=body.description,
        events=events,
        subscribe_to_all=subscribe_to_all,
        secret=secret,
        is_active=True,
        is_test_mode=body.is_test_mode,
        headers=body.headers,
        extra_data=body.metadata,
        max_retries=policy.max_retries,
        initial_backoff_ms=policy.initial_backoff_ms,
        max_backoff_ms=policy.max_backoff_ms,
        success_count=0,
        failure_count=0,
    )
    await db.commit()
    logger.info("Webhook endpoint %s created for tenant %s", row.endpoint_id, tenant_id)

    # The only response that carries the secret
    created = EndpointCreated(**endpoint_summary(row).model_dump(), secret=secret)
    return created.model_dump(mode="json")


@router.get("/endpoints")
async def list_endpoints(
    active_only: bool = False,
    db: AsyncSession = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
) -> list[dict]:
    rows = await WebhookEndpointRepository(db).list_for_tenant(tenant_id, active_only=active_only)
    return [endpoint_summary(r).model_dump(mode="json") for r in rows]


@router.get("/endpoints/failing")
async def list_failing_endpoints(
    max_failures: int = 10,
    min_attempts: int = 5,
    db: AsyncSession = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
) -> list[dict]:
    rows = await WebhookEndpointRepository(db).list_failing(tenant_id, max_failures, min_attempts)
    return [endpoint_summary(r).model_dump(mode="json") for r in rows]


@router.get("/endpoints/{endpoint_id}")
async def get_endpoint(
    endpoint_id: str,
    db: AsyncSession = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
) -> dict:
    row = await _endpoint_or_404(db, tenant_id, endpoint_id)
    return endpoint_summary(row).model_dump(mode="json")


async def _settle_open_events(db: AsyncSession, queue: JobQueue, tenant_id: str, endpoint_id: str) -> int:
    """Recompute processing events that were still waiting on ``endpoint_id``."""
    engine = DeliveryEngine(db, queue)
    events = await WebhookEventRepository(db).list_processing_for_endpoint(tenant_id, endpoint_id)
    for event in events:
        await engine.refresh_event_status(event)
    return len(events)


@router.patch("/endpoints/{endpoint_id}")
async def update_endpoint(
    endpoint_id: str,
    body: EndpointUpdate,
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
    tenant_id: str = Depends(get_tenant_id),
) -> dict:
    repo = WebhookEndpointRepository(db)
    row = await _endpoint_or_404(db, tenant_id, endpoint_id)

    changes: dict[str, Any] = body.model_dump(
        exclude_unset=True, exclude={"events", "subscribe_to_all", "retry_policy", "metadata", "url"}
    )
    if body.url is not None:
        changes["url"] = str(body.url)
    if "metadata" in body.model_fields_set:
        changes["extra_data"] = body.metadata
    if body.events is not None or body.subscribe_to_all is not None:
        events, subscribe_to_all = _subscription(
            body.events if body.events is not None else list(row.events or []),
            body.subscribe_to_all if body.subscribe_to_all is not None else row.subscribe_to_all,
        )
        changes.update(events=events, subscribe_to_all=subscribe_to_all)
    if body.retry_policy is not None:
        changes.update(body.retry_policy.model_dump())

    deactivating = row.is_active and changes.get("is_active") is False
    await repo.update(row, **changes)
    if deactivating:
        settled = await _settle_open_events(db, queue, tenant_id, endpoint_id)
        logger.info("Webhook endpoint %s deactivated; %d open event(s) recomputed", endpoint_id, settled)
    await db.commit()
    logger.info("Webhook endpoint %s updated (%s)", endpoint_id, ", ".join(sorted(changes)))
    return endpoint_summary(row).model_dump(mode="json")


@router.delete("/endpoints/{endpoint_id}")
async def delete_endpoint(
    endpoint_id: str,
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
    tenant_id: str = Depends(get_tenant_id),
) -> dict:
    repo = WebhookEndpointRepository(db)
    row = await _endpoint_or_404(db, tenant_id, endpoint_id)

    # Deliveries keep referencing the endpoint, so it is only deactivated
    if await repo.has_deliveries(endpoint_id):
        await repo.update(row, is_active=False)
        await _settle_open_events(db, queue, tenant_id, endpoint_id)
        await db.commit()
        logger.info("Webhook endpoint %s deactivated (has delivery history)", endpoint_id)
        return {"endpoint_id": endpoint_id, "deleted": False, "deactivated": True}

    await repo.delete(endpoint_id)
    await _settle_open_events(db, queue, tenant_id, endpoint_id)
    await db.commit()
    logger.info("Webhook endpoint %s deleted", endpoint_id)
    return {"endpoint_id": endpoint_id, "deleted": True, "deactivated": False}


@router.post("/endpoints/{endpoint_id}/test")
async def test_endpoint(
    endpoint_id: str,
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
    http_client: httpx.AsyncClient = Depends(get_http_client),
    tenant_id: str = Depends(get_tenant_id),
) -> dict:
    result = await DeliveryEngine(db, queue, http_client).test_endpoint(tenant_id, endpoint_id)
    return result.model_dump(mode="json", exclude_none=True)


@router.get("/endpoints/{endpoint_id}/deliveries")
async def list_endpoint_deliveries(
    endpoint_id: str,
    status: DeliveryStatus | None = None,
    limit: int = 50,
    skip: int = 0,
    db: AsyncSession = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
) -> dict:
    await _endpoint_or_404(db, tenant_id, endpoint_id)
    rows = await WebhookDeliveryRepository(db).list_for_endpoint(
        endpoint_id, status=status, limit=min(limit, 200), skip=skip
    )
    return {
        "endpoint_id": endpoint_id,
        "deliveries": [_delivery_dict(r) for r in rows],
        "count": len(rows),
        "limit": limit,
        "skip": skip,
    }


@router.get("/endpoints/{endpoint_id}/stats")
async def get_endpoint_stats(
    endpoint_id: str,
    db: AsyncSession = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
) -> dict:
    row = await _endpoint_or_404(db, tenant_id, endpoint_id)
    deliveries = WebhookDeliveryRepository(db)
    stats = await deliveries.endpoint_stats(endpoint_id)
    recent = await deliveries.list_recent(endpoint_id, hours=24)
    return {
        "endpoint": endpoint_summary(row).model_dump(mode="json"),
        "stats": {**stats, "last_delivery_at": stats["last_delivery_at"].isoformat() if stats["last_delivery_at"] else None},
        "recent_deliveries": [_delivery_dict(r) for r in recent],
    }


# --- Deliveries ---


@router.get("/deliveries/{delivery_id}")
async def get_delivery(
    delivery_id: str,
    db: AsyncSession = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
) -> dict:
    row = await WebhookDeliveryRepository(db).get_for_tenant(tenant_id, delivery_id)
    if not row:
        raise DeliveryNotFoundError(delivery_id)
    return DeliveryDetailModel.model_validate(row).model_dump(mode="json")


@router.post("/deliveries/{delivery_id}/retry", status_code=202)
async def retry_delivery(
    delivery_id: str,
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
    tenant_id: str = Depends(get_tenant_id),
    trace_id: str = Depends(get_trace_id),
) -> dict:
    row = await WebhookDeliveryRepository(db).get_for_tenant(tenant_id, delivery_id)
    if not row:
        raise DeliveryNotFoundError(delivery_id)
    if row.status == DeliveryStatus.SUCCESS:
        raise ValidationError("Cannot retry a successful delivery", details={"delivery_id": delivery_id})

    handle = await enqueue_job(
        db,
        queue,
        WEBHOOK_QUEUE,
        RETRY_DELIVERY_JOB,
        {"delivery_id": delivery_id, "manual": True},
        tenant_id=tenant_id,
        trace_id=trace_id,
    )
    logger.info("Manual retry of delivery %s queued as job %s", delivery_id, handle.job_id)
    return {"delivery_id": delivery_id, "job_id": handle.job_id, "status": "queued"}


# --- Events ---


@router.post("/events", status_code=202)
async def publish_event(
    body: EventPublish,
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
    tenant_id: str = Depends(get_tenant_id),
    trace_id: str = Depends(get_trace_id),
) -> dict:
    event = await EventPublisher(db, queue).publish(
        tenant_id=tenant_id,
        event_type=body.event_type,
        entity_type=body.entity_type,
        entity_id=body.entity_id,
        payload=body.data,
        source=body.source,
        trace_id=trace_id,
    )
    return WebhookEventModel.model_validate(event).model_dump(mode="json")


@router.get("/events")
async def list_events(
    status: str | None = None,
    event_type: str | None = None,
    limit: int = 50,
    skip: int = 0,
    db: AsyncSession = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
) -> dict:
    repo = WebhookEventRepository(db)
    rows = await repo.list_for_tenant(tenant_id, status=status, event_type=event_type, limit=min(limit, 200), skip=skip)
    return {
        "events": [WebhookEventModel.model_validate(r).model_dump(mode="json") for r in rows],
        "counts": await repo.count_by_status(tenant_id),
        "limit": limit,
        "skip": skip,
    }


@router.get("/events/correlation/{correlation_id}")
async def list_correlated_events(
    correlation_id: str,
    db: AsyncSession = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
) -> list[dict]:
    rows = await WebhookEventRepository(db).list_by_correlation(tenant_id, correlation_id)
    return [WebhookEventModel.model_validate(r).model_dump(mode="json") for r in rows]


@router.get("/events/{event_id}")
async def get_event(
    event_id: str,
    db: AsyncSession = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
) -> dict:
    event = await WebhookEventRepository(db).get_for_tenant(tenant_id, event_id)
    if not event:
        raise EventNotFoundError(event_id)
    deliveries = await WebhookDeliveryRepository(db).list_for_event(event_id)
    return {
        "event": WebhookEventModel.model_validate(event).model_dump(mode="json"),
        "deliveries": [_delivery_dict(r) for r in deliveries],
    }


@router.get("/stats")
async def get_webhook_stats(
    db: AsyncSession = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
) -> dict:
    return {
        "events": await WebhookEventRepository(db).count_by_status(tenant_id),
        "deliveries": await WebhookDeliveryRepository(db).count_by_status(tenant_id),
    }
