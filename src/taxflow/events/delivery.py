"""Webhook delivery engine.

One call to ``DeliveryEngine.deliver`` performs one attempt for one
(event, endpoint) pair: sign, POST, classify, record a delivery row, bump the
endpoint counters, schedule the next attempt, and recompute the event's
aggregate status.

Retry delays follow ``initial_backoff_ms * initial_backoff_ms ** (attempt - 1)``.
With the 2000 ms default that is 2 s, then 4000 s, then about 93 days: the base
of the exponent is the configured backoff, not 2. The stored ``max_backoff_ms``
caps the delay only when ``TAXFLOW_WEBHOOK_ENFORCE_MAX_BACKOFF`` is set.
"""

import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from taxflow.config import settings
from taxflow.db.base import as_utc
from taxflow.db.models.webhook import WebhookDeliveryRow, WebhookEventRow
from taxflow.errors.exceptions import (
    DeliveryNetworkError,
    EndpointNotFoundError,
    EventNotFoundError,
    QueueEnqueueError,
    SecretMissingError,
)
from taxflow.events.signing import build_payload, encode_payload, sign_payload, signature_header
from taxflow.events.subscriptions import load_endpoint_with_secret
from taxflow.models.enums import DeliveryStatus, EntityType, EventStatus, WebhookEventType
from taxflow.models.webhook import DeliveryTestResult, EndpointWithSecret
from taxflow.repositories.webhook_repo import (
    WebhookDeliveryRepository,
    WebhookEndpointRepository,
    WebhookEventRepository,
)
from taxflow.services.id_generator import generate_correlation_id, generate_id
from taxflow.workers.queue import RETRY_DELIVERY_JOB, WEBHOOK_QUEUE, JobQueue, enqueue_job

logger = logging.getLogger(__name__)

# Header names the endpoint's custom headers may not override (compared lower-case)
_PROTECTED_HEADERS = frozenset({
    "content-type",
    "user-agent",
    "x-webhook-signature",
    "x-webhook-event",
    "x-webhook-id",
    "x-webhook-timestamp",
    "x-webhook-attempt",
})

# Beyond this a retry time is not representable as a datetime
_MAX_SCHEDULABLE_MS = 100 * 365 * 24 * 3600 * 1000

_RESPONSE_BODY_LIMIT = 2000


def backoff_delay_ms(attempt_number: int, initial_backoff_ms: int, max_backoff_ms: int | None = None) -> int:
    """Delay before the attempt following ``attempt_number``."""
    delay = initial_backoff_ms * initial_backoff_ms ** (attempt_number - 1)
    if settings.webhook_enforce_max_backoff and max_backoff_ms:
        delay = min(delay, max_backoff_ms)
    return delay


def build_headers(
    endpoint: EndpointWithSecret,
    signature: str,
    event_label: str,
    payload_id: str,
    timestamp: str,
    attempt_number: int | None = None,
) -> dict[str, str]:
    headers = {
        k: v for k, v in (endpoint.headers or {}).items() if k.lower() not in _PROTECTED_HEADERS
    }
    headers.update({
        "Content-Type": "application/json",
        "User-Agent": settings.webhook_user_agent,
        "X-Webhook-Signature": signature,
        "X-Webhook-Event": event_label,
        "X-Webhook-ID": payload_id,
        "X-Webhook-Timestamp": timestamp,
    })
    if attempt_number is not None:
        headers["X-Webhook-Attempt"] = str(attempt_number)
    return headers


def _response_body(response: httpx.Response) -> dict[str, Any] | None:
    if not response.content:
        return None
    try:
        body = response.json()
    except ValueError:
        return {"body": response.text[:_RESPONSE_BODY_LIMIT]}
    return body if isinstance(body, dict) else {"body": body}


class DeliveryEngine:
    def __init__(
        self,
        session: AsyncSession,
        queue: JobQueue,
        http_client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ):
        self.session = session
        self.queue = queue
        self.http_client = http_client
        self.timeout = timeout if timeout is not None else settings.webhook_timeout_seconds
        self.endpoints = WebhookEndpointRepository(session)
        self.events = WebhookEventRepository(session)
        self.deliveries = WebhookDeliveryRepository(session)

    async def _post(self, url: str, body: bytes, headers: dict[str, str]) -> httpx.Response:
        """POST ``body`` and return a 2xx response.

        Raises:
            DeliveryNetworkError: transport failure or non-2xx status, with the
                classified delivery status.
        """
        try:
            response = await self.http_client.post(url, content=body, headers=headers, timeout=self.timeout)
        except httpx.TimeoutException as exc:
            raise DeliveryNetworkError(DeliveryStatus.TIMEOUT, f"Request timed out: {exc}") from exc
        except (httpx.ConnectError, httpx.InvalidURL, httpx.UnsupportedProtocol) as exc:
            raise DeliveryNetworkError(DeliveryStatus.INVALID_URL, f"Endpoint unreachable: {exc}") from exc
        except httpx.HTTPError as exc:
            raise DeliveryNetworkError(DeliveryStatus.FAILED, f"Request failed: {exc}") from exc

        if not response.is_success:
            raise DeliveryNetworkError(
                DeliveryStatus.FAILED,
                f"Endpoint responded with HTTP {response.status_code}",
                http_status_code=response.status_code,
                response_payload=_response_body(response),
            )
        return response

    async def deliver(self, event_id: str, endpoint_id: str, attempt_number: int = 1) -> WebhookDeliveryRow | None:
        """Perform one delivery attempt.

        Returns the delivery row, the existing row when this attempt was
        already recorded (queueing its retry if that never got onto the queue),
        or None when the endpoint has been deactivated.

        Raises:
            EventNotFoundError / EndpointNotFoundError: dangling job payload.
            QueueEnqueueError: the attempt is recorded but its retry job could
                not be pushed.
        """
        existing = await self.deliveries.get_attempt(event_id, endpoint_id, attempt_number)
        if existing:
            logger.info(
                "Delivery attempt %d for event %s to endpoint %s already recorded; skipping",
                attempt_number, event_id, endpoint_id,
            )
            await self.resume_retry(existing)
            return existing

        event = await self.events.get(event_id)
        if not event:
            raise EventNotFoundError(event_id)
        endpoint_row = await self.endpoints.get(endpoint_id)
        if not endpoint_row:
            raise EndpointNotFoundError(endpoint_id)
        if not endpoint_row.is_active:
            logger.info("Endpoint %s is inactive; delivery of event %s superseded", endpoint_id, event_id)
            await self.refresh_event_status(event)
            await self.session.commit()
            return None

        payload = build_payload(
            event.event_id,
            event.event_type,
            as_utc(event.created_at),
            event.data,
            event.entity_type,
            event.entity_id,
            event.correlation_id,
        )
        body = encode_payload(payload)

        try:
            endpoint = await load_endpoint_with_secret(self.session, endpoint_id)
        except SecretMissingError as exc:
            logger.error("Aborting delivery of event %s: %s", event_id, exc.message)
            return await self._record(
                event, endpoint_id, attempt_number, payload,
                signature=None,
                status=DeliveryStatus.FAILED,
                error_message=exc.message,
                will_retry=False,
            )

        signature = sign_payload(body, endpoint.secret.get_secret_value())
        headers = build_headers(
            endpoint,
            f"sha256={signature}",
            event.event_type,
            event.event_id,
            payload["timestamp"],
            attempt_number,
        )

        sent_at = datetime.now(timezone.utc)
        started = time.perf_counter()
        try:
            response = await self._post(endpoint.url, body, headers)
        except DeliveryNetworkError as exc:
            elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
            will_retry = attempt_number < endpoint.retry_policy.max_retries
            logger.warning(
                "Delivery of event %s to endpoint %s failed (attempt=%d, status=%s, will_retry=%s): %s",
                event_id, endpoint_id, attempt_number, exc.delivery_status, will_retry, exc.message,
            )
            return await self._record(
                event, endpoint_id, attempt_number, payload,
                signature=signature,
                status=exc.delivery_status,
                http_status_code=exc.http_status_code,
                response_payload=exc.response_payload,
                error_message=exc.message,
                response_time_ms=elapsed_ms,
                sent_at=sent_at,
                will_retry=will_retry,
                endpoint=endpoint,
            )

        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.info(
            "Delivered event %s to endpoint %s (attempt=%d, status=%d, %.0fms)",
            event_id, endpoint_id, attempt_number, response.status_code, elapsed_ms,
        )
        return await self._record(
            event, endpoint_id, attempt_number, payload,
            signature=signature,
            status=DeliveryStatus.SUCCESS,
            http_status_code=response.status_code,
            response_payload=_response_body(response),
            response_time_ms=elapsed_ms,
            sent_at=sent_at,
            will_retry=False,
        )

    async def _record(
        self,
        event: WebhookEventRow,
        endpoint_id: str,
        attempt_number: int,
        payload: dict[str, Any],
        signature: str | None,
        status: str,
        will_retry: bool,
        http_status_code: int | None = None,
        response_payload: dict | None = None,
        error_message: str | None = None,
        response_time_ms: float | None = None,
        sent_at: datetime | None = None,
        endpoint: EndpointWithSecret | None = None,
    ) -> WebhookDeliveryRow:
        now = datetime.now(timezone.utc)
        event_id = event.event_id
        delay_ms = None
        next_retry_at = None
        if will_retry and endpoint is not None:
            delay_ms = backoff_delay_ms(
                attempt_number,
                endpoint.retry_policy.initial_backoff_ms,
                endpoint.retry_policy.max_backoff_ms,
            )
            if delay_ms > _MAX_SCHEDULABLE_MS:
                logger.warning(
                    "Retry delay %dms for endpoint %s exceeds the schedulable range; clamping",
                    delay_ms, endpoint_id,
                )
                delay_ms = _MAX_SCHEDULABLE_MS
            next_retry_at = now + timedelta(milliseconds=delay_ms)

        try:
            row = await self.deliveries.create(
                delivery_id=generate_id("dlv_"),
                event_id=event.event_id,
                endpoint_id=endpoint_id,
                tenant_id=event.tenant_id,
                attempt_number=attempt_number,
                request_payload=payload,
                signature=signature,
                status=status,
                http_status_code=http_status_code,
                response_time_ms=response_time_ms,
                response_payload=response_payload,
                error_message=error_message,
                sent_at=sent_at,
                responded_at=now if sent_at else None,
                will_retry=will_retry,
                next_retry_at=next_retry_at,
            )
        except IntegrityError:
            # A concurrent worker recorded the same attempt first
            await self.session.rollback()
            logger.info(
                "Attempt %d for event %s to endpoint %s recorded concurrently",
                attempt_number, event_id, endpoint_id,
            )
            return await self.deliveries.get_attempt(event_id, endpoint_id, attempt_number)

        await self.endpoints.record_outcome(endpoint_id, status == DeliveryStatus.SUCCESS, now)
        await self.refresh_event_status(event)

        if delay_ms is None:
            await self.session.commit()
            return row

        await self._schedule_retry(row, delay_ms)
        return row

    async def _schedule_retry(self, row: WebhookDeliveryRow, delay_ms: float) -> None:
        try:
            handle = await enqueue_job(
                self.session,
                self.queue,
                WEBHOOK_QUEUE,
                RETRY_DELIVERY_JOB,
                {"delivery_id": row.delivery_id},
                delay=delay_ms / 1000,
                tenant_id=row.tenant_id,
            )
        except QueueEnqueueError:
            logger.error("Retry for delivery %s could not be scheduled", row.delivery_id)
            raise
        row.retry_job_id = handle.job_id
        await self.session.commit()

    async def resume_retry(self, row: WebhookDeliveryRow) -> bool:
        """Queue the next attempt for a retrying delivery whose job never reached the queue.

        Returns True when a job was pushed. The remaining part of the original
        backoff is kept; an overdue retry runs immediately.

        Raises:
            QueueEnqueueError: the push failed again.
        """
        if not row.will_retry or row.retry_job_id:
            return False
        if await self.deliveries.get_attempt(row.event_id, row.endpoint_id, row.attempt_number + 1):
            return False

        remaining_ms = 0.0
        if row.next_retry_at is not None:
            remaining = as_utc(row.next_retry_at) - datetime.now(timezone.utc)
            remaining_ms = max(remaining.total_seconds() * 1000, 0.0)
        logger.warning(
            "Delivery %s (attempt %d) has no queued retry; rescheduling in %.0fms",
            row.delivery_id, row.attempt_number, remaining_ms,
        )
        await self._schedule_retry(row, remaining_ms)
        return True

    async def refresh_event_status(self, event: WebhookEventRow) -> str:
        """Recompute an event's aggregate status from its deliveries.

        Each endpoint resolved at dispatch is settled once it has a success,
        its latest attempt will not be retried, or it has been deactivated.
        When all are settled the event is ``failed`` if any endpoint exhausted
        its retries without success, otherwise ``delivered``.
        """
        if event.status == EventStatus.DELIVERED:
            return event.status

        targets = event.target_endpoint_ids or []
        active = {row.endpoint_id for row in await self.endpoints.list_by_ids(targets) if row.is_active}

        latest: dict[str, WebhookDeliveryRow] = {}
        succeeded: set[str] = set()
        for row in await self.deliveries.list_for_event(event.event_id):
            if row.status == DeliveryStatus.SUCCESS:
                succeeded.add(row.endpoint_id)
            latest[row.endpoint_id] = row

        exhausted: list[str] = []
        for endpoint_id in targets:
            if endpoint_id in succeeded:
                continue
            last = latest.get(endpoint_id)
            if last is not None and not last.will_retry:
                exhausted.append(endpoint_id)
            elif endpoint_id in active:
                return event.status

        if exhausted:
            reason = f"Retries exhausted for endpoint(s): {', '.join(exhausted)}"
            if event.status != EventStatus.FAILED:
                await self.events.set_status(event, EventStatus.FAILED, failure_reason=reason)
                logger.warning("Event %s failed: %s", event.event_id, reason)
            return event.status

        await self.events.set_status(event, EventStatus.DELIVERED)
        logger.info("Event %s delivered to all subscribers", event.event_id)
        return event.status

    async def test_endpoint(self, tenant_id: str, endpoint_id: str) -> DeliveryTestResult:
        """Send a signed synthetic payload; nothing is persisted."""
        row = await self.endpoints.get_for_tenant(tenant_id, endpoint_id)
        if not row:
            raise EndpointNotFoundError(endpoint_id)
        try:
            endpoint = await load_endpoint_with_secret(self.session, endpoint_id)
        except SecretMissingError as exc:
            return DeliveryTestResult(success=False, message="Webhook endpoint test failed", error=exc.message)

        payload = build_payload(
            f"test-{uuid.uuid4()}",
            WebhookEventType.ALL,
            datetime.now(timezone.utc),
            {"message": "This is a test webhook from the TaxFlow platform", "testMode": True},
            EntityType.CLIENT,
            tenant_id,
            generate_correlation_id(),
        )
        body = encode_payload(payload)
        headers = build_headers(
            endpoint,
            signature_header(body, endpoint.secret.get_secret_value()),
            "test",
            payload["id"],
            payload["timestamp"],
        )

        started = time.perf_counter()
        try:
            response = await self._post(endpoint.url, body, headers)
        except DeliveryNetworkError as exc:
            logger.info("Test delivery to endpoint %s failed: %s", endpoint_id, exc.message)
            return DeliveryTestResult(
                success=False,
                message="Webhook endpoint test failed",
                status_code=exc.http_status_code,
                error=exc.message,
            )

        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.info("Test delivery to endpoint %s succeeded (%.0fms)", endpoint_id, elapsed_ms)
        return DeliveryTestResult(
            success=True,
            message="Webhook endpoint is working correctly",
            status_code=response.status_code,
            response_time_ms=elapsed_ms,
        )
