"""Pydantic models for webhook endpoints, events, and deliveries.

Endpoints are exposed through two distinct types: ``EndpointSummary`` never
carries the signing secret, while ``EndpointWithSecret`` is only produced by
``taxflow.events.subscriptions.load_endpoint_with_secret``.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from taxflow.models.enums import DeliveryStatus, EventStatus, WebhookEventType


class RetryPolicy(BaseModel):
    max_retries: int = Field(5, ge=1, le=20)
    initial_backoff_ms: int = Field(2000, ge=1)
    max_backoff_ms: int = Field(300_000, ge=1)


class EndpointSummary(BaseModel):
    """Public projection of a webhook endpoint."""

    model_config = ConfigDict(extra="forbid")

    endpoint_id: str
    tenant_id: str
    url: str
    description: str | None = None
    events: list[WebhookEventType]
    subscribe_to_all: bool
    is_active: bool
    is_test_mode: bool
    headers: dict[str, str] | None = None
    metadata: dict[str, Any] | None = None
    retry_policy: RetryPolicy
    success_count: int = 0
    failure_count: int = 0
    last_triggered_at: datetime | None = None
    last_successful_delivery_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    def subscribes_to(self, event_type: str) -> bool:
        return self.subscribe_to_all or event_type in self.events


class EndpointWithSecret(EndpointSummary):
    """Endpoint projection including the signing secret."""

    secret: SecretStr


class EndpointCreated(EndpointSummary):
    """Creation response: the only time the plain secret leaves the service."""

    secret: str


class WebhookEventModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    event_id: str
    tenant_id: str
    event_type: str
    entity_type: str
    entity_id: str
    data: dict[str, Any]
    source: str
    correlation_id: str
    status: EventStatus
    target_endpoint_ids: list[str] | None = None
    attempt_count: int = 0
    failure_reason: str | None = None
    last_attempt_at: datetime | None = None
    processed_at: datetime | None = None
    created_at: datetime


class DeliveryModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    delivery_id: str
    event_id: str
    endpoint_id: str
    attempt_number: int
    status: DeliveryStatus
    http_status_code: int | None = None
    response_time_ms: float | None = None
    error_message: str | None = None
    sent_at: datetime | None = None
    responded_at: datetime | None = None
    will_retry: bool = False
    next_retry_at: datetime | None = None


class DeliveryDetailModel(DeliveryModel):
    request_payload: dict[str, Any]
    response_payload: dict[str, Any] | None = None
    signature: str | None = None


class DeliveryTestResult(BaseModel):
    success: bool
    message: str
    status_code: int | None = None
    response_time_ms: float | None = None
    error: str | None = None
