"""Webhook endpoint, event, and delivery tables."""

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from taxflow.db.base import Base, TimestampMixin


class WebhookEndpointRow(Base, TimestampMixin):
    __tablename__ = "webhook_endpoints"

    endpoint_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    created_by: Mapped[str] = mapped_column(String(200), nullable=False)
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    events: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    subscribe_to_all: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Only readable through WebhookEndpointRepository.get_with_secret
    secret: Mapped[str | None] = mapped_column(
        String(128), nullable=True, deferred=True, deferred_raiseload=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    is_test_mode: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    headers: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    extra_data: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    initial_backoff_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=2000)
    max_backoff_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=300_000)

    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_triggered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_successful_delivery_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class WebhookEventRow(Base, TimestampMixin):
    __tablename__ = "webhook_events"

    event_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    data: Mapped[dict] = mapped_column(JSON, nullable=False)
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    correlation_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    # Endpoints resolved when the event was first dispatched
    target_endpoint_ids: Mapped[list | None] = mapped_column(JSON, nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class WebhookDeliveryRow(Base, TimestampMixin):
    """One row per (event, endpoint, attempt); retries never reuse a row."""

    __tablename__ = "webhook_deliveries"
    __table_args__ = (
        UniqueConstraint("event_id", "endpoint_id", "attempt_number", name="uq_delivery_attempt"),
    )

    delivery_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    event_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("webhook_events.event_id"), nullable=False, index=True
    )
    endpoint_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("webhook_endpoints.endpoint_id"), nullable=False, index=True
    )
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    request_payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    signature: Mapped[str | None] = mapped_column(String(128), nullable=True)
    signature_algorithm: Mapped[str] = mapped_column(String(20), nullable=False, default="hmac-sha256")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    http_status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_time_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    response_payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    responded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    will_retry: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Set once the job for the next attempt is on the queue
    retry_job_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
