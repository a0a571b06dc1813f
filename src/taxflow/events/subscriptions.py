"""Subscription resolution and endpoint projections.

``endpoint_summary`` is the projection used by every ordinary read path. The
signing secret is reachable only through ``load_endpoint_with_secret``.
"""

from sqlalchemy.ext.asyncio import AsyncSession

from taxflow.db.base import as_utc
from taxflow.db.models.webhook import WebhookEndpointRow
from taxflow.errors.exceptions import EndpointNotFoundError, SecretMissingError
from taxflow.models.enums import WebhookEventType
from taxflow.models.webhook import EndpointSummary, EndpointWithSecret, RetryPolicy
from taxflow.repositories.webhook_repo import WebhookEndpointRepository


def _summary_fields(row: WebhookEndpointRow) -> dict:
    return {
        "endpoint_id": row.endpoint_id,
        "tenant_id": row.tenant_id,
        "url": row.url,
        "description": row.description,
        "events": [e for e in (row.events or []) if e != WebhookEventType.ALL],
        "subscribe_to_all": row.subscribe_to_all,
        "is_active": row.is_active,
        "is_test_mode": row.is_test_mode,
        "headers": row.headers,
        "metadata": row.extra_data,
        "retry_policy": RetryPolicy(
            max_retries=row.max_retries,
            initial_backoff_ms=row.initial_backoff_ms,
            max_backoff_ms=row.max_backoff_ms,
        ),
        "success_count": row.success_count,
        "failure_count": row.failure_count,
        "last_triggered_at": as_utc(row.last_triggered_at),
        "last_successful_delivery_at": as_utc(row.last_successful_delivery_at),
        "created_at": as_utc(row.created_at),
        "updated_at": as_utc(row.updated_at),
    }


def endpoint_summary(row: WebhookEndpointRow) -> EndpointSummary:
    return EndpointSummary(**_summary_fields(row))


async def load_endpoint_with_secret(session: AsyncSession, endpoint_id: str) -> EndpointWithSecret:
    """The single accessor that reads an endpoint's signing secret.

    Raises:
        EndpointNotFoundError: no such endpoint.
        SecretMissingError: the endpoint has no secret stored.
    """
    row = await WebhookEndpointRepository(session).get_with_secret(endpoint_id)
    if row is None:
        raise EndpointNotFoundError(endpoint_id)
    if not row.secret:
        raise SecretMissingError(endpoint_id)
    return EndpointWithSecret(**_summary_fields(row), secret=row.secret)


async def resolve_subscribers(session: AsyncSession, tenant_id: str, event_type: str) -> list[EndpointSummary]:
    """Active, non-test endpoints of the tenant subscribed to ``event_type``."""
    rows = await WebhookEndpointRepository(session).list_live(tenant_id)
    summaries = [endpoint_summary(row) for row in rows]
    return [s for s in summaries if s.subscribes_to(event_type)]
