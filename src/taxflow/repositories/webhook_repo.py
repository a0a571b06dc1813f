"""Webhook endpoint, event, and delivery repositories."""

from datetime import datetime, timedelta, timezone

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.orm import aliased, undefer

from taxflow.db.base import as_utc
from taxflow.db.models.webhook import WebhookDeliveryRow, WebhookEndpointRow, WebhookEventRow
from taxflow.models.enums import DeliveryStatus, EventStatus
from taxflow.repositories.base import BaseRepository


class WebhookEndpointRepository(BaseRepository[WebhookEndpointRow]):
    model = WebhookEndpointRow
    pk = "endpoint_id"

    async def get_with_secret(self, endpoint_id: str) -> WebhookEndpointRow | None:
        """Load an endpoint including its signing secret.

        The secret column raises on ordinary loads; this is the one query that
        undefers it.
        """
        stmt = (
            select(WebhookEndpointRow)
            .options(undefer(WebhookEndpointRow.secret))
            .where(WebhookEndpointRow.endpoint_id == endpoint_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_tenant(self, tenant_id: str, active_only: bool = False) -> list[WebhookEndpointRow]:
        stmt = select(WebhookEndpointRow).where(WebhookEndpointRow.tenant_id == tenant_id)
        if active_only:
            stmt = stmt.where(WebhookEndpointRow.is_active.is_(True))
        stmt = stmt.order_by(WebhookEndpointRow.created_at.desc())
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_live(self, tenant_id: str) -> list[WebhookEndpointRow]:
        """Active endpoints not restricted to test deliveries."""
        stmt = select(WebhookEndpointRow).where(
            WebhookEndpointRow.tenant_id == tenant_id,
            WebhookEndpointRow.is_active.is_(True),
            WebhookEndpointRow.is_test_mode.is_(False),
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_by_ids(self, endpoint_ids: list[str]) -> list[WebhookEndpointRow]:
        if not endpoint_ids:
            return []
        stmt = select(WebhookEndpointRow).where(WebhookEndpointRow.endpoint_id.in_(endpoint_ids))
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def record_outcome(self, endpoint_id: str, success: bool, triggered_at: datetime) -> None:
        """Increment the rolling counters in a single UPDATE.

        The counter expressions are evaluated by the database, so concurrent
        completions for the same endpoint never lose an increment.
        """
        values: dict = {"last_triggered_at": triggered_at}
        if success:
            values["success_count"] = WebhookEndpointRow.success_count + 1
            values["last_successful_delivery_at"] = triggered_at
        else:
            values["failure_count"] = WebhookEndpointRow.failure_count + 1
        stmt = (
            update(WebhookEndpointRow)
            .where(WebhookEndpointRow.endpoint_id == endpoint_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    async def list_failing(
        self, tenant_id: str, max_failures: int = 10, min_attempts: int = 5
    ) -> list[WebhookEndpointRow]:
        stmt = select(WebhookEndpointRow).where(
            WebhookEndpointRow.tenant_id == tenant_id,
            WebhookEndpointRow.is_active.is_(True),
            WebhookEndpointRow.failure_count >= max_failures,
            (WebhookEndpointRow.failure_count + WebhookEndpointRow.success_count) >= min_attempts,
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def has_deliveries(self, endpoint_id: str) -> bool:
        stmt = select(func.count()).select_from(WebhookDeliveryRow).where(
            WebhookDeliveryRow.endpoint_id == endpoint_id
        )
        return (await self.session.execute(stmt)).scalar_one() > 0

    async def delete(self, endpoint_id: str) -> None:
        await self.session.execute(
            delete(WebhookEndpointRow).where(WebhookEndpointRow.endpoint_id == endpoint_id)
        )


class WebhookEventRepository(BaseRepository[WebhookEventRow]):
    model = WebhookEventRow
    pk = "event_id"

    async def list_for_tenant(
        self,
        tenant_id: str,
        status: str | None = None,
        event_type: str | None = None,
        limit: int = 50,
        skip: int = 0,
    ) -> list[WebhookEventRow]:
        stmt = select(WebhookEventRow).where(WebhookEventRow.tenant_id == tenant_id)
        if status:
            stmt = stmt.where(WebhookEventRow.status == status)
        if event_type:
            stmt = stmt.where(WebhookEventRow.event_type == event_type)
        stmt = stmt.order_by(WebhookEventRow.created_at.desc()).offset(skip).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_by_correlation(self, tenant_id: str, correlation_id: str) -> list[WebhookEventRow]:
        stmt = (
            select(WebhookEventRow)
            .where(
                WebhookEventRow.tenant_id == tenant_id,
                WebhookEventRow.correlation_id == correlation_id,
            )
            .order_by(WebhookEventRow.created_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_stale_pending(self, older_than: datetime, limit: int = 100) -> list[WebhookEventRow]:
        """Pending events created before ``older_than``, oldest first."""
        stmt = (
            select(WebhookEventRow)
            .where(
                WebhookEventRow.status == EventStatus.PENDING,
                WebhookEventRow.created_at < older_than,
            )
            .order_by(WebhookEventRow.created_at)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_by_status(self, tenant_id: str) -> dict[str, int]:
        return await self._status_counts(tenant_id, EventStatus)

    async def list_processing_for_endpoint(self, tenant_id: str, endpoint_id: str) -> list[WebhookEventRow]:
        """Processing events whose dispatch targeted ``endpoint_id``."""
        stmt = select(WebhookEventRow).where(
            WebhookEventRow.tenant_id == tenant_id,
            WebhookEventRow.status == EventStatus.PROCESSING,
        )
        result = await self.session.execute(stmt)
        return [e for e in result.scalars().all() if endpoint_id in (e.target_endpoint_ids or [])]

    async def set_status(self, event: WebhookEventRow, status: str, failure_reason: str | None = None) -> None:
        now = datetime.now(timezone.utc)
        event.status = status
        event.last_attempt_at = now
        event.attempt_count = (event.attempt_count or 0) + 1
        if failure_reason:
            event.failure_reason = failure_reason
        if status in (EventStatus.DELIVERED, EventStatus.FAILED):
            event.processed_at = now
        await self.session.flush()


class WebhookDeliveryRepository(BaseRepository[WebhookDeliveryRow]):
    model = WebhookDeliveryRow
    pk = "delivery_id"

    async def get_attempt(self, event_id: str, endpoint_id: str, attempt_number: int) -> WebhookDeliveryRow | None:
        stmt = select(WebhookDeliveryRow).where(
            WebhookDeliveryRow.event_id == event_id,
            WebhookDeliveryRow.endpoint_id == endpoint_id,
            WebhookDeliveryRow.attempt_number == attempt_number,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def latest_attempt_number(self, event_id: str, endpoint_id: str) -> int:
        stmt = select(func.max(WebhookDeliveryRow.attempt_number)).where(
            WebhookDeliveryRow.event_id == event_id,
            WebhookDeliveryRow.endpoint_id == endpoint_id,
        )
        return (await self.session.execute(stmt)).scalar_one_or_none() or 0

    async def list_stranded_retries(self, due_before: datetime, limit: int = 100) -> list[WebhookDeliveryRow]:
        """Retrying deliveries due before ``due_before`` with no queued job and no later attempt."""
        successor = aliased(WebhookDeliveryRow)
        later_attempt = (
            select(successor.delivery_id)
            .where(
                successor.event_id == WebhookDeliveryRow.event_id,
                successor.endpoint_id == WebhookDeliveryRow.endpoint_id,
                successor.attempt_number == WebhookDeliveryRow.attempt_number + 1,
            )
            .exists()
        )
        stmt = (
            select(WebhookDeliveryRow)
            .where(
                WebhookDeliveryRow.will_retry.is_(True),
                WebhookDeliveryRow.retry_job_id.is_(None),
                WebhookDeliveryRow.next_retry_at < due_before,
                ~later_attempt,
            )
            .order_by(WebhookDeliveryRow.next_retry_at)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_for_event(self, event_id: str) -> list[WebhookDeliveryRow]:
        stmt = (
            select(WebhookDeliveryRow)
            .where(WebhookDeliveryRow.event_id == event_id)
            .order_by(WebhookDeliveryRow.endpoint_id, WebhookDeliveryRow.attempt_number)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_for_endpoint(
        self,
        endpoint_id: str,
        status: str | None = None,
        limit: int = 50,
        skip: int = 0,
    ) -> list[WebhookDeliveryRow]:
        stmt = select(WebhookDeliveryRow).where(WebhookDeliveryRow.endpoint_id == endpoint_id)
        if status:
            stmt = stmt.where(WebhookDeliveryRow.status == status)
        stmt = stmt.order_by(WebhookDeliveryRow.created_at.desc()).offset(skip).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_recent(self, endpoint_id: str, hours: int = 24) -> list[WebhookDeliveryRow]:
        since = datetime.now(timezone.utc) - timedelta(hours=hours)
        stmt = (
            select(WebhookDeliveryRow)
            .where(
                WebhookDeliveryRow.endpoint_id == endpoint_id,
                WebhookDeliveryRow.created_at >= since,
            )
            .order_by(WebhookDeliveryRow.created_at.desc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_by_status(self, tenant_id: str) -> dict[str, int]:
        return await self._status_counts(tenant_id, DeliveryStatus)

    async def endpoint_stats(self, endpoint_id: str) -> dict:
        """Aggregate delivery statistics for one endpoint."""

        def _count(status: DeliveryStatus):
            return func.sum(case((WebhookDeliveryRow.status == status, 1), else_=0))

        stmt = select(
            func.count(WebhookDeliveryRow.delivery_id),
            _count(DeliveryStatus.SUCCESS),
            _count(DeliveryStatus.FAILED),
            _count(DeliveryStatus.TIMEOUT),
            _count(DeliveryStatus.INVALID_URL),
            func.avg(WebhookDeliveryRow.response_time_ms),
            func.max(WebhookDeliveryRow.created_at),
        ).where(WebhookDeliveryRow.endpoint_id == endpoint_id)
        total, success, failed, timeout, invalid_url, avg_ms, last = (await self.session.execute(stmt)).one()

        total = total or 0
        success = success or 0
        return {
            "total_deliveries": total,
            "success_count": success,
            "failed_count": failed or 0,
            "timeout_count": timeout or 0,
            "invalid_url_count": invalid_url or 0,
            "avg_response_time_ms": round(avg_ms, 2) if avg_ms is not None else 0,
            "last_delivery_at": as_utc(last),
            "success_rate": round(success / total * 100) if total > 0 else 0,
        }
