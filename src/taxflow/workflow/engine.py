"""Filing workflow engine.

Applies guarded transitions to a filing, appends the audit step, and publishes
one ``filing.status_changed`` event per committed transition. Publication runs
after the commit: a lost notification never undoes a compliance state change.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from taxflow.db.base import as_utc
from taxflow.errors.exceptions import (
    ConflictError,
    FilingNotFoundError,
    InvalidTransitionError,
    ValidationError,
)
from taxflow.events.publisher import EventPublisher
from taxflow.models.enums import (
    EntityType,
    EventSource,
    FilingStepType,
    WebhookEventType,
    WorkflowStatus,
)
from taxflow.models.filing import FilingModel, FilingStepModel, TransitionResult
from taxflow.repositories.filing_repo import FilingRepository, FilingStepRepository
from taxflow.services.id_generator import generate_id
from taxflow.workers.queue import JobQueue
from taxflow.workflow.transitions import (
    STEP_DESCRIPTIONS,
    STEP_TITLES,
    can_transition,
    initial_step_status,
    next_steps,
)

logger = logging.getLogger(__name__)

_AMENDABLE_FORMS = ("gstr1", "gstr3b")


class FilingWorkflowService:
    def __init__(self, session: AsyncSession, queue: JobQueue, trace_id: str | None = None):
        self.session = session
        self.queue = queue
        self.trace_id = trace_id
        self.filings = FilingRepository(session)
        self.steps = FilingStepRepository(session)

    async def create_filing(
        self, tenant_id: str, client_id: str, financial_year: str, month: str, actor: str
    ) -> FilingModel:
        existing = await self.filings.get_by_client_month(tenant_id, client_id, month)
        if existing:
            raise ConflictError(f"Filing for client '{client_id}' and month '{month}' already exists")

        row = await self.filings.create(
            filing_id=generate_id("fil_"),
            tenant_id=tenant_id,
            client_id=client_id,
            financial_year=financial_year,
            month=month,
            workflow_status=WorkflowStatus.DRAFT,
            is_locked=False,
            created_by=actor,
        )
        await self.session.commit()
        logger.info("Filing %s created for client %s (%s)", row.filing_id, client_id, month)
        return FilingModel.model_validate(row)

    async def get_filing(self, tenant_id: str, filing_id: str) -> FilingModel:
        return FilingModel.model_validate(await self._load(tenant_id, filing_id))

    async def list_steps(self, tenant_id: str, filing_id: str) -> list[FilingStepModel]:
        await self._load(tenant_id, filing_id)
        return [FilingStepModel.model_validate(s) for s in await self.steps.list_by_filing(filing_id)]

    async def available_next_steps(self, tenant_id: str, filing_id: str) -> list[FilingStepType]:
        filing = await self._load(tenant_id, filing_id)
        return next_steps(filing.workflow_status)

    async def transition(
        self,
        tenant_id: str,
        filing_id: str,
        from_status: str,
        to_status: str,
        actor: str,
        step: str,
        comment: str | None = None,
        changes: dict[str, Any] | None = None,
    ) -> TransitionResult:
        """Apply one legal transition and publish its event.

        ``changes`` are filing columns written in the same transaction as the
        status change (ARNs, filed dates, lock metadata).

        Raises:
            InvalidTransitionError: the triple is not legal, or the filing is
                not in ``from_status``. Nothing is mutated.
            FilingNotFoundError: no such filing for the tenant.
        """
        if not can_transition(from_status, to_status, step):
            raise InvalidTransitionError(from_status, to_status, step)

        filing = await self._load(tenant_id, filing_id, for_update=True)
        current = filing.workflow_status
        if current != from_status:
            await self.session.rollback()
            raise InvalidTransitionError(
                from_status, to_status, step,
                reason=f"filing is currently '{current}'",
            )

        step_kind = FilingStepType(step)
        claimed = await self.filings.advance(
            filing,
            workflow_status=to_status,
            current_step=step_kind,
            **(changes or {}),
        )
        if not claimed:
            await self.session.rollback()
            raise InvalidTransitionError(
                from_status, to_status, step,
                reason="filing was changed by a concurrent transition",
            )

        now = datetime.now(timezone.utc)
        await self.steps.complete_open_steps(filing_id, now)

        step_status = initial_step_status(to_status, step_kind)
        step_row = await self.steps.create(
            step_id=generate_id("stp_"),
            filing_id=filing_id,
            step_type=step_kind,
            status=step_status,
            from_status=from_status,
            to_status=to_status,
            title=STEP_TITLES[step_kind],
            description=STEP_DESCRIPTIONS[step_kind],
            performed_by=actor,
            comments=comment,
            started_at=now,
            completed_at=now if step_status == "completed" else None,
        )
        await self.session.commit()

        filing_model = FilingModel.model_validate(filing)
        step_model = FilingStepModel.model_validate(step_row)
        logger.info(
            "Filing %s transitioned %s -> %s (step=%s, actor=%s)",
            filing_id, from_status, to_status, step_kind, actor,
        )

        event_id = await self._publish_status_change(filing_model, from_status, step_kind)
        return TransitionResult(filing=filing_model, step=step_model, event_id=event_id)

    async def _publish_status_change(
        self, filing: FilingModel, previous_status: str, step: FilingStepType
    ) -> str | None:
        payload = {
            "filingId": filing.filing_id,
            "clientId": filing.client_id,
            "previousStatus": str(previous_status),
            "newStatus": str(filing.workflow_status),
            "step": str(step),
            "financialYear": filing.financial_year,
            "month": filing.month,
            "updatedAt": as_utc(filing.updated_at).isoformat() if filing.updated_at else None,
        }
        try:
            event = await EventPublisher(self.session, self.queue).publish(
                tenant_id=filing.tenant_id,
                event_type=WebhookEventType.FILING_STATUS_CHANGED,
                entity_type=EntityType.FILING,
                entity_id=filing.filing_id,
                payload=payload,
                source=EventSource.FILING_SERVICE,
                trace_id=self.trace_id,
            )
        except Exception as exc:
            # The transition is already committed
            logger.warning("Failed to publish status change for filing %s: %s", filing.filing_id, exc)
            await self.session.rollback()
            return None
        return event.event_id

    async def _load(self, tenant_id: str, filing_id: str, for_update: bool = False):
        filing = await self.filings.get_for_tenant(tenant_id, filing_id, for_update=for_update)
        if not filing:
            raise FilingNotFoundError(filing_id)
        return filing

    async def _step(
        self,
        tenant_id: str,
        filing_id: str,
        to_status: WorkflowStatus,
        step: FilingStepType,
        actor: str,
        comment: str | None = None,
        changes: dict[str, Any] | None = None,
    ) -> TransitionResult:
        filing = await self._load(tenant_id, filing_id)
        return await self.transition(
            tenant_id, filing_id, filing.workflow_status, to_status, actor, step, comment, changes
        )

    # Named entry points, each pinned to one rule of the table

    async def start_gstr1(self, tenant_id: str, filing_id: str, actor: str, comment: str | None = None):
        return await self._step(
            tenant_id, filing_id, WorkflowStatus.PREPARED, FilingStepType.GSTR1_PREPARE, actor, comment
        )

    async def validate_gstr1(self, tenant_id: str, filing_id: str, actor: str, comment: str | None = None):
        return await self._step(
            tenant_id, filing_id, WorkflowStatus.VALIDATED, FilingStepType.GSTR1_VALIDATE, actor, comment
        )

    async def complete_gstr1(
        self,
        tenant_id: str,
        filing_id: str,
        actor: str,
        arn: str,
        filed_at: datetime | None = None,
        comment: str | None = None,
    ) -> TransitionResult:
        return await self._step(
            tenant_id, filing_id, WorkflowStatus.FILED, FilingStepType.GSTR1_FILE, actor,
            comment or f"GSTR-1 filed with ARN: {arn}",
            changes={"gstr1_arn": arn, "gstr1_filed_at": filed_at or datetime.now(timezone.utc)},
        )

    async def prepare_gstr3b(self, tenant_id: str, filing_id: str, actor: str, comment: str | None = None):
        return await self._step(
            tenant_id, filing_id, WorkflowStatus.FILED, FilingStepType.GSTR3B_PREPARE, actor, comment
        )

    async def validate_gstr3b(self, tenant_id: str, filing_id: str, actor: str, comment: str | None = None):
        return await self._step(
            tenant_id, filing_id, WorkflowStatus.FILED, FilingStepType.GSTR3B_VALIDATE, actor, comment
        )

    async def complete_gstr3b(
        self,
        tenant_id: str,
        filing_id: str,
        actor: str,
        arn: str,
        filed_at: datetime | None = None,
        tax_details: dict[str, Any] | None = None,
        comment: str | None = None,
    ) -> TransitionResult:
        changes: dict[str, Any] = {
            "gstr3b_arn": arn,
            "gstr3b_filed_at": filed_at or datetime.now(timezone.utc),
        }
        if tax_details is not None:
            changes["gstr3b_details"] = tax_details
        return await self._step(
            tenant_id, filing_id, WorkflowStatus.FILED, FilingStepType.GSTR3B_FILE, actor,
            comment or f"GSTR-3B filed with ARN: {arn}",
            changes=changes,
        )

    async def lock_period(self, tenant_id: str, filing_id: str, actor: str, reason: str | None = None):
        return await self._step(
            tenant_id, filing_id, WorkflowStatus.LOCKED, FilingStepType.LOCK_MONTH, actor, reason,
            changes={
                "is_locked": True,
                "locked_at": datetime.now(timezone.utc),
                "locked_by": actor,
                "lock_reason": reason,
            },
        )

    async def unlock_period(self, tenant_id: str, filing_id: str, actor: str, reason: str | None = None):
        return await self._step(
            tenant_id, filing_id, WorkflowStatus.FILED, FilingStepType.UNLOCK_MONTH, actor, reason,
            changes={"is_locked": False, "locked_at": None, "locked_by": None, "lock_reason": None},
        )

    async def start_amendment(self, tenant_id: str, filing_id: str, actor: str, reason: str):
        return await self._step(
            tenant_id, filing_id, WorkflowStatus.AMENDMENT, FilingStepType.AMENDMENT, actor,
            f"Amendment started: {reason}",
        )

    async def complete_amendment(
        self, tenant_id: str, filing_id: str, actor: str, arn: str, form_type: str
    ) -> TransitionResult:
        form = form_type.lower()
        if form not in _AMENDABLE_FORMS:
            raise ValidationError(f"Unknown form type '{form_type}'", details={"allowed": list(_AMENDABLE_FORMS)})
        return await self._step(
            tenant_id, filing_id, WorkflowStatus.FILED, FilingStepType.AMENDMENT, actor,
            f"Amendment filed for {form.upper()} with ARN: {arn}",
            changes={f"{form}_arn": arn, f"{form}_filed_at": datetime.now(timezone.utc)},
        )

    async def archive(self, tenant_id: str, filing_id: str, actor: str, comment: str | None = None):
        return await self._step(
            tenant_id, filing_id, WorkflowStatus.ARCHIVED, FilingStepType.ARCHIVE, actor, comment
        )
