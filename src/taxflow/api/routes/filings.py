"""Filing workflow API routes."""

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from taxflow.dependencies import get_actor_id, get_db, get_job_queue, get_tenant_id, get_trace_id
from taxflow.models.enums import FilingStepType, WorkflowStatus
from taxflow.models.filing import FilingModel
from taxflow.repositories.filing_repo import FilingRepository
from taxflow.workers.queue import JobQueue
from taxflow.workflow.engine import FilingWorkflowService

router = APIRouter(tags=["Filings"])


class FilingCreate(BaseModel):
    client_id: str = Field(min_length=1)
    financial_year: str = Field(pattern=r"^\d{4}-\d{2}$")
    month: str = Field(pattern=r"^\d{4}-\d{2}$")


class TransitionRequest(BaseModel):
    from_status: WorkflowStatus
    to_status: WorkflowStatus
    step: FilingStepType
    comment: str | None = None


class StepComment(BaseModel):
    comment: str | None = None


class FilingCompletion(BaseModel):
    arn: str = Field(min_length=1)
    filed_at: datetime | None = None
    comment: str | None = None


class GSTR3BCompletion(FilingCompletion):
    tax_details: dict[str, Any] | None = None


class PeriodLock(BaseModel):
    reason: str | None = None


class AmendmentStart(BaseModel):
    reason: str = Field(min_length=1)


class AmendmentCompletion(BaseModel):
    arn: str = Field(min_length=1)
    form_type: str = Field(min_length=1)


def _service(db: AsyncSession, queue: JobQueue, trace_id: str) -> FilingWorkflowService:
    return FilingWorkflowService(db, queue, trace_id=trace_id)


def _result(result) -> dict:
    return result.model_dump(mode="json")


@router.post("/filings", status_code=201)
async def create_filing(
    body: FilingCreate,
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
    tenant_id: str = Depends(get_tenant_id),
    actor: str = Depends(get_actor_id),
    trace_id: str = Depends(get_trace_id),
) -> dict:
    filing = await _service(db, queue, trace_id).create_filing(
        tenant_id, body.client_id, body.financial_year, body.month, actor
    )
    return filing.model_dump(mode="json")


@router.get("/filings")
async def list_filings(
    client_id: str,
    financial_year: str | None = None,
    db: AsyncSession = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
) -> list[dict]:
    rows = await FilingRepository(db).list_by_client(tenant_id, client_id, financial_year)
    return [FilingModel.model_validate(r).model_dump(mode="json") for r in rows]


@router.get("/filings/{filing_id}")
async def get_filing(
    filing_id: str,
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
    tenant_id: str = Depends(get_tenant_id),
    trace_id: str = Depends(get_trace_id),
) -> dict:
    filing = await _service(db, queue, trace_id).get_filing(tenant_id, filing_id)
    return filing.model_dump(mode="json")


@router.get("/filings/{filing_id}/steps")
async def list_filing_steps(
    filing_id: str,
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
    tenant_id: str = Depends(get_tenant_id),
    trace_id: str = Depends(get_trace_id),
) -> list[dict]:
    steps = await _service(db, queue, trace_id).list_steps(tenant_id, filing_id)
    return [s.model_dump(mode="json") for s in steps]


@router.get("/filings/{filing_id}/next-steps")
async def get_next_steps(
    filing_id: str,
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
    tenant_id: str = Depends(get_tenant_id),
    trace_id: str = Depends(get_trace_id),
) -> dict:
    service = _service(db, queue, trace_id)
    filing = await service.get_filing(tenant_id, filing_id)
    steps = await service.available_next_steps(tenant_id, filing_id)
    return {
        "filing_id": filing_id,
        "workflow_status": filing.workflow_status,
        "available_steps": [str(s) for s in steps],
    }


@router.post("/filings/{filing_id}/transitions")
async def transition_filing(
    filing_id: str,
    body: TransitionRequest,
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
    tenant_id: str = Depends(get_tenant_id),
    actor: str = Depends(get_actor_id),
    trace_id: str = Depends(get_trace_id),
) -> dict:
    result = await _service(db, queue, trace_id).transition(
        tenant_id, filing_id, body.from_status, body.to_status, actor, body.step, body.comment
    )
    return _result(result)


@router.post("/filings/{filing_id}/gstr1/start")
async def start_gstr1(
    filing_id: str,
    body: StepComment | None = None,
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
    tenant_id: str = Depends(get_tenant_id),
    actor: str = Depends(get_actor_id),
    trace_id: str = Depends(get_trace_id),
) -> dict:
    comment = body.comment if body else None
    return _result(await _service(db, queue, trace_id).start_gstr1(tenant_id, filing_id, actor, comment))


@router.post("/filings/{filing_id}/gstr1/validate")
async def validate_gstr1(
    filing_id: str,
    body: StepComment | None = None,
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
    tenant_id: str = Depends(get_tenant_id),
    actor: str = Depends(get_actor_id),
    trace_id: str = Depends(get_trace_id),
) -> dict:
    comment = body.comment if body else None
    return _result(await _service(db, queue, trace_id).validate_gstr1(tenant_id, filing_id, actor, comment))


@router.post("/filings/{filing_id}/gstr1/complete")
async def complete_gstr1(
    filing_id: str,
    body: FilingCompletion,
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
    tenant_id: str = Depends(get_tenant_id),
    actor: str = Depends(get_actor_id),
    trace_id: str = Depends(get_trace_id),
) -> dict:
    result = await _service(db, queue, trace_id).complete_gstr1(
        tenant_id, filing_id, actor, body.arn, body.filed_at, body.comment
    )
    return _result(result)


@router.post("/filings/{filing_id}/gstr3b/prepare")
async def prepare_gstr3b(
    filing_id: str,
    body: StepComment | None = None,
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
    tenant_id: str = Depends(get_tenant_id),
    actor: str = Depends(get_actor_id),
    trace_id: str = Depends(get_trace_id),
) -> dict:
    comment = body.comment if body else None
    return _result(await _service(db, queue, trace_id).prepare_gstr3b(tenant_id, filing_id, actor, comment))


@router.post("/filings/{filing_id}/gstr3b/validate")
async def validate_gstr3b(
    filing_id: str,
    body: StepComment | None = None,
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
    tenant_id: str = Depends(get_tenant_id),
    actor: str = Depends(get_actor_id),
    trace_id: str = Depends(get_trace_id),
) -> dict:
    comment = body.comment if body else None
    return _result(await _service(db, queue, trace_id).validate_gstr3b(tenant_id, filing_id, actor, comment))


@router.post("/filings/{filing_id}/gstr3b/complete")
async def complete_gstr3b(
    filing_id: str,
    body: GSTR3BCompletion,
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
    tenant_id: str = Depends(get_tenant_id),
    actor: str = Depends(get_actor_id),
    trace_id: str = Depends(get_trace_id),
) -> dict:
    result = await _service(db, queue, trace_id).complete_gstr3b(
        tenant_id, filing_id, actor, body.arn, body.filed_at, body.tax_details, body.comment
    )
    return _result(result)


@router.post("/filings/{filing_id}/lock")
async def lock_period(
    filing_id: str,
    body: PeriodLock | None = None,
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
    tenant_id: str = Depends(get_tenant_id),
    actor: str = Depends(get_actor_id),
    trace_id: str = Depends(get_trace_id),
) -> dict:
    reason = body.reason if body else None
    return _result(await _service(db, queue, trace_id).lock_period(tenant_id, filing_id, actor, reason))


@router.post("/filings/{filing_id}/unlock")
async def unlock_period(
    filing_id: str,
    body: PeriodLock | None = None,
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
    tenant_id: str = Depends(get_tenant_id),
    actor: str = Depends(get_actor_id),
    trace_id: str = Depends(get_trace_id),
) -> dict:
    reason = body.reason if body else None
    return _result(await _service(db, queue, trace_id).unlock_period(tenant_id, filing_id, actor, reason))


@router.post("/filings/{filing_id}/amendment/start")
async def start_amendment(
    filing_id: str,
    body: AmendmentStart,
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
    tenant_id: str = Depends(get_tenant_id),
    actor: str = Depends(get_actor_id),
    trace_id: str = Depends(get_trace_id),
) -> dict:
    return _result(await _service(db, queue, trace_id).start_amendment(tenant_id, filing_id, actor, body.reason))


@router.post("/filings/{filing_id}/amendment/complete")
async def complete_amendment(
    filing_id: str,
    body: AmendmentCompletion,
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
    tenant_id: str = Depends(get_tenant_id),
    actor: str = Depends(get_actor_id),
    trace_id: str = Depends(get_trace_id),
) -> dict:
    result = await _service(db, queue, trace_id).complete_amendment(
        tenant_id, filing_id, actor, body.arn, body.form_type
    )
    return _result(result)


@router.post("/filings/{filing_id}/archive")
async def archive_filing(
    filing_id: str,
    body: StepComment | None = None,
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
    tenant_id: str = Depends(get_tenant_id),
    actor: str = Depends(get_actor_id),
    trace_id: str = Depends(get_trace_id),
) -> dict:
    comment = body.comment if body else None
    return _result(await _service(db, queue, trace_id).archive(tenant_id, filing_id, actor, comment))
