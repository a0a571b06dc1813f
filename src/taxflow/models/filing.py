"""Pydantic models for filings and their workflow audit trail."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict

from taxflow.models.enums import FilingStepType, StepStatus, WorkflowStatus


class FilingModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    filing_id: str
    tenant_id: str
    client_id: str
    financial_year: str
    month: str
    workflow_status: WorkflowStatus
    current_step: str | None = None
    gstr1_arn: str | None = None
    gstr1_filed_at: datetime | None = None
    gstr3b_arn: str | None = None
    gstr3b_filed_at: datetime | None = None
    gstr3b_details: dict[str, Any] | None = None
    is_locked: bool = False
    locked_at: datetime | None = None
    locked_by: str | None = None
    lock_reason: str | None = None
    created_at: datetime
    updated_at: datetime


class FilingStepModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    step_id: str
    filing_id: str
    step_type: FilingStepType
    status: StepStatus
    from_status: WorkflowStatus
    to_status: WorkflowStatus
    title: str
    description: str | None = None
    performed_by: str
    comments: str | None = None
    started_at: datetime
    completed_at: datetime | None = None


class TransitionResult(BaseModel):
    """Outcome of a committed transition."""

    filing: FilingModel
    step: FilingStepModel
    event_id: str | None = None
