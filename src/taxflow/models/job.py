"""Pydantic model for JobStatus entity."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict

from taxflow.models.enums import JobStatus


class JobStatusModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    job_id: str
    queue_name: str
    job_type: str
    status: JobStatus
    tenant_id: str | None = None
    retry_count: int = 0
    run_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    trace_id: str
    result: dict[str, Any] | None = None
    errors: list[dict[str, Any]] | None = None
