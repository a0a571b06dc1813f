"""Filing and filing step (audit trail) tables."""

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from taxflow.db.base import Base, TimestampMixin


class FilingRow(Base, TimestampMixin):
    __tablename__ = "filings"
    __table_args__ = (
        UniqueConstraint("tenant_id", "client_id", "month", name="uq_filings_tenant_client_month"),
    )

    filing_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    client_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    financial_year: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    month: Mapped[str] = mapped_column(String(20), nullable=False)
    workflow_status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft", index=True)
    current_step: Mapped[str | None] = mapped_column(String(50), nullable=True)

    gstr1_arn: Mapped[str | None] = mapped_column(String(64), nullable=True)
    gstr1_filed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    gstr3b_arn: Mapped[str | None] = mapped_column(String(64), nullable=True)
    gstr3b_filed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    gstr3b_details: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    is_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    locked_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    lock_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str] = mapped_column(String(200), nullable=False)
    # Bumped by every status write; guards against concurrent transitions
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)


class FilingStepRow(Base, TimestampMixin):
    """Append-only audit record, one per transition."""

    __tablename__ = "filing_steps"

    step_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    filing_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("filings.filing_id"), nullable=False, index=True
    )
    step_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    from_status: Mapped[str] = mapped_column(String(20), nullable=False)
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    performed_by: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
