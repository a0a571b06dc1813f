"""SQLAlchemy ORM models - import all to register with Base.metadata."""

from taxflow.db.models.filing import FilingRow, FilingStepRow
from taxflow.db.models.job import JobRow
from taxflow.db.models.webhook import (
    WebhookDeliveryRow,
    WebhookEndpointRow,
    WebhookEventRow,
)

__all__ = [
    "FilingRow",
    "FilingStepRow",
    "JobRow",
    "WebhookDeliveryRow",
    "WebhookEndpointRow",
    "WebhookEventRow",
]
