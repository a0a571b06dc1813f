"""String enums for filing workflow and webhook delivery vocabularies."""

from enum import StrEnum


class WorkflowStatus(StrEnum):
    DRAFT = "draft"
    PREPARED = "prepared"
    VALIDATED = "validated"
    FILED = "filed"
    AMENDMENT = "amendment"
    LOCKED = "locked"
    ARCHIVED = "archived"


class FilingStepType(StrEnum):
    GSTR1_PREPARE = "gstr1_prepare"
    GSTR1_VALIDATE = "gstr1_validate"
    GSTR1_FILE = "gstr1_file"
    GSTR3B_PREPARE = "gstr3b_prepare"
    GSTR3B_VALIDATE = "gstr3b_validate"
    GSTR3B_FILE = "gstr3b_file"
    AMENDMENT = "amendment"
    LOCK_MONTH = "lock_month"
    UNLOCK_MONTH = "unlock_month"
    ARCHIVE = "archive"


class StepStatus(StrEnum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class WebhookEventType(StrEnum):
    FILING_CREATED = "filing.created"
    FILING_STATUS_CHANGED = "filing.status_changed"
    FILING_LOCKED = "filing.locked"
    FILING_AMENDED = "filing.amended"
    DOCUMENT_UPLOADED = "document.uploaded"
    DOCUMENT_PROCESSED = "document.processed"
    DOCUMENT_REJECTED = "document.rejected"
    ITC_RECONCILIATION_COMPLETED = "itc.reconciliation_completed"
    ITC_DISCREPANCY_DETECTED = "itc.discrepancy_detected"
    PAYMENT_RECEIVED = "payment.received"
    PAYMENT_FAILED = "payment.failed"
    COMPLIANCE_ALERT = "compliance.alert"
    ALL = "*"


class EntityType(StrEnum):
    FILING = "filing"
    DOCUMENT = "document"
    INVOICE = "invoice"
    ITC_RECONCILIATION = "itc_reconciliation"
    PAYMENT = "payment"
    CLIENT = "client"


class EventSource(StrEnum):
    FILING_SERVICE = "filing_service"
    ITC_SERVICE = "itc_service"
    DOCUMENT_SERVICE = "document_service"
    NOTIFICATION_SERVICE = "notification_service"
    MANUAL = "manual"


class EventStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    DELIVERED = "delivered"
    FAILED = "failed"


class DeliveryStatus(StrEnum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"
    INVALID_URL = "invalid_url"


class JobStatus(StrEnum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
