"""Worker registry mapping job types to worker classes."""

from taxflow.workers.base import BaseWorker, WorkerContext
from taxflow.workers.queue import DELIVER_WEBHOOK_JOB, DISPATCH_EVENT_JOB, RETRY_DELIVERY_JOB


def _build_registry() -> dict[str, type[BaseWorker]]:
    from taxflow.workers.webhook_workers import (
        DeliverWebhookWorker,
        DispatchEventWorker,
        RetryDeliveryWorker,
    )

    return {
        DISPATCH_EVENT_JOB: DispatchEventWorker,
        DELIVER_WEBHOOK_JOB: DeliverWebhookWorker,
        RETRY_DELIVERY_JOB: RetryDeliveryWorker,
    }


_registry: dict[str, type[BaseWorker]] = {}


def _ensure_registry() -> None:
    if not _registry:
        _registry.update(_build_registry())


def register_worker(job_type: str, worker_class: type[BaseWorker]) -> None:
    """Register a worker class for a job type."""
    _ensure_registry()
    _registry[job_type] = worker_class


def unregister_worker(job_type: str) -> None:
    _registry.pop(job_type, None)


def get_worker(job_type: str, context: WorkerContext) -> BaseWorker | None:
    """Get a worker instance for a job type."""
    _ensure_registry()
    cls = _registry.get(job_type)
    return cls(context) if cls else None
