"""structlog setup shared by the API process and the worker pool."""

import logging
import sys

import structlog

# Event dict keys whose values never reach a log sink.
_REDACTED_KEYS = frozenset({"secret", "signature", "authorization", "x-webhook-signature"})

_QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpx", "httpcore")


def redact_secrets(_logger, _method: str, event_dict: dict) -> dict:
    for key in event_dict.keys() & _REDACTED_KEYS:
        event_dict[key] = "[redacted]"
    headers = event_dict.get("headers")
    if isinstance(headers, dict):
        event_dict["headers"] = {
            name: "[redacted]" if name.lower() in _REDACTED_KEYS else value
            for name, value in headers.items()
        }
    return event_dict


def _pre_chain() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
    ]


def configure_logging(log_level: str = "info", json_output: bool = False) -> None:
    """Route structlog and stdlib logging through one stdout handler.

    JSON lines in deployed environments, the coloured console renderer
    when running locally.
    """
    pre_chain = _pre_chain()
    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if json_output:
        final = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        final = [structlog.dev.ConsoleRenderer(colors=True)]

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *final],
            foreign_pre_chain=pre_chain,
        )
    )

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_log_context(**values: str | None) -> None:
    """Bind non-empty identifiers to every log line in the current task."""
    structlog.contextvars.bind_contextvars(**{k: v for k, v in values.items() if v})


def bind_request_context(trace_id: str, tenant_id: str | None = None) -> None:
    bind_log_context(trace_id=trace_id, tenant_id=tenant_id)


def bind_job_context(job_id: str, job_type: str, correlation_id: str | None = None) -> None:
    bind_log_context(job_id=job_id, job_type=job_type, correlation_id=correlation_id)


def clear_log_context() -> None:
    structlog.contextvars.clear_contextvars()
