"""Exception handlers rendering every API failure in the error envelope."""

import logging
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from taxflow.errors.exceptions import InvalidTransitionError, TaxFlowError
from taxflow.models.common import ErrorDetail, ErrorResponse

logger = logging.getLogger(__name__)


def _envelope(request: Request, status_code: int, code: str, message: str, details=None) -> JSONResponse:
    body = ErrorResponse(
        error=ErrorDetail(
            code=code,
            message=message,
            details=details,
            trace_id=getattr(request.state, "trace_id", "unknown"),
            timestamp=datetime.now(timezone.utc),
        ),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json", exclude_none=True))


async def handle_taxflow_error(request: Request, exc: TaxFlowError) -> JSONResponse:
    if isinstance(exc, InvalidTransitionError):
        logger.info(
            "workflow_transition_rejected",
            extra={"path": request.url.path, "reason": exc.message, **(exc.details or {})},
        )
    elif exc.status_code >= 500:
        logger.error("%s %s failed with %s: %s", request.method, request.url.path, exc.code, exc.message)
    return _envelope(request, exc.status_code, exc.code, exc.message, exc.details)


async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed request bodies and query strings as 400 VALIDATION_ERROR."""
    fields = [
        {
            "field": ".".join(str(part) for part in err["loc"] if part != "body") or "body",
            "message": err["msg"],
            "type": err["type"],
        }
        for err in exc.errors()
    ]
    logger.warning("request_validation_failed", extra={"path": request.url.path, "fields": fields})
    return _envelope(request, 400, "VALIDATION_ERROR", "Request validation failed", {"fields": fields})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(TaxFlowError, handle_taxflow_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation)
