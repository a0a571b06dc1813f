"""Trace ID middleware for request/response propagation."""

import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from taxflow.logging_config import bind_request_context, clear_log_context


class TraceIdMiddleware(BaseHTTPMiddleware):
    """Extract X-Trace-Id from request or generate one, attach to response.

    The trace id and tenant are bound into the logging context for the
    duration of the request.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        trace_id = request.headers.get("x-trace-id") or f"trc_{uuid.uuid4().hex[:16]}"
        tenant_id = request.headers.get("x-tenant-id")
        request.state.trace_id = trace_id
        request.state.tenant_id = tenant_id

        bind_request_context(trace_id, tenant_id)
        try:
            response = await call_next(request)
        finally:
            clear_log_context()
        response.headers["X-Trace-Id"] = trace_id
        return response
