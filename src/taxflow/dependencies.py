"""FastAPI dependency injection providers."""

from collections.abc import AsyncGenerator

import httpx
from fastapi import Request

from taxflow.errors.exceptions import AuthenticationError
from taxflow.workers.queue import JobQueue


async def get_db(request: Request) -> AsyncGenerator:
    """One session per request, closed when the response is sent."""
    session_factory = request.app.state.db_session_factory
    async with session_factory() as session:
        yield session


def get_job_queue(request: Request) -> JobQueue:
    return request.app.state.job_queue


def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http_client


def get_trace_id(request: Request) -> str:
    return getattr(request.state, "trace_id", "unknown")


def get_tenant_id(request: Request) -> str:
    """Tenant owning the request, from ``X-Tenant-Id``; set on state by middleware."""
    tenant_id = getattr(request.state, "tenant_id", None)
    if not tenant_id:
        raise AuthenticationError("X-Tenant-Id header is required")
    return tenant_id


def get_actor_id(request: Request) -> str:
    return request.headers.get("x-actor-id") or "system"

