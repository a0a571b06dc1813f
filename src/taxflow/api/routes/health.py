"""Liveness and readiness endpoints."""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from taxflow.workers.queue import WEBHOOK_QUEUE

router = APIRouter()

SERVICE_NAME = "taxflow-api"
SERVICE_VERSION = "1.0.0"


class CheckFailed(Exception):
    pass


async def _check_database(state) -> str:
    async with state.db_session_factory() as session:
        await session.execute(text("SELECT 1"))
    return "ok"


async def _check_redis(state) -> str:
    redis = getattr(state, "redis", None)
    if redis is None:
        return "disabled"
    await redis.ping()
    return "ok"


async def _check_queue(state) -> str:
    queue = getattr(state, "job_queue", None)
    if queue is None:
        raise CheckFailed("no job queue configured")
    return f"ok ({await queue.size(WEBHOOK_QUEUE)} pending)"


_CHECKS = {
    "database": _check_database,
    "redis": _check_redis,
    "queue": _check_queue,
}


@router.get("/health")
async def health_check():
    return {"status": "healthy", "service": SERVICE_NAME, "version": SERVICE_VERSION}


@router.get("/health/live")
async def liveness():
    """200 for as long as the process can serve requests."""
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness(request: Request):
    """Check the database, Redis and the webhook job queue.

    Any failing check turns the response into a 503 with the error text
    recorded against that check.
    """
    checks: dict[str, str] = {}
    for name, check in _CHECKS.items():
        try:
            checks[name] = await check(request.app.state)
        except Exception as exc:
            checks[name] = f"error: {exc}"

    ready = not any(value.startswith("error") for value in checks.values())
    return JSONResponse(
        status_code=200 if ready else 503,
        content={"status": "ready" if ready else "not_ready", "checks": checks},
    )
