"""ASGI entrypoint: wires storage, the job queue and the worker pool into FastAPI."""

import asyncio
import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from taxflow.api.middleware.trace_id import TraceIdMiddleware
from taxflow.api.router import api_router
from taxflow.config import settings
from taxflow.db.engine import create_all_tables, create_db_engine, create_session_factory
from taxflow.errors.handlers import register_exception_handlers
from taxflow.logging_config import configure_logging
from taxflow.workers.base import WorkerContext
from taxflow.workers.pool import WorkerPool
from taxflow.workers.queue import InProcessJobQueue, RedisJobQueue
from taxflow.workers.scheduler import run_scheduler

configure_logging(log_level=settings.log_level, json_output=not settings.local_mode)

logger = logging.getLogger(__name__)


async def _open_storage(app: FastAPI) -> None:
    db_url = settings.effective_database_url
    engine = create_db_engine(db_url)
    if db_url.startswith("sqlite"):
        # No migrations in local mode; the schema comes straight from the models.
        await create_all_tables(engine)
    app.state.db_engine = engine
    app.state.db_session_factory = create_session_factory(engine)
    logger.info("Database ready (%s)", engine.dialect.name)


def _open_queue(app: FastAPI) -> None:
    if settings.use_redis_queue:
        import redis.asyncio as aioredis

        app.state.redis = aioredis.from_url(settings.redis_url, decode_responses=True)
        app.state.job_queue = RedisJobQueue(app.state.redis)
        logger.info("Job queue backed by Redis at %s", settings.redis_url)
    else:
        app.state.redis = None
        app.state.job_queue = InProcessJobQueue()
        logger.info("Job queue held in process memory")


async def _start_workers(app: FastAPI) -> WorkerPool:
    app.state.http_client = httpx.AsyncClient(timeout=settings.webhook_timeout_seconds)
    context = WorkerContext(app.state.job_queue, app.state.http_client, app.state.redis)
    pool = WorkerPool(app.state.job_queue, app.state.db_session_factory, context)
    await pool.start()
    app.state.worker_pool = pool
    return pool


@asynccontextmanager
async def lifespan(app: FastAPI):
    await _open_storage(app)
    _open_queue(app)
    pool = await _start_workers(app)
    sweeper = asyncio.create_task(run_scheduler(app))
    logger.info("TaxFlow API started")

    yield

    sweeper.cancel()
    try:
        await sweeper
    except asyncio.CancelledError:
        pass
    await pool.stop()
    await app.state.http_client.aclose()
    await app.state.job_queue.close()
    await app.state.db_engine.dispose()
    logger.info("TaxFlow API stopped")


def create_app() -> FastAPI:
    app = FastAPI(
        title="TaxFlow API",
        version="1.0.0",
        description="Filing workflow state machine with signed, retried webhook delivery.",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    # Added last so it runs first and every response carries X-Trace-Id.
    app.add_middleware(TraceIdMiddleware)
    register_exception_handlers(app)
    app.include_router(api_router)
    return app


app = create_app()
