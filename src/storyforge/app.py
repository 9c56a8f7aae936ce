"""FastAPI application factory."""

import asyncio
from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from storyforge.api.routes import jobs, processing
from storyforge.core.config import Settings, configure_logging
from storyforge.core.database import setup_db_session
from storyforge.pipeline import build_pipeline
from storyforge.workers import run_generation_worker

logger = structlog.get_logger()


def create_resilient_worker(
    coro_func, pipeline, settings, worker_name: str, shutdown_event: asyncio.Event
):
    """Create a worker with automatic restart on failure.

    Args:
        coro_func: Worker coroutine function (e.g., run_generation_worker)
        pipeline: Job pipeline passed to the worker
        settings: Application settings
        worker_name: Human-readable worker name for logging
        shutdown_event: Event to signal graceful shutdown

    Returns:
        Initial task handle (will be auto-recreated on crash)
    """
    RESTART_DELAY = 1  # Fixed 1 second delay between restarts

    def on_worker_done(task: asyncio.Task):
        if shutdown_event.is_set():
            logger.info("worker.shutdown_complete", worker=worker_name)
            return

        if task.cancelled():
            logger.info("worker.cancelled", worker=worker_name)
            return

        exc = task.exception()
        if exc:
            logger.error(
                "worker.crashed",
                worker=worker_name,
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in_seconds=RESTART_DELAY,
                exc_info=exc,
            )
        else:
            # Worker loops never return on their own
            logger.warning(
                "worker.stopped_unexpectedly",
                worker=worker_name,
                retry_in_seconds=RESTART_DELAY,
            )

        async def restart_worker():
            await asyncio.sleep(RESTART_DELAY)

            # Shutdown may have been requested during the sleep
            if shutdown_event.is_set():
                return

            logger.info("worker.restarting", worker=worker_name)
            new_task = asyncio.create_task(coro_func(pipeline, settings))
            new_task.add_done_callback(on_worker_done)

        asyncio.create_task(restart_worker())

    task = asyncio.create_task(coro_func(pipeline, settings))
    task.add_done_callback(on_worker_done)
    return task


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Handles startup and shutdown tasks:
    - Startup: Configure logging, open the database pool and HTTP client,
      build the pipeline, start the poller when SCHEDULER_ENABLED
    - Shutdown: Stop the poller, close the HTTP client
    """
    settings = Settings()  # type: ignore[call-arg]
    configure_logging(settings)

    session_factory = None
    if settings.queue_backend != "memory":
        session_factory = setup_db_session(settings.database_url, settings.db_pool_size)

    http_client = httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=10.0))
    pipeline = build_pipeline(settings, http_client, session_factory)

    # Store in app.state for access in routes
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.http_client = http_client
    app.state.pipeline = pipeline

    shutdown_event = asyncio.Event()
    worker_task = None
    if settings.scheduler_enabled:
        worker_task = create_resilient_worker(
            run_generation_worker, pipeline, settings, "generation", shutdown_event
        )

    logger.info(
        "application.startup",
        db_url=settings.database_url.split("@")[-1] if session_factory else None,
        queue_backend=settings.queue_backend,
        scheduler_enabled=settings.scheduler_enabled,
    )

    yield

    logger.info("application.shutdown")
    shutdown_event.set()

    if worker_task is not None:
        worker_task.cancel()
        await asyncio.gather(worker_task, return_exceptions=True)

    await http_client.aclose()


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    settings = Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="Storyforge Generation API",
        description="Queue-driven image and video generation for storyboards",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(processing.router)
    app.include_router(jobs.router)

    # Health check endpoint with database validation
    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint with database connectivity test.

        Returns:
            200: {"status": "healthy"} if the database answers (or none is configured)
            503: {"status": "unhealthy", "error": {...}} if database connection fails
        """
        session_factory = getattr(app.state, "session_factory", None)
        if session_factory is None:
            return {"status": "healthy", "database": "not configured"}

        try:
            async with session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()

            logger.debug("health_check.success")
            return {"status": "healthy"}

        except Exception as e:
            logger.error(
                "health_check.failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {
                "status": "unhealthy",
                "error": {
                    "type": type(e).__name__,
                    "message": str(e),
                },
            }

    return app


# Create app instance for uvicorn
app = create_app()
