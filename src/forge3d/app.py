"""FastAPI application factory."""

import asyncio
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from forge3d.api.errors import register_exception_handlers
from forge3d.api.routes import credits, generations, webhooks
from forge3d.core import timezone  # noqa: F401  # sets TZ=UTC
from forge3d.core.config import Settings, configure_logging
from forge3d.core.database import setup_db_session
from forge3d.services.background_removal import RembgBackgroundRemover
from forge3d.services.generation.factory import build_provider, build_providers
from forge3d.services.orchestrator import GenerationOrchestrator
from forge3d.services.reconciler import JobReconciler, RetryPolicy
from forge3d.services.storage.r2_client import R2ObjectStore
from forge3d.uow import create_uow_factory
from forge3d.workers.reconciliation_worker import run_reconciliation_worker

logger = structlog.get_logger()


def create_resilient_worker(
    coro_func, worker_args: tuple, worker_name: str, shutdown_event: asyncio.Event
):
    """Create a worker with automatic restart on failure.

    Args:
        coro_func: Worker coroutine function (e.g., run_reconciliation_worker)
        worker_args: Positional arguments passed to coro_func on every (re)start
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
            # Infinite loop workers are not expected to return
            logger.warning(
                "worker.stopped_unexpectedly",
                worker=worker_name,
                retry_in_seconds=RESTART_DELAY,
            )

        async def restart_worker():
            await asyncio.sleep(RESTART_DELAY)

            if shutdown_event.is_set():
                return

            logger.info("worker.restarting", worker=worker_name)
            new_task = asyncio.create_task(coro_func(*worker_args))
            new_task.add_done_callback(on_worker_done)

        asyncio.create_task(restart_worker())

    task = asyncio.create_task(coro_func(*worker_args))
    task.add_done_callback(on_worker_done)
    return task


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Handles startup and shutdown tasks:
    - Startup: configure logging, build the database session factory, the
      object store, providers, orchestrator and reconciler, start the worker
    - Shutdown: stop the worker, dispose of the connection pool
    """
    settings = Settings()  # type: ignore[call-arg]

    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)

    object_store = R2ObjectStore(
        account_id=settings.r2_account_id,
        access_key_id=settings.r2_access_key_id,
        secret_access_key=settings.r2_secret_access_key,
        photos_bucket=settings.r2_photos_bucket,
        models_bucket=settings.r2_models_bucket,
        public_photos_url=settings.r2_public_photos_url,
        public_models_url=settings.r2_public_models_url,
        download_timeout=settings.artifact_download_timeout_seconds,
    )
    providers = build_providers(settings)

    orchestrator = GenerationOrchestrator(
        uow_factory=uow_factory,
        object_store=object_store,
        background_remover=RembgBackgroundRemover(),
        provider=build_provider(settings, providers),
        default_credit_balance=settings.default_credit_balance,
        max_photo_bytes=settings.max_photo_bytes,
    )
    reconciler = JobReconciler(
        uow_factory=uow_factory,
        providers=providers,
        object_store=object_store,
        retry_policy=RetryPolicy(
            max_attempts=settings.status_check_max_attempts,
            base_delay=settings.status_check_base_delay_seconds,
            max_delay=settings.status_check_max_delay_seconds,
        ),
    )

    # Store in app.state for access in routes
    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    app.state.orchestrator = orchestrator
    app.state.reconciler = reconciler

    shutdown_event = asyncio.Event()

    worker_task = create_resilient_worker(
        run_reconciliation_worker,
        (reconciler, uow_factory, settings),
        "reconciliation",
        shutdown_event,
    )

    logger.info(
        "application.startup",
        db_url=settings.database_url.split("@")[-1],
        provider=settings.generation_provider,
        webhooks_enabled=bool(settings.public_base_url),
    )

    yield

    logger.info("application.shutdown")
    shutdown_event.set()

    worker_task.cancel()
    await asyncio.gather(worker_task, return_exceptions=True)

    await session_factory.kw["bind"].dispose()


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    settings = Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="forge3d API",
        description="Product photo to 3D model generation",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    app.include_router(generations.router)
    app.include_router(credits.router)
    app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])

    # Health check endpoint with database validation
    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint with database connectivity test.

        Returns:
            200: {"status": "healthy"} if database connection succeeds
            503: {"status": "unhealthy", "error": {...}} if database connection fails
        """
        try:
            async with app.state.session_factory() as session:
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
