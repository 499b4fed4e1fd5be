"""Reconciliation worker for in-flight generation requests.

Polls for requests in submitted/polling status and reconciles each against its
provider. Webhooks usually complete requests first; this loop covers providers
without webhooks, lost callbacks and expired jobs.

Each request is reconciled independently: the reconciler opens its own unit of
work per step, so one request's failure never rolls back another's changes.
"""

import asyncio

import structlog

from forge3d.core.config import Settings
from forge3d.services.reconciler import JobReconciler, ReconcileOutcome
from forge3d.uow import UnitOfWorkFactory

logger = structlog.get_logger(__name__)


async def process_batch(
    reconciler: JobReconciler,
    uow_factory: UnitOfWorkFactory,
    settings: Settings,
) -> dict[ReconcileOutcome, int]:
    """Reconcile a batch of in-flight requests concurrently.

    Uses a short-lived unit of work to select requests via FOR UPDATE SKIP
    LOCKED, then reconciles each one with retry and backoff.

    Args:
        reconciler: Reconciler applying provider status to records
        uow_factory: Factory producing UnitOfWork instances
        settings: Application settings (batch size)

    Returns:
        Count of each outcome in the batch
    """
    async with await uow_factory() as uow:
        requests = await uow.generation_requests.get_in_flight(limit=settings.worker_batch_size)
        request_ids = [request.id for request in requests]

    counts: dict[ReconcileOutcome, int] = {}
    if not request_ids:
        return counts

    results = await asyncio.gather(
        *(reconciler.reconcile_with_retry(request_id) for request_id in request_ids),
        return_exceptions=True,
    )

    for request_id, result in zip(request_ids, results):
        if isinstance(result, BaseException):
            logger.error(
                "reconcile.unexpected_error",
                request_id=str(request_id),
                error=str(result),
                error_type=type(result).__name__,
            )
            continue
        counts[result] = counts.get(result, 0) + 1

    logger.debug("worker.batch_processed", **{k.value: v for k, v in counts.items()})
    return counts


async def run_reconciliation_worker(
    reconciler: JobReconciler,
    uow_factory: UnitOfWorkFactory,
    settings: Settings,
) -> None:
    """Main worker loop for job reconciliation.

    Workflow (every tick):
    1. Release reservations of requests abandoned mid-orchestration
    2. Expire in-flight requests older than JOB_TIMEOUT_SECONDS
    3. Reconcile a batch of in-flight requests
    4. Sleep POLL_INTERVAL_SECONDS, handle CancelledError for graceful shutdown

    Args:
        reconciler: Reconciler applying provider status to records
        uow_factory: Factory producing UnitOfWork instances
        settings: Application settings (poll interval, batch size, timeout)
    """
    logger.info(
        "worker.started",
        poll_interval=settings.poll_interval_seconds,
        batch_size=settings.worker_batch_size,
    )

    try:
        while True:
            try:
                await reconciler.recover_interrupted()
                await reconciler.expire_stale(settings.job_timeout_seconds)
                await process_batch(reconciler, uow_factory, settings)

                await asyncio.sleep(settings.poll_interval_seconds)

            except asyncio.CancelledError:
                raise

            except Exception as e:
                logger.error(
                    "worker.error",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                # Back off 5 seconds before retrying
                await asyncio.sleep(5)

    except asyncio.CancelledError:
        logger.info("worker.stopped")
        raise
