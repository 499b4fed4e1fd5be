"""Reconciliation worker tests.

Tests focus on one batch and one loop tick:
- Each in-flight request is reconciled independently
- The loop recovers interrupted requests on every tick and stops on cancellation
"""

import asyncio
from datetime import datetime, timedelta

import pytest

from forge3d.core.config import Settings
from forge3d.models.generation_request import GenerationRequest, GenerationStatus
from forge3d.services.reconciler import ReconcileOutcome
from forge3d.workers.reconciliation_worker import process_batch, run_reconciliation_worker


@pytest.fixture
def settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


async def _start(orchestrator, funded_user, make_photos, provider, job_id: str, user_id: str):
    await funded_user(user_id, balance=1)
    provider.job_ids.append(job_id)
    return await orchestrator.start(user_id, make_photos())


@pytest.mark.asyncio
async def test_process_batch_reconciles_each_request(
    reconciler, orchestrator, uow_factory, settings, funded_user, make_photos, provider
):
    """Test a batch with one finished and one running job.

    Scenario:
    1. Two submitted requests from different users
    2. Provider reports "done" succeeded, "running" still processing
    3. Batch reports one completed and one pending
    """
    done = await _start(orchestrator, funded_user, make_photos, provider, "done", "user-1")
    running = await _start(orchestrator, funded_user, make_photos, provider, "running", "user-2")
    provider.succeed("done")

    counts = await process_batch(reconciler, uow_factory, settings)

    assert counts == {ReconcileOutcome.COMPLETED: 1, ReconcileOutcome.PENDING: 1}
    async with await uow_factory() as uow:
        assert (await uow.generation_requests.get_by_id(done.id)).status == GenerationStatus.COMPLETED
        assert (await uow.generation_requests.get_by_id(running.id)).status == GenerationStatus.POLLING


@pytest.mark.asyncio
async def test_process_batch_with_nothing_in_flight(reconciler, uow_factory, settings, provider):
    assert await process_batch(reconciler, uow_factory, settings) == {}
    assert provider.status_calls == 0


@pytest.mark.asyncio
async def test_worker_loop_completes_jobs_until_cancelled(
    reconciler, orchestrator, uow_factory, settings, funded_user, make_photos, provider
):
    request = await _start(orchestrator, funded_user, make_photos, provider, "abc", "user-1")
    provider.succeed("abc")

    task = asyncio.create_task(run_reconciliation_worker(reconciler, uow_factory, settings))

    stored: GenerationRequest | None = None
    for _ in range(100):
        await asyncio.sleep(0.05)
        async with await uow_factory() as uow:
            stored = await uow.generation_requests.get_by_id(request.id)
        if stored.status == GenerationStatus.COMPLETED:
            break

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert stored is not None
    assert stored.status == GenerationStatus.COMPLETED


@pytest.mark.asyncio
async def test_worker_recovers_requests_abandoned_after_startup(reconciler, uow_factory, settings):
    """Test recovery of a request abandoned while the worker is already running.

    Scenario:
    1. Worker starts with nothing to recover
    2. A reserved request is left in removing_background for an hour
    3. A later tick fails it and gives the credit back
    """
    settings.poll_interval_seconds = 0
    task = asyncio.create_task(run_reconciliation_worker(reconciler, uow_factory, settings))
    await asyncio.sleep(0.05)

    abandoned = GenerationRequest(
        owner_id="user-1",
        status=GenerationStatus.REMOVING_BACKGROUND,
        photo_urls={"front": "https://storage/original/front"},
        credit_reserved=True,
        updated_at=datetime.utcnow() - timedelta(hours=1),
    )
    async with await uow_factory() as uow:
        await uow.credits.get_or_create("user-1", 1)
        assert await uow.credits.reserve("user-1", abandoned.id)
        await uow.generation_requests.add(abandoned)

    stored: GenerationRequest | None = None
    for _ in range(100):
        await asyncio.sleep(0.05)
        async with await uow_factory() as uow:
            stored = await uow.generation_requests.get_by_id(abandoned.id)
        if stored.status == GenerationStatus.FAILED:
            break

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert stored is not None
    assert stored.status == GenerationStatus.FAILED
    assert stored.credit_reserved is False
    async with await uow_factory() as uow:
        assert (await uow.credits.get_by_user("user-1")).balance == 1
