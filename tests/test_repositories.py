"""Repository layer tests for forge3d backend.

Tests focus on the logic the rest of the system relies on:
- Lazy credit account creation (idempotent, one grant)
- Atomic reserve / refund and the transaction history behind them
- Compare-and-swap generation transitions (only one writer wins)
- Worker queries (in-flight, stale, interrupted)

Simple CRUD operations are not tested (trust SQLAlchemy).
"""

import asyncio
from datetime import datetime, timedelta
from uuid import uuid4

import pytest

from forge3d.models.credit_transaction import CreditTransactionType
from forge3d.models.generation_request import GenerationRequest, GenerationStatus
from forge3d.repositories.credit_account import CreditAccountRepository
from forge3d.repositories.generation_request import GenerationRequestRepository


async def _add_request(uow_factory, **fields) -> GenerationRequest:
    request = GenerationRequest(owner_id=fields.pop("owner_id", "user-1"), **fields)
    async with await uow_factory() as uow:
        await uow.generation_requests.add(request)
    return request


async def _get(uow_factory, request_id) -> GenerationRequest:
    async with await uow_factory() as uow:
        request = await uow.generation_requests.get_by_id(request_id)
    assert request is not None
    return request


@pytest.mark.asyncio
async def test_get_or_create_is_idempotent(session):
    """Test CreditAccountRepository.get_or_create creates the account once.

    Scenario:
    1. get_or_create("user-1", 2) twice
    2. Assert balance is 2, not 4
    3. Assert exactly one "initial balance" grant was recorded
    """
    repo = CreditAccountRepository(session)

    first = await repo.get_or_create("user-1", 2)
    second = await repo.get_or_create("user-1", 5)
    await session.commit()

    assert first.balance == 2
    assert second.balance == 2

    transactions = await repo.list_transactions("user-1")
    assert [(t.type, t.credits) for t in transactions] == [(CreditTransactionType.GRANT.value, 2)]


@pytest.mark.asyncio
async def test_get_or_create_with_zero_balance_records_nothing(session):
    repo = CreditAccountRepository(session)

    account = await repo.get_or_create("user-1", 0)

    assert account.balance == 0
    assert await repo.list_transactions("user-1") == []


@pytest.mark.asyncio
async def test_reserve_rejects_exhausted_balance(session):
    """Test reserve() never takes the balance below zero.

    Scenario:
    1. Account with balance 1
    2. First reserve succeeds (balance 0)
    3. Second reserve reports failure, balance stays 0
    """
    repo = CreditAccountRepository(session)
    await repo.get_or_create("user-1", 1)
    request_id = uuid4()

    assert await repo.reserve("user-1", request_id) is True
    assert await repo.reserve("user-1", uuid4()) is False
    await session.commit()

    account = await repo.get_by_user("user-1")
    assert account.balance == 0

    reservations = [
        t for t in await repo.list_transactions("user-1") if t.type == CreditTransactionType.RESERVE.value
    ]
    assert len(reservations) == 1
    assert reservations[0].credits == -1
    assert reservations[0].generation_request_id == request_id


@pytest.mark.asyncio
async def test_reserve_without_account_fails(session):
    repo = CreditAccountRepository(session)

    assert await repo.reserve("nobody") is False


@pytest.mark.asyncio
async def test_concurrent_reservations_never_overdraw(uow_factory):
    """Two reservations racing on a balance of 1: exactly one succeeds."""
    async with await uow_factory() as uow:
        await uow.credits.get_or_create("user-1", 1)

    async def reserve() -> bool:
        async with await uow_factory() as uow:
            return await uow.credits.reserve("user-1", uuid4())

    results = await asyncio.gather(reserve(), reserve())

    assert sorted(results) == [False, True]
    async with await uow_factory() as uow:
        account = await uow.credits.get_by_user("user-1")
    assert account.balance == 0


@pytest.mark.asyncio
async def test_refund_returns_one_credit(session):
    repo = CreditAccountRepository(session)
    await repo.get_or_create("user-1", 1)
    request_id = uuid4()
    await repo.reserve("user-1", request_id)

    await repo.refund("user-1", request_id)
    await session.commit()

    account = await repo.get_by_user("user-1")
    assert account.balance == 1
    refunds = [
        t for t in await repo.list_transactions("user-1") if t.type == CreditTransactionType.REFUND.value
    ]
    assert [(t.credits, t.generation_request_id) for t in refunds] == [(1, request_id)]


@pytest.mark.asyncio
async def test_refund_without_account_raises(session):
    repo = CreditAccountRepository(session)

    with pytest.raises(ValueError, match="No credit account"):
        await repo.refund("nobody")


@pytest.mark.asyncio
async def test_grant_creates_account_and_adds_credits(session):
    repo = CreditAccountRepository(session)

    account = await repo.grant("user-1", 5, default_balance=2, description="support top-up")

    assert account.balance == 7
    grants = await repo.list_transactions("user-1")
    assert sorted(t.credits for t in grants) == [2, 5]
    assert {t.description for t in grants} == {"initial balance", "support top-up"}


@pytest.mark.asyncio
async def test_grant_rejects_non_positive_credits(session):
    repo = CreditAccountRepository(session)

    with pytest.raises(ValueError, match="positive"):
        await repo.grant("user-1", 0)


@pytest.mark.asyncio
async def test_increment_generated(session):
    repo = CreditAccountRepository(session)
    await repo.get_or_create("user-1", 2)

    await repo.increment_generated("user-1")
    await repo.increment_generated("user-1")
    await session.commit()

    account = await repo.get_by_user("user-1")
    assert account.total_generated == 2
    assert account.balance == 2


@pytest.mark.asyncio
async def test_complete_if_in_flight_applies_once(uow_factory):
    """Test complete_if_in_flight is a compare-and-swap.

    Scenario:
    1. Request in polling
    2. First completion wins (True), second loses (False)
    3. model_url, status and reservation flag set together
    """
    request = await _add_request(
        uow_factory,
        status=GenerationStatus.POLLING,
        external_job_id="abc",
        credit_reserved=True,
    )

    async with await uow_factory() as uow:
        first = await uow.generation_requests.complete_if_in_flight(request.id, "https://storage/a.glb")
    async with await uow_factory() as uow:
        second = await uow.generation_requests.complete_if_in_flight(request.id, "https://storage/b.glb")

    assert (first, second) == (True, False)
    stored = await _get(uow_factory, request.id)
    assert stored.status == GenerationStatus.COMPLETED
    assert stored.model_url == "https://storage/a.glb"
    assert stored.credit_reserved is False
    assert stored.progress == 100
    assert stored.completed_at is not None


@pytest.mark.asyncio
async def test_complete_if_in_flight_rejects_empty_url(session):
    repo = GenerationRequestRepository(session)

    with pytest.raises(ValueError, match="model_url"):
        await repo.complete_if_in_flight(uuid4(), "")


@pytest.mark.asyncio
async def test_fail_if_active_releases_reservation_once(uow_factory):
    request = await _add_request(
        uow_factory, status=GenerationStatus.SUBMITTED, external_job_id="abc", credit_reserved=True
    )

    async with await uow_factory() as uow:
        first = await uow.generation_requests.fail_if_active(request.id, "provider error")
    async with await uow_factory() as uow:
        second = await uow.generation_requests.fail_if_active(request.id, "timeout")

    assert (first, second) == (True, False)
    stored = await _get(uow_factory, request.id)
    assert stored.status == GenerationStatus.FAILED
    assert stored.error_reason == "provider error"
    assert stored.credit_reserved is False


@pytest.mark.asyncio
async def test_fail_if_active_ignores_completed(uow_factory):
    request = await _add_request(
        uow_factory, status=GenerationStatus.COMPLETED, model_url="https://storage/a.glb"
    )

    async with await uow_factory() as uow:
        assert await uow.generation_requests.fail_if_active(request.id, "late failure") is False

    stored = await _get(uow_factory, request.id)
    assert stored.status == GenerationStatus.COMPLETED
    assert stored.error_reason is None


@pytest.mark.asyncio
async def test_claim_polling_records_progress(uow_factory):
    request = await _add_request(
        uow_factory, status=GenerationStatus.SUBMITTED, external_job_id="abc", credit_reserved=True
    )

    async with await uow_factory() as uow:
        assert await uow.generation_requests.claim_polling(request.id, stage="texturing", progress=140)

    stored = await _get(uow_factory, request.id)
    assert stored.status == GenerationStatus.POLLING
    assert stored.provider_stage == "texturing"
    assert stored.progress == 100


@pytest.mark.asyncio
async def test_claim_polling_never_moves_terminal_record(uow_factory):
    request = await _add_request(uow_factory, status=GenerationStatus.FAILED, error_reason="boom")

    async with await uow_factory() as uow:
        assert await uow.generation_requests.claim_polling(request.id) is False

    assert (await _get(uow_factory, request.id)).status == GenerationStatus.FAILED


@pytest.mark.asyncio
async def test_retry_claim_is_exclusive(uow_factory):
    """Only one retry can claim a failed request; releasing the claim allows another."""
    request = await _add_request(uow_factory, status=GenerationStatus.FAILED, error_reason="boom")

    async with await uow_factory() as uow:
        assert await uow.generation_requests.claim_retry(request.id) is True
    async with await uow_factory() as uow:
        assert await uow.generation_requests.claim_retry(request.id) is False
    async with await uow_factory() as uow:
        assert await uow.generation_requests.release_retry_claim(request.id, "rejected again")
    async with await uow_factory() as uow:
        assert await uow.generation_requests.claim_retry(request.id) is True

    stored = await _get(uow_factory, request.id)
    assert stored.error_reason == "rejected again"
    assert stored.status == GenerationStatus.FAILED


@pytest.mark.asyncio
async def test_get_by_external_job_id(uow_factory):
    request = await _add_request(
        uow_factory, status=GenerationStatus.SUBMITTED, external_job_id="abc", credit_reserved=True
    )

    async with await uow_factory() as uow:
        found = await uow.generation_requests.get_by_external_job_id("abc")
        missing = await uow.generation_requests.get_by_external_job_id("zzz")

    assert found is not None and found.id == request.id
    assert missing is None


@pytest.mark.asyncio
async def test_get_for_owner_hides_other_users_requests(uow_factory):
    request = await _add_request(uow_factory, owner_id="user-1")

    async with await uow_factory() as uow:
        assert await uow.generation_requests.get_for_owner(request.id, "user-1") is not None
        assert await uow.generation_requests.get_for_owner(request.id, "user-2") is None


@pytest.mark.asyncio
async def test_get_by_owner_paginates_and_filters(uow_factory):
    for _ in range(3):
        await _add_request(uow_factory, owner_id="user-1", status=GenerationStatus.FAILED)
    await _add_request(uow_factory, owner_id="user-1", status=GenerationStatus.COMPLETED)
    await _add_request(uow_factory, owner_id="user-2", status=GenerationStatus.FAILED)

    async with await uow_factory() as uow:
        page, total = await uow.generation_requests.get_by_owner("user-1", limit=2)
        failed, failed_total = await uow.generation_requests.get_by_owner(
            "user-1", status=GenerationStatus.FAILED
        )

    assert total == 4
    assert len(page) == 2
    assert failed_total == 3
    assert all(r.status == GenerationStatus.FAILED and r.owner_id == "user-1" for r in failed)


@pytest.mark.asyncio
async def test_worker_queries(uow_factory):
    """Test in-flight, stale and interrupted selections.

    Scenario:
    1. One fresh polling request, one submitted two hours ago
    2. A reserved draft, a removing_background request and a failed request
       with an unreleased retry claim, all untouched for an hour
    3. One completed request and one released failed request (never selected)
    """
    now = datetime.utcnow()
    fresh = await _add_request(
        uow_factory,
        status=GenerationStatus.POLLING,
        external_job_id="fresh",
        credit_reserved=True,
        submitted_at=now,
    )
    stale = await _add_request(
        uow_factory,
        status=GenerationStatus.SUBMITTED,
        external_job_id="stale",
        credit_reserved=True,
        submitted_at=now - timedelta(hours=2),
    )
    draft = await _add_request(
        uow_factory, credit_reserved=True, updated_at=now - timedelta(hours=1)
    )
    stuck = await _add_request(
        uow_factory,
        status=GenerationStatus.REMOVING_BACKGROUND,
        credit_reserved=True,
        updated_at=now - timedelta(hours=1),
    )
    abandoned_retry = await _add_request(
        uow_factory,
        status=GenerationStatus.FAILED,
        credit_reserved=True,
        updated_at=now - timedelta(hours=1),
    )
    await _add_request(
        uow_factory, status=GenerationStatus.FAILED, updated_at=now - timedelta(hours=1)
    )
    await _add_request(uow_factory, status=GenerationStatus.COMPLETED, model_url="https://storage/a.glb")

    async with await uow_factory() as uow:
        in_flight = await uow.generation_requests.get_in_flight(limit=10)
        expired = await uow.generation_requests.get_stale_in_flight(now - timedelta(hours=1))
        interrupted = await uow.generation_requests.get_interrupted(now - timedelta(minutes=10))

    assert {r.id for r in in_flight} == {fresh.id, stale.id}
    assert [r.id for r in expired] == [stale.id]
    assert {r.id for r in interrupted} == {draft.id, stuck.id, abandoned_retry.id}


@pytest.mark.asyncio
async def test_mark_submitted_if_reserved(uow_factory):
    """First submission and a claimed retry are recorded; a refunded request is not."""
    first = await _add_request(
        uow_factory, status=GenerationStatus.REMOVING_BACKGROUND, credit_reserved=True
    )
    claimed = await _add_request(
        uow_factory, status=GenerationStatus.FAILED, error_reason="boom", credit_reserved=True, attempts=1
    )
    refunded = await _add_request(uow_factory, status=GenerationStatus.FAILED, error_reason="job expired")

    async with await uow_factory() as uow:
        assert await uow.generation_requests.mark_submitted_if_reserved(first.id, "job-1", "fake")
        assert await uow.generation_requests.mark_submitted_if_reserved(claimed.id, "job-2", "fake")
        assert not await uow.generation_requests.mark_submitted_if_reserved(refunded.id, "job-3", "fake")

    submitted = await _get(uow_factory, first.id)
    assert submitted.status == GenerationStatus.SUBMITTED
    assert submitted.external_job_id == "job-1"
    assert submitted.attempts == 1
    assert submitted.submitted_at is not None

    resubmitted = await _get(uow_factory, claimed.id)
    assert resubmitted.status == GenerationStatus.SUBMITTED
    assert resubmitted.error_reason is None
    assert resubmitted.attempts == 2

    untouched = await _get(uow_factory, refunded.id)
    assert untouched.status == GenerationStatus.FAILED
    assert untouched.external_job_id is None


@pytest.mark.asyncio
async def test_mark_submitted_if_reserved_requires_job_id(session):
    with pytest.raises(ValueError, match="external_job_id"):
        await GenerationRequestRepository(session).mark_submitted_if_reserved(uuid4(), "", "fake")


@pytest.mark.asyncio
async def test_model_copy_claim_is_exclusive(uow_factory):
    """Only one writer copies a model; a released claim can be taken again."""
    request = await _add_request(
        uow_factory, status=GenerationStatus.POLLING, external_job_id="abc", credit_reserved=True
    )

    async with await uow_factory() as uow:
        assert await uow.generation_requests.claim_model_copy(request.id, lease_seconds=300)
    async with await uow_factory() as uow:
        assert not await uow.generation_requests.claim_model_copy(request.id, lease_seconds=300)
        assert not await uow.generation_requests.claim_polling(request.id, stage="processing")
    async with await uow_factory() as uow:
        assert await uow.generation_requests.release_model_copy(request.id)
    async with await uow_factory() as uow:
        assert await uow.generation_requests.claim_model_copy(request.id, lease_seconds=300)


@pytest.mark.asyncio
async def test_model_copy_claim_requires_in_flight_record(uow_factory):
    request = await _add_request(uow_factory, status=GenerationStatus.COMPLETED, model_url="https://storage/a.glb")

    async with await uow_factory() as uow:
        assert not await uow.generation_requests.claim_model_copy(request.id, lease_seconds=300)
