"""Job status reconciler: brings local records in line with provider job status.

Polling (worker, GET /status) and webhook delivery both end in apply_status().
Every transition out of submitted/polling is a conditional UPDATE, so a poll and a
webhook racing on the same record produce the same result as a single application:
one model_url, at most one refund.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Mapping, Optional
from uuid import UUID

import structlog
from sqlalchemy.exc import SQLAlchemyError

from forge3d.models.generation_request import (
    IN_FLIGHT_STATUSES,
    GenerationRequest,
    GenerationStatus,
)
from forge3d.services.exceptions import (
    PermanentProviderError,
    ServiceError,
    StorageError,
    TransientError,
)
from forge3d.services.generation.base import (
    GenerationProvider,
    ProviderJobState,
    ProviderStatus,
)
from forge3d.services.storage.r2_client import ObjectStore
from forge3d.uow import UnitOfWorkFactory

logger = structlog.get_logger()

RETRIES_EXHAUSTED = "status check exhausted retries"
JOB_EXPIRED = "job expired"
NO_MODEL_RETURNED = "provider returned no model"
GENERATION_FAILED = "generation failed"
INTERRUPTED = "generation interrupted"


class ReconcileOutcome(str, Enum):
    """What a reconciliation did to the record."""

    PENDING = "pending"  # provider still working, record is polling
    COMPLETED = "completed"  # this call stored the model and completed the record
    FAILED = "failed"  # this call failed the record and refunded
    NOOP = "noop"  # record already terminal, not in flight, or another writer won
    NOT_FOUND = "not_found"  # no local record


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for status checks."""

    max_attempts: int = 5
    base_delay: float = 2.0
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Delay after the given zero-based failed attempt."""
        return min(self.base_delay * (2**attempt), self.max_delay)


class JobReconciler:
    """Idempotent reconciliation of in-flight generation requests."""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        providers: Mapping[str, GenerationProvider],
        object_store: ObjectStore,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        model_copy_lease_seconds: int = 300,
    ):
        """Initialize reconciler.

        Args:
            uow_factory: Factory producing UnitOfWork instances
            providers: Provider name to provider; records are reconciled against
                the provider they were submitted to
            object_store: Permanent storage for generated models
            retry_policy: Backoff for transient status-check failures
            sleep: Awaitable sleep (tests pass a no-op)
            model_copy_lease_seconds: Age after which an unfinished model copy
                claimed by another writer may be taken over
        """
        self.uow_factory = uow_factory
        self.providers = providers
        self.object_store = object_store
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self.model_copy_lease_seconds = model_copy_lease_seconds

    def _provider_for(self, request: GenerationRequest) -> GenerationProvider:
        provider = self.providers.get(request.provider or "")
        if provider is None:
            raise PermanentProviderError(f"Provider '{request.provider}' is not configured")
        return provider

    async def reconcile(self, request_id: UUID) -> ReconcileOutcome:
        """Fetch the provider's status for a request once and apply it.

        Raises:
            ServiceError: Provider or storage failure (callers decide whether to retry)
        """
        async with await self.uow_factory() as uow:
            request = await uow.generation_requests.get_by_id(request_id)

        if request is None:
            logger.info("reconcile.not_found", request_id=str(request_id))
            return ReconcileOutcome.NOT_FOUND
        if request.status not in IN_FLIGHT_STATUSES or not request.external_job_id:
            return ReconcileOutcome.NOOP

        provider = self._provider_for(request)
        status = await provider.get_status(request.external_job_id)
        return await self.apply_status(request_id, status)

    async def apply_status(self, request_id: UUID, status: ProviderStatus) -> ReconcileOutcome:
        """Apply a provider status to a record.

        Steps:
        1. Missing record → NOT_FOUND, terminal or not-yet-submitted record → NOOP
        2. Non-terminal status → submitted/polling becomes polling, stage stored
        3. Succeeded → copy artifact to permanent storage, then set model_url
           and completed together (only from submitted/polling)
        4. Failed → failed with the provider's reason, refunded once

        Raises:
            StorageError: Artifact download or upload failed (record unchanged)
        """
        async with await self.uow_factory() as uow:
            request = await uow.generation_requests.get_by_id(request_id)
            if request is None:
                logger.info("reconcile.not_found", request_id=str(request_id))
                return ReconcileOutcome.NOT_FOUND
            if request.status not in IN_FLIGHT_STATUSES:
                logger.debug(
                    "reconcile.skipped", request_id=str(request_id), status=request.status.value
                )
                return ReconcileOutcome.NOOP

            if not status.state.is_terminal:
                await uow.generation_requests.claim_polling(
                    request_id, stage=status.stage, progress=status.progress
                )
                return ReconcileOutcome.PENDING

        if status.state == ProviderJobState.FAILED:
            return await self._fail(request, status.error or GENERATION_FAILED)

        if not status.artifact_url:
            return await self._fail(request, NO_MODEL_RETURNED)

        return await self._complete(request, status.artifact_url)

    async def _complete(self, request: GenerationRequest, artifact_url: str) -> ReconcileOutcome:
        """Claim the model copy, store the artifact, then complete the record.

        Only the writer holding the claim downloads; a concurrent webhook or
        poll for the same job returns NOOP without touching storage.
        """
        async with await self.uow_factory() as uow:
            claimed = await uow.generation_requests.claim_model_copy(
                request.id, self.model_copy_lease_seconds
            )
        if not claimed:
            logger.info("reconcile.model_copy_in_progress", request_id=str(request.id))
            return ReconcileOutcome.NOOP

        try:
            model_url = await self.object_store.store_model_from_url(request.id, artifact_url)
        except BaseException:
            async with await self.uow_factory() as uow:
                await uow.generation_requests.release_model_copy(request.id)
            raise

        async with await self.uow_factory() as uow:
            won = await uow.generation_requests.complete_if_in_flight(request.id, model_url)

        if not won:
            logger.info("reconcile.completion_already_applied", request_id=str(request.id))
            return ReconcileOutcome.NOOP

        logger.info("reconcile.completed", request_id=str(request.id), model_url=model_url)

        try:
            async with await self.uow_factory() as uow:
                await uow.credits.increment_generated(request.owner_id)
        except SQLAlchemyError as e:
            # Usage counter only; the generation stays completed
            logger.warning(
                "credits.increment_generated_failed",
                owner_id=request.owner_id,
                error_type=type(e).__name__,
                error_message=str(e),
            )
        return ReconcileOutcome.COMPLETED

    async def _fail(self, request: GenerationRequest, reason: str) -> ReconcileOutcome:
        """Fail an in-flight record and refund its reservation, once."""
        async with await self.uow_factory() as uow:
            won = await uow.generation_requests.fail_if_active(
                request.id, reason, from_statuses=IN_FLIGHT_STATUSES
            )
            if won:
                await uow.credits.refund(request.owner_id, request.id)

        if not won:
            return ReconcileOutcome.NOOP

        logger.warning("reconcile.failed", request_id=str(request.id), reason=reason)
        logger.info("credits.refunded", owner_id=request.owner_id, request_id=str(request.id))
        return ReconcileOutcome.FAILED

    async def reconcile_with_retry(self, request_id: UUID) -> ReconcileOutcome:
        """Reconcile with bounded exponential backoff on transient provider or storage errors.

        Permanent errors (an unconfigured provider, rejected credentials)
        propagate without retrying and leave the record in flight.
        After max_attempts failures the record is failed with
        "status check exhausted retries" and refunded.
        """
        policy = self.retry_policy
        last_error: Optional[ServiceError] = None

        for attempt in range(policy.max_attempts):
            try:
                return await self.reconcile(request_id)
            except (TransientError, StorageError) as e:
                last_error = e
                logger.warning(
                    "reconcile.retry",
                    request_id=str(request_id),
                    attempt=attempt + 1,
                    max_attempts=policy.max_attempts,
                    error_type=type(e).__name__,
                    error_message=str(e),
                )
                if attempt + 1 < policy.max_attempts:
                    await self._sleep(policy.delay_for(attempt))

        logger.error(
            "reconcile.retries_exhausted",
            request_id=str(request_id),
            error_type=type(last_error).__name__,
            error_message=str(last_error),
        )

        async with await self.uow_factory() as uow:
            request = await uow.generation_requests.get_by_id(request_id)
        if request is None:
            return ReconcileOutcome.NOT_FOUND
        return await self._fail(request, RETRIES_EXHAUSTED)

    async def handle_webhook(self, job_id: str, status: ProviderStatus) -> ReconcileOutcome:
        """Apply a pushed provider status to the record owning job_id.

        An unknown job id is dropped without error.
        """
        async with await self.uow_factory() as uow:
            request = await uow.generation_requests.get_by_external_job_id(job_id)

        if request is None:
            logger.info("webhook.unknown_job", external_job_id=job_id)
            return ReconcileOutcome.NOT_FOUND

        outcome = await self.apply_status(request.id, status)
        logger.info(
            "webhook.applied",
            request_id=str(request.id),
            external_job_id=job_id,
            provider_state=status.state.value,
            outcome=outcome.value,
        )
        return outcome

    async def expire_stale(self, timeout_seconds: int, limit: int = 100) -> int:
        """Fail and refund in-flight records submitted more than timeout_seconds ago.

        Returns:
            Number of records expired by this call
        """
        cutoff = datetime.utcnow() - timedelta(seconds=timeout_seconds)
        async with await self.uow_factory() as uow:
            stale = await uow.generation_requests.get_stale_in_flight(cutoff, limit=limit)

        expired = 0
        for request in stale:
            if await self._fail(request, JOB_EXPIRED) == ReconcileOutcome.FAILED:
                expired += 1

        if expired:
            logger.info("reconcile.expired", count=expired, timeout_seconds=timeout_seconds)
        return expired

    async def recover_interrupted(self, older_than_seconds: int = 600, limit: int = 100) -> int:
        """Release reservations held by requests abandoned mid-orchestration.

        Drafts keep their draft state and get their credit back; requests stuck
        in uploading_photos or removing_background are failed and refunded;
        failed requests whose retry claim was never given back are released.

        Returns:
            Number of reservations released
        """
        cutoff = datetime.utcnow() - timedelta(seconds=older_than_seconds)
        async with await self.uow_factory() as uow:
            interrupted = await uow.generation_requests.get_interrupted(cutoff, limit=limit)

        recovered = 0
        for request in interrupted:
            async with await self.uow_factory() as uow:
                if request.status == GenerationStatus.DRAFT:
                    released = await uow.generation_requests.release_draft_reservation(request.id)
                elif request.status == GenerationStatus.FAILED:
                    released = await uow.generation_requests.release_retry_claim(
                        request.id, request.error_reason or INTERRUPTED
                    )
                else:
                    released = await uow.generation_requests.fail_if_active(
                        request.id,
                        INTERRUPTED,
                        from_statuses=frozenset(
                            {GenerationStatus.UPLOADING_PHOTOS, GenerationStatus.REMOVING_BACKGROUND}
                        ),
                    )
                if released:
                    await uow.credits.refund(request.owner_id, request.id, INTERRUPTED)
                    recovered += 1

        if recovered:
            logger.info("worker.recovery", interrupted_requests_released=recovered)
        return recovered
