"""GenerationRequest repository for forge3d.

Provides data access methods for GenerationRequest entities. Transitions that
polling and webhook delivery can race on are conditional UPDATEs guarded by the
current status, so only one writer ever moves a record out of a given state.
"""

from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from forge3d.models.generation_request import (
    IN_FLIGHT_STATUSES,
    GenerationRequest,
    GenerationStatus,
)

# Non-terminal states that hold a credit reservation by construction
RESERVING_STATUSES = frozenset(
    {
        GenerationStatus.UPLOADING_PHOTOS,
        GenerationStatus.REMOVING_BACKGROUND,
        GenerationStatus.SUBMITTED,
        GenerationStatus.POLLING,
    }
)

# States a provider submission may be recorded from: first submission or a claimed retry
SUBMITTABLE_STATUSES = frozenset({GenerationStatus.REMOVING_BACKGROUND, GenerationStatus.FAILED})

# provider_stage while one writer copies the model into permanent storage
STORING_STAGE = "storing"


class GenerationRequestRepository:
    """Repository for GenerationRequest entities.

    Methods include worker coordination queries using FOR UPDATE SKIP LOCKED
    and compare-and-swap transitions that report whether they applied.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_id(self, request_id: UUID) -> GenerationRequest | None:
        """Retrieve a generation request by UUID, refreshing any cached copy.

        Args:
            request_id: Request's unique identifier

        Returns:
            GenerationRequest if found, None otherwise
        """
        result = await self.session.execute(
            select(GenerationRequest)
            .where(GenerationRequest.id == request_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_for_owner(self, request_id: UUID, owner_id: str) -> GenerationRequest | None:
        """Retrieve a generation request only if it belongs to owner_id."""
        request = await self.get_by_id(request_id)
        if request is None or request.owner_id != owner_id:
            return None
        return request

    async def get_by_external_job_id(self, external_job_id: str) -> GenerationRequest | None:
        """Retrieve the generation request that owns a provider job id.

        Args:
            external_job_id: Identifier assigned by the generation provider

        Returns:
            GenerationRequest if found, None otherwise
        """
        result = await self.session.execute(
            select(GenerationRequest)
            .where(GenerationRequest.external_job_id == external_job_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def add(self, request: GenerationRequest) -> GenerationRequest:
        """Persist new generation request to database.

        Args:
            request: GenerationRequest entity to persist

        Returns:
            Persisted request with generated ID
        """
        self.session.add(request)
        await self.session.flush()
        return request

    async def save(self, request: GenerationRequest) -> GenerationRequest:
        """Flush changes made through the entity's mark_* methods."""
        self.session.add(request)
        await self.session.flush()
        await self.session.refresh(request)
        return request

    async def get_by_status(
        self, status: GenerationStatus, limit: int = 100, offset: int = 0
    ) -> list[GenerationRequest]:
        """Retrieve generation requests by status with pagination.

        Args:
            status: Status to filter by
            limit: Maximum number of requests to return (default: 100)
            offset: Number of requests to skip (default: 0)

        Returns:
            List of requests ordered by created_at timestamp (oldest first)
        """
        result = await self.session.execute(
            select(GenerationRequest)
            .where(GenerationRequest.status == status)  # type: ignore[arg-type]
            .order_by(GenerationRequest.created_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def get_by_owner(
        self,
        owner_id: str,
        status: GenerationStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[GenerationRequest], int]:
        """Retrieve an owner's generation requests with pagination and total count.

        Returns:
            Tuple of (requests, total) where requests are newest-updated first
        """
        conditions = [GenerationRequest.owner_id == owner_id]
        if status is not None:
            conditions.append(GenerationRequest.status == status)  # type: ignore[arg-type]

        count_result = await self.session.execute(
            select(func.count(GenerationRequest.id)).where(*conditions)  # type: ignore[arg-type]
        )
        total = count_result.scalar() or 0

        data_result = await self.session.execute(
            select(GenerationRequest)
            .where(*conditions)
            .order_by(GenerationRequest.updated_at.desc())  # type: ignore[attr-defined]
            .offset(offset)
            .limit(limit)
        )
        return list(data_result.scalars().all()), total

    async def get_in_flight(self, limit: int = 10) -> list[GenerationRequest]:
        """Retrieve submitted/polling requests for reconciliation with row-level locking.

        Uses FOR UPDATE SKIP LOCKED so concurrent workers receive
        non-overlapping batches. Least recently updated requests come first.

        Args:
            limit: Maximum number of requests to retrieve (default: 10)

        Returns:
            List of requests locked for this worker
        """
        result = await self.session.execute(
            select(GenerationRequest)
            .where(GenerationRequest.status.in_(list(IN_FLIGHT_STATUSES)))  # type: ignore[attr-defined]
            .order_by(GenerationRequest.updated_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    async def get_stale_in_flight(
        self, submitted_before: datetime, limit: int = 100
    ) -> list[GenerationRequest]:
        """Retrieve in-flight requests submitted before a cutoff (expired jobs)."""
        result = await self.session.execute(
            select(GenerationRequest)
            .where(
                GenerationRequest.status.in_(list(IN_FLIGHT_STATUSES)),  # type: ignore[attr-defined]
                GenerationRequest.submitted_at < submitted_before,  # type: ignore[operator]
            )
            .order_by(GenerationRequest.submitted_at.asc())  # type: ignore[union-attr]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_interrupted(
        self, updated_before: datetime, limit: int = 100
    ) -> list[GenerationRequest]:
        """Retrieve requests abandoned mid-orchestration by a crashed process.

        Covers drafts still holding a reservation, requests stuck in
        uploading_photos or removing_background, and failed requests whose
        retry claim was never given back, all untouched since before the cutoff.
        """
        result = await self.session.execute(
            select(GenerationRequest)
            .where(
                GenerationRequest.updated_at < updated_before,  # type: ignore[arg-type]
                GenerationRequest.credit_reserved.is_(True),  # type: ignore[attr-defined]
                GenerationRequest.status.in_(  # type: ignore[attr-defined]
                    [
                        GenerationStatus.DRAFT,
                        GenerationStatus.UPLOADING_PHOTOS,
                        GenerationStatus.REMOVING_BACKGROUND,
                        GenerationStatus.FAILED,
                    ]
                ),
            )
            .order_by(GenerationRequest.updated_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _conditional_update(self, request_id: UUID, conditions: list, values: dict) -> bool:
        """Apply an UPDATE only when all conditions hold; report whether a row changed."""
        values = {**values, "updated_at": datetime.utcnow()}
        result = await self.session.execute(
            update(GenerationRequest)
            .where(GenerationRequest.id == request_id, *conditions)  # type: ignore[arg-type]
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def claim_polling(
        self, request_id: UUID, stage: str | None = None, progress: int | None = None
    ) -> bool:
        """Move submitted → polling (or stay polling) and record provider progress.

        A request whose model is being copied keeps its storing stage.

        Returns:
            True if the request was in flight and got updated, False otherwise
        """
        values: dict = {"status": GenerationStatus.POLLING}
        if stage is not None:
            values["provider_stage"] = stage[:100]
        if progress is not None:
            values["progress"] = max(0, min(100, progress))
        return await self._conditional_update(
            request_id,
            [
                GenerationRequest.status.in_(list(IN_FLIGHT_STATUSES)),  # type: ignore[attr-defined]
                or_(
                    GenerationRequest.provider_stage.is_(None),  # type: ignore[union-attr]
                    GenerationRequest.provider_stage != STORING_STAGE,
                ),
            ],
            values,
        )

    async def complete_if_in_flight(self, request_id: UUID, model_url: str) -> bool:
        """Set model_url and completed together, only from submitted/polling.

        The reservation is consumed, so credit_reserved is cleared in the same statement.

        Raises:
            ValueError: If model_url is empty
        """
        if not model_url:
            raise ValueError("model_url cannot be empty")
        now = datetime.utcnow()
        return await self._conditional_update(
            request_id,
            [GenerationRequest.status.in_(list(IN_FLIGHT_STATUSES))],  # type: ignore[attr-defined]
            {
                "status": GenerationStatus.COMPLETED,
                "model_url": model_url,
                "provider_stage": "completed",
                "progress": 100,
                "credit_reserved": False,
                "completed_at": now,
            },
        )

    async def fail_if_active(
        self,
        request_id: UUID,
        reason: str,
        from_statuses: frozenset[GenerationStatus] = RESERVING_STATUSES,
    ) -> bool:
        """Mark failed only from one of from_statuses, releasing the reservation flag.

        A True result means this caller owns the refund for the released reservation.
        """
        return await self._conditional_update(
            request_id,
            [
                GenerationRequest.status.in_(list(from_statuses)),  # type: ignore[attr-defined]
                GenerationRequest.credit_reserved.is_(True),  # type: ignore[attr-defined]
            ],
            {
                "status": GenerationStatus.FAILED,
                "error_reason": reason[:1000],
                "credit_reserved": False,
                "completed_at": datetime.utcnow(),
            },
        )

    async def claim_retry(self, request_id: UUID) -> bool:
        """Claim a failed request for retry by taking the reservation flag.

        Two concurrent retries cannot both succeed: only one sees credit_reserved=False.
        """
        return await self._conditional_update(
            request_id,
            [
                GenerationRequest.status == GenerationStatus.FAILED,  # type: ignore[arg-type]
                GenerationRequest.credit_reserved.is_(False),  # type: ignore[attr-defined]
            ],
            {"credit_reserved": True},
        )

    async def release_retry_claim(self, request_id: UUID, reason: str) -> bool:
        """Give back a retry claim after a failed resubmission, recording why."""
        return await self._conditional_update(
            request_id,
            [
                GenerationRequest.status == GenerationStatus.FAILED,  # type: ignore[arg-type]
                GenerationRequest.credit_reserved.is_(True),  # type: ignore[attr-defined]
            ],
            {"credit_reserved": False, "error_reason": reason[:1000]},
        )

    async def release_draft_reservation(self, request_id: UUID) -> bool:
        """Drop the reservation flag of a draft whose photo upload failed."""
        return await self._conditional_update(
            request_id,
            [
                GenerationRequest.status == GenerationStatus.DRAFT,  # type: ignore[arg-type]
                GenerationRequest.credit_reserved.is_(True),  # type: ignore[attr-defined]
            ],
            {"credit_reserved": False},
        )

    async def mark_submitted_if_reserved(
        self, request_id: UUID, external_job_id: str, provider: str
    ) -> bool:
        """Record an accepted provider job, only while the request still holds its reservation.

        Applies from removing_background (first submission) or from a failed
        request claimed for retry. A request failed and refunded while the
        submission was in flight is left alone.

        Raises:
            ValueError: If external_job_id is empty
        """
        if not external_job_id:
            raise ValueError("external_job_id is required")
        return await self._conditional_update(
            request_id,
            [
                GenerationRequest.status.in_(list(SUBMITTABLE_STATUSES)),  # type: ignore[attr-defined]
                GenerationRequest.credit_reserved.is_(True),  # type: ignore[attr-defined]
            ],
            {
                "status": GenerationStatus.SUBMITTED,
                "external_job_id": external_job_id,
                "provider": provider,
                "error_reason": None,
                "provider_stage": "queued",
                "progress": 0,
                "attempts": GenerationRequest.attempts + 1,
                "submitted_at": datetime.utcnow(),
                "completed_at": None,
            },
        )

    async def claim_model_copy(self, request_id: UUID, lease_seconds: int) -> bool:
        """Take the exclusive right to copy a finished model into permanent storage.

        Only an in-flight request can be claimed. A claim older than
        lease_seconds is treated as abandoned and can be taken over.
        """
        lease_cutoff = datetime.utcnow() - timedelta(seconds=lease_seconds)
        return await self._conditional_update(
            request_id,
            [
                GenerationRequest.status.in_(list(IN_FLIGHT_STATUSES)),  # type: ignore[attr-defined]
                or_(
                    GenerationRequest.provider_stage.is_(None),  # type: ignore[union-attr]
                    GenerationRequest.provider_stage != STORING_STAGE,
                    GenerationRequest.updated_at < lease_cutoff,  # type: ignore[operator]
                ),
            ],
            {"provider_stage": STORING_STAGE},
        )

    async def release_model_copy(self, request_id: UUID) -> bool:
        """Give back a model copy claim after the copy failed."""
        return await self._conditional_update(
            request_id,
            [
                GenerationRequest.status.in_(list(IN_FLIGHT_STATUSES)),  # type: ignore[attr-defined]
                GenerationRequest.provider_stage == STORING_STAGE,  # type: ignore[arg-type]
            ],
            {"provider_stage": None},
        )
