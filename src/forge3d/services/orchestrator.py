"""Generation orchestrator: sequences one generation request from photos to submission.

Credit discipline:
- A credit is reserved before any external side effect (upload, removal, submission).
- Every failure after a successful reservation ends in exactly one refund.
- Success never refunds; the reconciler observes completion later.

Each state transition commits in its own transaction, so a crash between steps
leaves the record in the last committed state for recover_interrupted() to clean up.
"""

import asyncio
from dataclasses import dataclass
from typing import Mapping, Optional
from uuid import UUID

import structlog

from forge3d.models.generation_request import (
    PHOTO_VIEWS,
    GenerationRequest,
    GenerationStatus,
    InvalidStateTransition,
)
from forge3d.services.background_removal import BackgroundRemover
from forge3d.services.exceptions import (
    ContentError,
    InsufficientCreditsError,
    PermanentProviderError,
    RecordNotFoundError,
    ServiceError,
    StorageError,
    ValidationError,
)
from forge3d.services.generation.base import (
    GenerationImages,
    GenerationOptions,
    GenerationProvider,
)
from forge3d.services.storage.r2_client import ObjectStore
from forge3d.uow import UnitOfWorkFactory

logger = structlog.get_logger()

ALLOWED_CONTENT_TYPES = frozenset({"image/jpeg", "image/png", "image/webp"})
DEFAULT_MAX_PHOTO_BYTES = 10 * 1024 * 1024

BACKGROUND_REMOVAL_FAILED = "background removal failed"
SUBMISSION_FAILED = "generation submission failed"
ORCHESTRATION_FAILED = "generation failed unexpectedly"

# Orchestrator-owned states an unexpected error can leave a reserved request in
ORCHESTRATING_STATUSES = frozenset(
    {GenerationStatus.UPLOADING_PHOTOS, GenerationStatus.REMOVING_BACKGROUND}
)


@dataclass(frozen=True)
class PhotoUpload:
    """One uploaded photo as received from the client."""

    data: bytes
    content_type: str
    filename: Optional[str] = None


def submission_failure_reason(error: ServiceError) -> str:
    """User-facing reason for a rejected submission.

    Only a provider's human-readable detail is passed through; anything else
    collapses to a generic message.
    """
    if isinstance(error, PermanentProviderError) and error.detail:
        return error.detail
    return SUBMISSION_FAILED


class GenerationOrchestrator:
    """Top-level state machine for generation requests.

    Collaborators are injected so tests can substitute in-memory fakes.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        object_store: ObjectStore,
        background_remover: BackgroundRemover,
        provider: GenerationProvider,
        default_credit_balance: int = 2,
        max_photo_bytes: int = DEFAULT_MAX_PHOTO_BYTES,
    ):
        self.uow_factory = uow_factory
        self.object_store = object_store
        self.background_remover = background_remover
        self.provider = provider
        self.default_credit_balance = default_credit_balance
        self.max_photo_bytes = max_photo_bytes

    def validate_photos(self, photos: Mapping[str, PhotoUpload]) -> None:
        """Check the photo set before anything is reserved or stored.

        Raises:
            ValidationError: If front is missing or empty, a view is unknown,
                a content type is not allowed or a photo is too large
        """
        front = photos.get("front")
        if front is None or not front.data:
            raise ValidationError("front photo is required")

        unknown = set(photos) - set(PHOTO_VIEWS)
        if unknown:
            raise ValidationError(f"unknown photo views: {', '.join(sorted(unknown))}")

        for view, photo in photos.items():
            if not photo.data:
                raise ValidationError(f"{view} photo is empty")
            if photo.content_type not in ALLOWED_CONTENT_TYPES:
                raise ValidationError(
                    f"{view} photo has unsupported type {photo.content_type}; "
                    "use JPEG, PNG or WebP"
                )
            if len(photo.data) > self.max_photo_bytes:
                raise ValidationError(
                    f"{view} photo exceeds {self.max_photo_bytes // (1024 * 1024)}MB limit"
                )

    async def start(
        self,
        owner_id: str,
        photos: Mapping[str, PhotoUpload],
        options: Optional[GenerationOptions] = None,
    ) -> GenerationRequest:
        """Run a new generation request up to submission.

        Workflow:
        1. Validate photos (no side effects)
        2. Reserve a credit and create the draft record in one transaction
        3. Upload every view concurrently
        4. draft → uploading_photos with all raw URLs
        5. uploading_photos → removing_background, front view only
        6. Submit to the provider: removing_background → submitted

        Any other error raised after the reservation releases it before
        propagating.

        Args:
            owner_id: Identity of the requesting user
            photos: View name to uploaded photo; front is required
            options: Generation toggles (defaults when None)

        Returns:
            The request in submitted state, or failed when removal or
            submission failed (the credit has been refunded)

        Raises:
            ValidationError: Photo set rejected, nothing reserved
            InsufficientCreditsError: Balance is zero, nothing created
            StorageError: A photo upload failed; refunded, record stays draft
        """
        self.validate_photos(photos)
        options = options or GenerationOptions()

        async with await self.uow_factory() as uow:
            await uow.credits.get_or_create(owner_id, self.default_credit_balance)
            request = GenerationRequest(
                owner_id=owner_id,
                options=options.model_dump(),
                credit_reserved=True,
            )
            if not await uow.credits.reserve(owner_id, request.id):
                raise InsufficientCreditsError(owner_id)
            await uow.generation_requests.add(request)

        request_id = request.id
        logger.info("generation.started", request_id=str(request_id), owner_id=owner_id)

        try:
            return await self._run(request_id, owner_id, photos, options)
        except BaseException as e:
            await self._abandon(request_id, owner_id, e)
            raise

    async def _run(
        self,
        request_id: UUID,
        owner_id: str,
        photos: Mapping[str, PhotoUpload],
        options: GenerationOptions,
    ) -> GenerationRequest:
        """Steps 3-6 of start(), after the credit is reserved."""
        photo_urls = await self._upload_photos(request_id, owner_id, photos)

        async with await self.uow_factory() as uow:
            request = await self._load(uow, request_id)
            request.mark_photos_uploaded(photo_urls)
            await uow.generation_requests.save(request)

        logger.info("generation.photos_uploaded", request_id=str(request_id), views=sorted(photo_urls))

        async with await self.uow_factory() as uow:
            request = await self._load(uow, request_id)
            request.mark_removing_background()
            await uow.generation_requests.save(request)

        try:
            processed = await self.background_remover.remove_background(photos["front"].data)
            processed_url = await self.object_store.upload_processed(request_id, "front", processed)
        except ContentError as e:
            return await self._fail(request_id, owner_id, str(e) or BACKGROUND_REMOVAL_FAILED)
        except Exception as e:
            logger.error(
                "generation.background_removal_failed",
                request_id=str(request_id),
                error_type=type(e).__name__,
                error_message=str(e),
            )
            return await self._fail(request_id, owner_id, BACKGROUND_REMOVAL_FAILED)

        async with await self.uow_factory() as uow:
            request = await self._load(uow, request_id)
            request.record_processed_photo("front", processed_url)
            await uow.generation_requests.save(request)

        return await self._submit(request, options, on_failure=self._fail)

    async def retry(self, request_id: UUID, owner_id: str) -> GenerationRequest:
        """Resubmit a failed request, reusing its stored photos.

        The failed → submitted transition skips upload and background removal;
        processed URLs are used where present, raw URLs otherwise.

        Returns:
            The request in submitted state, or still failed with the new reason
            when resubmission was rejected (refunded)

        Raises:
            RecordNotFoundError: No such request for this owner
            InvalidStateTransition: Request is not failed, or a retry is already running
            ValidationError: The stored front photo is missing
            InsufficientCreditsError: Balance is zero
        """
        async with await self.uow_factory() as uow:
            request = await uow.generation_requests.get_for_owner(request_id, owner_id)
            if request is None:
                raise RecordNotFoundError(f"Generation {request_id} not found")
            if request.status != GenerationStatus.FAILED:
                raise InvalidStateTransition(
                    f"Cannot retry from {request.status.value}. Request must be failed."
                )
            if not request.front_input_url:
                raise ValidationError("front photo is missing; start a new generation")
            if not await uow.generation_requests.claim_retry(request_id):
                raise InvalidStateTransition("A retry for this request is already in progress")
            await uow.credits.get_or_create(owner_id, self.default_credit_balance)
            if not await uow.credits.reserve(owner_id, request_id):
                raise InsufficientCreditsError(owner_id)
            request = await self._load(uow, request_id)

        logger.info("generation.retry_started", request_id=str(request_id), attempts=request.attempts)
        options = GenerationOptions.model_validate(request.options or {})
        try:
            return await self._submit(request, options, on_failure=self._release_retry)
        except BaseException as e:
            await self._abandon_retry(request_id, owner_id, e)
            raise

    async def get(self, request_id: UUID, owner_id: str) -> GenerationRequest:
        """Return one of the owner's requests.

        Raises:
            RecordNotFoundError: No such request for this owner
        """
        async with await self.uow_factory() as uow:
            request = await uow.generation_requests.get_for_owner(request_id, owner_id)
        if request is None:
            raise RecordNotFoundError(f"Generation {request_id} not found")
        return request

    async def list_for_owner(
        self,
        owner_id: str,
        status: Optional[GenerationStatus] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[GenerationRequest], int]:
        """Page through the owner's requests, newest activity first."""
        async with await self.uow_factory() as uow:
            return await uow.generation_requests.get_by_owner(
                owner_id, status=status, limit=limit, offset=offset
            )

    async def _load(self, uow, request_id: UUID) -> GenerationRequest:
        request = await uow.generation_requests.get_by_id(request_id)
        if request is None:
            raise RecordNotFoundError(f"Generation {request_id} not found")
        return request

    async def _upload_photos(
        self, request_id: UUID, owner_id: str, photos: Mapping[str, PhotoUpload]
    ) -> dict[str, str]:
        """Upload every view; on any failure refund and leave the record in draft."""
        views = list(photos)
        results = await asyncio.gather(
            *(
                self.object_store.upload_raw(
                    request_id, view, photos[view].data, photos[view].content_type
                )
                for view in views
            ),
            return_exceptions=True,
        )

        errors = [result for result in results if isinstance(result, BaseException)]
        if not errors:
            return dict(zip(views, results))  # type: ignore[arg-type]

        async with await self.uow_factory() as uow:
            if await uow.generation_requests.release_draft_reservation(request_id):
                await uow.credits.refund(owner_id, request_id, "photo upload failed")

        logger.error(
            "generation.upload_failed",
            request_id=str(request_id),
            failed_views=[v for v, r in zip(views, results) if isinstance(r, BaseException)],
            error_type=type(errors[0]).__name__,
            error_message=str(errors[0]),
        )
        if not isinstance(errors[0], Exception):
            raise errors[0]
        if isinstance(errors[0], StorageError):
            raise errors[0]
        raise StorageError(f"Photo upload failed: {errors[0]}") from errors[0]

    async def _submit(self, request: GenerationRequest, options: GenerationOptions, on_failure):
        """Hand the request to the provider and record the returned job id."""
        request_id = request.id
        front = request.front_input_url
        assert front is not None
        images = GenerationImages(
            front=front,
            left=request.photo_urls.get("left"),
            right=request.photo_urls.get("right"),
            back=request.photo_urls.get("back"),
        )

        try:
            job_id = await self.provider.submit(images, options)
        except ServiceError as e:
            logger.error(
                "generation.submission_failed",
                request_id=str(request_id),
                provider=self.provider.name,
                error_type=type(e).__name__,
                error_message=str(e),
            )
            return await on_failure(request_id, request.owner_id, submission_failure_reason(e))

        async with await self.uow_factory() as uow:
            recorded = await uow.generation_requests.mark_submitted_if_reserved(
                request_id, job_id, self.provider.name
            )
            request = await self._load(uow, request_id)

        if not recorded:
            # Failed and refunded by recovery while the provider call was running
            logger.warning(
                "generation.submission_superseded",
                request_id=str(request_id),
                external_job_id=job_id,
                status=request.status.value,
            )
            return request

        logger.info(
            "generation.submitted",
            request_id=str(request_id),
            provider=self.provider.name,
            external_job_id=job_id,
            attempts=request.attempts,
        )
        return request

    async def _fail(self, request_id: UUID, owner_id: str, reason: str) -> GenerationRequest:
        """Fail an orchestrating request and refund its reservation once."""
        async with await self.uow_factory() as uow:
            refunded = await uow.generation_requests.fail_if_active(request_id, reason)
            if refunded:
                await uow.credits.refund(owner_id, request_id)
            request = await self._load(uow, request_id)

        logger.warning(
            "generation.failed", request_id=str(request_id), reason=reason, refunded=refunded
        )
        return request

    async def _release_retry(self, request_id: UUID, owner_id: str, reason: str) -> GenerationRequest:
        """Give back a retry claim: the request stays failed with the new reason."""
        async with await self.uow_factory() as uow:
            refunded = await uow.generation_requests.release_retry_claim(request_id, reason)
            if refunded:
                await uow.credits.refund(owner_id, request_id, "retry submission failed")
            request = await self._load(uow, request_id)

        logger.warning(
            "generation.retry_failed", request_id=str(request_id), reason=reason, refunded=refunded
        )
        return request

    async def _abandon(self, request_id: UUID, owner_id: str, error: BaseException) -> None:
        """Release the reservation of a request whose orchestration raised.

        A draft keeps its state; a request past the upload is failed. Errors
        while releasing are logged and left to recover_interrupted().
        """
        try:
            async with await self.uow_factory() as uow:
                released = await uow.generation_requests.release_draft_reservation(request_id)
                if not released:
                    released = await uow.generation_requests.fail_if_active(
                        request_id, ORCHESTRATION_FAILED, from_statuses=ORCHESTRATING_STATUSES
                    )
                if released:
                    await uow.credits.refund(owner_id, request_id, ORCHESTRATION_FAILED)
        except Exception as cleanup_error:
            logger.error(
                "generation.release_failed",
                request_id=str(request_id),
                error_type=type(cleanup_error).__name__,
                error_message=str(cleanup_error),
            )
            return

        if released:
            logger.error(
                "generation.aborted",
                request_id=str(request_id),
                error_type=type(error).__name__,
                error_message=str(error),
            )

    async def _abandon_retry(self, request_id: UUID, owner_id: str, error: BaseException) -> None:
        """Give back a retry claim whose resubmission raised; the request stays failed."""
        try:
            async with await self.uow_factory() as uow:
                released = await uow.generation_requests.release_retry_claim(
                    request_id, SUBMISSION_FAILED
                )
                if released:
                    await uow.credits.refund(owner_id, request_id, "retry submission failed")
        except Exception as cleanup_error:
            logger.error(
                "generation.release_failed",
                request_id=str(request_id),
                error_type=type(cleanup_error).__name__,
                error_message=str(cleanup_error),
            )
            return

        if released:
            logger.error(
                "generation.retry_aborted",
                request_id=str(request_id),
                error_type=type(error).__name__,
                error_message=str(error),
            )
