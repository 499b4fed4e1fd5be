"""Generation API endpoints.

This module implements REST endpoints for the generation lifecycle:
- POST /generate - Upload a photo set and start a generation
- GET /status?job_id= - Current (reconciled) state of one generation
- POST /generations/{job_id}/retry - Resubmit a failed generation
- GET /generations - Paginated list of the caller's generations

Caller identity comes from the X-User-Id header (see get_current_user_id).
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile, status
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from forge3d.api.dependencies import get_current_user_id, get_orchestrator, get_reconciler
from forge3d.models.generation_request import (
    IN_FLIGHT_STATUSES,
    GenerationRequest,
    GenerationStatus,
    coerce_status,
)
from forge3d.services.exceptions import ServiceError
from forge3d.services.generation.base import GenerationOptions
from forge3d.services.orchestrator import GenerationOrchestrator, PhotoUpload
from forge3d.services.reconciler import JobReconciler

logger = structlog.get_logger()
router = APIRouter(tags=["generations"])


# Response Models


class GenerateResponse(BaseModel):
    """Response for starting or retrying a generation."""

    job_id: UUID = Field(..., description="Generation request id; use it with GET /status")
    status: str = Field(..., description="'queued' once submitted, 'failed' otherwise")
    error_reason: str | None = Field(default=None, description="Failure reason when failed")


class GenerationDTO(BaseModel):
    """Data Transfer Object for a generation request."""

    job_id: UUID
    status: GenerationStatus
    photo_urls: dict[str, str]
    processed_photo_urls: dict[str, str]
    model_url: str | None = None
    error_reason: str | None = None
    provider: str | None = None
    provider_stage: str | None = None
    progress: int = 0
    attempts: int = 0
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None

    @classmethod
    def from_entity(cls, request: GenerationRequest) -> "GenerationDTO":
        return cls(
            job_id=request.id,
            status=request.status,
            photo_urls=request.photo_urls,
            processed_photo_urls=request.processed_photo_urls,
            model_url=request.model_url,
            error_reason=request.error_reason,
            provider=request.provider,
            provider_stage=request.provider_stage,
            progress=request.progress,
            attempts=request.attempts,
            created_at=request.created_at,
            updated_at=request.updated_at,
            completed_at=request.completed_at,
        )


class GenerationListResponse(BaseModel):
    """Paginated list of generations."""

    generations: list[GenerationDTO]
    total: int = Field(..., description="Total number of matching generations")
    offset: int
    limit: int


def _generate_response(request: GenerationRequest) -> GenerateResponse:
    if request.status == GenerationStatus.FAILED:
        return GenerateResponse(job_id=request.id, status="failed", error_reason=request.error_reason)
    return GenerateResponse(job_id=request.id, status="queued")


async def _read_photo(upload: Optional[UploadFile]) -> Optional[PhotoUpload]:
    if upload is None:
        return None
    data = await upload.read()
    return PhotoUpload(
        data=data,
        content_type=upload.content_type or "application/octet-stream",
        filename=upload.filename,
    )


@router.post("/generate", response_model=GenerateResponse)
async def start_generation(
    front: Optional[UploadFile] = File(default=None),
    left: Optional[UploadFile] = File(default=None),
    right: Optional[UploadFile] = File(default=None),
    back: Optional[UploadFile] = File(default=None),
    options: Optional[str] = Form(default=None),
    user_id: str = Depends(get_current_user_id),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> GenerateResponse:
    """Start a generation from an uploaded photo set.

    HTTP Status Codes:
        200: Generation accepted (status 'queued') or failed during background
             removal/submission (status 'failed', credit refunded)
        400: Missing front photo, invalid file or invalid options
        402: Insufficient credits
        502: Photo storage failed (credit refunded)
    """
    try:
        generation_options = (
            GenerationOptions.model_validate_json(options) if options else GenerationOptions()
        )
    except PydanticValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid options: {e.errors()}"
        )

    photos = {}
    for view, upload in (("front", front), ("left", left), ("right", right), ("back", back)):
        photo = await _read_photo(upload)
        if photo is not None:
            photos[view] = photo

    request = await orchestrator.start(user_id, photos, generation_options)
    return _generate_response(request)


@router.get("/status", response_model=GenerationDTO)
async def get_generation_status(
    job_id: UUID = Query(..., description="Generation request id returned by POST /generate"),
    user_id: str = Depends(get_current_user_id),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    reconciler: JobReconciler = Depends(get_reconciler),
) -> GenerationDTO:
    """Return a generation's status, reconciling once with the provider if in flight.

    A failed provider check leaves the stored status unchanged; the
    reconciliation worker retries it with backoff.
    """
    request = await orchestrator.get(job_id, user_id)

    if request.status in IN_FLIGHT_STATUSES:
        try:
            await reconciler.reconcile(job_id)
        except ServiceError as e:
            logger.warning(
                "status.reconcile_deferred",
                request_id=str(job_id),
                error_type=type(e).__name__,
                error_message=str(e),
            )
        request = await orchestrator.get(job_id, user_id)

    return GenerationDTO.from_entity(request)


@router.post(
    "/generations/{job_id}/retry",
    response_model=GenerateResponse,
)
async def retry_generation(
    job_id: UUID,
    user_id: str = Depends(get_current_user_id),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> GenerateResponse:
    """Resubmit a failed generation using its stored photos.

    HTTP Status Codes:
        200: Resubmitted (status 'queued') or rejected again (status 'failed', refunded)
        402: Insufficient credits
        404: Generation not found
        409: Generation is not failed, or a retry is already running
    """
    request = await orchestrator.retry(job_id, user_id)
    return _generate_response(request)


@router.get("/generations", response_model=GenerationListResponse)
async def list_generations(
    status_filter: Optional[str] = Query(
        default=None,
        alias="status",
        description="Filter by status (canonical or legacy name)",
    ),
    offset: int = Query(default=0, ge=0, description="Number of generations to skip"),
    limit: int = Query(default=20, ge=1, le=100, description="Maximum generations to return"),
    user_id: str = Depends(get_current_user_id),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> GenerationListResponse:
    """List the caller's generations, most recently updated first."""
    parsed_status = None
    if status_filter:
        try:
            parsed_status = coerce_status(status_filter)
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    requests, total = await orchestrator.list_for_owner(
        user_id, status=parsed_status, limit=limit, offset=offset
    )
    return GenerationListResponse(
        generations=[GenerationDTO.from_entity(r) for r in requests],
        total=total,
        offset=offset,
        limit=limit,
    )
