"""GenerationRequest entity - one photo-set-to-3D-model attempt with lifecycle tracking."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

import sqlalchemy as sa
from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class GenerationStatus(str, Enum):
    """Generation request lifecycle status."""

    DRAFT = "draft"
    UPLOADING_PHOTOS = "uploading_photos"
    REMOVING_BACKGROUND = "removing_background"
    SUBMITTED = "submitted"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_in_flight(self) -> bool:
        return self in IN_FLIGHT_STATUSES


TERMINAL_STATUSES = frozenset({GenerationStatus.COMPLETED, GenerationStatus.FAILED})
IN_FLIGHT_STATUSES = frozenset({GenerationStatus.SUBMITTED, GenerationStatus.POLLING})

# Statuses persisted by earlier iterations of the photo/model record store
LEGACY_STATUS_MAP: dict[str, GenerationStatus] = {
    "uploaded": GenerationStatus.UPLOADING_PHOTOS,
    "photos_uploaded": GenerationStatus.UPLOADING_PHOTOS,
    "bgr_removed": GenerationStatus.REMOVING_BACKGROUND,
    "removed_background": GenerationStatus.REMOVING_BACKGROUND,
    "job_created": GenerationStatus.SUBMITTED,
    "generating_3d_model": GenerationStatus.SUBMITTED,
    "queued": GenerationStatus.SUBMITTED,
    "processing": GenerationStatus.POLLING,
    "model_generated": GenerationStatus.POLLING,
    "model_saved": GenerationStatus.COMPLETED,
    "ready": GenerationStatus.COMPLETED,
    "model_generation_failed": GenerationStatus.FAILED,
    "model_saving_failed": GenerationStatus.FAILED,
}

PHOTO_VIEWS = ("front", "left", "right", "back")


def coerce_status(value: str) -> GenerationStatus:
    """Map a canonical or legacy status string onto GenerationStatus.

    Raises:
        ValueError: If the value is neither a canonical nor a known legacy status
    """
    normalized = value.strip().lower()
    try:
        return GenerationStatus(normalized)
    except ValueError:
        pass
    if normalized in LEGACY_STATUS_MAP:
        return LEGACY_STATUS_MAP[normalized]
    raise ValueError(f"Unknown generation status: {value}")


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid generation state transition."""

    pass


class GenerationRequest(SQLModel, table=True):
    """GenerationRequest tracks one generation attempt from draft to stored model.

    The mark_* methods cover the steps only the orchestrator writes. Transitions
    into submitted, polling, completed and failed can race with other writers
    and are conditional updates in GenerationRequestRepository.
    """

    __tablename__ = "generation_requests"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner_id: str = Field(max_length=255, index=True)
    status: GenerationStatus = Field(
        default=GenerationStatus.DRAFT,
        sa_column=Column(
            sa.Enum(
                GenerationStatus,
                native_enum=False,
                length=32,
                values_callable=lambda statuses: [s.value for s in statuses],
            ),
            nullable=False,
            index=True,
        ),
    )
    photo_urls: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    processed_photo_urls: dict = Field(
        default_factory=dict, sa_column=Column(JSON, nullable=False)
    )
    options: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))

    provider: Optional[str] = Field(default=None, max_length=50)
    external_job_id: Optional[str] = Field(default=None, max_length=255, unique=True, index=True)
    provider_stage: Optional[str] = Field(default=None, max_length=100)
    progress: int = Field(default=0, ge=0, le=100)
    attempts: int = Field(default=0, ge=0)

    model_url: Optional[str] = Field(default=None)
    error_reason: Optional[str] = Field(default=None, max_length=1000)
    credit_reserved: bool = Field(default=False)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    submitted_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)

    @property
    def front_input_url(self) -> Optional[str]:
        """Front image to send to the provider (background-removed when available)."""
        return self.processed_photo_urls.get("front") or self.photo_urls.get("front")

    def _touch(self) -> None:
        self.updated_at = datetime.utcnow()

    def mark_photos_uploaded(self, photo_urls: dict[str, str]) -> None:
        """Transition from draft to uploading_photos with every raw URL set at once.

        Args:
            photo_urls: Mapping of view name to persistent raw image URL

        Raises:
            InvalidStateTransition: If current status is not draft
            ValueError: If the front URL is missing or a view name is unknown
        """
        if self.status != GenerationStatus.DRAFT:
            raise InvalidStateTransition(
                f"Cannot mark photos uploaded from {self.status.value}. "
                "Request must be in draft state."
            )
        if not photo_urls.get("front"):
            raise ValueError("front photo URL is required")
        unknown = set(photo_urls) - set(PHOTO_VIEWS)
        if unknown:
            raise ValueError(f"Unknown photo views: {sorted(unknown)}")
        self.photo_urls = dict(photo_urls)
        self.status = GenerationStatus.UPLOADING_PHOTOS
        self._touch()

    def mark_removing_background(self) -> None:
        """Transition from uploading_photos to removing_background.

        Raises:
            InvalidStateTransition: If current status is not uploading_photos
        """
        if self.status != GenerationStatus.UPLOADING_PHOTOS:
            raise InvalidStateTransition(
                f"Cannot mark removing background from {self.status.value}. "
                "Request must be in uploading_photos state."
            )
        self.status = GenerationStatus.REMOVING_BACKGROUND
        self._touch()

    def record_processed_photo(self, view: str, url: str) -> None:
        """Store the background-removed image URL for a view.

        Raises:
            InvalidStateTransition: If current status is not removing_background
        """
        if self.status != GenerationStatus.REMOVING_BACKGROUND:
            raise InvalidStateTransition(
                f"Cannot record processed photo in {self.status.value}. "
                "Request must be in removing_background state."
            )
        self.processed_photo_urls = {**self.processed_photo_urls, view: url}
        self._touch()
