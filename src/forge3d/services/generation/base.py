"""Provider-agnostic types for 3D generation jobs."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field


class GenerationOptions(BaseModel):
    """Generation toggles sent with every submission.

    Accepts both snake_case names and the camelCase names used by web clients.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    enable_pbr: bool = Field(default=True, alias="enablePhysicallyBasedRendering")
    should_remesh: bool = Field(default=True, alias="shouldRemesh")
    should_texture: bool = Field(default=True, alias="shouldGenerateTexture")
    texture_resolution: Optional[int] = Field(default=None, gt=0, alias="textureResolution")
    mesh_simplify_ratio: Optional[float] = Field(
        default=None, gt=0, le=1, alias="meshSimplificationRatio"
    )


@dataclass(frozen=True)
class GenerationImages:
    """Image URLs for one submission: front is required, side views optional."""

    front: str
    left: Optional[str] = None
    right: Optional[str] = None
    back: Optional[str] = None

    def as_dict(self) -> dict[str, str]:
        """View name to URL for every supplied view, front first."""
        views = {"front": self.front, "left": self.left, "right": self.right, "back": self.back}
        return {view: url for view, url in views.items() if url}


class ProviderJobState(str, Enum):
    """Provider-agnostic job state."""

    QUEUED = "queued"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ProviderJobState.SUCCEEDED, ProviderJobState.FAILED)


@dataclass(frozen=True)
class ProviderStatus:
    """Latest status reported by a provider, via polling or webhook."""

    state: ProviderJobState
    artifact_url: Optional[str] = None
    error: Optional[str] = None
    stage: Optional[str] = None
    progress: Optional[int] = None


class GenerationProvider(Protocol):
    """External asynchronous 3D generation service.

    submit() returns as soon as the provider accepted the job; completion is
    always observed later through get_status() or a webhook.
    """

    name: str

    async def submit(self, images: GenerationImages, options: GenerationOptions) -> str: ...

    async def get_status(self, job_id: str) -> ProviderStatus: ...
