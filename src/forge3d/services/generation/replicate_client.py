"""Replicate client for Trellis image-to-3D predictions with error classification."""

import asyncio
from typing import Any, Optional

import httpx
import replicate
import structlog
from replicate.exceptions import ReplicateError as ReplicateAPIError

from forge3d.services.exceptions import (
    PermanentProviderError,
    ServiceError,
    TransientProviderError,
)
from forge3d.services.generation.base import (
    GenerationImages,
    GenerationOptions,
    ProviderJobState,
    ProviderStatus,
)

logger = structlog.get_logger()

DEFAULT_MODEL_VERSION = "e8f6c45206993f297372f5436b90350817bd9b4a0d52d2a76df50c1c8afa2b3c"
DEFAULT_TEXTURE_SIZE = 2048
DEFAULT_MESH_SIMPLIFY = 0.9

_STATE_MAP = {
    "starting": ProviderJobState.PROCESSING,
    "processing": ProviderJobState.PROCESSING,
    "succeeded": ProviderJobState.SUCCEEDED,
    "failed": ProviderJobState.FAILED,
    "canceled": ProviderJobState.FAILED,
}


def classify_error(exception: Exception) -> ServiceError:
    """Classify exception into retry category.

    Args:
        exception: Original exception from Replicate SDK or network layer

    Returns:
        TransientProviderError or PermanentProviderError instance

    Classification rules:
        - Timeout errors → TransientProviderError
        - 429 (rate limit) → TransientProviderError
        - 5xx (service unavailable) → TransientProviderError
        - Connection errors → TransientProviderError
        - 401/403 (authentication) → PermanentProviderError
        - Other errors → PermanentProviderError, keeping the API's detail
    """
    error_message = str(exception)
    error_message_lower = error_message.lower()
    status = getattr(exception, "status", None)

    if isinstance(exception, httpx.TimeoutException) or "timeout" in error_message_lower:
        return TransientProviderError(f"Network timeout: {error_message}")

    if status == 429 or "429" in error_message or "rate limit" in error_message_lower:
        return TransientProviderError(f"Rate limit exceeded: {error_message}")

    if (isinstance(status, int) and status >= 500) or "503" in error_message or (
        "service unavailable" in error_message_lower
    ):
        return TransientProviderError(f"Service unavailable: {error_message}")

    if isinstance(exception, (httpx.TransportError, ConnectionError)):
        return TransientProviderError(f"Connection error: {error_message}")

    if (
        status in (401, 403)
        or "unauthorized" in error_message_lower
        or "forbidden" in error_message_lower
        or "invalid api token" in error_message_lower
    ):
        return PermanentProviderError(f"Authentication failed: {error_message}")

    detail = getattr(exception, "detail", None)
    return PermanentProviderError(
        f"Permanent error: {error_message}", detail=str(detail) if detail else None
    )


def _extract_artifact_url(output: Any) -> Optional[str]:
    """Pull the GLB URL out of a Trellis prediction output."""
    if isinstance(output, dict):
        url = output.get("model_file")
        return str(url) if url else None
    if isinstance(output, str):
        return output or None
    if isinstance(output, list) and output:
        return str(output[0])
    return None


def to_provider_status(status: str, output: Any = None, error: Any = None) -> ProviderStatus:
    """Map a Replicate prediction status and output onto ProviderStatus.

    A succeeded prediction whose output is gone (Replicate clears outputs
    after an hour) is reported as failed.
    """
    state = _STATE_MAP.get(status, ProviderJobState.PROCESSING)

    if state == ProviderJobState.SUCCEEDED:
        artifact_url = _extract_artifact_url(output)
        if artifact_url is None:
            return ProviderStatus(
                state=ProviderJobState.FAILED,
                error="prediction output expired",
                stage=status,
            )
        return ProviderStatus(
            state=state, artifact_url=artifact_url, stage="completed", progress=100
        )

    if state == ProviderJobState.FAILED:
        return ProviderStatus(
            state=state,
            error=str(error) if error else f"prediction {status}",
            stage=status,
        )

    return ProviderStatus(state=state, stage=status)


def parse_replicate_webhook(payload: dict[str, Any]) -> tuple[str, ProviderStatus]:
    """Parse a Replicate webhook body into (prediction id, status).

    Raises:
        ValueError: If the payload has no id or status
    """
    job_id = payload.get("id")
    status = payload.get("status")
    if not job_id or not status:
        raise ValueError("Webhook payload requires id and status")
    return str(job_id), to_provider_status(str(status), payload.get("output"), payload.get("error"))


class ReplicateTrellisProvider:
    """GenerationProvider backed by a Replicate-hosted Trellis model.

    The SDK is synchronous; calls run in a thread pool.
    """

    name = "replicate"

    def __init__(
        self,
        api_token: str,
        model_version: str = DEFAULT_MODEL_VERSION,
        webhook_url: Optional[str] = None,
    ):
        """Initialize Replicate provider.

        Args:
            api_token: Replicate API token
            model_version: Trellis model version hash
            webhook_url: Callback URL for completion webhooks (None disables webhooks)
        """
        self.model_version = model_version
        self.webhook_url = webhook_url
        self._client = replicate.Client(api_token=api_token)

    def build_input(self, images: GenerationImages, options: GenerationOptions) -> dict[str, Any]:
        """Build the Trellis prediction input from images and options."""
        return {
            "images": list(images.as_dict().values()),
            "texture_size": options.texture_resolution or DEFAULT_TEXTURE_SIZE,
            "mesh_simplify": options.mesh_simplify_ratio or DEFAULT_MESH_SIMPLIFY,
            "generate_model": True,
        }

    async def submit(self, images: GenerationImages, options: GenerationOptions) -> str:
        """Create a prediction and return its id without waiting for it.

        Raises:
            TransientProviderError: Temporary failure, safe to retry
            PermanentProviderError: Request rejected by Replicate
        """
        params: dict[str, Any] = {
            "version": self.model_version,
            "input": self.build_input(images, options),
        }
        if self.webhook_url:
            params["webhook"] = self.webhook_url
            params["webhook_events_filter"] = ["completed"]

        try:
            prediction = await asyncio.to_thread(self._client.predictions.create, **params)
        except (ReplicateAPIError, httpx.HTTPError, ConnectionError, OSError) as e:
            classified = classify_error(e)
            logger.warning(
                "replicate.submit_failed",
                error_type=type(classified).__name__,
                error_message=str(e),
            )
            raise classified from e

        logger.info("replicate.prediction_created", prediction_id=prediction.id)
        return prediction.id

    async def get_status(self, job_id: str) -> ProviderStatus:
        """Fetch the current state of a prediction.

        A 404 means the prediction expired or never existed; it is reported as failed.

        Raises:
            TransientProviderError: Temporary failure, safe to retry
            PermanentProviderError: Lookup rejected by Replicate
        """
        try:
            prediction = await asyncio.to_thread(self._client.predictions.get, job_id)
        except ReplicateAPIError as e:
            if getattr(e, "status", None) == 404 or "not found" in str(e).lower():
                return ProviderStatus(
                    state=ProviderJobState.FAILED, error="prediction expired or not found"
                )
            raise classify_error(e) from e
        except (httpx.HTTPError, ConnectionError, OSError) as e:
            raise classify_error(e) from e

        return to_provider_status(prediction.status, prediction.output, prediction.error)
