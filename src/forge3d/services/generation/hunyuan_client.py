"""Hunyuan3D HTTP client for multi-view image-to-3D jobs."""

import json
from typing import Any, Optional

import httpx
import structlog

from forge3d.services.exceptions import PermanentProviderError, TransientProviderError
from forge3d.services.generation.base import (
    GenerationImages,
    GenerationOptions,
    ProviderJobState,
    ProviderStatus,
)

logger = structlog.get_logger()

DEFAULT_BASE_URL = "https://asimfayaz-hunyuan3d-2-1.hf.space"

_STATE_MAP = {
    "queued": ProviderJobState.QUEUED,
    "processing": ProviderJobState.PROCESSING,
    "completed": ProviderJobState.SUCCEEDED,
    "failed": ProviderJobState.FAILED,
}


def _error_detail(response: httpx.Response) -> str:
    """Extract the human-readable error from a Hunyuan3D error body."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(body, dict):
        for key in ("detail", "message", "error"):
            if body.get(key):
                return str(body[key])
    return response.text[:500]


class Hunyuan3DProvider:
    """GenerationProvider backed by the Hunyuan3D job API.

    The API takes image files rather than URLs, so submit() downloads each
    view before posting the multipart form.
    """

    name = "hunyuan3d"

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        api_key: Optional[str] = None,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize Hunyuan3D client.

        Args:
            base_url: API base URL (trailing slashes are stripped)
            api_key: Optional bearer token
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _raise_for_status(self, response: httpx.Response, action: str) -> None:
        """Map an error response onto the provider error classes."""
        if response.status_code < 400:
            return
        detail = _error_detail(response)
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientProviderError(
                f"Hunyuan3D {action} unavailable ({response.status_code}): {detail}"
            )
        raise PermanentProviderError(
            f"Hunyuan3D {action} rejected ({response.status_code}): {detail}", detail=detail
        )

    async def submit(self, images: GenerationImages, options: GenerationOptions) -> str:
        """Upload the views and options, returning the Hunyuan3D job id.

        Raises:
            TransientProviderError: Timeout, network failure, 429 or 5xx
            PermanentProviderError: Any other 4xx, or a response without job_id
        """
        payload_options: dict[str, Any] = {
            "enable_pbr": options.enable_pbr,
            "should_remesh": options.should_remesh,
            "should_texture": options.should_texture,
        }

        try:
            async with self._client() as client:
                files = {}
                for view, url in images.as_dict().items():
                    image_response = await client.get(url)
                    image_response.raise_for_status()
                    content_type = image_response.headers.get("content-type", "image/png")
                    files[view] = (f"{view}.png", image_response.content, content_type)

                response = await client.post(
                    f"{self.base_url}/api/generate",
                    headers=self.headers,
                    files=files,
                    data={"options": json.dumps(payload_options)},
                )
                self._raise_for_status(response, "submission")
                body = response.json()
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"Hunyuan3D request timeout: {e}") from e
        except httpx.HTTPStatusError as e:
            # Fetching one of our own stored images failed
            raise TransientProviderError(f"Image download failed: {e}") from e
        except httpx.HTTPError as e:
            raise TransientProviderError(f"Hunyuan3D network error: {e}") from e

        job_id = body.get("job_id") if isinstance(body, dict) else None
        if not job_id:
            raise PermanentProviderError("Hunyuan3D response has no job_id")

        logger.info("hunyuan3d.job_created", job_id=job_id)
        return str(job_id)

    async def get_status(self, job_id: str) -> ProviderStatus:
        """Fetch job status. An unknown job is reported as failed.

        Raises:
            TransientProviderError: Timeout, network failure, 429 or 5xx
            PermanentProviderError: Any other 4xx
        """
        try:
            async with self._client() as client:
                response = await client.get(
                    f"{self.base_url}/api/status",
                    params={"job_id": job_id},
                    headers=self.headers,
                )
                if response.status_code == 404:
                    return ProviderStatus(
                        state=ProviderJobState.FAILED, error="job expired or not found"
                    )
                self._raise_for_status(response, "status check")
                body = response.json()
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"Hunyuan3D request timeout: {e}") from e
        except httpx.HTTPError as e:
            raise TransientProviderError(f"Hunyuan3D network error: {e}") from e

        state = _STATE_MAP.get(str(body.get("status", "")).lower(), ProviderJobState.PROCESSING)
        model_urls = body.get("model_urls") or {}
        return ProviderStatus(
            state=state,
            artifact_url=model_urls.get("glb"),
            error=body.get("detail") if state == ProviderJobState.FAILED else None,
            stage=body.get("stage"),
            progress=body.get("progress"),
        )
