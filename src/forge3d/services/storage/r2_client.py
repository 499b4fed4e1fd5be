"""Cloudflare R2 object store for photos and generated models.

R2 speaks the S3 API, so the boto3 S3 client is pointed at the account's R2
endpoint. boto3 is synchronous; every call runs in a worker thread.
"""

import asyncio
from typing import Protocol
from uuid import UUID

import boto3
import httpx
import structlog
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from forge3d.services.exceptions import StorageError

logger = structlog.get_logger()

_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}

MODEL_CONTENT_TYPE = "model/gltf-binary"


class ObjectStore(Protocol):
    """Object storage used by the orchestrator and reconciler."""

    async def upload_raw(
        self, request_id: UUID, view: str, data: bytes, content_type: str
    ) -> str: ...

    async def upload_processed(self, request_id: UUID, view: str, data: bytes) -> str: ...

    async def download(self, url: str) -> bytes: ...

    def model_url(self, request_id: UUID) -> str: ...

    async def store_model_from_url(self, request_id: UUID, artifact_url: str) -> str: ...


def model_key(request_id: UUID) -> str:
    """Deterministic object key of a request's permanent model file."""
    return f"model-{request_id}.glb"


class R2ObjectStore:
    """R2-backed implementation of ObjectStore.

    Keys are derived from the request id and view, so repeating an upload
    overwrites the same object rather than creating a second one.
    """

    def __init__(
        self,
        account_id: str,
        access_key_id: str,
        secret_access_key: str,
        photos_bucket: str = "photos",
        models_bucket: str = "models-glb",
        public_photos_url: str = "",
        public_models_url: str = "",
        download_timeout: float = 60.0,
    ):
        """Initialize R2 client.

        Args:
            account_id: Cloudflare account id (determines the S3 endpoint)
            access_key_id: R2 access key id
            secret_access_key: R2 secret access key
            photos_bucket: Bucket for raw and background-removed photos
            models_bucket: Bucket for generated GLB models
            public_photos_url: Public base URL serving the photos bucket
            public_models_url: Public base URL serving the models bucket
            download_timeout: Timeout in seconds for fetching provider artifacts
        """
        self.endpoint_url = f"https://{account_id}.r2.cloudflarestorage.com"
        self.photos_bucket = photos_bucket
        self.models_bucket = models_bucket
        self.public_photos_url = public_photos_url.rstrip("/")
        self.public_models_url = public_models_url.rstrip("/")
        self.download_timeout = download_timeout
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint_url,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            region_name="auto",
            config=Config(signature_version="s3v4", retries={"max_attempts": 3}),
        )

    def _public_url(self, bucket: str, key: str) -> str:
        base = self.public_photos_url if bucket == self.photos_bucket else self.public_models_url
        if not base:
            base = f"{self.endpoint_url}/{bucket}"
        return f"{base}/{key}"

    async def _put(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        """Upload bytes and return the object's public URL.

        Raises:
            StorageError: If R2 rejects the upload or is unreachable
        """
        try:
            await asyncio.to_thread(
                self._client.put_object,
                Bucket=bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(
                "storage.upload_failed",
                bucket=bucket,
                key=key,
                error_type=type(e).__name__,
                error_message=str(e),
            )
            raise StorageError(f"Upload of {key} failed: {e}") from e

        logger.info("storage.uploaded", bucket=bucket, key=key, size=len(data))
        return self._public_url(bucket, key)

    async def upload_raw(
        self, request_id: UUID, view: str, data: bytes, content_type: str
    ) -> str:
        """Store an uploaded photo under original/<request_id>/<view>.<ext>."""
        ext = _EXTENSIONS.get(content_type, "bin")
        return await self._put(
            self.photos_bucket, f"original/{request_id}/{view}.{ext}", data, content_type
        )

    async def upload_processed(self, request_id: UUID, view: str, data: bytes) -> str:
        """Store a background-removed PNG under nobgr/<request_id>/<view>.png."""
        return await self._put(
            self.photos_bucket, f"nobgr/{request_id}/{view}.png", data, "image/png"
        )

    async def download(self, url: str) -> bytes:
        """Fetch bytes from a URL (provider artifact or stored photo).

        Raises:
            StorageError: On timeout, network failure or non-2xx response
        """
        try:
            async with httpx.AsyncClient(
                timeout=self.download_timeout, follow_redirects=True
            ) as client:
                response = await client.get(url)
                response.raise_for_status()
                return response.content
        except httpx.TimeoutException as e:
            raise StorageError(
                f"Download timed out after {self.download_timeout}s: {url}"
            ) from e
        except httpx.HTTPError as e:
            raise StorageError(f"Download failed for {url}: {e}") from e

    def model_url(self, request_id: UUID) -> str:
        """Permanent URL the model of request_id is (or will be) served from."""
        return self._public_url(self.models_bucket, model_key(request_id))

    async def store_model_from_url(self, request_id: UUID, artifact_url: str) -> str:
        """Copy a provider artifact into permanent storage.

        Args:
            request_id: Generation request the model belongs to
            artifact_url: Temporary URL returned by the provider

        Returns:
            Permanent public URL of the stored model

        Raises:
            StorageError: If the download or the upload fails
        """
        data = await self.download(artifact_url)
        if not data:
            raise StorageError(f"Provider artifact is empty: {artifact_url}")
        return await self._put(self.models_bucket, model_key(request_id), data, MODEL_CONTENT_TYPE)
