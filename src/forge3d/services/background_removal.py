"""Background removal adapter built on rembg."""

import asyncio
import io
from typing import Protocol

import structlog
from PIL import Image, UnidentifiedImageError

from forge3d.services.exceptions import ContentError

logger = structlog.get_logger()


class BackgroundRemover(Protocol):
    """Turns a photo into a foreground-only PNG. Stateless."""

    async def remove_background(self, image: bytes) -> bytes: ...


class RembgBackgroundRemover:
    """rembg-backed BackgroundRemover.

    Failures are reported as ContentError: the caller treats them as terminal
    and never retries.
    """

    def __init__(self, model_name: str = "u2net"):
        self.model_name = model_name
        self._session = None

    def _remove_sync(self, image: bytes) -> bytes:
        try:
            source = Image.open(io.BytesIO(image))
            source.load()
        except (UnidentifiedImageError, OSError) as e:
            raise ContentError("unreadable image") from e

        if source.mode not in ("RGB", "RGBA"):
            source = source.convert("RGB")

        # rembg pulls in onnxruntime at import time
        from rembg import new_session, remove

        if self._session is None:
            self._session = new_session(self.model_name)

        output = remove(source, session=self._session)
        if output.mode != "RGBA":
            output = output.convert("RGBA")

        # Fully transparent output means rembg found nothing to keep
        if output.getchannel("A").getbbox() is None:
            raise ContentError("no subject detected")

        buffer = io.BytesIO()
        output.save(buffer, format="PNG")
        return buffer.getvalue()

    async def remove_background(self, image: bytes) -> bytes:
        """Remove the background of an image.

        Args:
            image: Encoded JPEG/PNG/WebP bytes

        Returns:
            PNG bytes with a transparent background

        Raises:
            ContentError: If the image cannot be decoded or contains no subject
        """
        if not image:
            raise ContentError("empty image")
        try:
            return await asyncio.to_thread(self._remove_sync, image)
        except ContentError:
            raise
        except (ValueError, RuntimeError, OSError) as e:
            logger.warning(
                "background_removal.failed",
                error_type=type(e).__name__,
                error_message=str(e),
            )
            raise ContentError("background removal failed") from e
