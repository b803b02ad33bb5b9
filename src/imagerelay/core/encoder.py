"""Embedded image encoding.

Turns a local image file into a ``data:`` URI that the generation API accepts
in place of a URL. The MIME type is chosen from the file extension only; the
file content is never inspected.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"

MIME_TYPES: dict[str, str] = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
}


@dataclass(frozen=True)
class EmbeddedImage:
    """Marker for an image that could only be delivered inline.

    Attributes:
        data: Complete ``data:<mime>;base64,<payload>`` string.
        mime_type: MIME type carried in ``data``.
    """

    data: str
    mime_type: str

    def preview(self, length: int = 50) -> str:
        """Return a truncated form of ``data`` suitable for logging."""
        return f"{self.data[:length]}... [truncated]"


def mime_type_for(path: str | Path) -> str:
    """Return the MIME type for *path* based on its extension.

    Args:
        path: Local file path.

    Returns:
        A type from :data:`MIME_TYPES`, or :data:`DEFAULT_MIME_TYPE` for
        unrecognised extensions.
    """
    return MIME_TYPES.get(Path(path).suffix.lower(), DEFAULT_MIME_TYPE)


def build_data_uri(payload: bytes, mime_type: str) -> str:
    """Build a ``data:`` URI from raw bytes."""
    encoded = base64.b64encode(payload).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"


async def encode_data_uri(path: str | Path) -> str:
    """Read *path* and return it as a ``data:`` URI.

    The read happens in a worker thread so large files do not stall the
    event loop.

    Args:
        path: Local file path.

    Returns:
        The embedded image string.

    Raises:
        OSError: If the file cannot be read (missing, permission denied).
    """
    path = Path(path)
    payload = await asyncio.to_thread(path.read_bytes)
    mime_type = mime_type_for(path)
    logger.info(f"Created data URI from {path.name} with mime type: {mime_type}")
    return build_data_uri(payload, mime_type)
