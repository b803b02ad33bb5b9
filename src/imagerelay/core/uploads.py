"""Storage for client-uploaded reference images.

Uploads are short-lived: they only need to survive long enough to be used as
a control or reference image for a generation request, so anything older than
an hour is removed by :meth:`UploadStore.cleanup_expired`.
"""

from __future__ import annotations

import logging
import random
import time
from pathlib import Path
from urllib.parse import unquote, urlparse

from .errors import InputValidationError, UploadRejected

logger = logging.getLogger(__name__)

ALLOWED_CONTENT_TYPES: frozenset[str] = frozenset({"image/jpeg", "image/png", "image/webp"})

LOCAL_HOST_MARKERS: tuple[str, ...] = ("localhost", "127.0.0.1")


class UploadStore:
    """Save, resolve and expire uploaded images.

    Args:
        uploads_dir: Directory holding uploaded files.
        public_base_url: Base URL under which ``/uploads`` is served.
        max_bytes: Largest accepted upload.
    """

    def __init__(self, uploads_dir: Path, public_base_url: str, max_bytes: int) -> None:
        self.uploads_dir = Path(uploads_dir)
        self.uploads_dir.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/")
        self.max_bytes = max_bytes

    @staticmethod
    def make_filename(original_name: str | None) -> str:
        """Return ``<epoch-ms>-<random>.<ext>`` keeping the original extension."""
        suffix = Path(original_name or "").suffix
        return f"{int(time.time() * 1000)}-{random.randint(0, 10**9 - 1)}{suffix}"

    def save(self, content: bytes, original_name: str | None, content_type: str | None) -> str:
        """Validate and persist an upload.

        Args:
            content: Raw file bytes.
            original_name: Client-side filename (only the extension is kept).
            content_type: MIME type declared by the client.

        Returns:
            The stored filename.

        Raises:
            UploadRejected: Unsupported type or file too large.
        """
        if content_type not in ALLOWED_CONTENT_TYPES:
            raise UploadRejected("Invalid file type. Only JPEG, PNG and WebP are allowed.")
        if len(content) > self.max_bytes:
            limit_mb = self.max_bytes // (1024 * 1024)
            raise UploadRejected(f"File size too large. Maximum size is {limit_mb}MB.")

        filename = self.make_filename(original_name)
        (self.uploads_dir / filename).write_bytes(content)
        logger.info(f"Stored upload {filename} ({len(content)} bytes, {content_type})")
        return filename

    def public_url(self, filename: str) -> str:
        return f"{self.public_base_url}/uploads/{filename}"

    def path_for(self, filename: str) -> Path:
        """Resolve *filename* inside the upload directory.

        Raises:
            InputValidationError: If the name escapes the upload directory.
        """
        root = self.uploads_dir.resolve()
        candidate = (root / filename).resolve()
        if candidate.parent != root:
            raise InputValidationError("Invalid file path")
        return candidate

    def delete(self, filename: str) -> bool:
        """Delete an upload. Returns False if it did not exist."""
        path = self.path_for(filename)
        if not path.is_file():
            return False
        path.unlink()
        logger.info(f"Deleted upload {filename}")
        return True

    def is_local_reference(self, reference: str) -> bool:
        """True when *reference* points at a file served by this relay."""
        if reference.startswith("data:"):
            return False
        if any(marker in reference for marker in LOCAL_HOST_MARKERS):
            return True
        return bool(self.public_base_url) and reference.startswith(self.public_base_url)

    def resolve_local_reference(self, reference: str) -> Path | None:
        """Map a local upload URL to its file path.

        The filename is the last path segment of the URL. Returns None when
        the reference is not local.
        """
        if not self.is_local_reference(reference):
            return None
        filename = unquote(urlparse(reference).path.rsplit("/", 1)[-1])
        if not filename:
            raise InputValidationError("Invalid image reference")
        return self.path_for(filename)

    def cleanup_expired(self, max_age_seconds: float, now: float | None = None) -> int:
        """Remove uploads whose modification time is older than *max_age_seconds*.

        Returns:
            Number of files removed.
        """
        now = time.time() if now is None else now
        removed = 0
        for path in self.uploads_dir.iterdir():
            if not path.is_file():
                continue
            try:
                if now - path.stat().st_mtime > max_age_seconds:
                    path.unlink()
                    removed += 1
                    logger.info(f"Deleted old upload: {path.name}")
            except OSError as e:
                logger.error(f"Error cleaning up {path.name}: {e}")
        return removed
