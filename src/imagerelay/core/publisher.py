"""Remote image publishing with graceful degradation.

Some generation models only accept a publicly reachable image URL, others
accept an inline ``data:`` URI as well. :class:`ImagePublisher` tries to turn a
local file into a URL by uploading it to external image hosts, and falls back
to an :class:`~imagerelay.core.encoder.EmbeddedImage` when every host fails.

Attempt order
-------------
1. Primary host (ImgBB): form-encoded base64 upload, then a HEAD check of the
   returned URL.
2. Secondary host: multipart upload, then the same HEAD check.
3. Embedded encoding of the file.

Host failures are logged and absorbed. The only exception that can escape
:meth:`ImagePublisher.publish` is a failure to read the file itself, because
without the bytes not even the embedded fallback can be produced.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import random
import string
import time
from pathlib import Path

import httpx

from .config import RelayConfig
from .encoder import EmbeddedImage, build_data_uri, mime_type_for

logger = logging.getLogger(__name__)


def _safe_upload_name() -> str:
    """Generate a host-friendly upload name such as ``image_1712345678901_k3j9xa``."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"image_{int(time.time() * 1000)}_{suffix}"


class ImagePublisher:
    """Publish local images to external hosts.

    Args:
        client: Shared async HTTP client.
        config: Relay configuration (host endpoints, keys and timeouts).
    """

    def __init__(self, client: httpx.AsyncClient, config: RelayConfig) -> None:
        self.client = client
        self.config = config

    async def verify_url(self, url: str, timeout: float | None = None) -> bool:
        """Return True when a HEAD request to *url* answers with a 2xx status.

        Never raises; transport errors count as unreachable.
        """
        timeout = timeout if timeout is not None else self.config.url_verify_timeout_seconds
        try:
            response = await self.client.head(url, timeout=timeout, follow_redirects=True)
        except httpx.HTTPError as e:
            logger.warning(f"URL verification failed for {url}: {e}")
            return False

        if 200 <= response.status_code < 300:
            return True
        logger.warning(f"URL verification failed for {url} with status {response.status_code}")
        return False

    async def publish(self, path: str | Path) -> str | EmbeddedImage:
        """Obtain a usable reference for the image at *path*.

        Args:
            path: Local image file.

        Returns:
            A verified public URL, or an :class:`EmbeddedImage` when no host
            produced a reachable URL.

        Raises:
            OSError: If the file cannot be read.
        """
        path = Path(path)
        payload = await asyncio.to_thread(path.read_bytes)
        mime_type = mime_type_for(path)
        logger.info(f"Publishing {path.name} ({len(payload)} bytes) to external image hosts")

        url = await self._upload_primary(payload)
        if url and await self.verify_url(url):
            logger.info(f"Published to primary host: {url}")
            return url

        url = await self._upload_secondary(payload, mime_type)
        if url and await self.verify_url(url):
            logger.info(f"Published to secondary host: {url}")
            return url

        logger.warning(f"All image hosts failed for {path.name}; falling back to embedded data")
        return EmbeddedImage(data=build_data_uri(payload, mime_type), mime_type=mime_type)

    async def _upload_primary(self, payload: bytes) -> str | None:
        if not self.config.imgbb_api_key:
            logger.info("Primary image host disabled (no ImgBB API key configured)")
            return None

        form = {
            "image": base64.b64encode(payload).decode("ascii"),
            "name": _safe_upload_name(),
        }
        try:
            response = await self.client.post(
                self.config.imgbb_upload_url,
                params={"key": self.config.imgbb_api_key},
                data=form,
                timeout=self.config.host_upload_timeout_seconds,
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Primary image host upload failed: {e}")
            return None

        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict) or not data.get("url"):
            logger.error(f"Unexpected primary host response: {body}")
            return None
        return data["url"]

    async def _upload_secondary(self, payload: bytes, mime_type: str) -> str | None:
        if not self.config.secondary_host_url:
            return None

        extension = {"image/png": "png", "image/webp": "webp"}.get(mime_type, "jpg")
        files = {"file": (f"{_safe_upload_name()}.{extension}", payload, mime_type)}
        try:
            response = await self.client.post(
                self.config.secondary_host_url,
                files=files,
                timeout=self.config.host_upload_timeout_seconds,
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Secondary image host upload failed: {e}")
            return None

        if not isinstance(body, dict) or not body.get("url"):
            logger.error(f"Unexpected secondary host response: {body}")
            return None
        return body["url"]
