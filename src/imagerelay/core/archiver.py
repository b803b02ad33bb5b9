"""Durable archiving of generated images.

Delivery URLs handed out by the generation API expire, so the frontend asks
the relay to keep a local copy of every image it wants to show again. The
:class:`ThumbnailArchiver` downloads the image, writes it under a fresh unique
filename in the thumbnails directory, checks that the file exists, is
non-empty and decodes as an image, and records it in ``thumbnails.json``.

A periodic sweep (:meth:`ThumbnailArchiver.revalidate_all`) repairs the
archive: records whose local file went missing are re-downloaded from their
original URL, records that cannot be repaired are dropped.
"""

from __future__ import annotations

import asyncio
import logging
import random
import string
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx
from PIL import Image

from .config import RelayConfig
from .errors import ArchiveError, InputValidationError
from .records import ThumbnailRecord, UserIdentity
from .thumbnail_store import load_thumbnail_records, save_thumbnail_records
from .usage_log import UsageLog

logger = logging.getLogger(__name__)

THUMBNAIL_ROUTE = "ThumbnailImages"

PRIMARY_DELIVERY_HOST = "replicate.delivery"
ALTERNATE_DELIVERY_HOST = "replicate.com"

METADATA_WRITE_ATTEMPTS = 3
METADATA_WRITE_BACKOFF_SECONDS = 1.0


def _thumbnail_filename() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"thumbnail_{int(time.time() * 1000)}_{suffix}.png"


def verify_image_file(path: Path) -> None:
    """Check that *path* exists, is non-empty and decodes as an image.

    Raises:
        ArchiveError: If any check fails.
    """
    if not path.is_file():
        raise ArchiveError(f"File verification failed: {path.name} does not exist")
    if path.stat().st_size == 0:
        raise ArchiveError(f"File verification failed: {path.name} is empty")
    try:
        with Image.open(path) as image:
            image.verify()
    except Exception as e:
        raise ArchiveError(f"File verification failed: {path.name} is not an image ({e})") from e


class ThumbnailArchiver:
    """Download, verify and record generated images.

    Args:
        client: Shared async HTTP client.
        config: Relay configuration (storage paths, retry policy).
        usage_log: Usage log receiving a row per stored thumbnail.
        sleep: Awaitable sleep function, replaceable in tests.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        config: RelayConfig,
        usage_log: UsageLog,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.usage_log = usage_log
        self.thumbnails_dir = Path(config.thumbnails_dir)
        self.thumbnails_file = Path(config.thumbnails_file)
        self.public_base_url = config.public_base_url.rstrip("/")
        self.attempts = config.download_attempts
        self.backoff = config.download_backoff_seconds
        self.timeout = config.download_timeout_seconds
        self.max_bytes = config.download_max_bytes
        self._sleep = sleep
        # Serialises read-modify-write cycles on thumbnails.json.
        self._metadata_lock = asyncio.Lock()
        self.thumbnails_dir.mkdir(parents=True, exist_ok=True)

    def local_url(self, filename: str) -> str:
        return f"{self.public_base_url}/{THUMBNAIL_ROUTE}/{filename}"

    def local_path_for(self, url: str) -> Path | None:
        """Map an archived thumbnail URL to its file, or None for remote URLs."""
        if THUMBNAIL_ROUTE not in url:
            return None
        filename = Path(url.rsplit("/", 1)[-1]).name
        if not filename:
            return None
        return self.thumbnails_dir / filename

    def is_valid_local(self, url: str) -> bool:
        """True when *url* is an archived thumbnail whose file exists and is non-empty."""
        path = self.local_path_for(url)
        return path is not None and path.is_file() and path.stat().st_size > 0

    async def _fetch(self, url: str) -> bytes | None:
        """GET *url*.

        Returns:
            The body on a 200 response within the size cap, otherwise None.

        Raises:
            httpx.HTTPError: On transport failures.
        """
        response = await self.client.get(url, timeout=self.timeout, follow_redirects=True)
        if response.status_code != 200:
            logger.warning(f"Download of {url} returned status {response.status_code}")
            return None
        if len(response.content) > self.max_bytes:
            logger.warning(f"Download of {url} exceeds {self.max_bytes} bytes")
            return None
        return response.content

    async def _download(self, url: str) -> bytes:
        for attempt in range(1, self.attempts + 1):
            content = None
            try:
                content = await self._fetch(url)
            except httpx.HTTPError as e:
                logger.error(f"Download attempt {attempt} failed: {e}")
                if PRIMARY_DELIVERY_HOST in url:
                    alternate = url.replace(PRIMARY_DELIVERY_HOST, ALTERNATE_DELIVERY_HOST)
                    try:
                        content = await self._fetch(alternate)
                    except httpx.HTTPError as alt_error:
                        logger.error(f"Alternative URL failed: {alt_error}")

            if content:
                return content
            if attempt < self.attempts:
                await self._sleep(self.backoff)

        raise ArchiveError(f"Failed to download image after {self.attempts} attempts")

    async def download_and_save(self, url: str) -> str:
        """Archive the image at *url* and return its local URL.

        A URL that already refers to a valid archived file is returned as is.

        Raises:
            ArchiveError: Download failed after all attempts, or the written
                file did not verify.
        """
        if self.is_valid_local(url):
            return url

        content = await self._download(url)

        filename = _thumbnail_filename()
        path = self.thumbnails_dir / filename
        await asyncio.to_thread(path.write_bytes, content)
        try:
            await asyncio.to_thread(verify_image_file, path)
        except ArchiveError:
            path.unlink(missing_ok=True)
            raise

        logger.info(f"File saved successfully: {path} ({len(content)} bytes)")
        return self.local_url(filename)

    async def _archive_verified(self, url: str) -> str:
        for attempt in range(1, self.attempts + 1):
            try:
                local_url = await self.download_and_save(url)
                if self.is_valid_local(local_url):
                    return local_url
                logger.error(f"Attempt {attempt}: archived file for {url} is missing or empty")
            except (ArchiveError, OSError) as e:
                logger.error(f"Attempt {attempt} failed: {e}")
            if attempt < self.attempts:
                await self._sleep(self.backoff)

        raise ArchiveError("Failed to save image after multiple attempts")

    def _discard(self, url: str) -> None:
        path = self.local_path_for(url)
        if path is not None:
            path.unlink(missing_ok=True)

    async def _save_records(self, records: list[ThumbnailRecord]) -> None:
        for attempt in range(1, METADATA_WRITE_ATTEMPTS + 1):
            try:
                await asyncio.to_thread(save_thumbnail_records, self.thumbnails_file, records)
                return
            except (OSError, ValueError) as e:
                logger.error(f"Failed to save thumbnails file, attempt {attempt}: {e}")
                if attempt == METADATA_WRITE_ATTEMPTS:
                    raise ArchiveError("Failed to save thumbnail metadata") from e
                await self._sleep(METADATA_WRITE_BACKOFF_SECONDS)

    async def store(self, payload: dict[str, Any], user: UserIdentity) -> ThumbnailRecord:
        """Archive a thumbnail sent by the frontend and prepend it to the archive.

        Args:
            payload: Thumbnail object; ``url`` and ``prompt`` are required,
                other keys are kept.
            user: Calling user, recorded on the thumbnail.

        Returns:
            The stored record, whose ``url`` is the local copy.

        Raises:
            InputValidationError: ``url`` or ``prompt`` is missing.
            ArchiveError: The image or the metadata could not be saved, or the
                existing metadata file is corrupt.
        """
        if not payload.get("url") or not payload.get("prompt"):
            raise InputValidationError("Missing required fields")

        thumbnail = ThumbnailRecord.model_validate(payload)
        if not thumbnail.timestamp:
            thumbnail.timestamp = datetime.now(timezone.utc).isoformat()

        logger.info(f"Processing thumbnail for user {user.id}: {thumbnail.url}")
        local_url = await self._archive_verified(thumbnail.url)

        record = thumbnail.model_copy(
            update={
                "original_url": thumbnail.url,
                "url": local_url,
                "local_path": local_url.rsplit("/", 1)[-1],
                "user_id": user.id,
                "user_name": user.name,
                "user_email": user.email,
            }
        )

        async with self._metadata_lock:
            try:
                records = await asyncio.to_thread(
                    load_thumbnail_records, self.thumbnails_file, True
                )
            except ArchiveError:
                if local_url != thumbnail.url:
                    self._discard(local_url)
                raise
            records.insert(0, record)
            await self._save_records(records)

        await asyncio.to_thread(
            self.usage_log.log_call,
            user,
            "/api/thumbnails",
            "POST",
            200,
            {"prompt": thumbnail.prompt, "settings": thumbnail.settings},
            {"success": True, "imageUrl": local_url},
        )
        return record

    def list_records(self) -> list[dict[str, Any]]:
        """Return all records, newest first, in their camelCase JSON form."""
        return [record.to_json() for record in load_thumbnail_records(self.thumbnails_file)]

    async def delete(self, url: str) -> bool:
        """Remove the record whose local URL equals *url*, and its archived file.

        Returns:
            False if no record matched.

        Raises:
            ArchiveError: The metadata file is corrupt or could not be saved.
        """
        async with self._metadata_lock:
            records = await asyncio.to_thread(load_thumbnail_records, self.thumbnails_file, True)
            remaining = [record for record in records if record.url != url]
            if len(remaining) == len(records):
                return False
            await self._save_records(remaining)

        self._discard(url)
        logger.info(f"Deleted thumbnail {url}")
        return True

    async def _repair(self, record: ThumbnailRecord) -> ThumbnailRecord | None:
        """Return the repaired form of *record*, or None if it must be dropped."""
        source = record.url
        if self.local_path_for(record.url) is not None:
            if self.is_valid_local(record.url):
                source = None
            elif record.original_url:
                logger.info(f"Missing or empty file for {record.url}, re-downloading")
                source = record.original_url
            else:
                logger.warning(f"Dropping unrecoverable thumbnail {record.url}")
                return None

        local_url = record.url
        if source is not None:
            try:
                local_url = await self.download_and_save(source)
            except (ArchiveError, OSError) as e:
                logger.error(f"Dropping thumbnail {record.url}: {e}")
                return None

        return record.model_copy(
            update={
                "url": local_url,
                "original_url": record.original_url or record.url,
                "local_path": local_url.rsplit("/", 1)[-1],
            }
        )

    async def revalidate_all(self) -> int:
        """Repair the archive and drop records that cannot be repaired.

        Duplicate URLs are collapsed, missing or empty local files are
        re-downloaded from ``original_url``, and records that still point at a
        remote URL are archived.

        Downloads run without the metadata lock, against a snapshot of the
        archive. The results are then merged into the current file, so records
        stored or deleted meanwhile are kept or stay deleted. A corrupt
        metadata file is left untouched.

        Returns:
            Number of records kept.
        """
        logger.info("Starting thumbnails revalidation...")
        async with self._metadata_lock:
            try:
                snapshot = await asyncio.to_thread(
                    load_thumbnail_records, self.thumbnails_file, True
                )
            except ArchiveError as e:
                logger.error(f"Skipping thumbnails revalidation: {e}")
                return 0

        repaired: dict[str, ThumbnailRecord | None] = {}
        for record in snapshot:
            if record.url not in repaired:
                repaired[record.url] = await self._repair(record)

        async with self._metadata_lock:
            try:
                current = await asyncio.to_thread(
                    load_thumbnail_records, self.thumbnails_file, True
                )
            except ArchiveError as e:
                logger.error(f"Skipping thumbnails revalidation: {e}")
                current = []
                corrupt = True
            else:
                corrupt = False

            kept: list[ThumbnailRecord] = []
            seen: set[str] = set()
            for record in current:
                if record.url in seen:
                    continue
                seen.add(record.url)
                # Records stored after the snapshot have no outcome yet.
                outcome = repaired.pop(record.url, record)
                if outcome is not None:
                    kept.append(outcome)
                    seen.add(outcome.url)
            if not corrupt:
                await self._save_records(kept)

        # Whatever is left belongs to records deleted during the sweep.
        for url, outcome in repaired.items():
            if outcome is not None and outcome.url != url:
                self._discard(outcome.url)

        if corrupt:
            return 0
        logger.info(f"Thumbnails revalidation completed. Valid thumbnails: {len(kept)}")
        return len(kept)
