"""Thumbnail metadata storage helpers.

Archived thumbnails are described by a single ``thumbnails.json`` file holding
a JSON list of camelCase record objects, newest first. The image files
themselves live in the thumbnails directory and are managed by
:mod:`imagerelay.core.archiver`.

Reads for display are forgiving: a missing, empty or corrupt file is treated
as an empty list. Reads that precede a rewrite pass ``strict=True`` so that a
corrupt file is reported instead of being replaced by an empty archive.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import ValidationError

from .errors import ArchiveError
from .records import ThumbnailRecord

logger = logging.getLogger(__name__)


def load_thumbnail_entries(thumbnails_file: Path, strict: bool = False) -> list[dict]:
    """Load raw thumbnail entries.

    Args:
        thumbnails_file: Path to ``thumbnails.json``.
        strict: Raise instead of returning ``[]`` when the file exists but
            cannot be read or does not hold a JSON list.

    Returns:
        List of entry dictionaries in persisted order. Non-object entries
        are skipped.

    Raises:
        ArchiveError: In strict mode, the file is unreadable or invalid.
    """
    if not thumbnails_file.exists():
        return []

    try:
        with open(thumbnails_file, encoding="utf-8") as handle:
            raw_entries = json.load(handle)
    except (OSError, ValueError) as e:
        logger.error(f"Error reading thumbnails file {thumbnails_file}: {e}")
        if strict:
            raise ArchiveError(f"Thumbnail metadata is unreadable: {e}") from e
        return []

    if not isinstance(raw_entries, list):
        logger.error(f"Thumbnails file {thumbnails_file} does not hold a list")
        if strict:
            raise ArchiveError("Thumbnail metadata is not a list")
        return []

    return [entry for entry in raw_entries if isinstance(entry, dict)]


def load_thumbnail_records(thumbnails_file: Path, strict: bool = False) -> list[ThumbnailRecord]:
    """Load thumbnail entries as validated records, dropping malformed ones."""
    records: list[ThumbnailRecord] = []
    for entry in load_thumbnail_entries(thumbnails_file, strict=strict):
        try:
            records.append(ThumbnailRecord.model_validate(entry))
        except ValidationError:
            logger.warning(f"Skipping malformed thumbnail entry: {entry.get('url')}")
    return records


def save_thumbnail_records(thumbnails_file: Path, records: list[ThumbnailRecord]) -> None:
    """Write records and read the file back to make sure it parses.

    Args:
        thumbnails_file: Path to ``thumbnails.json``.
        records: Records to persist, in order.

    Raises:
        OSError: The file could not be written or read back.
        ValueError: The written file is not valid JSON.
    """
    entries = [record.to_json() for record in records]
    with open(thumbnails_file, "w", encoding="utf-8") as handle:
        json.dump(entries, handle, indent=2)

    with open(thumbnails_file, encoding="utf-8") as handle:
        json.loads(handle.read())
