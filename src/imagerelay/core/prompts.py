"""Prompt and sizing helpers shared by every model family."""

from __future__ import annotations

import re

ASPECT_RATIO_MAP: dict[str, str] = {
    "square": "1:1",
    "portrait": "3:4",
    "landscape": "4:3",
    "widescreen": "16:9",
    "ultrawide": "9:16",
}

# Ratios accepted by the Flux model family.
VALID_ASPECT_RATIOS: tuple[str, ...] = (
    "1:1",
    "16:9",
    "3:2",
    "2:3",
    "4:5",
    "5:4",
    "9:16",
    "3:4",
    "4:3",
    "custom",
)

NAMED_DIMENSIONS: dict[str, tuple[int, int]] = {
    "square": (1024, 1024),
    "portrait": (768, 1024),
    "landscape": (1024, 768),
    "widescreen": (1024, 576),
    "ultrawide": (1024, 432),
}

BASE_SIZE = 1024

BANNED_PHRASES: tuple[str, ...] = (
    "nsfw",
    "nude",
    "naked",
    "xxx",
    "porn",
    "explicit",
    "sex",
    "erotic",
    "adult content",
    "obscene",
    "sexual",
    "intimate parts",
)

QUALITY_TERMS: tuple[str, ...] = ("high quality", "detailed", "high resolution", "hd", "4k", "8k")

QUALITY_SUFFIX = ", high quality, detailed"


def sanitize_prompt(prompt: str | None) -> str:
    """Clean a user prompt before it is sent to a model.

    Collapses whitespace, removes banned phrases (case-insensitive, also
    inside longer words) and appends :data:`QUALITY_SUFFIX` unless the prompt
    already mentions a quality term.

    Args:
        prompt: Raw prompt text.

    Returns:
        The cleaned prompt, or an empty string for empty input.
    """
    if not prompt:
        return ""

    cleaned = re.sub(r"\s+", " ", prompt.strip())

    for phrase in BANNED_PHRASES:
        cleaned = re.sub(re.escape(phrase), "", cleaned, flags=re.IGNORECASE)

    lowered = cleaned.lower()
    if not any(term in lowered for term in QUALITY_TERMS):
        cleaned += QUALITY_SUFFIX

    return cleaned


def get_valid_aspect_ratio(raw: str | None) -> str:
    """Normalise a ratio (``"16:9"``) or ratio name (``"widescreen"``).

    Unknown values fall back to ``"1:1"``.
    """
    if raw in VALID_ASPECT_RATIOS:
        return raw
    mapped = ASPECT_RATIO_MAP.get(raw or "")
    if mapped in VALID_ASPECT_RATIOS:
        return mapped
    return "1:1"


def calculate_dimensions(aspect_ratio: str | None) -> tuple[int, int]:
    """Compute ``(width, height)`` for an aspect ratio.

    ``"w:h"`` strings put :data:`BASE_SIZE` on the longer side; names use
    :data:`NAMED_DIMENSIONS`. Both values are floored to a multiple of 8.
    """
    if not aspect_ratio:
        return BASE_SIZE, BASE_SIZE

    if ":" in aspect_ratio:
        try:
            w, h = (float(part) for part in aspect_ratio.split(":", 1))
        except ValueError:
            w, h = 1.0, 1.0
        if w <= 0 or h <= 0:
            w, h = 1.0, 1.0
        if w >= h:
            width, height = BASE_SIZE, round(h / w * BASE_SIZE)
        else:
            width, height = round(w / h * BASE_SIZE), BASE_SIZE
    else:
        width, height = NAMED_DIMENSIONS.get(aspect_ratio, (BASE_SIZE, BASE_SIZE))

    return width // 8 * 8, height // 8 * 8
