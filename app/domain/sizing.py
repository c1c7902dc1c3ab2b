from __future__ import annotations

from app.domain.errors import DomainValidationError

SQUARE_SIZE = "1024x1024"
LANDSCAPE_SIZE = "1792x1024"
PORTRAIT_SIZE = "1024x1792"

LANDSCAPE_RATIO_THRESHOLD = 1.2
PORTRAIT_RATIO_THRESHOLD = 0.8

_LANDSCAPE_HINTS = ("wide", "landscape", "panorama")
_PORTRAIT_HINTS = ("tall", "portrait", "vertical")


def parse_aspect_ratio(value: str) -> float:
    """Parse a `W:H` aspect ratio into width / height."""
    parts = value.strip().split(":")
    if len(parts) != 2:
        raise DomainValidationError(f"aspect_ratio must look like W:H, got {value!r}")
    try:
        width = float(parts[0])
        height = float(parts[1])
    except ValueError as exc:
        raise DomainValidationError(f"aspect_ratio must be numeric, got {value!r}") from exc
    if width <= 0 or height <= 0:
        raise DomainValidationError("aspect_ratio parts must be positive")
    return width / height


def choose_output_size(*, aspect_ratio: str | None, style: str | None = None, prompt: str = "") -> str:
    if aspect_ratio:
        ratio = parse_aspect_ratio(aspect_ratio)
        if ratio > LANDSCAPE_RATIO_THRESHOLD:
            return LANDSCAPE_SIZE
        if ratio < PORTRAIT_RATIO_THRESHOLD:
            return PORTRAIT_SIZE
        return SQUARE_SIZE

    hint_text = f"{style or ''} {prompt}".lower()
    if any(hint in hint_text for hint in _LANDSCAPE_HINTS):
        return LANDSCAPE_SIZE
    if any(hint in hint_text for hint in _PORTRAIT_HINTS):
        return PORTRAIT_SIZE
    return SQUARE_SIZE
