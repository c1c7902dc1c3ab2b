from __future__ import annotations

import json
import re
from collections.abc import Iterator

IMAGE_EXTENSIONS = ("jpg", "jpeg", "png", "gif", "webp", "bmp")
JSON_URL_FIELDS = ("url", "image", "image_url", "imageUrl", "src", "source", "path", "link")
PLACEHOLDER_MARKERS = ("placehold.co", "placeholder", "example.com")
IMAGE_HOST_HINTS = ("/image", "/img", "/photo", "/media", "cdn", "storage", "assets")

_MARKDOWN_IMAGE_RE = re.compile(r"!\[[^\]]*\]\((https?://[^\s)]+)\)")
_DIRECT_IMAGE_URL_RE = re.compile(
    r"(https?://[^\s\"'<>()]+\.(?:jpe?g|png|gif|webp|bmp)(?:\?[^\s\"'<>()]*)?)",
    re.IGNORECASE,
)
_FENCED_BLOCK_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_BRACE_BLOCK_RE = re.compile(r"\{[\s\S]*?\}")
_ANY_URL_RE = re.compile(r"(https?://[^\s<>(){}\[\]\"`']+)", re.IGNORECASE)
_EXTENSION_RE = re.compile(r"\.(?:jpe?g|png|gif|webp|bmp)(?:\?|$)", re.IGNORECASE)
_TRAILING_PUNCTUATION = ".,;:!"


def is_placeholder_locator(url: str) -> bool:
    lowered = url.lower()
    return any(marker in lowered for marker in PLACEHOLDER_MARKERS)


def is_likely_image_url(url: str) -> bool:
    if _EXTENSION_RE.search(url):
        return True
    lowered = url.lower()
    return any(hint in lowered for hint in IMAGE_HOST_HINTS)


def extract_locator(content: str) -> str | None:
    """Pull the first usable image locator out of free-form provider text.

    Tried in order: markdown image link, direct URL with an image extension,
    URL-valued field inside a JSON block, any URL that looks image-hosted.
    Placeholder locators are never returned.
    """
    if not content:
        return None
    for candidate in _candidates(content):
        cleaned = candidate.rstrip(_TRAILING_PUNCTUATION)
        if cleaned and not is_placeholder_locator(cleaned):
            return cleaned
    return None


def _candidates(content: str) -> Iterator[str]:
    yield from _MARKDOWN_IMAGE_RE.findall(content)
    yield from _DIRECT_IMAGE_URL_RE.findall(content)
    yield from _json_candidates(content)
    for url in _ANY_URL_RE.findall(content):
        if is_likely_image_url(url):
            yield url


def _json_candidates(content: str) -> Iterator[str]:
    if "{" not in content:
        return
    blocks = [*_FENCED_BLOCK_RE.findall(content), *_BRACE_BLOCK_RE.findall(content)]
    for block in blocks:
        try:
            payload = json.loads(block)
        except ValueError:
            continue
        found = _find_url_in_json(payload)
        if found is not None:
            yield found


def _find_url_in_json(payload: object) -> str | None:
    if isinstance(payload, dict):
        for field in JSON_URL_FIELDS:
            value = payload.get(field)
            if isinstance(value, str) and value.startswith(("http://", "https://")):
                return value
        for value in payload.values():
            if isinstance(value, str) and value.startswith(("http://", "https://")) and is_likely_image_url(value):
                return value
            if isinstance(value, (dict, list)):
                nested = _find_url_in_json(value)
                if nested is not None:
                    return nested
    elif isinstance(payload, list):
        for item in payload:
            nested = _find_url_in_json(item)
            if nested is not None:
                return nested
    return None
