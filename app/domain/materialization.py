from __future__ import annotations

from datetime import datetime
from urllib.parse import parse_qs, urlparse

STORAGE_KEY_PREFIX = "results/"

# Hosts whose result URLs expire shortly after generation.
EPHEMERAL_HOST_SUFFIXES = ("openai.com", "oaiusercontent.com")
_SIGNATURE_PARAMS = ("sig", "token", "expire")


def is_ephemeral_locator(locator: str | None) -> bool:
    """True when the locator carries an expiring signature or a provider host."""
    if not locator:
        return False
    parsed = urlparse(locator)
    if parsed.scheme not in ("http", "https"):
        return False

    host = (parsed.hostname or "").lower()
    if any(host == suffix or host.endswith(f".{suffix}") for suffix in EPHEMERAL_HOST_SUFFIXES):
        return True

    params = parse_qs(parsed.query)
    has_window = "st" in params and "se" in params
    return has_window and any(name in params for name in _SIGNATURE_PARAMS)


def build_storage_key(*, owner_id: str, task_id: str, at: datetime) -> str:
    timestamp = int(at.timestamp() * 1000)
    return f"{STORAGE_KEY_PREFIX}{owner_id}/{task_id}/{timestamp}.png"
