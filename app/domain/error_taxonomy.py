from __future__ import annotations

from collections.abc import Mapping
from typing import Literal

# Canonical provider failure vocabulary.
ProviderErrorKind = Literal[
    "quota_exceeded",
    "invalid_credential",
    "rate_limited",
    "timeout",
    "network",
    "unknown",
]

PROVIDER_ERROR_KINDS: tuple[ProviderErrorKind, ...] = (
    "quota_exceeded",
    "invalid_credential",
    "rate_limited",
    "timeout",
    "network",
    "unknown",
)

# Persisted in error_code for tasks the reaper terminated.
STUCK_TASK_ERROR_CODE = "stuck_timeout"
STUCK_TASK_ERROR_MESSAGE = "exceeded processing time"
CANCELLED_ERROR_MESSAGE = "cancelled by user"

# Kinds for which the generation endpoint would fail the same way as the
# conversational endpoint, so the executor does not fall back.
NO_FALLBACK_KINDS: frozenset[ProviderErrorKind] = frozenset(
    {
        "invalid_credential",
        "quota_exceeded",
        "timeout",
    }
)

USER_MESSAGES: Mapping[ProviderErrorKind, str] = {
    "quota_exceeded": "The image provider quota is exhausted. Please try again later.",
    "invalid_credential": "The image provider rejected our credentials. Please contact support.",
    "rate_limited": "The image provider is busy right now. Please try again in a moment.",
    "timeout": "Image generation took too long and was stopped.",
    "network": "Could not reach the image provider. Please try again.",
    "unknown": "Image generation failed. Please try again with a different prompt.",
}

_QUOTA_CODES = frozenset({"insufficient_quota", "insufficient_user_quota", "quota_exceeded"})
_CREDENTIAL_CODES = frozenset({"invalid_api_key", "invalid_token", "unauthorized"})


def is_provider_error_kind(kind: str) -> bool:
    return kind in PROVIDER_ERROR_KINDS


def user_message_for(kind: str) -> str:
    if is_provider_error_kind(kind):
        return USER_MESSAGES[kind]  # type: ignore[index]
    return USER_MESSAGES["unknown"]


def allows_fallback(kind: ProviderErrorKind) -> bool:
    return kind not in NO_FALLBACK_KINDS


def classify_provider_failure(
    *,
    status_code: int | None = None,
    error_code: str | None = None,
    message: str = "",
) -> ProviderErrorKind:
    """Map an HTTP status / provider error code / message to an error kind."""
    code = (error_code or "").lower()
    text = message.lower()

    if code in _QUOTA_CODES or "quota" in text:
        return "quota_exceeded"
    if status_code in (401, 403) or code in _CREDENTIAL_CODES or "invalid_api_key" in text or "unauthorized" in text:
        return "invalid_credential"
    if status_code == 429 or code == "rate_limit_exceeded" or "rate limit" in text:
        return "rate_limited"
    if status_code in (408, 504) or "timeout" in text or "timed out" in text or "etimedout" in text:
        return "timeout"
    if "econnreset" in text or "connection" in text or "network" in text:
        return "network"
    return "unknown"
