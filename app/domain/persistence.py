from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from app.domain.errors import PersistenceError

logger = logging.getLogger("runtime")

T = TypeVar("T")


async def retry_persistence(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    backoff_ms: int,
    description: str,
) -> T:
    """Retry an idempotent store operation on PersistenceError with doubling backoff."""
    delay_ms = max(0, backoff_ms)
    last_error: PersistenceError | None = None
    for attempt in range(1, max(1, attempts) + 1):
        try:
            return await operation()
        except PersistenceError as exc:
            last_error = exc
            logger.warning(
                "persistence retry",
                extra={"operation": description, "attempt": attempt, "error": str(exc)},
            )
            if attempt < attempts:
                await asyncio.sleep(delay_ms / 1000)
                delay_ms *= 2
    assert last_error is not None
    raise last_error
