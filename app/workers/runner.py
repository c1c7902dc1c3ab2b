from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from app.settings import env_int
from app.workers.loop import SweepLoop


@dataclass(frozen=True)
class WorkerRuntimeSettings:
    """Delays between sweeps; the idle delay is each loop's own interval."""

    backlog_interval_ms: int = 200
    error_backoff_ms: int = 2000


@dataclass
class WorkerRuntimeState:
    started: bool = False
    stopped: bool = False
    ticks_total: int = 0
    busy_ticks_total: int = 0
    idle_ticks_total: int = 0
    errors_total: int = 0
    last_tick_at: datetime | None = None

    def record_tick(self, *, backlog: bool) -> None:
        self.ticks_total += 1
        if backlog:
            self.busy_ticks_total += 1
        else:
            self.idle_ticks_total += 1
        self.last_tick_at = datetime.now(tz=UTC)

    def record_error(self) -> None:
        self.ticks_total += 1
        self.errors_total += 1
        self.last_tick_at = datetime.now(tz=UTC)


def worker_runtime_settings_from_env() -> WorkerRuntimeSettings:
    defaults = WorkerRuntimeSettings()
    return WorkerRuntimeSettings(
        backlog_interval_ms=env_int("WORKER_BACKLOG_INTERVAL_MS", defaults.backlog_interval_ms),
        error_backoff_ms=env_int("WORKER_ERROR_BACKOFF_MS", defaults.error_backoff_ms),
    )


async def run_worker_until_stopped(
    *,
    worker_loop: SweepLoop,
    role: str,
    run_id: str,
    stop_event: asyncio.Event,
    settings: WorkerRuntimeSettings,
    logger: logging.Logger,
    state: WorkerRuntimeState | None = None,
) -> None:
    """Run sweeps until `stop_event` is set.

    A sweep that filled its batch is followed quickly by the next one, an idle
    sweep waits the loop interval and a failed sweep waits the error backoff.
    Sweep errors are logged and never end the loop.
    """
    state = state if state is not None else WorkerRuntimeState()
    context = {"role": role, "service": role, "run_id": run_id, "stage": worker_loop.stage}
    state.started = True
    logger.info("worker loop started", extra=context)

    while not stop_event.is_set():
        try:
            backlog = await worker_loop.run_once()
        except Exception:
            state.record_error()
            delay_ms = settings.error_backoff_ms
            logger.exception("worker tick error", extra=context)
        else:
            state.record_tick(backlog=backlog)
            delay_ms = settings.backlog_interval_ms if backlog else worker_loop.interval_ms
            logger.debug("worker tick", extra={**context, "outcome": "backlog" if backlog else "idle"})

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay_ms / 1000)
        except TimeoutError:
            continue

    state.stopped = True
    logger.info("worker loop stopped", extra=context)
