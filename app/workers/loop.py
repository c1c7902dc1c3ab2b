from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import logging

from app.domain.dto import MaterializeSweepResult, ReapResult
from app.domain.use_cases.materialize import ResultMaterializer
from app.domain.use_cases.reaper import Reaper

SweepHandler = Callable[[], Awaitable[int]]
logger = logging.getLogger("runtime")


@dataclass
class SweepLoop:
    """One periodic sweep; `run_once` reports whether a full batch was processed."""

    role: str
    stage: str
    sweep: SweepHandler
    interval_ms: int
    batch_size: int = 100

    async def run_once(self) -> bool:
        scanned = await self.sweep()
        return scanned >= self.batch_size


def reaper_sweep(reaper: Reaper) -> SweepHandler:
    async def _sweep() -> int:
        result: ReapResult = await reaper.sweep()
        if result.scanned or result.executor_restarted:
            logger.info(
                "reaper sweep",
                extra={
                    "stage": "reaper",
                    "scanned": result.scanned,
                    "failed": result.failed,
                    "cancelled": result.cancelled,
                    "refunded": result.refunded,
                    "executor_restarted": str(result.executor_restarted).lower(),
                },
            )
        return result.scanned

    return _sweep


def materializer_sweep(materializer: ResultMaterializer) -> SweepHandler:
    async def _sweep() -> int:
        result: MaterializeSweepResult = await materializer.sweep()
        if result.scanned:
            logger.info(
                "materializer sweep",
                extra={
                    "stage": "materializer",
                    "scanned": result.scanned,
                    "materialized": result.materialized,
                    "failed": result.failed,
                },
            )
        return result.scanned

    return _sweep
