from __future__ import annotations

import math
from dataclasses import dataclass

from app.domain.dto import TaskStatusView
from app.domain.models import GenerationStage, TaskSnapshot, TaskStatus

DEFAULT_TOTAL_SECONDS = 120
MIN_CALIBRATED_TOTAL_SECONDS = 60
CALIBRATION_THRESHOLD_PERCENT = 30


def project_status(task: TaskSnapshot) -> TaskStatusView:
    """Read-only view of a task for polling clients."""
    return TaskStatusView(
        task_id=task.task_id,
        status=task.status,
        progress_percentage=task.progress_percentage,
        stage=task.stage,
        result_ref=task.result_ref,
        error_code=task.error_code,
        error_message=task.error_message,
        created_at=task.created_at,
        updated_at=task.updated_at,
        completed_at=task.completed_at,
    )


def clamp_reported_progress(*, previous: int, reported: int, stage: str) -> int:
    if stage == GenerationStage.FAILED or stage == TaskStatus.FAILED:
        return 0
    if reported < previous:
        return previous
    return min(100, reported)


def format_remaining(seconds: int) -> str:
    if seconds > 120:
        return f"about {math.ceil(seconds / 60)} minutes"
    if seconds > 60:
        return "1-2 minutes"
    return f"about {max(0, seconds)} seconds"


@dataclass
class RemainingTimeEstimator:
    """Client-side estimate of the time left for one generation.

    The total estimate starts at two minutes and is recalibrated once, the
    first time the provider stage reports more than 30 percent.
    """

    total_seconds: float = DEFAULT_TOTAL_SECONDS
    calibrated: bool = False
    last_percentage: int = 0

    def observe(self, *, stage: str, percentage: int, elapsed_seconds: float) -> int:
        safe = clamp_reported_progress(previous=self.last_percentage, reported=percentage, stage=stage)
        self.last_percentage = safe
        if not self.calibrated and stage == GenerationStage.PROCESSING and safe > CALIBRATION_THRESHOLD_PERCENT:
            estimated_total = math.ceil(elapsed_seconds / safe * 100)
            self.total_seconds = max(estimated_total, MIN_CALIBRATED_TOTAL_SECONDS)
            self.calibrated = True
        return safe

    def remaining_seconds(self, *, elapsed_seconds: float) -> int:
        p = self.last_percentage
        if p >= 100:
            return 0
        if p <= 0:
            return max(0, math.ceil(self.total_seconds - elapsed_seconds))
        return max(0, math.ceil(elapsed_seconds / p * (100 - p)))

    def describe(self, *, elapsed_seconds: float) -> str:
        return format_remaining(self.remaining_seconds(elapsed_seconds=elapsed_seconds))
