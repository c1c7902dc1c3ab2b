from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from app.domain.models import CancelOutcome, LedgerOutcome, TaskInput, TaskStatus


@dataclass(frozen=True)
class SubmitTaskCommand:
    owner_id: str
    input: TaskInput
    client_request_id: str | None = None


@dataclass(frozen=True)
class SubmitTaskResult:
    task_id: str
    status: TaskStatus
    created: bool


@dataclass(frozen=True)
class GenerationRequest:
    task_id: str
    prompt: str
    style: str | None
    reference_image: str | None
    size: str


@dataclass(frozen=True)
class CancelTaskResult:
    task_id: str
    status: TaskStatus
    outcome: CancelOutcome
    method: str | None = None
    refund: LedgerOutcome | None = None


@dataclass(frozen=True)
class ReapResult:
    scanned: int = 0
    failed: int = 0
    cancelled: int = 0
    refunded: int = 0
    executor_restarted: bool = False
    task_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class MaterializeResult:
    task_id: str
    result_ref: str | None
    changed: bool
    detail: str = ""


@dataclass(frozen=True)
class MaterializeSweepResult:
    scanned: int = 0
    materialized: int = 0
    failed: int = 0
    task_ids: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class TaskStatusView:
    task_id: str
    status: TaskStatus
    progress_percentage: int
    stage: str
    result_ref: str | None
    error_code: str | None
    error_message: str | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None
