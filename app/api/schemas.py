from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from app.domain.ids import CLIENT_REQUEST_ID_PATTERN
from app.domain.models import CancelOutcome, LedgerOutcome, TaskStatus

ASPECT_RATIO_PATTERN = r"^\d+(\.\d+)?:\d+(\.\d+)?$"


class ErrorResponse(BaseModel):
    detail: str


class WorkerMetrics(BaseModel):
    started: bool
    stopped: bool
    ticks_total: int
    busy_ticks_total: int
    idle_ticks_total: int
    errors_total: int
    last_tick_at: datetime | None = None


class ExecutorPoolMetrics(BaseModel):
    alive: bool
    in_flight: int
    launched_total: int
    finished_total: int
    errors_total: int
    dropped_total: int
    restarts_total: int


class HealthResponse(BaseModel):
    status: str
    role: str
    mode: str


class ReadyResponse(BaseModel):
    status: str
    role: str
    mode: str
    worker_loop_enabled: bool
    worker_loop_ready: bool
    worker_metrics: dict[str, WorkerMetrics]
    executor_pool: ExecutorPoolMetrics | None = None


class SubmitTaskRequest(BaseModel):
    prompt: str = Field(default="", max_length=4000)
    style: str | None = Field(default=None, max_length=64)
    reference_image: str | None = None
    aspect_ratio: str | None = Field(default=None, pattern=ASPECT_RATIO_PATTERN)
    client_request_id: str | None = Field(default=None, pattern=CLIENT_REQUEST_ID_PATTERN)


class SubmitTaskResponse(BaseModel):
    task_id: str
    status: TaskStatus
    created: bool


class TaskStatusResponse(BaseModel):
    task_id: str
    status: TaskStatus
    progress_percentage: int = Field(ge=0, le=100)
    stage: str
    result_ref: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None


class TaskListResponse(BaseModel):
    items: list[TaskStatusResponse]


class CancelTaskResponse(BaseModel):
    task_id: str
    status: TaskStatus
    outcome: CancelOutcome
    method: str | None = None
    refund: LedgerOutcome | None = None


class TaskLogItem(BaseModel):
    from_status: TaskStatus | None
    to_status: TaskStatus
    actor: str
    detail: str
    created_at: datetime


class TaskLogResponse(BaseModel):
    task_id: str
    items: list[TaskLogItem]


class MaterializeResponse(BaseModel):
    task_id: str
    result_ref: str | None
    changed: bool


class CreditsResponse(BaseModel):
    owner_id: str
    balance: int


class GrantCreditsRequest(BaseModel):
    owner_id: str = Field(min_length=1, max_length=128)
    amount: int = Field(gt=0, le=100_000)


class ReaperRunResponse(BaseModel):
    scanned: int
    failed: int
    cancelled: int
    refunded: int
    executor_restarted: bool
    task_ids: list[str]


class MaterializerRunResponse(BaseModel):
    scanned: int
    materialized: int
    failed: int
    task_ids: list[str]
