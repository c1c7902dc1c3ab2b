from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum


# Canonical task lifecycle states.
#
# IMPORTANT:
# - Keep this enum synchronized with app/domain/lifecycle.py (ALLOWED_TRANSITIONS).
# - Keep this enum synchronized with the DB status CHECK constraint in
#   db/migrations/000001_bootstrap.up.sql.
class TaskStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class GenerationStage(StrEnum):
    QUEUED = "queued"
    SENDING_REQUEST = "sending_request"
    PROCESSING = "processing"
    EXTRACTING_RESULT = "extracting_result"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskActor(StrEnum):
    SUBMISSION = "submission"
    EXECUTOR = "executor"
    CANCELLATION = "cancellation"
    REAPER = "reaper"


class LedgerOutcome(StrEnum):
    OK = "ok"
    ALREADY_DEDUCTED = "already_deducted"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    ALREADY_REFUNDED = "already_refunded"
    NOT_DEDUCTED = "not_deducted"
    ACCOUNT_MISSING = "account_missing"


class CancelOutcome(StrEnum):
    CANCELLED = "cancelled"
    ALREADY_CANCELLED = "already_cancelled"
    LOST_RACE = "lost_race"


@dataclass(frozen=True)
class TaskInput:
    prompt: str = ""
    style: str | None = None
    reference_image: str | None = None
    aspect_ratio: str | None = None


@dataclass(frozen=True)
class TaskSnapshot:
    task_id: str
    owner_id: str
    status: TaskStatus
    input: TaskInput
    progress_percentage: int
    stage: str
    result_ref: str | None
    provider_result_ref: str | None
    error_code: str | None
    error_message: str | None
    credit_deducted: bool
    credit_refunded: bool
    cancel_requested: bool
    materialized_at: datetime | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None


@dataclass(frozen=True)
class CreateTaskResult:
    task: TaskSnapshot
    created: bool


@dataclass(frozen=True)
class TaskLogEntry:
    task_id: str
    from_status: TaskStatus | None
    to_status: TaskStatus
    actor: str
    detail: str
    created_at: datetime


@dataclass(frozen=True)
class TaskUpdate:
    """Optional column values written together with a status transition."""

    stage: str | None = None
    progress_percentage: int | None = None
    result_ref: str | None = None
    provider_result_ref: str | None = None
    error_code: str | None = None
    error_message: str | None = None
