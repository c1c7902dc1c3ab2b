from __future__ import annotations

from collections.abc import Collection
from datetime import datetime
from typing import Protocol, runtime_checkable

from app.domain.dto import GenerationRequest
from app.domain.models import (
    CreateTaskResult,
    TaskInput,
    TaskLogEntry,
    TaskSnapshot,
    TaskStatus,
    TaskUpdate,
)

CONDITIONAL_UPDATE_SQL_CONTRACT = "UPDATE generation_tasks ... WHERE task_id = $1 AND status = ANY($2)"
STORAGE_PREFIXES = ("results/",)


@runtime_checkable
class TaskRepository(Protocol):
    """Repository contract for task state, the task log and credit balances.

    Every status write is a conditional update keyed on the expected current
    status; the store decides which concurrent writer wins.
    """

    async def create_task(
        self,
        *,
        task_id: str,
        owner_id: str,
        task_input: TaskInput,
    ) -> CreateTaskResult: ...

    async def get_task(self, *, task_id: str) -> TaskSnapshot | None: ...

    async def list_tasks(
        self,
        *,
        owner_id: str,
        statuses: Collection[TaskStatus] | None = None,
        limit: int = 20,
    ) -> list[TaskSnapshot]: ...

    async def compare_and_set_status(
        self,
        *,
        task_id: str,
        expected: Collection[TaskStatus],
        to_status: TaskStatus,
        actor: str,
        detail: str = "",
        update: TaskUpdate | None = None,
        owner_id: str | None = None,
    ) -> bool: ...

    # Strongest-consistency cancellation path: row lock plus conditional
    # update in one transaction.
    async def cancel_task_atomic(self, *, task_id: str, owner_id: str, detail: str = "") -> bool: ...

    async def request_cancellation(self, *, task_id: str, owner_id: str) -> bool: ...

    async def update_progress(self, *, task_id: str, stage: str, progress_percentage: int) -> bool: ...

    async def claim_deduction_latch(self, *, task_id: str) -> bool: ...

    async def release_deduction_latch(self, *, task_id: str) -> bool: ...

    async def claim_refund_latch(self, *, task_id: str) -> bool: ...

    async def get_balance(self, *, owner_id: str) -> int | None: ...

    # Single-row atomic balance change; returns None when the result would be negative.
    async def adjust_balance(self, *, owner_id: str, delta: int) -> int | None: ...

    async def grant_credits(self, *, owner_id: str, amount: int) -> int: ...

    async def list_stuck_tasks(self, *, created_before: datetime, limit: int) -> list[TaskSnapshot]: ...

    async def list_unmaterialized_tasks(self, *, limit: int) -> list[TaskSnapshot]: ...

    async def mark_materialized(self, *, task_id: str, result_ref: str) -> bool: ...

    async def list_task_logs(self, *, task_id: str) -> list[TaskLogEntry]: ...


@runtime_checkable
class StorageClient(Protocol):
    """Durable object storage using prefix-scoped keys."""

    def put_bytes(self, *, key: str, payload: bytes, content_type: str = "image/png") -> str: ...

    def get_bytes(self, *, key: str) -> bytes: ...


@runtime_checkable
class GenerationProvider(Protocol):
    name: str

    # Conversational endpoint: free text that may contain a result locator.
    async def converse(self, request: GenerationRequest) -> str: ...

    # Dedicated generation endpoint: returns a locator directly.
    async def generate(self, request: GenerationRequest) -> str: ...


@runtime_checkable
class ImageFetcher(Protocol):
    async def fetch(self, url: str) -> bytes: ...


@runtime_checkable
class TaskLauncher(Protocol):
    def launch(self, task_id: str) -> None: ...


@runtime_checkable
class ExecutorSupervisor(Protocol):
    """Out-of-band health view of the executor pool used by the reaper."""

    def is_alive(self) -> bool: ...

    def restart(self) -> None: ...
