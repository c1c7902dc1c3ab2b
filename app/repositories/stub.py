from __future__ import annotations

from collections.abc import Callable, Collection
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime

from app.domain.lifecycle import ACTIVE_STATUSES, ensure_transition_allowed, is_terminal
from app.domain.models import (
    CreateTaskResult,
    GenerationStage,
    TaskActor,
    TaskInput,
    TaskLogEntry,
    TaskSnapshot,
    TaskStatus,
    TaskUpdate,
)


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass
class InMemoryTaskRepository:
    """Non-network repository with deterministic behavior for skeleton mode.

    Methods never await internally, so each call is atomic with respect to
    other coroutines on the same event loop.
    """

    tasks: dict[str, TaskSnapshot] = field(default_factory=dict)
    logs: list[TaskLogEntry] = field(default_factory=list)
    balances: dict[str, int] = field(default_factory=dict)
    clock: Callable[[], datetime] | None = None

    def _now(self) -> datetime:
        if self.clock is not None:
            return self.clock()
        return _utc_now()

    async def create_task(
        self,
        *,
        task_id: str,
        owner_id: str,
        task_input: TaskInput,
    ) -> CreateTaskResult:
        existing = self.tasks.get(task_id)
        if existing is not None:
            return CreateTaskResult(task=existing, created=False)

        now = self._now()
        task = TaskSnapshot(
            task_id=task_id,
            owner_id=owner_id,
            status=TaskStatus.PENDING,
            input=task_input,
            progress_percentage=0,
            stage=GenerationStage.QUEUED.value,
            result_ref=None,
            provider_result_ref=None,
            error_code=None,
            error_message=None,
            credit_deducted=False,
            credit_refunded=False,
            cancel_requested=False,
            materialized_at=None,
            created_at=now,
            updated_at=now,
        )
        self.tasks[task_id] = task
        self._append_log(task_id=task_id, from_status=None, to_status=TaskStatus.PENDING, actor=TaskActor.SUBMISSION)
        return CreateTaskResult(task=task, created=True)

    async def get_task(self, *, task_id: str) -> TaskSnapshot | None:
        return self.tasks.get(task_id)

    async def list_tasks(
        self,
        *,
        owner_id: str,
        statuses: Collection[TaskStatus] | None = None,
        limit: int = 20,
    ) -> list[TaskSnapshot]:
        items = [
            task
            for task in self.tasks.values()
            if task.owner_id == owner_id and (not statuses or task.status in statuses)
        ]
        items.sort(key=lambda item: (item.created_at, item.task_id), reverse=True)
        return items[: max(0, limit)]

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
    ) -> bool:
        ensure_transition_allowed(from_states=expected, to_state=to_status)
        task = self.tasks.get(task_id)
        if task is None or task.status not in expected:
            return False
        if owner_id is not None and task.owner_id != owner_id:
            return False

        now = self._now()
        changes: dict[str, object] = {"status": to_status, "updated_at": now}
        if is_terminal(to_status):
            changes["completed_at"] = now
        if update is not None:
            for name in ("stage", "result_ref", "provider_result_ref", "error_code", "error_message"):
                value = getattr(update, name)
                if value is not None:
                    changes[name] = value
            if update.progress_percentage is not None:
                if to_status == TaskStatus.FAILED:
                    changes["progress_percentage"] = 0
                else:
                    changes["progress_percentage"] = max(task.progress_percentage, update.progress_percentage)
        if to_status == TaskStatus.FAILED:
            changes["progress_percentage"] = 0

        self.tasks[task_id] = replace(task, **changes)
        self._append_log(task_id=task_id, from_status=task.status, to_status=to_status, actor=actor, detail=detail)
        return True

    async def cancel_task_atomic(self, *, task_id: str, owner_id: str, detail: str = "") -> bool:
        return await self.compare_and_set_status(
            task_id=task_id,
            expected=ACTIVE_STATUSES,
            to_status=TaskStatus.CANCELLED,
            actor=TaskActor.CANCELLATION,
            detail=detail,
            update=TaskUpdate(stage=GenerationStage.CANCELLED.value),
            owner_id=owner_id,
        )

    async def request_cancellation(self, *, task_id: str, owner_id: str) -> bool:
        task = self.tasks.get(task_id)
        if task is None or task.owner_id != owner_id or is_terminal(task.status):
            return False
        self.tasks[task_id] = replace(task, cancel_requested=True, updated_at=self._now())
        return True

    async def update_progress(self, *, task_id: str, stage: str, progress_percentage: int) -> bool:
        task = self.tasks.get(task_id)
        if task is None or is_terminal(task.status):
            return False
        bounded = max(0, min(100, progress_percentage))
        self.tasks[task_id] = replace(
            task,
            stage=stage,
            progress_percentage=max(task.progress_percentage, bounded),
            updated_at=self._now(),
        )
        return True

    async def claim_deduction_latch(self, *, task_id: str) -> bool:
        task = self.tasks.get(task_id)
        if task is None or task.credit_deducted:
            return False
        self.tasks[task_id] = replace(task, credit_deducted=True)
        return True

    async def release_deduction_latch(self, *, task_id: str) -> bool:
        task = self.tasks.get(task_id)
        if task is None or not task.credit_deducted or task.credit_refunded:
            return False
        self.tasks[task_id] = replace(task, credit_deducted=False)
        return True

    async def claim_refund_latch(self, *, task_id: str) -> bool:
        task = self.tasks.get(task_id)
        if task is None or not task.credit_deducted or task.credit_refunded:
            return False
        self.tasks[task_id] = replace(task, credit_refunded=True)
        return True

    async def get_balance(self, *, owner_id: str) -> int | None:
        return self.balances.get(owner_id)

    async def adjust_balance(self, *, owner_id: str, delta: int) -> int | None:
        balance = self.balances.get(owner_id)
        if balance is None or balance + delta < 0:
            return None
        self.balances[owner_id] = balance + delta
        return balance + delta

    async def grant_credits(self, *, owner_id: str, amount: int) -> int:
        balance = self.balances.get(owner_id, 0) + amount
        self.balances[owner_id] = balance
        return balance

    async def list_stuck_tasks(self, *, created_before: datetime, limit: int) -> list[TaskSnapshot]:
        items = [
            task
            for task in self.tasks.values()
            if task.status in ACTIVE_STATUSES and task.created_at < created_before
        ]
        items.sort(key=lambda item: (item.created_at, item.task_id))
        return items[: max(0, limit)]

    async def list_unmaterialized_tasks(self, *, limit: int) -> list[TaskSnapshot]:
        items = [
            task
            for task in self.tasks.values()
            if task.status == TaskStatus.COMPLETED and task.materialized_at is None and task.provider_result_ref
        ]
        items.sort(key=lambda item: (item.completed_at or item.created_at, item.task_id))
        return items[: max(0, limit)]

    async def mark_materialized(self, *, task_id: str, result_ref: str) -> bool:
        task = self.tasks.get(task_id)
        if task is None or task.status != TaskStatus.COMPLETED or task.materialized_at is not None:
            return False
        now = self._now()
        self.tasks[task_id] = replace(task, result_ref=result_ref, materialized_at=now, updated_at=now)
        return True

    async def list_task_logs(self, *, task_id: str) -> list[TaskLogEntry]:
        return [entry for entry in self.logs if entry.task_id == task_id]

    def _append_log(
        self,
        *,
        task_id: str,
        from_status: TaskStatus | None,
        to_status: TaskStatus,
        actor: str,
        detail: str = "",
    ) -> None:
        self.logs.append(
            TaskLogEntry(
                task_id=task_id,
                from_status=from_status,
                to_status=to_status,
                actor=str(actor),
                detail=detail,
                created_at=self._now(),
            )
        )
