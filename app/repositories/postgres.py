from __future__ import annotations

from collections.abc import Collection, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
import importlib
import json
from typing import Any

from app.domain.errors import PersistenceError
from app.domain.lifecycle import ACTIVE_STATUSES, ensure_transition_allowed
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
from app.repositories.sql_loader import load_sql

try:
    asyncpg_module = importlib.import_module("asyncpg")
except ModuleNotFoundError:  # pragma: no cover
    asyncpg_module = None  # type: ignore[assignment]


SQL_CREATE_TASK = load_sql("create_task.sql")
SQL_GET_TASK = load_sql("get_task.sql")
SQL_LOCK_TASK = load_sql("lock_task.sql")
SQL_LIST_TASKS = load_sql("list_tasks.sql")
SQL_COMPARE_AND_SET_STATUS = load_sql("compare_and_set_status.sql")
SQL_INSERT_TASK_LOG = load_sql("insert_task_log.sql")
SQL_REQUEST_CANCELLATION = load_sql("request_cancellation.sql")
SQL_UPDATE_PROGRESS = load_sql("update_progress.sql")
SQL_CLAIM_DEDUCTION_LATCH = load_sql("claim_deduction_latch.sql")
SQL_RELEASE_DEDUCTION_LATCH = load_sql("release_deduction_latch.sql")
SQL_CLAIM_REFUND_LATCH = load_sql("claim_refund_latch.sql")
SQL_GET_BALANCE = load_sql("get_balance.sql")
SQL_ADJUST_BALANCE = load_sql("adjust_balance.sql")
SQL_GRANT_CREDITS = load_sql("grant_credits.sql")
SQL_LIST_STUCK_TASKS = load_sql("list_stuck_tasks.sql")
SQL_LIST_UNMATERIALIZED_TASKS = load_sql("list_unmaterialized_tasks.sql")
SQL_MARK_MATERIALIZED = load_sql("mark_materialized.sql")
SQL_LIST_TASK_LOGS = load_sql("list_task_logs.sql")


def _database_errors() -> tuple[type[BaseException], ...]:
    if asyncpg_module is None:  # pragma: no cover
        return (OSError,)
    return (asyncpg_module.PostgresError, asyncpg_module.InterfaceError, OSError)


@contextmanager
def _persistence_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except _database_errors() as exc:
        raise PersistenceError(f"{operation} failed: {exc}") from exc


def _snapshot_from_row(row: Any) -> TaskSnapshot:
    return TaskSnapshot(
        task_id=row["task_id"],
        owner_id=row["owner_id"],
        status=TaskStatus(row["status"]),
        input=TaskInput(
            prompt=row["prompt"],
            style=row["style"],
            reference_image=row["reference_image"],
            aspect_ratio=row["aspect_ratio"],
        ),
        progress_percentage=int(row["progress_percentage"]),
        stage=row["stage"],
        result_ref=row["result_ref"],
        provider_result_ref=row["provider_result_ref"],
        error_code=row["error_code"],
        error_message=row["error_message"],
        credit_deducted=bool(row["credit_deducted"]),
        credit_refunded=bool(row["credit_refunded"]),
        cancel_requested=bool(row["cancel_requested"]),
        materialized_at=row["materialized_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        completed_at=row["completed_at"],
    )


@dataclass
class AsyncpgPoolManager:
    dsn: str
    pool: Any | None = None
    min_size: int = 1
    max_size: int = 10

    async def startup(self) -> None:
        if asyncpg_module is None:  # pragma: no cover
            raise RuntimeError("asyncpg is required for postgres repository mode")

        async def _init_connection(conn: Any) -> None:
            await conn.set_type_codec(
                "jsonb",
                encoder=json.dumps,
                decoder=json.loads,
                schema="pg_catalog",
            )

        self.pool = await asyncpg_module.create_pool(
            dsn=self.dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            init=_init_connection,
        )

    async def shutdown(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None


@dataclass
class PostgresTaskRepository:
    """Task store over asyncpg.

    Status transitions are single conditional statements that lock the row,
    update it and append the task log; the database decides racing writers.
    """

    pool_manager: AsyncpgPoolManager

    def _pool(self) -> Any:
        if self.pool_manager.pool is None:
            raise PersistenceError("postgres pool is not initialized")
        return self.pool_manager.pool

    async def create_task(
        self,
        *,
        task_id: str,
        owner_id: str,
        task_input: TaskInput,
    ) -> CreateTaskResult:
        pool = self._pool()
        with _persistence_errors("create_task"):
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        SQL_CREATE_TASK,
                        task_id,
                        owner_id,
                        task_input.prompt,
                        task_input.style,
                        task_input.reference_image,
                        task_input.aspect_ratio,
                    )
                    if row is not None:
                        await conn.execute(
                            SQL_INSERT_TASK_LOG,
                            task_id,
                            None,
                            TaskStatus.PENDING.value,
                            TaskActor.SUBMISSION.value,
                            "",
                        )
                        return CreateTaskResult(task=_snapshot_from_row(row), created=True)
                    existing = await conn.fetchrow(SQL_GET_TASK, task_id)
        if existing is None:
            raise PersistenceError(f"task {task_id} conflicted but could not be read")
        return CreateTaskResult(task=_snapshot_from_row(existing), created=False)

    async def get_task(self, *, task_id: str) -> TaskSnapshot | None:
        pool = self._pool()
        with _persistence_errors("get_task"):
            row = await pool.fetchrow(SQL_GET_TASK, task_id)
        return _snapshot_from_row(row) if row is not None else None

    async def list_tasks(
        self,
        *,
        owner_id: str,
        statuses: Collection[TaskStatus] | None = None,
        limit: int = 20,
    ) -> list[TaskSnapshot]:
        pool = self._pool()
        status_values = [TaskStatus(status).value for status in statuses] if statuses else None
        with _persistence_errors("list_tasks"):
            rows = await pool.fetch(SQL_LIST_TASKS, owner_id, status_values, limit)
        return [_snapshot_from_row(row) for row in rows]

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
        pool = self._pool()
        with _persistence_errors("compare_and_set_status"):
            async with pool.acquire() as conn:
                return await self._compare_and_set(
                    conn,
                    task_id=task_id,
                    expected=expected,
                    to_status=to_status,
                    actor=actor,
                    detail=detail,
                    update=update,
                    owner_id=owner_id,
                )

    async def cancel_task_atomic(self, *, task_id: str, owner_id: str, detail: str = "") -> bool:
        pool = self._pool()
        with _persistence_errors("cancel_task_atomic"):
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(SQL_LOCK_TASK, task_id, owner_id)
                    if row is None or TaskStatus(row["status"]) not in ACTIVE_STATUSES:
                        return False
                    return await self._compare_and_set(
                        conn,
                        task_id=task_id,
                        expected=ACTIVE_STATUSES,
                        to_status=TaskStatus.CANCELLED,
                        actor=TaskActor.CANCELLATION,
                        detail=detail,
                        update=TaskUpdate(stage=GenerationStage.CANCELLED.value),
                        owner_id=owner_id,
                    )

    async def _compare_and_set(
        self,
        conn: Any,
        *,
        task_id: str,
        expected: Collection[TaskStatus],
        to_status: TaskStatus,
        actor: str,
        detail: str,
        update: TaskUpdate | None,
        owner_id: str | None,
    ) -> bool:
        values = update or TaskUpdate()
        row = await conn.fetchrow(
            SQL_COMPARE_AND_SET_STATUS,
            task_id,
            [TaskStatus(status).value for status in expected],
            TaskStatus(to_status).value,
            owner_id,
            values.stage,
            values.progress_percentage,
            values.result_ref,
            values.provider_result_ref,
            values.error_code,
            values.error_message,
            str(actor),
            detail,
        )
        return row is not None

    async def request_cancellation(self, *, task_id: str, owner_id: str) -> bool:
        return await self._returning("request_cancellation", SQL_REQUEST_CANCELLATION, task_id, owner_id)

    async def update_progress(self, *, task_id: str, stage: str, progress_percentage: int) -> bool:
        return await self._returning("update_progress", SQL_UPDATE_PROGRESS, task_id, stage, progress_percentage)

    async def claim_deduction_latch(self, *, task_id: str) -> bool:
        return await self._returning("claim_deduction_latch", SQL_CLAIM_DEDUCTION_LATCH, task_id)

    async def release_deduction_latch(self, *, task_id: str) -> bool:
        return await self._returning("release_deduction_latch", SQL_RELEASE_DEDUCTION_LATCH, task_id)

    async def claim_refund_latch(self, *, task_id: str) -> bool:
        return await self._returning("claim_refund_latch", SQL_CLAIM_REFUND_LATCH, task_id)

    async def get_balance(self, *, owner_id: str) -> int | None:
        pool = self._pool()
        with _persistence_errors("get_balance"):
            value = await pool.fetchval(SQL_GET_BALANCE, owner_id)
        return int(value) if value is not None else None

    async def adjust_balance(self, *, owner_id: str, delta: int) -> int | None:
        pool = self._pool()
        with _persistence_errors("adjust_balance"):
            value = await pool.fetchval(SQL_ADJUST_BALANCE, owner_id, delta)
        return int(value) if value is not None else None

    async def grant_credits(self, *, owner_id: str, amount: int) -> int:
        pool = self._pool()
        with _persistence_errors("grant_credits"):
            value = await pool.fetchval(SQL_GRANT_CREDITS, owner_id, amount)
        return int(value)

    async def list_stuck_tasks(self, *, created_before: datetime, limit: int) -> list[TaskSnapshot]:
        pool = self._pool()
        with _persistence_errors("list_stuck_tasks"):
            rows = await pool.fetch(SQL_LIST_STUCK_TASKS, created_before, limit)
        return [_snapshot_from_row(row) for row in rows]

    async def list_unmaterialized_tasks(self, *, limit: int) -> list[TaskSnapshot]:
        pool = self._pool()
        with _persistence_errors("list_unmaterialized_tasks"):
            rows = await pool.fetch(SQL_LIST_UNMATERIALIZED_TASKS, limit)
        return [_snapshot_from_row(row) for row in rows]

    async def mark_materialized(self, *, task_id: str, result_ref: str) -> bool:
        return await self._returning("mark_materialized", SQL_MARK_MATERIALIZED, task_id, result_ref)

    async def list_task_logs(self, *, task_id: str) -> list[TaskLogEntry]:
        pool = self._pool()
        with _persistence_errors("list_task_logs"):
            rows = await pool.fetch(SQL_LIST_TASK_LOGS, task_id)
        return [
            TaskLogEntry(
                task_id=row["task_id"],
                from_status=TaskStatus(row["from_status"]) if row["from_status"] else None,
                to_status=TaskStatus(row["to_status"]),
                actor=row["actor"],
                detail=row["detail"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def _returning(self, operation: str, sql: str, *args: object) -> bool:
        pool = self._pool()
        with _persistence_errors(operation):
            row = await pool.fetchrow(sql, *args)
        return row is not None
