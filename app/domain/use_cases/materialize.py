from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from app.domain.contracts import ImageFetcher, StorageClient, TaskRepository
from app.domain.dto import MaterializeResult, MaterializeSweepResult
from app.domain.errors import ForbiddenError, InvalidStateError, TaskNotFoundError
from app.domain.materialization import build_storage_key, is_ephemeral_locator
from app.domain.models import TaskStatus

COMPONENT_ID = "domain.task.materialize"
logger = logging.getLogger("runtime")


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass
class ResultMaterializer:
    """Re-hosts ephemeral provider locators in durable object storage.

    `materialized_at` is the idempotency marker: a task that carries it is
    never fetched again.
    """

    repository: TaskRepository
    storage: StorageClient
    fetcher: ImageFetcher
    batch_size: int = 100
    concurrency: int = 3
    clock: Callable[[], datetime] = field(default=_utc_now)

    async def materialize(self, task_id: str, *, owner_id: str | None = None) -> MaterializeResult:
        task = await self.repository.get_task(task_id=task_id)
        if task is None:
            raise TaskNotFoundError(f"task not found: {task_id}")
        if owner_id is not None and task.owner_id != owner_id:
            raise ForbiddenError("task belongs to another owner")
        if task.status != TaskStatus.COMPLETED:
            raise InvalidStateError(f"task is {task.status.value}, only completed tasks are materialized")
        if task.materialized_at is not None:
            return MaterializeResult(task_id=task_id, result_ref=task.result_ref, changed=False, detail="already")

        locator = task.provider_result_ref or task.result_ref
        if not is_ephemeral_locator(locator):
            # Stable already; set the marker so sweeps skip it.
            if locator:
                await self.repository.mark_materialized(task_id=task_id, result_ref=task.result_ref or locator)
            return MaterializeResult(task_id=task_id, result_ref=task.result_ref, changed=False, detail="stable")

        assert locator is not None
        payload = await self.fetcher.fetch(locator)
        key = build_storage_key(owner_id=task.owner_id, task_id=task_id, at=self.clock())
        stable_ref = await asyncio.to_thread(self.storage.put_bytes, key=key, payload=payload)

        applied = await self.repository.mark_materialized(task_id=task_id, result_ref=stable_ref)
        if not applied:
            current = await self.repository.get_task(task_id=task_id)
            return MaterializeResult(
                task_id=task_id,
                result_ref=current.result_ref if current else None,
                changed=False,
                detail="concurrent",
            )

        logger.info(
            "result materialized",
            extra={"task_id": task_id, "owner_id": task.owner_id, "outcome": "materialized", "key": key},
        )
        return MaterializeResult(task_id=task_id, result_ref=stable_ref, changed=True, detail="materialized")

    async def sweep(self) -> MaterializeSweepResult:
        tasks = await self.repository.list_unmaterialized_tasks(limit=self.batch_size)
        if not tasks:
            return MaterializeSweepResult()

        semaphore = asyncio.Semaphore(max(1, self.concurrency))

        async def _materialize_one(task_id: str) -> MaterializeResult | None:
            async with semaphore:
                try:
                    return await self.materialize(task_id)
                except Exception:
                    logger.exception("materialization failed", extra={"task_id": task_id, "outcome": "error"})
                    return None

        results = await asyncio.gather(*(_materialize_one(task.task_id) for task in tasks))
        changed = tuple(result.task_id for result in results if result is not None and result.changed)
        failed = sum(1 for result in results if result is None)
        return MaterializeSweepResult(
            scanned=len(tasks),
            materialized=len(changed),
            failed=failed,
            task_ids=changed,
        )
