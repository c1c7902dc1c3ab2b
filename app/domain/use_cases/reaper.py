from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from app.domain.contracts import ExecutorSupervisor, TaskRepository
from app.domain.dto import ReapResult
from app.domain.errors import PersistenceError
from app.domain.error_taxonomy import STUCK_TASK_ERROR_CODE, STUCK_TASK_ERROR_MESSAGE
from app.domain.ledger import CreditLedger
from app.domain.lifecycle import ACTIVE_STATUSES
from app.domain.models import GenerationStage, LedgerOutcome, TaskActor, TaskSnapshot, TaskStatus, TaskUpdate

COMPONENT_ID = "domain.task.reap"
logger = logging.getLogger("runtime")


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass
class Reaper:
    """Backstop that drives every task older than the stuck threshold to a terminal status.

    Runs with the privileged repository. Tasks with a durable cancel request end
    `cancelled`, everything else ends `failed`; both get a refund when a
    deduction had happened.
    """

    repository: TaskRepository
    ledger: CreditLedger
    stuck_threshold_seconds: int = 900
    batch_size: int = 100
    supervisor: ExecutorSupervisor | None = None
    clock: Callable[[], datetime] = field(default=_utc_now)

    async def sweep(self) -> ReapResult:
        restarted = self._heal_executor()

        cutoff = self.clock() - timedelta(seconds=self.stuck_threshold_seconds)
        stuck = await self.repository.list_stuck_tasks(created_before=cutoff, limit=self.batch_size)

        failed = cancelled = refunded = 0
        reaped: list[str] = []
        for task in stuck:
            try:
                final = await self._terminate(task)
            except PersistenceError:
                logger.exception(
                    "stuck task reap failed",
                    extra={"task_id": task.task_id, "owner_id": task.owner_id, "outcome": "error"},
                )
                continue
            if final is None:
                continue
            reaped.append(task.task_id)
            if final.status == TaskStatus.CANCELLED:
                cancelled += 1
            else:
                failed += 1
            try:
                outcome = await self.ledger.refund(final)
            except PersistenceError:
                logger.exception(
                    "stuck task refund failed",
                    extra={"task_id": task.task_id, "owner_id": task.owner_id, "outcome": "refund_error"},
                )
                continue
            if outcome == LedgerOutcome.OK:
                refunded += 1
            logger.warning(
                "stuck task reaped",
                extra={
                    "task_id": task.task_id,
                    "owner_id": task.owner_id,
                    "status": final.status.value,
                    "outcome": outcome.value,
                },
            )

        return ReapResult(
            scanned=len(stuck),
            failed=failed,
            cancelled=cancelled,
            refunded=refunded,
            executor_restarted=restarted,
            task_ids=tuple(reaped),
        )

    def _heal_executor(self) -> bool:
        if self.supervisor is None or self.supervisor.is_alive():
            return False
        logger.warning("executor pool is not alive, restarting")
        self.supervisor.restart()
        return True

    async def _terminate(self, task: TaskSnapshot) -> TaskSnapshot | None:
        update = TaskUpdate(
            stage=GenerationStage.FAILED.value,
            progress_percentage=0,
            error_code=STUCK_TASK_ERROR_CODE,
            error_message=STUCK_TASK_ERROR_MESSAGE,
        )
        if task.cancel_requested:
            applied = await self.repository.compare_and_set_status(
                task_id=task.task_id,
                expected=ACTIVE_STATUSES,
                to_status=TaskStatus.CANCELLED,
                actor=TaskActor.REAPER,
                detail="stuck task with pending cancel request",
                update=TaskUpdate(
                    stage=GenerationStage.CANCELLED.value,
                    error_code=STUCK_TASK_ERROR_CODE,
                    error_message=STUCK_TASK_ERROR_MESSAGE,
                ),
            )
        else:
            if task.status == TaskStatus.PENDING:
                # failed is only reachable from processing
                await self.repository.compare_and_set_status(
                    task_id=task.task_id,
                    expected=(TaskStatus.PENDING,),
                    to_status=TaskStatus.PROCESSING,
                    actor=TaskActor.REAPER,
                    detail="stuck task never started",
                )
            applied = await self.repository.compare_and_set_status(
                task_id=task.task_id,
                expected=(TaskStatus.PROCESSING,),
                to_status=TaskStatus.FAILED,
                actor=TaskActor.REAPER,
                detail=STUCK_TASK_ERROR_MESSAGE,
                update=update,
            )

        if not applied:
            return None
        return await self.repository.get_task(task_id=task.task_id)
