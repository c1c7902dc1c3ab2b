from __future__ import annotations

import logging
from dataclasses import dataclass

from app.domain.contracts import TaskRepository
from app.domain.errors import PersistenceError, TaskNotFoundError
from app.domain.models import LedgerOutcome, TaskSnapshot

logger = logging.getLogger("runtime")


@dataclass
class CreditLedger:
    """Per-owner credit balance guarded by the task's one-way latch flags.

    The latch is claimed with a conditional update on the task row before the
    balance moves, so concurrent callers for the same task mutate the balance
    at most once. A crash between latch and balance update leaves the latch
    set and the balance untouched.
    """

    repository: TaskRepository
    unit_cost: int = 1
    fallback_repository: TaskRepository | None = None

    async def has_sufficient_balance(self, *, owner_id: str) -> bool:
        balance = await self.repository.get_balance(owner_id=owner_id)
        return balance is not None and balance >= self.unit_cost

    async def deduct(self, task: TaskSnapshot) -> LedgerOutcome:
        if task.credit_deducted:
            return LedgerOutcome.ALREADY_DEDUCTED

        claimed = await self.repository.claim_deduction_latch(task_id=task.task_id)
        if not claimed:
            return LedgerOutcome.ALREADY_DEDUCTED

        try:
            balance = await self._adjust_balance(owner_id=task.owner_id, delta=-self.unit_cost)
        except PersistenceError:
            await self.repository.release_deduction_latch(task_id=task.task_id)
            raise
        if balance is None:
            await self.repository.release_deduction_latch(task_id=task.task_id)
            logger.warning(
                "credit deduction failed",
                extra={
                    "task_id": task.task_id,
                    "owner_id": task.owner_id,
                    "outcome": LedgerOutcome.INSUFFICIENT_BALANCE.value,
                },
            )
            return LedgerOutcome.INSUFFICIENT_BALANCE

        logger.info(
            "credit deducted",
            extra={"task_id": task.task_id, "owner_id": task.owner_id, "outcome": LedgerOutcome.OK.value},
        )
        return LedgerOutcome.OK

    async def refund(self, task: TaskSnapshot) -> LedgerOutcome:
        current = await self.repository.get_task(task_id=task.task_id)
        if current is None:
            raise TaskNotFoundError(f"task not found: {task.task_id}")
        if current.credit_refunded:
            return LedgerOutcome.ALREADY_REFUNDED
        if not current.credit_deducted:
            return LedgerOutcome.NOT_DEDUCTED

        claimed = await self.repository.claim_refund_latch(task_id=task.task_id)
        if not claimed:
            latest = await self.repository.get_task(task_id=task.task_id)
            if latest is not None and latest.credit_refunded:
                return LedgerOutcome.ALREADY_REFUNDED
            return LedgerOutcome.NOT_DEDUCTED

        balance = await self._adjust_balance(owner_id=current.owner_id, delta=self.unit_cost)
        if balance is None:
            # the refund latch stays claimed; the missing credit needs a manual grant
            logger.error(
                "credit refund anomaly",
                extra={
                    "task_id": task.task_id,
                    "owner_id": current.owner_id,
                    "outcome": LedgerOutcome.ACCOUNT_MISSING.value,
                },
            )
            return LedgerOutcome.ACCOUNT_MISSING

        logger.info(
            "credit refunded",
            extra={"task_id": task.task_id, "owner_id": current.owner_id, "outcome": LedgerOutcome.OK.value},
        )
        return LedgerOutcome.OK

    async def _adjust_balance(self, *, owner_id: str, delta: int) -> int | None:
        """Apply a balance change through the first write path that answers."""
        writers = [self.repository]
        if self.fallback_repository is not None and self.fallback_repository is not self.repository:
            writers.append(self.fallback_repository)

        last_error: PersistenceError | None = None
        for index, writer in enumerate(writers):
            try:
                return await writer.adjust_balance(owner_id=owner_id, delta=delta)
            except PersistenceError as exc:
                last_error = exc
                logger.warning(
                    "balance write failed",
                    extra={"owner_id": owner_id, "method": "privileged" if index else "standard"},
                )
        assert last_error is not None
        raise last_error
