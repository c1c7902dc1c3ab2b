from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from app.domain.cancellation_signals import CancellationSignals
from app.domain.contracts import TaskRepository
from app.domain.dto import CancelTaskResult
from app.domain.error_taxonomy import CANCELLED_ERROR_MESSAGE
from app.domain.errors import (
    CancellationPendingError,
    ForbiddenError,
    InvalidStateError,
    PersistenceError,
    TaskNotFoundError,
)
from app.domain.ledger import CreditLedger
from app.domain.lifecycle import ACTIVE_STATUSES, is_terminal
from app.domain.models import CancelOutcome, GenerationStage, TaskActor, TaskSnapshot, TaskStatus, TaskUpdate

COMPONENT_ID = "domain.task.cancel"
logger = logging.getLogger("runtime")

_CANCEL_UPDATE = TaskUpdate(stage=GenerationStage.CANCELLED.value, error_message=CANCELLED_ERROR_MESSAGE)


class CancelStrategy(Protocol):
    name: str

    async def attempt(self, *, task_id: str, owner_id: str) -> bool: ...


@dataclass
class AtomicCancelStrategy:
    """Row lock plus conditional update inside one transaction."""

    repository: TaskRepository
    name: str = "atomic"

    async def attempt(self, *, task_id: str, owner_id: str) -> bool:
        return await self.repository.cancel_task_atomic(
            task_id=task_id,
            owner_id=owner_id,
            detail="cancelled by owner (atomic)",
        )


@dataclass
class ConditionalCancelStrategy:
    repository: TaskRepository
    name: str = "conditional"

    async def attempt(self, *, task_id: str, owner_id: str) -> bool:
        return await self.repository.compare_and_set_status(
            task_id=task_id,
            expected=ACTIVE_STATUSES,
            to_status=TaskStatus.CANCELLED,
            actor=TaskActor.CANCELLATION,
            detail=f"cancelled by owner ({self.name})",
            update=_CANCEL_UPDATE,
            owner_id=owner_id,
        )


@dataclass
class PrivilegedCancelStrategy(ConditionalCancelStrategy):
    """Same conditional write through the privileged connection, still owner-filtered."""

    name: str = "privileged"


def default_cancel_strategies(
    *,
    repository: TaskRepository,
    admin_repository: TaskRepository,
) -> list[CancelStrategy]:
    return [
        AtomicCancelStrategy(repository=repository),
        ConditionalCancelStrategy(repository=repository),
        PrivilegedCancelStrategy(repository=admin_repository),
    ]


@dataclass
class CancellationService:
    repository: TaskRepository
    ledger: CreditLedger
    signals: CancellationSignals
    strategies: Sequence[CancelStrategy]
    force_strategy: CancelStrategy
    confirm_attempts: int = 3
    confirm_backoff_ms: int = 200

    async def cancel(self, *, task_id: str, owner_id: str) -> CancelTaskResult:
        task = await self.repository.get_task(task_id=task_id)
        if task is None:
            raise TaskNotFoundError(f"task not found: {task_id}")
        if task.owner_id != owner_id:
            raise ForbiddenError("task belongs to another owner")
        if task.status == TaskStatus.CANCELLED:
            return CancelTaskResult(task_id=task_id, status=task.status, outcome=CancelOutcome.ALREADY_CANCELLED)
        if is_terminal(task.status):
            raise InvalidStateError(f"task is already {task.status.value}")

        await self._request(task_id=task_id, owner_id=owner_id)
        self.signals.notify(task_id)

        method: str | None = None
        for strategy in self.strategies:
            if await self._attempt(strategy, task_id=task_id, owner_id=owner_id):
                method = strategy.name
                break

        confirmed = await self._confirm(task_id)
        if confirmed is None or not is_terminal(confirmed.status):
            if await self._attempt(self.force_strategy, task_id=task_id, owner_id=owner_id):
                method = f"{self.force_strategy.name}_forced"
            confirmed = await self.repository.get_task(task_id=task_id)

        if confirmed is None:
            raise TaskNotFoundError(f"task not found: {task_id}")

        if confirmed.status == TaskStatus.CANCELLED:
            refund = await self.ledger.refund(confirmed)
            logger.info(
                "task cancelled",
                extra={
                    "task_id": task_id,
                    "owner_id": owner_id,
                    "status": confirmed.status.value,
                    "method": method,
                    "outcome": refund.value,
                },
            )
            return CancelTaskResult(
                task_id=task_id,
                status=confirmed.status,
                outcome=CancelOutcome.CANCELLED,
                method=method,
                refund=refund,
            )

        if is_terminal(confirmed.status):
            logger.info(
                "cancellation lost race",
                extra={"task_id": task_id, "owner_id": owner_id, "status": confirmed.status.value, "outcome": "lost_race"},
            )
            return CancelTaskResult(task_id=task_id, status=confirmed.status, outcome=CancelOutcome.LOST_RACE)

        logger.warning(
            "cancellation not confirmed",
            extra={"task_id": task_id, "owner_id": owner_id, "status": confirmed.status.value},
        )
        raise CancellationPendingError("cancellation is still being processed, try again")

    async def _request(self, *, task_id: str, owner_id: str) -> None:
        try:
            await self.repository.request_cancellation(task_id=task_id, owner_id=owner_id)
        except PersistenceError:
            logger.warning("cancel request marker not written", extra={"task_id": task_id})

    async def _attempt(self, strategy: CancelStrategy, *, task_id: str, owner_id: str) -> bool:
        try:
            applied = await strategy.attempt(task_id=task_id, owner_id=owner_id)
        except PersistenceError as exc:
            logger.warning(
                "cancel strategy failed",
                extra={"task_id": task_id, "method": strategy.name, "error": str(exc)},
            )
            return False
        logger.info(
            "cancel strategy attempted",
            extra={"task_id": task_id, "method": strategy.name, "outcome": "applied" if applied else "skipped"},
        )
        return applied

    async def _confirm(self, task_id: str) -> TaskSnapshot | None:
        delay_ms = self.confirm_backoff_ms
        snapshot: TaskSnapshot | None = None
        for attempt in range(1, max(1, self.confirm_attempts) + 1):
            try:
                snapshot = await self.repository.get_task(task_id=task_id)
            except PersistenceError:
                snapshot = None
            if snapshot is not None and is_terminal(snapshot.status):
                return snapshot
            if attempt < self.confirm_attempts:
                await asyncio.sleep(delay_ms / 1000)
                delay_ms *= 2
        return snapshot
