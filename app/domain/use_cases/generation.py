from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from app.domain.cancellation_signals import CancellationSignals
from app.domain.contracts import GenerationProvider, TaskRepository
from app.domain.dto import GenerationRequest
from app.domain.error_taxonomy import ProviderErrorKind, allows_fallback, user_message_for
from app.domain.errors import PersistenceError, ProviderError
from app.domain.extraction import extract_locator, is_placeholder_locator
from app.domain.ledger import CreditLedger
from app.domain.lifecycle import STAGE_PROGRESS
from app.domain.models import GenerationStage, LedgerOutcome, TaskActor, TaskSnapshot, TaskStatus, TaskUpdate
from app.domain.persistence import retry_persistence
from app.domain.sizing import choose_output_size
from app.domain.use_cases.materialize import ResultMaterializer
from app.settings import EngineSettings

COMPONENT_ID = "domain.task.execute"
logger = logging.getLogger("runtime")


@dataclass
class GenerationExecutor:
    """Drives one task from pending through the provider call to a terminal status.

    The executor only ever writes processing, completed and failed, always
    through conditional updates. Cancellation wins whenever its write lands
    first; a successful result that loses that race is discarded.
    """

    repository: TaskRepository
    provider: GenerationProvider
    ledger: CreditLedger
    signals: CancellationSignals
    settings: EngineSettings
    materializer: ResultMaterializer | None = None

    async def execute(self, task_id: str) -> TaskStatus | None:
        try:
            return await self._execute(task_id)
        finally:
            self.signals.discard(task_id)

    async def _execute(self, task_id: str) -> TaskStatus | None:
        task = await self.repository.get_task(task_id=task_id)
        if task is None:
            logger.warning("executor skipped unknown task", extra={"task_id": task_id})
            return None
        if task.cancel_requested or self.signals.is_cancelled(task_id):
            logger.info("executor aborted before start", extra={"task_id": task_id, "outcome": "cancel_signal"})
            return task.status

        started = await self.repository.compare_and_set_status(
            task_id=task_id,
            expected=(TaskStatus.PENDING,),
            to_status=TaskStatus.PROCESSING,
            actor=TaskActor.EXECUTOR,
            detail="generation started",
            update=TaskUpdate(
                stage=GenerationStage.QUEUED.value,
                progress_percentage=STAGE_PROGRESS[GenerationStage.QUEUED],
            ),
        )
        if not started:
            current = await self.repository.get_task(task_id=task_id)
            status = current.status if current else None
            logger.info(
                "executor skipped task that is no longer pending",
                extra={"task_id": task_id, "status": status.value if status else None},
            )
            return status

        try:
            locator = await asyncio.wait_for(
                self._generate(task),
                timeout=self.settings.provider_timeout_seconds,
            )
        except TimeoutError:
            return await self._fail(task, kind="timeout", detail="provider call exceeded timeout")
        except ProviderError as exc:
            return await self._fail(task, kind=exc.kind, detail=str(exc))
        except Exception as exc:
            logger.exception("provider path raised unexpectedly", extra={"task_id": task_id, "error_kind": "unknown"})
            return await self._fail(task, kind="unknown", detail=f"{type(exc).__name__}: {exc}")

        if locator is None or self.signals.is_cancelled(task_id):
            current = await self.repository.get_task(task_id=task_id)
            logger.info(
                "executor result discarded after cancel signal",
                extra={"task_id": task_id, "outcome": "discarded", "provider_result_ref": locator},
            )
            return current.status if current else None

        await self._checkpoint(task_id, GenerationStage.FINALIZING)
        return await self._complete(task, locator)

    async def _generate(self, task: TaskSnapshot) -> str | None:
        request = GenerationRequest(
            task_id=task.task_id,
            prompt=task.input.prompt,
            style=task.input.style,
            reference_image=task.input.reference_image,
            size=choose_output_size(
                aspect_ratio=task.input.aspect_ratio,
                style=task.input.style,
                prompt=task.input.prompt,
            ),
        )
        await self._checkpoint(task.task_id, GenerationStage.SENDING_REQUEST)

        try:
            await self._checkpoint(task.task_id, GenerationStage.PROCESSING)
            text = await self.provider.converse(request)
            await self._checkpoint(task.task_id, GenerationStage.EXTRACTING_RESULT)
            locator = extract_locator(text)
            if locator is not None:
                return locator
            logger.info(
                "no locator in conversational reply, using generation endpoint",
                extra={"task_id": task.task_id, "outcome": "fallback"},
            )
        except ProviderError as exc:
            if not allows_fallback(exc.kind):
                raise
            logger.info(
                "conversational call failed, using generation endpoint",
                extra={"task_id": task.task_id, "outcome": "fallback", "error_kind": exc.kind},
            )

        if self.signals.is_cancelled(task.task_id):
            return None
        locator = await self.provider.generate(request)
        if is_placeholder_locator(locator):
            raise ProviderError("unknown", "generation endpoint returned a placeholder locator")
        await self._checkpoint(task.task_id, GenerationStage.EXTRACTING_RESULT)
        return locator

    async def _complete(self, task: TaskSnapshot, locator: str) -> TaskStatus | None:
        task_id = task.task_id

        async def _write() -> bool:
            return await self.repository.compare_and_set_status(
                task_id=task_id,
                expected=(TaskStatus.PROCESSING,),
                to_status=TaskStatus.COMPLETED,
                actor=TaskActor.EXECUTOR,
                detail="generation succeeded",
                update=TaskUpdate(
                    stage=GenerationStage.COMPLETED.value,
                    progress_percentage=STAGE_PROGRESS[GenerationStage.COMPLETED],
                    result_ref=locator,
                    provider_result_ref=locator,
                ),
            )

        applied = await self._persist(_write, description="complete task")
        current = await self.repository.get_task(task_id=task_id)
        if current is None:
            return None
        # A retried write may have landed on an earlier attempt.
        if not applied and not (current.status == TaskStatus.COMPLETED and current.provider_result_ref == locator):
            logger.warning(
                "executor lost race, result discarded",
                extra={
                    "task_id": task_id,
                    "owner_id": task.owner_id,
                    "status": current.status.value,
                    "outcome": "lost_race",
                    "provider_result_ref": locator,
                },
            )
            return current.status

        logger.info(
            "task completed",
            extra={"task_id": task_id, "owner_id": task.owner_id, "status": TaskStatus.COMPLETED.value},
        )
        try:
            outcome = await self.ledger.deduct(current)
        except PersistenceError:
            logger.exception(
                "credit deduction could not be written",
                extra={"task_id": task_id, "owner_id": task.owner_id, "outcome": "deduct_error"},
            )
        else:
            if outcome != LedgerOutcome.OK:
                logger.warning(
                    "credit deduction anomaly",
                    extra={"task_id": task_id, "owner_id": task.owner_id, "outcome": outcome.value},
                )

        if self.materializer is not None:
            try:
                await self.materializer.materialize(task_id)
            except Exception:
                logger.exception("inline materialization failed", extra={"task_id": task_id, "outcome": "deferred"})
        return TaskStatus.COMPLETED

    async def _fail(self, task: TaskSnapshot, *, kind: ProviderErrorKind, detail: str) -> TaskStatus | None:
        task_id = task.task_id
        message = user_message_for(kind)

        async def _write() -> bool:
            return await self.repository.compare_and_set_status(
                task_id=task_id,
                expected=(TaskStatus.PROCESSING,),
                to_status=TaskStatus.FAILED,
                actor=TaskActor.EXECUTOR,
                detail=f"{kind}: {detail}"[:500],
                update=TaskUpdate(
                    stage=GenerationStage.FAILED.value,
                    progress_percentage=0,
                    error_code=kind,
                    error_message=message,
                ),
            )

        applied = await self._persist(_write, description="fail task")
        current = await self.repository.get_task(task_id=task_id)
        if current is None:
            return None
        if not applied and not (current.status == TaskStatus.FAILED and current.error_code == kind):
            logger.info(
                "executor failure write lost race",
                extra={"task_id": task_id, "status": current.status.value, "outcome": "lost_race", "error_kind": kind},
            )
            return current.status

        logger.warning(
            "task failed",
            extra={
                "task_id": task_id,
                "owner_id": task.owner_id,
                "status": TaskStatus.FAILED.value,
                "error_kind": kind,
            },
        )
        if current.credit_deducted:
            await self.ledger.refund(current)
        return TaskStatus.FAILED

    async def _checkpoint(self, task_id: str, stage: GenerationStage) -> None:
        try:
            await self.repository.update_progress(
                task_id=task_id,
                stage=stage.value,
                progress_percentage=STAGE_PROGRESS[stage],
            )
        except PersistenceError:
            logger.warning("progress update failed", extra={"task_id": task_id, "stage": stage.value})

    async def _persist(self, operation: Callable[[], Awaitable[bool]], *, description: str) -> bool:
        return await retry_persistence(
            operation,
            attempts=self.settings.persistence_retry_attempts,
            backoff_ms=self.settings.persistence_retry_backoff_ms,
            description=description,
        )
