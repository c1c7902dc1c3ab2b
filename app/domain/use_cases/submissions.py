from __future__ import annotations

import logging
from dataclasses import dataclass

from app.domain.contracts import TaskLauncher, TaskRepository
from app.domain.dto import SubmitTaskCommand, SubmitTaskResult
from app.domain.errors import DomainValidationError, ForbiddenError, InsufficientBalanceError
from app.domain.ids import is_valid_client_request_id, new_task_id
from app.domain.ledger import CreditLedger
from app.domain.models import TaskInput, TaskStatus
from app.domain.sizing import parse_aspect_ratio
from app.settings import EngineSettings

COMPONENT_ID = "domain.task.submit"
logger = logging.getLogger("runtime")

_DATA_URL_PREFIX = "data:"
_MAX_REFERENCE_URL_CHARS = 2048


def validate_task_input(task_input: TaskInput, *, settings: EngineSettings) -> TaskInput:
    """Normalize and bound-check a generation request."""
    prompt = (task_input.prompt or "").strip()
    style = (task_input.style or "").strip() or None
    reference_image = (task_input.reference_image or "").strip() or None
    aspect_ratio = (task_input.aspect_ratio or "").strip() or None

    if not prompt and reference_image is None:
        raise DomainValidationError("prompt or reference_image is required")
    if len(prompt) > settings.max_prompt_chars:
        raise DomainValidationError(f"prompt exceeds {settings.max_prompt_chars} characters")
    if style is not None and len(style) > settings.max_style_chars:
        raise DomainValidationError(f"style exceeds {settings.max_style_chars} characters")
    if reference_image is not None:
        _validate_reference_image(reference_image, max_bytes=settings.max_reference_image_bytes)
    if aspect_ratio is not None:
        parse_aspect_ratio(aspect_ratio)

    return TaskInput(prompt=prompt, style=style, reference_image=reference_image, aspect_ratio=aspect_ratio)


def _validate_reference_image(value: str, *, max_bytes: int) -> None:
    if value.startswith(("http://", "https://")):
        if len(value) > _MAX_REFERENCE_URL_CHARS:
            raise DomainValidationError("reference_image URL is too long")
        return

    encoded = value
    if value.startswith(_DATA_URL_PREFIX):
        header, _, encoded = value.partition(",")
        if ";base64" not in header or not header[len(_DATA_URL_PREFIX) :].startswith("image/"):
            raise DomainValidationError("reference_image must be a base64 image data URL")
    encoded = encoded.strip()
    if not encoded:
        raise DomainValidationError("reference_image is empty")
    decoded_size = len(encoded) * 3 // 4 - encoded[-2:].count("=")
    if decoded_size > max_bytes:
        raise DomainValidationError(f"reference_image exceeds {max_bytes // (1024 * 1024)} MB")


@dataclass
class SubmissionService:
    repository: TaskRepository
    ledger: CreditLedger
    launcher: TaskLauncher | None
    settings: EngineSettings

    async def submit(self, cmd: SubmitTaskCommand) -> SubmitTaskResult:
        task_input = validate_task_input(cmd.input, settings=self.settings)

        if cmd.client_request_id is not None:
            if not is_valid_client_request_id(cmd.client_request_id):
                raise DomainValidationError("client_request_id must match [A-Za-z0-9_-]{8,64}")
            task_id = cmd.client_request_id
            existing = await self.repository.get_task(task_id=task_id)
            if existing is not None:
                return self._resubmission(existing.task_id, existing.owner_id, existing.status, cmd.owner_id)
        else:
            task_id = new_task_id()

        if self.settings.require_balance_on_submit:
            if not await self.ledger.has_sufficient_balance(owner_id=cmd.owner_id):
                raise InsufficientBalanceError("insufficient credits for a new generation")

        result = await self.repository.create_task(task_id=task_id, owner_id=cmd.owner_id, task_input=task_input)
        if not result.created:
            return self._resubmission(result.task.task_id, result.task.owner_id, result.task.status, cmd.owner_id)

        logger.info(
            "task submitted",
            extra={"task_id": task_id, "owner_id": cmd.owner_id, "status": result.task.status.value},
        )
        if self.launcher is not None:
            self.launcher.launch(task_id)
        return SubmitTaskResult(task_id=task_id, status=result.task.status, created=True)

    @staticmethod
    def _resubmission(task_id: str, task_owner: str, status: TaskStatus, caller: str) -> SubmitTaskResult:
        if task_owner != caller:
            raise ForbiddenError("client_request_id belongs to another owner")
        logger.info("task resubmitted", extra={"task_id": task_id, "owner_id": caller, "status": status.value})
        return SubmitTaskResult(task_id=task_id, status=status, created=False)
