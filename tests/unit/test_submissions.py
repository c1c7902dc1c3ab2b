import asyncio
import base64

import pytest

from app.domain.dto import SubmitTaskCommand
from app.domain.errors import DomainValidationError, ForbiddenError, InsufficientBalanceError
from app.domain.models import TaskInput, TaskStatus
from app.domain.use_cases.submissions import validate_task_input
from tests.unit.engine_fixtures import OWNER, build_engine, fast_settings


@pytest.mark.unit
def test_submit_creates_pending_task_and_launches_executor() -> None:
    async def _run() -> None:
        engine = build_engine()

        result = await engine.submissions.submit(SubmitTaskCommand(owner_id=OWNER, input=TaskInput(prompt="a red fox")))

        assert result.created is True
        assert result.status == TaskStatus.PENDING
        assert result.task_id.startswith("task_")
        assert engine.launcher.launched == [result.task_id]
        stored = engine.repository.tasks[result.task_id]
        assert stored.owner_id == OWNER
        assert stored.credit_deducted is False
        assert engine.repository.balances[OWNER] == 5

    asyncio.run(_run())


@pytest.mark.unit
def test_resubmission_with_client_request_id_is_idempotent() -> None:
    async def _run() -> None:
        engine = build_engine()
        cmd = SubmitTaskCommand(owner_id=OWNER, input=TaskInput(prompt="a red fox"), client_request_id="req-000001")

        first = await engine.submissions.submit(cmd)
        second = await engine.submissions.submit(cmd)

        assert first.task_id == second.task_id == "req-000001"
        assert first.created is True
        assert second.created is False
        assert len(engine.repository.tasks) == 1
        assert engine.launcher.launched == ["req-000001"]

    asyncio.run(_run())


@pytest.mark.unit
def test_client_request_id_of_another_owner_is_forbidden() -> None:
    async def _run() -> None:
        engine = build_engine()
        engine.repository.balances["owner-2"] = 5
        await engine.submissions.submit(
            SubmitTaskCommand(owner_id=OWNER, input=TaskInput(prompt="fox"), client_request_id="req-000002")
        )

        with pytest.raises(ForbiddenError):
            await engine.submissions.submit(
                SubmitTaskCommand(owner_id="owner-2", input=TaskInput(prompt="fox"), client_request_id="req-000002")
            )

    asyncio.run(_run())


@pytest.mark.unit
def test_malformed_client_request_id_is_rejected() -> None:
    engine = build_engine()
    cmd = SubmitTaskCommand(owner_id=OWNER, input=TaskInput(prompt="fox"), client_request_id="bad id!")

    with pytest.raises(DomainValidationError, match="client_request_id"):
        asyncio.run(engine.submissions.submit(cmd))


@pytest.mark.unit
def test_submit_without_credits_is_refused_before_any_work() -> None:
    engine = build_engine(balance=0)

    with pytest.raises(InsufficientBalanceError):
        asyncio.run(engine.submissions.submit(SubmitTaskCommand(owner_id=OWNER, input=TaskInput(prompt="fox"))))
    assert engine.repository.tasks == {}
    assert engine.launcher.launched == []


@pytest.mark.unit
def test_balance_check_can_be_disabled() -> None:
    engine = build_engine(balance=None, settings=fast_settings(require_balance_on_submit=False))

    result = asyncio.run(engine.submissions.submit(SubmitTaskCommand(owner_id=OWNER, input=TaskInput(prompt="fox"))))

    assert result.created is True


@pytest.mark.unit
def test_validation_normalizes_input() -> None:
    normalized = validate_task_input(
        TaskInput(prompt="  a fox  ", style="  ", aspect_ratio=" 16:9 "),
        settings=fast_settings(),
    )

    assert normalized == TaskInput(prompt="a fox", style=None, reference_image=None, aspect_ratio="16:9")


@pytest.mark.unit
@pytest.mark.parametrize(
    ("task_input", "message"),
    [
        (TaskInput(prompt="   "), "prompt or reference_image"),
        (TaskInput(prompt="x" * 4001), "prompt exceeds"),
        (TaskInput(prompt="fox", style="s" * 65), "style exceeds"),
        (TaskInput(prompt="fox", aspect_ratio="wide"), "aspect_ratio"),
        (TaskInput(reference_image="data:text/plain;base64,aGVsbG8="), "base64 image"),
        (TaskInput(reference_image="https://img.example.org/" + "a" * 2100), "too long"),
    ],
)
def test_validation_rejects_bad_input(task_input: TaskInput, message: str) -> None:
    with pytest.raises(DomainValidationError, match=message):
        validate_task_input(task_input, settings=fast_settings())


@pytest.mark.unit
def test_reference_image_size_is_bounded() -> None:
    settings = fast_settings(max_reference_image_bytes=16)
    small = "data:image/png;base64," + base64.b64encode(b"x" * 12).decode()
    large = "data:image/png;base64," + base64.b64encode(b"x" * 64).decode()

    assert validate_task_input(TaskInput(reference_image=small), settings=settings).reference_image == small
    with pytest.raises(DomainValidationError, match="exceeds"):
        validate_task_input(TaskInput(reference_image=large), settings=settings)
