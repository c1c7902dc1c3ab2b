import asyncio

import pytest

from app.clients.stub import StubGenerationProvider, StubStorageClient
from app.domain.contracts import (
    CONDITIONAL_UPDATE_SQL_CONTRACT,
    STORAGE_PREFIXES,
    ExecutorSupervisor,
    GenerationProvider,
    StorageClient,
    TaskLauncher,
    TaskRepository,
)
from app.domain.dto import SubmitTaskCommand
from app.domain.models import TaskInput, TaskStatus
from app.repositories.sql_loader import load_sql
from app.repositories.stub import InMemoryTaskRepository
from app.roles import validate_role
from app.services.bootstrap import build_runtime_container
from app.workers.pool import ExecutorPool


@pytest.fixture(autouse=True)
def _no_external_services(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("DATABASE_URL", "DATABASE_ADMIN_URL", "PROVIDER_API_KEY", "STORAGE_BUCKET"):
        monkeypatch.delenv(name, raising=False)


@pytest.mark.unit
def test_conditional_update_contract_is_keyed_on_expected_status() -> None:
    assert "status = ANY($2)" in CONDITIONAL_UPDATE_SQL_CONTRACT
    sql = load_sql("compare_and_set_status.sql")
    assert "status = ANY($2" in sql
    assert "FOR UPDATE" in sql


@pytest.mark.unit
def test_unknown_query_name_is_rejected() -> None:
    with pytest.raises(FileNotFoundError):
        load_sql("drop_everything.sql")


@pytest.mark.unit
def test_stubs_satisfy_runtime_protocols() -> None:
    assert isinstance(InMemoryTaskRepository(), TaskRepository)
    assert isinstance(StubStorageClient(), StorageClient)
    assert isinstance(StubGenerationProvider(), GenerationProvider)
    pool = ExecutorPool(execute=_noop, concurrency=1)
    assert isinstance(pool, TaskLauncher)
    assert isinstance(pool, ExecutorSupervisor)


async def _noop(task_id: str) -> None:
    del task_id


@pytest.mark.unit
def test_api_role_wires_pool_and_both_sweeps() -> None:
    container = build_runtime_container(validate_role("api"))

    assert isinstance(container.repository, InMemoryTaskRepository)
    assert container.admin_repository is container.repository
    assert container.executor_pool is not None
    assert [loop.stage for loop in container.worker_loops] == ["reaper", "materializer"]
    assert container.on_startup is None


@pytest.mark.unit
@pytest.mark.parametrize(
    ("role", "stages"),
    [("worker-reaper", ["reaper"]), ("worker-materializer", ["materializer"])],
)
def test_worker_roles_run_one_sweep_and_no_executor(role: str, stages: list[str]) -> None:
    container = build_runtime_container(validate_role(role))

    assert container.executor_pool is None
    assert [loop.stage for loop in container.worker_loops] == stages


@pytest.mark.unit
def test_sweep_intervals_follow_engine_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENGINE_REAPER_INTERVAL_MS", "1234")
    monkeypatch.setenv("ENGINE_MATERIALIZER_INTERVAL_MS", "5678")

    container = build_runtime_container(validate_role("api"))

    assert {loop.stage: loop.interval_ms for loop in container.worker_loops} == {
        "reaper": 1234,
        "materializer": 5678,
    }


@pytest.mark.unit
def test_container_end_to_end_with_stubs() -> None:
    async def _run() -> None:
        repository = InMemoryTaskRepository(balances={"owner-1": 2})
        container = build_runtime_container(validate_role("api"), repository=repository)
        assert container.executor_pool is not None
        container.executor_pool.start()

        submitted = await container.api_deps.submissions.submit(
            SubmitTaskCommand(owner_id="owner-1", input=TaskInput(prompt="a lighthouse at dusk"))
        )
        await container.executor_pool.drain()

        stored = repository.tasks[submitted.task_id]
        assert stored.status == TaskStatus.COMPLETED
        assert stored.materialized_at is not None
        assert repository.balances["owner-1"] == 1

    asyncio.run(_run())


@pytest.mark.unit
def test_storage_stub_enforces_prefix_contract() -> None:
    container = build_runtime_container(validate_role("api"))

    ok_key = f"{STORAGE_PREFIXES[0]}owner-1/task-1/1.png"
    assert container.storage.put_bytes(key=ok_key, payload=b"png").startswith("s3://")

    with pytest.raises(ValueError):
        container.storage.put_bytes(key="unknown/task-2.png", payload=b"png")
