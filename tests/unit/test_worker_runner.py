import asyncio
import logging
from dataclasses import dataclass

import pytest

from app.domain.models import TaskStatus
from app.workers.loop import SweepLoop, materializer_sweep, reaper_sweep
from app.workers.pool import ExecutorPool
from app.workers.runner import (
    WorkerRuntimeSettings,
    WorkerRuntimeState,
    run_worker_until_stopped,
    worker_runtime_settings_from_env,
)
from tests.unit.engine_fixtures import EPHEMERAL_LOCATOR, build_engine, create_pending, put_task


@pytest.mark.unit
def test_worker_runtime_settings_read_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WORKER_BACKLOG_INTERVAL_MS", "50")
    monkeypatch.setenv("WORKER_ERROR_BACKOFF_MS", "150")

    settings = worker_runtime_settings_from_env()

    assert settings == WorkerRuntimeSettings(backlog_interval_ms=50, error_backoff_ms=150)


@pytest.mark.unit
def test_worker_runtime_settings_fall_back_on_bad_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WORKER_BACKLOG_INTERVAL_MS", "abc")
    monkeypatch.setenv("WORKER_ERROR_BACKOFF_MS", "-10")

    settings = worker_runtime_settings_from_env()

    assert settings == WorkerRuntimeSettings()


@pytest.mark.unit
def test_sweep_loop_reports_backlog_when_batch_is_full() -> None:
    async def _sweep_full() -> int:
        return 10

    async def _sweep_partial() -> int:
        return 3

    full = SweepLoop(role="worker-reaper", stage="reaper", sweep=_sweep_full, interval_ms=1000, batch_size=10)
    partial = SweepLoop(role="worker-reaper", stage="reaper", sweep=_sweep_partial, interval_ms=1000, batch_size=10)

    assert asyncio.run(full.run_once()) is True
    assert asyncio.run(partial.run_once()) is False


@pytest.mark.unit
def test_sweep_adapters_drive_reaper_and_materializer() -> None:
    async def _run() -> None:
        engine = build_engine()
        stuck = await create_pending(engine, task_id="task-stuck")
        done = await create_pending(engine, task_id="task-done")
        put_task(
            engine.repository,
            done,
            status=TaskStatus.COMPLETED,
            result_ref=EPHEMERAL_LOCATOR,
            provider_result_ref=EPHEMERAL_LOCATOR,
        )
        engine.clock.advance(901)

        assert await reaper_sweep(engine.reaper)() == 1
        assert await materializer_sweep(engine.materializer)() == 1
        assert engine.repository.tasks[stuck.task_id].status == TaskStatus.FAILED
        assert engine.repository.tasks[done.task_id].materialized_at is not None

    asyncio.run(_run())


@dataclass
class _FlakyLoop:
    calls: int = 0
    interval_ms: int = 1

    @property
    def stage(self) -> str:
        return "reaper"

    async def run_once(self) -> bool:
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("boom")
        return self.calls % 2 == 0


@pytest.mark.unit
def test_runner_survives_errors_and_continues() -> None:
    flaky_loop = _FlakyLoop()
    stop_event = asyncio.Event()
    settings = WorkerRuntimeSettings(backlog_interval_ms=1, error_backoff_ms=1)
    state = WorkerRuntimeState()

    async def _run() -> None:
        task = asyncio.create_task(
            run_worker_until_stopped(
                worker_loop=flaky_loop,  # pyright: ignore[reportArgumentType]
                role="worker-reaper",
                run_id="run-1",
                stop_event=stop_event,
                settings=settings,
                logger=logging.getLogger("test"),
                state=state,
            )
        )
        await asyncio.sleep(0.05)
        stop_event.set()
        await task

    asyncio.run(_run())
    assert flaky_loop.calls >= 3
    assert state.started is True
    assert state.stopped is True
    assert state.ticks_total >= 3
    assert state.errors_total == 1
    assert state.busy_ticks_total >= 1
    assert state.idle_ticks_total >= 1


@pytest.mark.unit
def test_runner_waits_full_interval_when_idle() -> None:
    calls = 0

    async def _sweep() -> int:
        nonlocal calls
        calls += 1
        return 0

    loop = SweepLoop(role="worker-materializer", stage="materializer", sweep=_sweep, interval_ms=60_000)
    stop_event = asyncio.Event()

    async def _run() -> None:
        task = asyncio.create_task(
            run_worker_until_stopped(
                worker_loop=loop,
                role="worker-materializer",
                run_id="run-idle",
                stop_event=stop_event,
                settings=WorkerRuntimeSettings(backlog_interval_ms=1, error_backoff_ms=1),
                logger=logging.getLogger("test"),
            )
        )
        await asyncio.sleep(0.02)
        stop_event.set()
        await asyncio.wait_for(task, timeout=1)

    asyncio.run(_run())
    assert calls == 1


@pytest.mark.unit
def test_executor_pool_runs_launched_tasks_with_bounded_concurrency() -> None:
    async def _run() -> None:
        running = 0
        peak = 0
        done: list[str] = []

        async def _execute(task_id: str) -> None:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.005)
            running -= 1
            done.append(task_id)

        pool = ExecutorPool(execute=_execute, concurrency=2)
        pool.start()
        for index in range(5):
            pool.launch(f"task-{index}")
        await pool.drain()

        assert sorted(done) == [f"task-{index}" for index in range(5)]
        assert peak == 2
        assert pool.state.launched_total == 5
        assert pool.state.finished_total == 5
        assert pool.in_flight == 0

    asyncio.run(_run())


@pytest.mark.unit
def test_executor_pool_isolates_failures_and_drops_when_stopped() -> None:
    async def _run() -> None:
        async def _execute(task_id: str) -> None:
            raise RuntimeError(f"provider exploded for {task_id}")

        pool = ExecutorPool(execute=_execute, concurrency=1)
        pool.launch("task-early")
        assert pool.state.dropped_total == 1

        pool.start()
        pool.launch("task-1")
        await pool.drain()
        assert pool.state.errors_total == 1
        assert pool.is_alive() is True

        await pool.shutdown()
        assert pool.is_alive() is False
        pool.restart()
        assert pool.is_alive() is True
        assert pool.state.restarts_total == 1
        await pool.drain()
        assert pool.state.launched_total == 2
        assert pool.state.errors_total == 2

    asyncio.run(_run())


@pytest.mark.unit
def test_executor_pool_shutdown_cancels_in_flight_runs() -> None:
    async def _run() -> None:
        started = asyncio.Event()

        async def _execute(task_id: str) -> None:
            del task_id
            started.set()
            await asyncio.sleep(10)

        pool = ExecutorPool(execute=_execute, concurrency=1)
        pool.start()
        pool.launch("task-slow")
        await started.wait()
        await pool.shutdown()

        assert pool.in_flight == 0

    asyncio.run(_run())


@pytest.mark.unit
def test_executor_pool_reports_stalled_run_and_restart_frees_its_slot() -> None:
    async def _run() -> None:
        now = [100.0]
        started = asyncio.Event()
        done: list[str] = []

        async def _execute(task_id: str) -> None:
            if task_id == "task-stuck":
                started.set()
                await asyncio.Event().wait()
            done.append(task_id)

        pool = ExecutorPool(execute=_execute, concurrency=1, stall_after_seconds=30, clock=lambda: now[0])
        pool.start()
        pool.launch("task-stuck")
        await started.wait()
        assert pool.is_alive() is True

        now[0] += 31
        assert pool.is_alive() is False

        pool.launch("task-next")
        await asyncio.sleep(0)
        assert done == []

        pool.restart()
        await pool.drain()

        assert done == ["task-next"]
        assert pool.is_alive() is True
        assert pool.in_flight == 0

    asyncio.run(_run())


@pytest.mark.unit
def test_executor_pool_replays_launches_dropped_while_down() -> None:
    async def _run() -> None:
        done: list[str] = []

        async def _execute(task_id: str) -> None:
            done.append(task_id)

        pool = ExecutorPool(execute=_execute, concurrency=2)
        for task_id in ("task-a", "task-b", "task-a"):
            pool.launch(task_id)
        assert pool.state.dropped_total == 3
        assert pool.pending_relaunch == ("task-a", "task-b", "task-a")

        pool.restart()
        await pool.drain()

        assert sorted(done) == ["task-a", "task-b"]
        assert pool.pending_relaunch == ()
        assert pool.state.launched_total == 2

    asyncio.run(_run())
