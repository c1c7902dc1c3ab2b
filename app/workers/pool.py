from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

logger = logging.getLogger("runtime")

ExecuteTask = Callable[[str], Awaitable[object]]


@dataclass
class ExecutorPoolState:
    launched_total: int = 0
    finished_total: int = 0
    errors_total: int = 0
    dropped_total: int = 0
    restarts_total: int = 0


class ExecutorPool:
    """Fire-and-forget launcher for executor runs, capped by a semaphore.

    The pool keeps references to in-flight asyncio tasks only so they are not
    garbage collected and can be cancelled on shutdown; the task row is the
    durable handle.

    The pool reports itself dead when it was never started, after shutdown, or
    when a run has held a slot for longer than `stall_after_seconds`. Launches
    that arrive while the pool is down are remembered and replayed by
    `restart()`; the executor's pending -> processing write keeps a replay of an
    already started task from running twice.
    """

    def __init__(
        self,
        *,
        execute: ExecuteTask,
        concurrency: int,
        stall_after_seconds: float | None = None,
        max_dropped: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._execute = execute
        self._concurrency = max(1, concurrency)
        self._semaphore = asyncio.Semaphore(self._concurrency)
        self._tasks: set[asyncio.Task[None]] = set()
        self._running_since: dict[asyncio.Task[None], float] = {}
        self._dropped: list[str] = []
        self._max_dropped = max(0, max_dropped)
        self._stall_after_seconds = stall_after_seconds
        self._clock = clock
        self._alive = False
        self.state = ExecutorPoolState()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    @property
    def pending_relaunch(self) -> tuple[str, ...]:
        return tuple(self._dropped)

    def start(self) -> None:
        self._alive = True

    def is_alive(self) -> bool:
        return self._alive and not self._stalled_runs()

    def restart(self) -> None:
        stalled = self._stalled_runs()
        for task in stalled:
            # the slot comes back when the cancelled run leaves the semaphore
            task.cancel()
            self._running_since.pop(task, None)
        self._alive = True
        self.state.restarts_total += 1

        replay, self._dropped = self._dropped, []
        for task_id in dict.fromkeys(replay):
            self.launch(task_id)
        logger.info(
            "executor pool restarted",
            extra={
                "restarts_total": self.state.restarts_total,
                "cancelled": len(stalled),
                "relaunched": len(replay),
            },
        )

    def launch(self, task_id: str) -> None:
        if not self._alive:
            self.state.dropped_total += 1
            if len(self._dropped) < self._max_dropped:
                self._dropped.append(task_id)
            logger.warning("executor pool is not running, launch deferred", extra={"task_id": task_id})
            return
        task = asyncio.get_running_loop().create_task(self._run(task_id), name=f"executor:{task_id}")
        self._tasks.add(task)
        task.add_done_callback(self._forget)
        self.state.launched_total += 1

    def _forget(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        self._running_since.pop(task, None)

    def _stalled_runs(self) -> list[asyncio.Task[None]]:
        if self._stall_after_seconds is None:
            return []
        cutoff = self._clock() - self._stall_after_seconds
        return [task for task, since in self._running_since.items() if since < cutoff and not task.done()]

    async def _run(self, task_id: str) -> None:
        async with self._semaphore:
            current = asyncio.current_task()
            if current is not None:
                self._running_since[current] = self._clock()
            try:
                await self._execute(task_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                self.state.errors_total += 1
                logger.exception("executor run failed", extra={"task_id": task_id})
            finally:
                if current is not None:
                    self._running_since.pop(current, None)
                self.state.finished_total += 1

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        self._alive = False
        pending = list(self._tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._running_since.clear()
