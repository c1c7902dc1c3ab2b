from __future__ import annotations

from contextlib import asynccontextmanager
import asyncio
from collections.abc import Awaitable, Callable, Sequence
import logging
import secrets

from fastapi import FastAPI, Header, HTTPException, Query

from app.api.handlers.cancel import cancel_task_handler
from app.api.handlers.deps import ApiDeps
from app.api.handlers.internal import (
    get_credits_handler,
    grant_credits_handler,
    run_materializer_handler,
    run_reaper_handler,
)
from app.api.handlers.tasks import (
    get_task_status_handler,
    list_task_logs_handler,
    list_tasks_handler,
    materialize_task_handler,
    submit_task_handler,
)
from app.api.schemas import (
    CancelTaskResponse,
    CreditsResponse,
    ErrorResponse,
    ExecutorPoolMetrics,
    GrantCreditsRequest,
    HealthResponse,
    MaterializeResponse,
    MaterializerRunResponse,
    ReadyResponse,
    ReaperRunResponse,
    SubmitTaskRequest,
    SubmitTaskResponse,
    TaskListResponse,
    TaskLogResponse,
    TaskStatusResponse,
    WorkerMetrics,
)
from app.domain.errors import (
    CancellationPendingError,
    DomainError,
    DomainInvariantError,
    DomainValidationError,
    ForbiddenError,
    InsufficientBalanceError,
    InvalidStateError,
    PersistenceError,
    ProviderError,
    TaskNotFoundError,
)
from app.domain.models import TaskStatus
from app.workers.loop import SweepLoop
from app.workers.pool import ExecutorPool
from app.workers.runner import (
    WorkerRuntimeSettings,
    WorkerRuntimeState,
    run_worker_until_stopped,
    worker_runtime_settings_from_env,
)

_ERROR_STATUS: tuple[tuple[type[DomainError], int], ...] = (
    (DomainValidationError, 422),
    (ForbiddenError, 403),
    (TaskNotFoundError, 404),
    (InvalidStateError, 409),
    (InsufficientBalanceError, 402),
    (CancellationPendingError, 503),
    (PersistenceError, 503),
    (ProviderError, 502),
    (DomainInvariantError, 500),
)

_ERROR_RESPONSES = {
    401: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


def http_error_for(exc: DomainError) -> HTTPException:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def _require_owner(owner_id: str | None) -> str:
    if owner_id is None or not owner_id.strip():
        raise HTTPException(status_code=401, detail="X-Owner-Id header is required")
    return owner_id.strip()


def build_app(
    role: str,
    run_id: str,
    worker_loops: Sequence[SweepLoop] = (),
    worker_runtime_settings: WorkerRuntimeSettings | None = None,
    api_deps: ApiDeps | None = None,
    executor_pool: ExecutorPool | None = None,
    on_startup: Callable[[], Awaitable[None]] | None = None,
    on_shutdown: Callable[[], Awaitable[None]] | None = None,
) -> FastAPI:
    logger = logging.getLogger("runtime")
    worker_states: dict[str, WorkerRuntimeState] = {}
    worker_tasks: dict[str, asyncio.Task[None]] = {}

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        del app
        stop_event = asyncio.Event()

        logger.info(
            "role started",
            extra={"role": role, "service": role, "run_id": run_id},
        )

        if on_startup is not None:
            await on_startup()

        if executor_pool is not None:
            executor_pool.start()

        settings = worker_runtime_settings or worker_runtime_settings_from_env()
        for worker_loop in worker_loops:
            state = WorkerRuntimeState()
            worker_states[worker_loop.stage] = state
            worker_tasks[worker_loop.stage] = asyncio.create_task(
                run_worker_until_stopped(
                    worker_loop=worker_loop,
                    role=role,
                    run_id=run_id,
                    stop_event=stop_event,
                    settings=settings,
                    logger=logger,
                    state=state,
                )
            )

        yield

        stop_event.set()
        for task in worker_tasks.values():
            await task

        if executor_pool is not None:
            await executor_pool.shutdown()

        if on_shutdown is not None:
            await on_shutdown()

        logger.info(
            "role stopped",
            extra={"role": role, "service": role, "run_id": run_id},
        )

    app = FastAPI(title="image-task-engine", version="0.1.0", lifespan=lifespan)

    def _deps() -> ApiDeps:
        if api_deps is None:
            raise HTTPException(status_code=503, detail="api dependencies are not available")
        return api_deps

    def _check_admin(token: str | None) -> ApiDeps:
        deps = _deps()
        expected = deps.settings.admin_token
        if expected is None:
            raise HTTPException(status_code=403, detail="admin token is not configured")
        if token is None or not secrets.compare_digest(token, expected):
            raise HTTPException(status_code=403, detail="admin token is invalid")
        return deps

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health() -> HealthResponse:
        return HealthResponse(status="ok", role=role, mode="engine")

    @app.get("/ready", response_model=ReadyResponse, tags=["System"])
    async def ready() -> ReadyResponse:
        worker_loop_enabled = bool(worker_loops)
        worker_loop_ready = all(
            worker_states.get(loop.stage) is not None
            and worker_states[loop.stage].started
            and loop.stage in worker_tasks
            and not worker_tasks[loop.stage].done()
            for loop in worker_loops
        )
        metrics: dict[str, WorkerMetrics] = {}
        for loop in worker_loops:
            state = worker_states.get(loop.stage) or WorkerRuntimeState()
            metrics[loop.stage] = WorkerMetrics(
                started=state.started,
                stopped=state.stopped,
                ticks_total=state.ticks_total,
                busy_ticks_total=state.busy_ticks_total,
                idle_ticks_total=state.idle_ticks_total,
                errors_total=state.errors_total,
                last_tick_at=state.last_tick_at,
            )

        pool_metrics: ExecutorPoolMetrics | None = None
        if executor_pool is not None:
            pool_metrics = ExecutorPoolMetrics(
                alive=executor_pool.is_alive(),
                in_flight=executor_pool.in_flight,
                launched_total=executor_pool.state.launched_total,
                finished_total=executor_pool.state.finished_total,
                errors_total=executor_pool.state.errors_total,
                dropped_total=executor_pool.state.dropped_total,
                restarts_total=executor_pool.state.restarts_total,
            )

        return ReadyResponse(
            status="ready",
            role=role,
            mode="engine",
            worker_loop_enabled=worker_loop_enabled,
            worker_loop_ready=worker_loop_ready,
            worker_metrics=metrics,
            executor_pool=pool_metrics,
        )

    @app.post(
        "/tasks",
        response_model=SubmitTaskResponse,
        status_code=202,
        responses={**_ERROR_RESPONSES, 402: {"model": ErrorResponse}},
        tags=["Tasks"],
    )
    async def submit_task(
        request: SubmitTaskRequest,
        x_owner_id: str | None = Header(default=None),
    ) -> SubmitTaskResponse:
        owner_id = _require_owner(x_owner_id)
        try:
            return await submit_task_handler(owner_id=owner_id, request=request, api_deps=_deps())
        except DomainError as exc:
            raise http_error_for(exc) from exc

    @app.get("/tasks", response_model=TaskListResponse, responses=_ERROR_RESPONSES, tags=["Tasks"])
    async def list_tasks(
        status: list[TaskStatus] | None = Query(default=None),
        limit: int = Query(default=20, ge=1, le=100),
        x_owner_id: str | None = Header(default=None),
    ) -> TaskListResponse:
        owner_id = _require_owner(x_owner_id)
        try:
            return await list_tasks_handler(owner_id=owner_id, statuses=status, limit=limit, api_deps=_deps())
        except DomainError as exc:
            raise http_error_for(exc) from exc

    @app.get("/tasks/{task_id}", response_model=TaskStatusResponse, responses=_ERROR_RESPONSES, tags=["Tasks"])
    async def get_task_status(task_id: str, x_owner_id: str | None = Header(default=None)) -> TaskStatusResponse:
        owner_id = _require_owner(x_owner_id)
        try:
            return await get_task_status_handler(owner_id=owner_id, task_id=task_id, api_deps=_deps())
        except DomainError as exc:
            raise http_error_for(exc) from exc

    @app.post(
        "/tasks/{task_id}/cancel",
        response_model=CancelTaskResponse,
        responses=_ERROR_RESPONSES,
        tags=["Tasks"],
    )
    async def cancel_task(task_id: str, x_owner_id: str | None = Header(default=None)) -> CancelTaskResponse:
        owner_id = _require_owner(x_owner_id)
        try:
            return await cancel_task_handler(owner_id=owner_id, task_id=task_id, api_deps=_deps())
        except DomainError as exc:
            raise http_error_for(exc) from exc

    @app.get("/tasks/{task_id}/logs", response_model=TaskLogResponse, responses=_ERROR_RESPONSES, tags=["Tasks"])
    async def list_task_logs(task_id: str, x_owner_id: str | None = Header(default=None)) -> TaskLogResponse:
        owner_id = _require_owner(x_owner_id)
        try:
            return await list_task_logs_handler(owner_id=owner_id, task_id=task_id, api_deps=_deps())
        except DomainError as exc:
            raise http_error_for(exc) from exc

    @app.post(
        "/tasks/{task_id}/materialize",
        response_model=MaterializeResponse,
        responses={**_ERROR_RESPONSES, 502: {"model": ErrorResponse}},
        tags=["Tasks"],
    )
    async def materialize_task(task_id: str, x_owner_id: str | None = Header(default=None)) -> MaterializeResponse:
        owner_id = _require_owner(x_owner_id)
        try:
            return await materialize_task_handler(owner_id=owner_id, task_id=task_id, api_deps=_deps())
        except DomainError as exc:
            raise http_error_for(exc) from exc

    @app.get("/credits", response_model=CreditsResponse, responses=_ERROR_RESPONSES, tags=["Credits"])
    async def get_credits(x_owner_id: str | None = Header(default=None)) -> CreditsResponse:
        owner_id = _require_owner(x_owner_id)
        return await get_credits_handler(owner_id=owner_id, api_deps=_deps())

    @app.post("/internal/credits/grant", response_model=CreditsResponse, tags=["Internal"])
    async def grant_credits(
        request: GrantCreditsRequest,
        x_admin_token: str | None = Header(default=None),
    ) -> CreditsResponse:
        deps = _check_admin(x_admin_token)
        return await grant_credits_handler(request=request, api_deps=deps)

    @app.post("/internal/reaper/run", response_model=ReaperRunResponse, tags=["Internal"])
    async def run_reaper(x_admin_token: str | None = Header(default=None)) -> ReaperRunResponse:
        deps = _check_admin(x_admin_token)
        try:
            return await run_reaper_handler(api_deps=deps)
        except DomainError as exc:
            raise http_error_for(exc) from exc

    @app.post("/internal/materializer/run", response_model=MaterializerRunResponse, tags=["Internal"])
    async def run_materializer(x_admin_token: str | None = Header(default=None)) -> MaterializerRunResponse:
        deps = _check_admin(x_admin_token)
        try:
            return await run_materializer_handler(api_deps=deps)
        except DomainError as exc:
            raise http_error_for(exc) from exc

    return app
