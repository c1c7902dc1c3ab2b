from __future__ import annotations

from app.api.handlers.deps import ApiDeps
from app.api.schemas import (
    MaterializeResponse,
    SubmitTaskRequest,
    SubmitTaskResponse,
    TaskListResponse,
    TaskLogItem,
    TaskLogResponse,
    TaskStatusResponse,
)
from app.domain.dto import SubmitTaskCommand, TaskStatusView
from app.domain.models import TaskInput, TaskStatus
from app.domain.use_cases.status import get_task_logs, get_task_status, list_task_statuses, load_owned_task

COMPONENT_ID_SUBMIT = "api.submit_task"
COMPONENT_ID_STATUS = "api.get_task_status"
COMPONENT_ID_LIST = "api.list_tasks"
COMPONENT_ID_LOGS = "api.list_task_logs"
COMPONENT_ID_MATERIALIZE = "api.materialize_task"


def _status_response(view: TaskStatusView) -> TaskStatusResponse:
    return TaskStatusResponse(
        task_id=view.task_id,
        status=view.status,
        progress_percentage=view.progress_percentage,
        stage=view.stage,
        result_ref=view.result_ref,
        error_code=view.error_code,
        error_message=view.error_message,
        created_at=view.created_at,
        updated_at=view.updated_at,
        completed_at=view.completed_at,
    )


async def submit_task_handler(*, owner_id: str, request: SubmitTaskRequest, api_deps: ApiDeps) -> SubmitTaskResponse:
    result = await api_deps.submissions.submit(
        SubmitTaskCommand(
            owner_id=owner_id,
            input=TaskInput(
                prompt=request.prompt,
                style=request.style,
                reference_image=request.reference_image,
                aspect_ratio=request.aspect_ratio,
            ),
            client_request_id=request.client_request_id,
        )
    )
    return SubmitTaskResponse(task_id=result.task_id, status=result.status, created=result.created)


async def get_task_status_handler(*, owner_id: str, task_id: str, api_deps: ApiDeps) -> TaskStatusResponse:
    view = await get_task_status(api_deps.repository, task_id=task_id, owner_id=owner_id)
    return _status_response(view)


async def list_tasks_handler(
    *,
    owner_id: str,
    statuses: list[TaskStatus] | None,
    limit: int,
    api_deps: ApiDeps,
) -> TaskListResponse:
    views = await list_task_statuses(api_deps.repository, owner_id=owner_id, statuses=statuses, limit=limit)
    return TaskListResponse(items=[_status_response(view) for view in views])


async def list_task_logs_handler(*, owner_id: str, task_id: str, api_deps: ApiDeps) -> TaskLogResponse:
    entries = await get_task_logs(api_deps.repository, task_id=task_id, owner_id=owner_id)
    return TaskLogResponse(
        task_id=task_id,
        items=[
            TaskLogItem(
                from_status=entry.from_status,
                to_status=entry.to_status,
                actor=entry.actor,
                detail=entry.detail,
                created_at=entry.created_at,
            )
            for entry in entries
        ],
    )


async def materialize_task_handler(*, owner_id: str, task_id: str, api_deps: ApiDeps) -> MaterializeResponse:
    await load_owned_task(api_deps.repository, task_id=task_id, owner_id=owner_id)
    result = await api_deps.materializer.materialize(task_id, owner_id=owner_id)
    return MaterializeResponse(task_id=result.task_id, result_ref=result.result_ref, changed=result.changed)
