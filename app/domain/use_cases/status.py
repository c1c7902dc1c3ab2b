from __future__ import annotations

from app.domain.contracts import TaskRepository
from app.domain.dto import TaskStatusView
from app.domain.errors import ForbiddenError, TaskNotFoundError
from app.domain.models import TaskLogEntry, TaskSnapshot, TaskStatus
from app.domain.progress import project_status

COMPONENT_ID_STATUS = "domain.task.status"
COMPONENT_ID_LIST = "domain.task.list"
COMPONENT_ID_LOGS = "domain.task.logs"


async def load_owned_task(repository: TaskRepository, *, task_id: str, owner_id: str) -> TaskSnapshot:
    task = await repository.get_task(task_id=task_id)
    if task is None:
        raise TaskNotFoundError(f"task not found: {task_id}")
    if task.owner_id != owner_id:
        raise ForbiddenError("task belongs to another owner")
    return task


async def get_task_status(repository: TaskRepository, *, task_id: str, owner_id: str) -> TaskStatusView:
    task = await load_owned_task(repository, task_id=task_id, owner_id=owner_id)
    return project_status(task)


async def list_task_statuses(
    repository: TaskRepository,
    *,
    owner_id: str,
    statuses: list[TaskStatus] | None = None,
    limit: int = 20,
) -> list[TaskStatusView]:
    tasks = await repository.list_tasks(owner_id=owner_id, statuses=statuses, limit=limit)
    return [project_status(task) for task in tasks]


async def get_task_logs(repository: TaskRepository, *, task_id: str, owner_id: str) -> list[TaskLogEntry]:
    await load_owned_task(repository, task_id=task_id, owner_id=owner_id)
    return await repository.list_task_logs(task_id=task_id)
