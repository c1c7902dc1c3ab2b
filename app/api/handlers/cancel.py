from __future__ import annotations

from app.api.handlers.deps import ApiDeps
from app.api.schemas import CancelTaskResponse

COMPONENT_ID = "api.cancel_task"


async def cancel_task_handler(*, owner_id: str, task_id: str, api_deps: ApiDeps) -> CancelTaskResponse:
    result = await api_deps.cancellation.cancel(task_id=task_id, owner_id=owner_id)
    return CancelTaskResponse(
        task_id=result.task_id,
        status=result.status,
        outcome=result.outcome,
        method=result.method,
        refund=result.refund,
    )
