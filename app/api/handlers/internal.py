from __future__ import annotations

from app.api.handlers.deps import ApiDeps
from app.api.schemas import CreditsResponse, GrantCreditsRequest, MaterializerRunResponse, ReaperRunResponse

COMPONENT_ID_BALANCE = "api.get_credits"
COMPONENT_ID_GRANT = "api.internal.grant_credits"
COMPONENT_ID_REAPER = "api.internal.run_reaper"
COMPONENT_ID_MATERIALIZER = "api.internal.run_materializer"


async def get_credits_handler(*, owner_id: str, api_deps: ApiDeps) -> CreditsResponse:
    balance = await api_deps.repository.get_balance(owner_id=owner_id)
    return CreditsResponse(owner_id=owner_id, balance=balance or 0)


async def grant_credits_handler(*, request: GrantCreditsRequest, api_deps: ApiDeps) -> CreditsResponse:
    balance = await api_deps.repository.grant_credits(owner_id=request.owner_id, amount=request.amount)
    return CreditsResponse(owner_id=request.owner_id, balance=balance)


async def run_reaper_handler(*, api_deps: ApiDeps) -> ReaperRunResponse:
    result = await api_deps.reaper.sweep()
    return ReaperRunResponse(
        scanned=result.scanned,
        failed=result.failed,
        cancelled=result.cancelled,
        refunded=result.refunded,
        executor_restarted=result.executor_restarted,
        task_ids=list(result.task_ids),
    )


async def run_materializer_handler(*, api_deps: ApiDeps) -> MaterializerRunResponse:
    result = await api_deps.materializer.sweep()
    return MaterializerRunResponse(
        scanned=result.scanned,
        materialized=result.materialized,
        failed=result.failed,
        task_ids=list(result.task_ids),
    )
