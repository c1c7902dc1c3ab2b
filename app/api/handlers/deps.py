from __future__ import annotations

from dataclasses import dataclass

from app.domain.contracts import TaskRepository
from app.domain.ledger import CreditLedger
from app.domain.use_cases.cancellation import CancellationService
from app.domain.use_cases.materialize import ResultMaterializer
from app.domain.use_cases.reaper import Reaper
from app.domain.use_cases.submissions import SubmissionService
from app.settings import EngineSettings


@dataclass(frozen=True)
class ApiDeps:
    repository: TaskRepository
    ledger: CreditLedger
    submissions: SubmissionService
    cancellation: CancellationService
    materializer: ResultMaterializer
    reaper: Reaper
    settings: EngineSettings
