from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import os

from app.api.handlers.deps import ApiDeps
from app.clients.http_fetch import HttpImageFetcher
from app.clients.openai_compat import OpenAICompatibleProvider
from app.clients.s3 import S3StorageClient
from app.clients.stub import StubGenerationProvider, StubImageFetcher, StubStorageClient
from app.domain.cancellation_signals import CancellationSignals
from app.domain.contracts import GenerationProvider, ImageFetcher, StorageClient, TaskRepository
from app.domain.ledger import CreditLedger
from app.domain.use_cases.cancellation import CancellationService, PrivilegedCancelStrategy, default_cancel_strategies
from app.domain.use_cases.generation import GenerationExecutor
from app.domain.use_cases.materialize import ResultMaterializer
from app.domain.use_cases.reaper import Reaper
from app.domain.use_cases.submissions import SubmissionService
from app.repositories.postgres import AsyncpgPoolManager, PostgresTaskRepository
from app.repositories.stub import InMemoryTaskRepository
from app.roles import RuntimeRole
from app.settings import (
    EngineSettings,
    ProviderSettings,
    StorageSettings,
    engine_settings_from_env,
    provider_settings_from_env,
    storage_settings_from_env,
)
from app.workers.loop import SweepLoop, materializer_sweep, reaper_sweep
from app.workers.pool import ExecutorPool


@dataclass
class RuntimeContainer:
    repository: TaskRepository
    admin_repository: TaskRepository
    storage: StorageClient
    provider: GenerationProvider
    fetcher: ImageFetcher
    settings: EngineSettings
    api_deps: ApiDeps
    executor: GenerationExecutor
    executor_pool: ExecutorPool | None
    worker_loops: list[SweepLoop]
    on_startup: Callable[[], Awaitable[None]] | None
    on_shutdown: Callable[[], Awaitable[None]] | None


def build_provider(settings: ProviderSettings, *, timeout_seconds: float) -> GenerationProvider:
    if not settings.api_key:
        return StubGenerationProvider()
    return OpenAICompatibleProvider(
        api_base=settings.api_base,
        api_key=settings.api_key,
        chat_model=settings.chat_model,
        image_model=settings.image_model,
        timeout_seconds=timeout_seconds,
    )


def build_storage(settings: StorageSettings) -> StorageClient:
    if not settings.bucket:
        return StubStorageClient()
    return S3StorageClient(settings=settings)


def build_runtime_container(
    role: RuntimeRole,
    *,
    settings: EngineSettings | None = None,
    repository: TaskRepository | None = None,
    provider: GenerationProvider | None = None,
    storage: StorageClient | None = None,
    fetcher: ImageFetcher | None = None,
) -> RuntimeContainer:
    engine = settings or engine_settings_from_env()
    on_startup: Callable[[], Awaitable[None]] | None = None
    on_shutdown: Callable[[], Awaitable[None]] | None = None

    admin_repository: TaskRepository
    database_url = os.getenv("DATABASE_URL")
    if repository is not None:
        admin_repository = repository
    elif database_url:
        pool_manager = AsyncpgPoolManager(dsn=database_url)
        admin_url = os.getenv("DATABASE_ADMIN_URL") or database_url
        admin_pool_manager = pool_manager if admin_url == database_url else AsyncpgPoolManager(dsn=admin_url, max_size=2)
        repository = PostgresTaskRepository(pool_manager=pool_manager)
        admin_repository = PostgresTaskRepository(pool_manager=admin_pool_manager)

        async def _startup() -> None:
            await pool_manager.startup()
            if admin_pool_manager is not pool_manager:
                await admin_pool_manager.startup()

        async def _shutdown() -> None:
            if admin_pool_manager is not pool_manager:
                await admin_pool_manager.shutdown()
            await pool_manager.shutdown()

        on_startup = _startup
        on_shutdown = _shutdown
    else:
        repository = InMemoryTaskRepository()
        admin_repository = repository

    provider = provider or build_provider(provider_settings_from_env(), timeout_seconds=engine.provider_timeout_seconds)
    storage = storage or build_storage(storage_settings_from_env())
    if fetcher is None:
        fetcher = StubImageFetcher() if isinstance(storage, StubStorageClient) else HttpImageFetcher()

    ledger = CreditLedger(
        repository=repository,
        unit_cost=engine.unit_cost,
        fallback_repository=admin_repository,
    )
    signals = CancellationSignals(capacity=engine.cancellation_signal_capacity)
    materializer = ResultMaterializer(
        repository=repository,
        storage=storage,
        fetcher=fetcher,
        batch_size=engine.sweep_batch_size,
        concurrency=engine.materializer_concurrency,
    )
    executor = GenerationExecutor(
        repository=repository,
        provider=provider,
        ledger=ledger,
        signals=signals,
        settings=engine,
        materializer=materializer,
    )

    executor_pool: ExecutorPool | None = None
    if role.owns_executor:
        executor_pool = ExecutorPool(
            execute=executor.execute,
            concurrency=engine.executor_concurrency,
            # one provider timeout plus the same again for persistence and inline materialization
            stall_after_seconds=engine.provider_timeout_seconds * 2,
        )

    reaper = Reaper(
        repository=admin_repository,
        ledger=CreditLedger(repository=admin_repository, unit_cost=engine.unit_cost),
        stuck_threshold_seconds=engine.stuck_threshold_seconds,
        batch_size=engine.sweep_batch_size,
        supervisor=executor_pool,
    )
    cancellation = CancellationService(
        repository=repository,
        ledger=ledger,
        signals=signals,
        strategies=default_cancel_strategies(repository=repository, admin_repository=admin_repository),
        force_strategy=PrivilegedCancelStrategy(repository=admin_repository),
        confirm_attempts=engine.cancel_confirm_attempts,
        confirm_backoff_ms=engine.cancel_confirm_backoff_ms,
    )
    submissions = SubmissionService(
        repository=repository,
        ledger=ledger,
        launcher=executor_pool,
        settings=engine,
    )
    api_deps = ApiDeps(
        repository=repository,
        ledger=ledger,
        submissions=submissions,
        cancellation=cancellation,
        materializer=materializer,
        reaper=reaper,
        settings=engine,
    )

    worker_loops: list[SweepLoop] = []
    for stage in role.sweeps:
        if stage == "reaper":
            worker_loops.append(
                SweepLoop(
                    role=role.name,
                    stage=stage,
                    sweep=reaper_sweep(reaper),
                    interval_ms=engine.reaper_interval_ms,
                    batch_size=engine.sweep_batch_size,
                )
            )
        else:
            worker_loops.append(
                SweepLoop(
                    role=role.name,
                    stage=stage,
                    sweep=materializer_sweep(materializer),
                    interval_ms=engine.materializer_interval_ms,
                    batch_size=engine.sweep_batch_size,
                )
            )

    return RuntimeContainer(
        repository=repository,
        admin_repository=admin_repository,
        storage=storage,
        provider=provider,
        fetcher=fetcher,
        settings=engine,
        api_deps=api_deps,
        executor=executor,
        executor_pool=executor_pool,
        worker_loops=worker_loops,
        on_startup=on_startup,
        on_shutdown=on_shutdown,
    )
