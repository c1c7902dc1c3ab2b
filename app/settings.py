from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class EngineSettings:
    unit_cost: int = 1
    provider_timeout_seconds: int = 180
    stuck_threshold_seconds: int = 900
    reaper_interval_ms: int = 180_000
    materializer_interval_ms: int = 300_000
    sweep_batch_size: int = 100
    materializer_concurrency: int = 3
    executor_concurrency: int = 8
    cancel_confirm_attempts: int = 3
    cancel_confirm_backoff_ms: int = 200
    persistence_retry_attempts: int = 3
    persistence_retry_backoff_ms: int = 100
    max_prompt_chars: int = 4000
    max_reference_image_bytes: int = 8 * 1024 * 1024
    max_style_chars: int = 64
    cancellation_signal_capacity: int = 1024
    require_balance_on_submit: bool = True
    admin_token: str | None = None


@dataclass(frozen=True)
class ProviderSettings:
    api_base: str = "https://api.openai.com/v1"
    api_key: str | None = None
    chat_model: str = "gpt-4o-all"
    image_model: str = "dall-e-3"


@dataclass(frozen=True)
class StorageSettings:
    bucket: str | None = None
    endpoint_url: str | None = None
    public_base_url: str | None = None
    access_key: str | None = None
    secret_key: str | None = None


def engine_settings_from_env() -> EngineSettings:
    defaults = EngineSettings()
    return EngineSettings(
        unit_cost=env_int("ENGINE_UNIT_COST", defaults.unit_cost),
        provider_timeout_seconds=env_int("ENGINE_PROVIDER_TIMEOUT_SECONDS", defaults.provider_timeout_seconds),
        stuck_threshold_seconds=env_int("ENGINE_STUCK_THRESHOLD_SECONDS", defaults.stuck_threshold_seconds),
        reaper_interval_ms=env_int("ENGINE_REAPER_INTERVAL_MS", defaults.reaper_interval_ms),
        materializer_interval_ms=env_int("ENGINE_MATERIALIZER_INTERVAL_MS", defaults.materializer_interval_ms),
        sweep_batch_size=env_int("ENGINE_SWEEP_BATCH_SIZE", defaults.sweep_batch_size),
        materializer_concurrency=env_int("ENGINE_MATERIALIZER_CONCURRENCY", defaults.materializer_concurrency),
        executor_concurrency=env_int("ENGINE_EXECUTOR_CONCURRENCY", defaults.executor_concurrency),
        cancel_confirm_attempts=env_int("ENGINE_CANCEL_CONFIRM_ATTEMPTS", defaults.cancel_confirm_attempts),
        cancel_confirm_backoff_ms=env_int("ENGINE_CANCEL_CONFIRM_BACKOFF_MS", defaults.cancel_confirm_backoff_ms),
        persistence_retry_attempts=env_int("ENGINE_PERSISTENCE_RETRY_ATTEMPTS", defaults.persistence_retry_attempts),
        persistence_retry_backoff_ms=env_int(
            "ENGINE_PERSISTENCE_RETRY_BACKOFF_MS",
            defaults.persistence_retry_backoff_ms,
        ),
        max_prompt_chars=env_int("ENGINE_MAX_PROMPT_CHARS", defaults.max_prompt_chars),
        max_reference_image_bytes=env_int("ENGINE_MAX_REFERENCE_IMAGE_BYTES", defaults.max_reference_image_bytes),
        max_style_chars=env_int("ENGINE_MAX_STYLE_CHARS", defaults.max_style_chars),
        cancellation_signal_capacity=env_int(
            "ENGINE_CANCELLATION_SIGNAL_CAPACITY",
            defaults.cancellation_signal_capacity,
        ),
        require_balance_on_submit=env_bool("ENGINE_REQUIRE_BALANCE_ON_SUBMIT", defaults.require_balance_on_submit),
        admin_token=os.getenv("ENGINE_ADMIN_TOKEN") or None,
    )


def provider_settings_from_env() -> ProviderSettings:
    defaults = ProviderSettings()
    return ProviderSettings(
        api_base=os.getenv("PROVIDER_API_BASE") or defaults.api_base,
        api_key=os.getenv("PROVIDER_API_KEY") or None,
        chat_model=os.getenv("PROVIDER_CHAT_MODEL") or defaults.chat_model,
        image_model=os.getenv("PROVIDER_IMAGE_MODEL") or defaults.image_model,
    )


def storage_settings_from_env() -> StorageSettings:
    return StorageSettings(
        bucket=os.getenv("STORAGE_BUCKET") or None,
        endpoint_url=os.getenv("STORAGE_ENDPOINT_URL") or None,
        public_base_url=os.getenv("STORAGE_PUBLIC_BASE_URL") or None,
        access_key=os.getenv("STORAGE_ACCESS_KEY") or None,
        secret_key=os.getenv("STORAGE_SECRET_KEY") or None,
    )


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default

    try:
        parsed = int(value)
    except ValueError:
        return default

    return parsed if parsed > 0 else default


def env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default
