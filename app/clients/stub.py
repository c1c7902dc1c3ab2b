from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from app.domain.contracts import STORAGE_PREFIXES
from app.domain.dto import GenerationRequest
from app.domain.errors import ProviderError

STUB_CHAT_LOCATOR = "https://images.stub-provider.local/generated/{task_id}.png"
STUB_IMAGE_LOCATOR = "https://images.stub-provider.local/direct/{task_id}.png"


@dataclass
class StubStorageClient:
    writes: list[str] = field(default_factory=list)
    objects: dict[str, bytes] = field(default_factory=dict)

    def put_bytes(self, *, key: str, payload: bytes, content_type: str = "image/png") -> str:
        del content_type
        if not any(key.startswith(prefix) for prefix in STORAGE_PREFIXES):
            raise ValueError("storage key must start with an allowed prefix")
        self.writes.append(key)
        self.objects[key] = payload
        return f"s3://{key}"

    def get_bytes(self, *, key: str) -> bytes:
        payload = self.objects.get(key)
        if payload is None:
            raise KeyError(f"storage key not found: {key}")
        return payload


@dataclass
class StubGenerationProvider:
    """Scriptable provider double.

    `chat_text` and `image_locator` accept a `{task_id}` placeholder. Setting
    `gate` makes every call wait on it first, `delay_seconds` adds latency.
    """

    name: str = "stub"
    chat_text: str | None = f"Here is your image: ![result]({STUB_CHAT_LOCATOR})"
    image_locator: str | None = STUB_IMAGE_LOCATOR
    chat_error: ProviderError | None = None
    generate_error: ProviderError | None = None
    delay_seconds: float = 0.0
    gate: asyncio.Event | None = None
    converse_calls: list[GenerationRequest] = field(default_factory=list)
    generate_calls: list[GenerationRequest] = field(default_factory=list)

    async def converse(self, request: GenerationRequest) -> str:
        self.converse_calls.append(request)
        await self._wait()
        if self.chat_error is not None:
            raise self.chat_error
        return (self.chat_text or "").format(task_id=request.task_id)

    async def generate(self, request: GenerationRequest) -> str:
        self.generate_calls.append(request)
        await self._wait()
        if self.generate_error is not None:
            raise self.generate_error
        if not self.image_locator:
            raise ProviderError("unknown", "generation endpoint returned no locator")
        return self.image_locator.format(task_id=request.task_id)

    @property
    def calls_total(self) -> int:
        return len(self.converse_calls) + len(self.generate_calls)

    async def _wait(self) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if self.delay_seconds > 0:
            await asyncio.sleep(self.delay_seconds)


@dataclass
class StubImageFetcher:
    payloads: dict[str, bytes] = field(default_factory=dict)
    default_payload: bytes = b"\x89PNG\r\n\x1a\nstub"
    fetched: list[str] = field(default_factory=list)

    async def fetch(self, url: str) -> bytes:
        self.fetched.append(url)
        return self.payloads.get(url, self.default_payload)
