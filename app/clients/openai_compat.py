"""OpenAI-compatible image generation provider over httpx."""

from __future__ import annotations

from typing import Any

import httpx

from app.domain.dto import GenerationRequest
from app.domain.error_taxonomy import classify_provider_failure
from app.domain.errors import ProviderError

SYSTEM_PROMPT = (
    "You are an image generation assistant. Generate exactly one image for the request "
    "and reply with a markdown image link to the result."
)


class OpenAICompatibleProvider:
    name = "openai-compatible"

    def __init__(
        self,
        *,
        api_base: str,
        api_key: str,
        chat_model: str,
        image_model: str,
        timeout_seconds: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self.api_key = api_key
        self.chat_model = chat_model
        self.image_model = image_model
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def converse(self, request: GenerationRequest) -> str:
        content: list[dict[str, Any]] = [{"type": "text", "text": _compose_prompt(request)}]
        if request.reference_image:
            content.append({"type": "image_url", "image_url": {"url": request.reference_image}})
        payload = {
            "model": self.chat_model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": content},
            ],
            "stream": False,
        }
        data = await self._post("/chat/completions", payload)
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            raise ProviderError("unknown", "conversational endpoint returned no choices")
        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        if not isinstance(message, dict):
            raise ProviderError("unknown", "conversational endpoint returned a malformed choice")
        return str(message.get("content") or "")

    async def generate(self, request: GenerationRequest) -> str:
        payload = {
            "model": self.image_model,
            "prompt": _compose_prompt(request),
            "n": 1,
            "size": request.size,
            "quality": "hd",
            "style": "vivid",
            "response_format": "url",
        }
        data = await self._post("/images/generations", payload)
        items = data.get("data")
        first = items[0] if isinstance(items, list) and items else None
        locator = first.get("url") if isinstance(first, dict) else None
        if not locator:
            raise ProviderError("unknown", "generation endpoint returned no locator")
        return str(locator)

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        timeout = httpx.Timeout(self.timeout_seconds)
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            try:
                response = await client.post(f"{self.api_base}{path}", headers=headers, json=payload)
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise _provider_error_from_response(exc.response) from exc
            except httpx.TimeoutException as exc:
                raise ProviderError("timeout", f"provider request timed out: {exc}") from exc
            except httpx.TransportError as exc:
                raise ProviderError("network", f"provider request failed: {exc}") from exc
            except httpx.HTTPError as exc:
                raise ProviderError("unknown", f"provider request failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError("unknown", "provider returned a non-JSON body") from exc
        if not isinstance(data, dict):
            raise ProviderError("unknown", "provider returned an unexpected body")
        return data


def _compose_prompt(request: GenerationRequest) -> str:
    if request.style:
        return f"{request.prompt}\n\nStyle: {request.style}".strip()
    return request.prompt


def _provider_error_from_response(response: httpx.Response) -> ProviderError:
    error_code: str | None = None
    message = response.text or ""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        error = body["error"]
        error_code = error.get("code") or error.get("type")
        message = str(error.get("message") or message)

    kind = classify_provider_failure(
        status_code=response.status_code,
        error_code=error_code,
        message=message,
    )
    return ProviderError(kind, f"provider error ({response.status_code}): {message}")
