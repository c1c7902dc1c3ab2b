from __future__ import annotations

import httpx

from app.domain.errors import ProviderError


class HttpImageFetcher:
    """Downloads result bytes from a provider locator."""

    def __init__(
        self,
        *,
        timeout_seconds: float = 60.0,
        max_bytes: int = 32 * 1024 * 1024,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.max_bytes = max_bytes
        self._transport = transport

    async def fetch(self, url: str) -> bytes:
        timeout = httpx.Timeout(self.timeout_seconds)
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport, follow_redirects=True) as client:
            try:
                response = await client.get(url)
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise ProviderError("unknown", f"result download failed ({exc.response.status_code})") from exc
            except httpx.TimeoutException as exc:
                raise ProviderError("timeout", f"result download timed out: {exc}") from exc
            except httpx.TransportError as exc:
                raise ProviderError("network", f"result download failed: {exc}") from exc
            except httpx.HTTPError as exc:
                raise ProviderError("unknown", f"result download failed: {exc}") from exc

        payload = response.content
        if not payload:
            raise ProviderError("unknown", "result download returned an empty body")
        if len(payload) > self.max_bytes:
            raise ProviderError("unknown", "result download exceeds the size limit")
        return payload
