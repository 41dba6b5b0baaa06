"""Shared plumbing for providers reached over plain HTTPS with httpx."""

from __future__ import annotations

from typing import Any

import httpx

from deepflow.errors import ProviderError, RateLimitError

from .base import GenerationRequest, Provider


class HTTPProvider(Provider):
    """Provider whose upstream API is a JSON-over-HTTPS endpoint."""

    DEFAULT_BASE_URL: str = ""

    @property
    def base_url(self) -> str:
        return (self.config.base_url or self.DEFAULT_BASE_URL).rstrip("/")

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.config.api_key}"}

    async def _post_json(self, path: str, payload: dict, request: GenerationRequest) -> dict:
        if not self.config.api_key:
            raise ProviderError(
                f"{self.name} API key not configured", provider=self.name, model=request.model
            )
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.config.timeout) as client:
            response = await client.post(path, json=payload, headers=self._headers())
            response.raise_for_status()
            return response.json()

    def _wrap_error(self, exc: Exception, request: GenerationRequest) -> ProviderError:
        if isinstance(exc, httpx.HTTPStatusError):
            status = exc.response.status_code
            detail = _error_detail(exc.response)
            if status == 429:
                retry_after = exc.response.headers.get("retry-after")
                return RateLimitError(
                    f"{self.name} rate limit: {detail}",
                    provider=self.name,
                    model=request.model,
                    retry_after=(
                        float(retry_after) if retry_after and retry_after.isdigit() else None
                    ),
                )
            return ProviderError(
                f"{self.name} API error ({status}): {detail}",
                provider=self.name,
                model=request.model,
                status_code=status,
                retryable=status >= 500,
            )
        if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
            return ProviderError(
                f"{self.name} connection error: {exc}",
                provider=self.name,
                model=request.model,
                retryable=True,
            )
        return super()._wrap_error(exc, request)


def _error_detail(response: httpx.Response) -> str:
    """Best-effort upstream error message from a failed response."""
    try:
        body: Any = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(body, dict):
        error = body.get("error", body)
        if isinstance(error, dict):
            return str(error.get("message") or error)
        return str(body.get("message") or error)
    return str(body)[:500]
