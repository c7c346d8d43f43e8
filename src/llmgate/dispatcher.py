"""Outbound calls to the provider's chat-completions endpoint."""

import time
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from llmgate.config import Settings, get_settings
from llmgate.errors import (
    ConfigurationError,
    QuotaExhausted,
    UpstreamError,
    UpstreamRateLimited,
    UpstreamUnavailable,
)
from llmgate.metrics import metrics
from llmgate.models import ChatMessage

logger = structlog.get_logger()

ERROR_EXCERPT_CHARS = 200


@dataclass
class ProviderResult:
    """A completed non-streaming provider response."""

    payload: dict[str, Any]
    model: str
    latency_ms: int


class ProviderStream:
    """An open event-stream response from the provider.

    Iterating yields the raw body bytes unmodified. The underlying
    connection is released by ``aclose``.
    """

    def __init__(self, response: httpx.Response, model: str) -> None:
        self._response = response
        self.model = model

    @property
    def media_type(self) -> str:
        return self._response.headers.get("content-type", "text/event-stream")

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.aiter_bytes():
                yield chunk
        except (httpx.HTTPError, httpx.StreamError) as e:
            raise UpstreamUnavailable(f"Provider stream interrupted: {e}") from e

    async def aclose(self) -> None:
        await self._response.aclose()


def build_payload(
    messages: Sequence[ChatMessage],
    model: str,
    stream: bool,
    max_tokens: int | None = None,
    temperature: float | None = None,
) -> dict[str, Any]:
    """Build the chat-completions request body.

    gpt-5 models take ``max_completion_tokens`` and reject ``temperature``.
    """
    payload: dict[str, Any] = {
        "model": model,
        "messages": [m.model_dump() for m in messages],
        "stream": stream,
    }
    if model.startswith("gpt-5"):
        if max_tokens:
            payload["max_completion_tokens"] = max_tokens
    else:
        if max_tokens:
            payload["max_tokens"] = max_tokens
        if temperature is not None:
            payload["temperature"] = temperature
    return payload


def _retry_after_header(response: httpx.Response) -> int | None:
    value = response.headers.get("retry-after")
    if value and value.isdigit():
        return int(value)
    return None


def error_for_status(response: httpx.Response, body: str) -> UpstreamError:
    """Map a non-2xx provider response to a typed error."""
    status = response.status_code
    excerpt = body[:ERROR_EXCERPT_CHARS]
    if status == 429:
        return UpstreamRateLimited(
            f"Provider rate limit exceeded: {excerpt}",
            retry_after=_retry_after_header(response),
        )
    if status == 402:
        return QuotaExhausted(f"Provider quota exhausted: {excerpt}")
    return UpstreamUnavailable(f"Provider error ({status}): {excerpt}")


class Dispatcher:
    """Executes chat-completion calls against the configured provider."""

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        if not self._settings.provider_api_key:
            raise ConfigurationError("Provider API key is not configured (LLMGATE_PROVIDER_API_KEY)")

        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(self._settings.provider_timeout_seconds)
        )
        self._headers = {
            "Authorization": f"Bearer {self._settings.provider_api_key}",
            "Content-Type": "application/json",
        }

    async def aclose(self) -> None:
        await self._client.aclose()

    async def dispatch(
        self,
        messages: Sequence[ChatMessage],
        model: str,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> ProviderResult:
        """Execute a non-streaming call.

        Raises:
            UpstreamRateLimited: provider answered 429
            QuotaExhausted: provider answered 402
            UpstreamUnavailable: any other failure, including timeouts
        """
        payload = build_payload(messages, model, False, max_tokens, temperature)
        start_time = time.perf_counter()

        try:
            response = await self._client.post(
                self._settings.provider_api_url,
                json=payload,
                headers=self._headers,
                timeout=self._settings.provider_timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise self._failed(model, UpstreamUnavailable(f"Provider timed out: {e}")) from e
        except httpx.TransportError as e:
            raise self._failed(model, UpstreamUnavailable(f"Provider unreachable: {e}")) from e

        duration = time.perf_counter() - start_time
        metrics.dispatch_duration.labels(model=model).observe(duration)

        if response.is_error:
            raise self._failed(model, error_for_status(response, response.text))

        try:
            data = response.json()
        except ValueError as e:
            raise self._failed(model, UpstreamUnavailable("Provider returned invalid JSON")) from e

        if not isinstance(data, dict):
            raise self._failed(model, UpstreamUnavailable("Provider returned a non-object body"))

        metrics.dispatch_total.labels(model=model, result="success").inc()
        logger.info("dispatch_succeeded", model=model, duration_ms=int(duration * 1000))
        return ProviderResult(payload=data, model=model, latency_ms=int(duration * 1000))

    async def open_stream(
        self,
        messages: Sequence[ChatMessage],
        model: str,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> ProviderStream:
        """Start a streaming call and return once the provider has answered.

        Raises the same typed errors as ``dispatch`` when the provider
        rejects the call before any body is relayed.
        """
        payload = build_payload(messages, model, True, max_tokens, temperature)
        request = self._client.build_request(
            "POST",
            self._settings.provider_api_url,
            json=payload,
            headers=self._headers,
            timeout=self._settings.provider_timeout_seconds,
        )

        try:
            response = await self._client.send(request, stream=True)
        except httpx.TimeoutException as e:
            raise self._failed(model, UpstreamUnavailable(f"Provider timed out: {e}")) from e
        except httpx.TransportError as e:
            raise self._failed(model, UpstreamUnavailable(f"Provider unreachable: {e}")) from e

        if response.is_error:
            try:
                body = (await response.aread()).decode("utf-8", errors="replace")
            finally:
                await response.aclose()
            raise self._failed(model, error_for_status(response, body))

        logger.info("stream_opened", model=model)
        return ProviderStream(response, model)

    def _failed(self, model: str, error: UpstreamError) -> UpstreamError:
        metrics.dispatch_total.labels(model=model, result=error.error_kind).inc()
        logger.warning("dispatch_failed", model=model, error_kind=error.error_kind, error=error.message)
        return error
