"""Gateway orchestration: admission, cache, breaker, dispatch and accounting."""

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

import structlog
from redis.exceptions import RedisError

from llmgate.accounting import CostAccountant, TokenEstimator
from llmgate.breaker import CircuitBreaker
from llmgate.cache import ResponseCache
from llmgate.config import Settings, get_settings
from llmgate.dispatcher import Dispatcher, ProviderStream
from llmgate.errors import AdmissionDenied, StoreError, UpstreamError, UpstreamUnavailable
from llmgate.limiter import RateLimiter
from llmgate.metrics import metrics
from llmgate.models import (
    BreakerSnapshot,
    ChatRequest,
    CostLogEntry,
    CostSummary,
    RateLimitConfig,
)
from llmgate.repository import RedisRepository, get_repository

logger = structlog.get_logger()

CACHE_HIT = "HIT"
CACHE_MISS = "MISS"
CANCELLED_MESSAGE = "cancelled by caller"


@dataclass
class CompletionResult:
    """Non-streaming outcome, from the provider or the cache."""

    payload: dict[str, Any]
    model: str
    cache_status: str


@dataclass
class StreamResult:
    """Streaming outcome; ``body`` relays the provider bytes unmodified.

    Whoever takes the result must call ``aclose`` once done with it, whether
    or not the body was iterated. That releases the provider connection and
    writes the request's cost log entry if the relay has not already.
    """

    body: AsyncIterator[bytes]
    model: str
    media_type: str
    cache_status: str = CACHE_MISS
    on_close: Optional[Callable[[], Awaitable[None]]] = None

    async def aclose(self) -> None:
        aclose = getattr(self.body, "aclose", None)
        if aclose is not None:
            await aclose()
        if self.on_close is not None:
            await self.on_close()


class _StreamRelay:
    """One provider stream in flight; bookkeeping is settled exactly once."""

    def __init__(
        self,
        service: "GatewayService",
        stream: ProviderStream,
        request: ChatRequest,
        input_tokens: int,
        start_time: float,
    ) -> None:
        self._service = service
        self._stream = stream
        self._request = request
        self._input_tokens = input_tokens
        self._start_time = start_time
        self._settled = False

    async def body(self) -> AsyncIterator[bytes]:
        """Pass the provider stream through, settling bookkeeping when it ends.

        Output tokens are unknown for streams; only the input is counted.
        """
        cancelled = False
        error: UpstreamError | None = None
        try:
            async for chunk in self._stream.iter_bytes():
                yield chunk
        except (asyncio.CancelledError, GeneratorExit):
            cancelled = True
            raise
        except UpstreamError as e:
            error = e
        except Exception as e:
            error = UpstreamUnavailable(f"Provider stream failed: {e}")
            raise
        finally:
            await asyncio.shield(self.settle(cancelled=cancelled, error=error))

    async def settle(self, cancelled: bool = True, error: UpstreamError | None = None) -> None:
        """Close the provider stream and write the outcome.

        Called without arguments for a body that was dropped before it ended,
        which counts as a caller cancellation.
        """
        if self._settled:
            return
        self._settled = True
        try:
            await self._service._finish_stream(
                self._stream, self._request, self._input_tokens, self._start_time, cancelled, error
            )
        finally:
            self._service._open_relays.discard(self)


class GatewayService:
    """Sequences every request through the gateway.

    Rate limiter, then cache (non-streaming only), then breaker model
    selection, then dispatch. Each request writes exactly one cost log entry
    whichever way it ends.
    """

    def __init__(
        self,
        repository: Optional[RedisRepository] = None,
        dispatcher: Optional[Dispatcher] = None,
        settings: Optional[Settings] = None,
        estimator: Optional[TokenEstimator] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or get_repository()
        self._dispatcher = dispatcher or Dispatcher(self._settings)

        self.limiter = RateLimiter(self._repository, clock=clock)
        self.cache = ResponseCache(self._repository, clock=clock)
        self.accountant = CostAccountant(self._repository, estimator=estimator)
        self.breaker = CircuitBreaker(
            failure_threshold=self._settings.breaker_failure_threshold,
            cooldown_seconds=self._settings.breaker_cooldown_seconds,
            fallback_models=self._settings.fallback_models,
            audit=self._audit,
            clock=clock,
        )
        self._open_relays: set[_StreamRelay] = set()

    async def aclose(self) -> None:
        """Settle streams nobody closed, then release the provider client."""
        for relay in list(self._open_relays):
            await relay.settle()
        await self._dispatcher.aclose()

    # === Rate limit config management ===

    async def save_rate_limit_config(self, config: RateLimitConfig) -> RateLimitConfig:
        saved = await self._repository.save_rate_limit_config(config)
        logger.info(
            "rate_limit_config_updated",
            caller_identity=config.caller_identity,
            requests_per_minute=config.requests_per_minute,
            requests_per_hour=config.requests_per_hour,
            requests_per_day=config.requests_per_day,
        )
        return saved

    async def get_rate_limit_config(self, caller_identity: str) -> RateLimitConfig | None:
        return await self._repository.get_rate_limit_config(caller_identity)

    async def delete_rate_limit_config(self, caller_identity: str) -> bool:
        return await self._repository.delete_rate_limit_config(caller_identity)

    # === Reporting ===

    async def breaker_snapshot(self) -> BreakerSnapshot:
        return await self.breaker.snapshot()

    async def cost_summary(self, caller_identity: str, month: str) -> CostSummary:
        return await self._repository.get_cost_summary(caller_identity, month)

    async def recent_costs(self, count: int) -> list[CostLogEntry]:
        return await self._repository.get_recent_cost_log(count)

    # === Request handling ===

    async def complete(self, request: ChatRequest) -> CompletionResult | StreamResult:
        """Handle one gateway request.

        Raises:
            AdmissionDenied: the caller is over a rate limit
            UpstreamError: the provider call failed
        """
        start_time = time.perf_counter()
        model = request.model or self._settings.default_model

        decision = await self.limiter.admit(request.caller_identity, request.priority)
        if not decision.allowed:
            await self._record(request, model, start_time, success=False, error_message="admission_denied")
            metrics.requests_total.labels(outcome="denied", priority=request.priority.value).inc()
            window = decision.window.value if decision.window else None
            raise AdmissionDenied(decision.retry_after_seconds, window)

        use_cache = not request.stream and not request.skip_cache
        if use_cache:
            entry = await self.cache.lookup(request.messages, model)
            if entry is not None:
                await self._record(
                    request,
                    entry.model,
                    start_time,
                    success=True,
                    cached=True,
                    input_tokens=entry.input_tokens,
                    output_tokens=entry.output_tokens,
                    cost_usd=entry.cost_estimate,
                )
                metrics.requests_total.labels(outcome="cache_hit", priority=request.priority.value).inc()
                return CompletionResult(payload=entry.response, model=entry.model, cache_status=CACHE_HIT)

        dispatch_model = await self.breaker.select_model(model)
        input_tokens = self.accountant.estimate_tokens(request.messages)

        if request.stream:
            return await self._open_stream(request, dispatch_model, input_tokens, start_time)

        try:
            result = await self._dispatcher.dispatch(
                request.messages,
                dispatch_model,
                max_tokens=request.max_tokens,
                temperature=request.temperature,
            )
        except UpstreamError as e:
            await self._dispatch_failed(request, dispatch_model, start_time, e)
            raise
        except asyncio.CancelledError:
            await asyncio.shield(self._cancelled(request, dispatch_model, start_time))
            raise

        output_tokens = self.accountant.estimate_output_tokens(result.payload)
        cost = self.accountant.cost(dispatch_model, input_tokens, output_tokens)

        await self.breaker.record_success()

        if use_cache:
            await self.cache.store(
                request.messages,
                model,
                result.payload,
                input_tokens,
                output_tokens,
                cost,
                request.cache_ttl_seconds or self._settings.default_cache_ttl_seconds,
                served_by=dispatch_model,
            )

        await self._record(
            request,
            dispatch_model,
            start_time,
            success=True,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=cost,
        )
        metrics.requests_total.labels(outcome="success", priority=request.priority.value).inc()
        return CompletionResult(payload=result.payload, model=dispatch_model, cache_status=CACHE_MISS)

    async def _open_stream(
        self, request: ChatRequest, model: str, input_tokens: int, start_time: float
    ) -> StreamResult:
        try:
            stream = await self._dispatcher.open_stream(
                request.messages,
                model,
                max_tokens=request.max_tokens,
                temperature=request.temperature,
            )
        except UpstreamError as e:
            await self._dispatch_failed(request, model, start_time, e)
            raise
        except asyncio.CancelledError:
            await asyncio.shield(self._cancelled(request, model, start_time))
            raise

        relay = _StreamRelay(self, stream, request, input_tokens, start_time)
        self._open_relays.add(relay)
        return StreamResult(
            body=relay.body(),
            model=model,
            media_type=stream.media_type,
            on_close=relay.settle,
        )

    async def _finish_stream(
        self,
        stream: ProviderStream,
        request: ChatRequest,
        input_tokens: int,
        start_time: float,
        cancelled: bool,
        error: UpstreamError | None,
    ) -> None:
        await stream.aclose()

        if cancelled:
            await self._cancelled(request, stream.model, start_time)
            return

        if error is not None:
            logger.error(
                "stream_interrupted",
                caller_identity=request.caller_identity,
                model=stream.model,
                error=error.message,
            )
            await self._dispatch_failed(request, stream.model, start_time, error)
            return

        await self.breaker.record_success()
        await self._record(
            request,
            stream.model,
            start_time,
            success=True,
            input_tokens=input_tokens,
            cost_usd=self.accountant.cost(stream.model, input_tokens, 0),
        )
        metrics.requests_total.labels(outcome="stream_success", priority=request.priority.value).inc()

    async def _dispatch_failed(
        self, request: ChatRequest, model: str, start_time: float, error: UpstreamError
    ) -> None:
        await self.breaker.record_failure(model, error.error_kind)
        await self._audit(
            "dispatch_failed",
            caller_identity=request.caller_identity,
            model=model,
            error_kind=error.error_kind,
            error_message=error.message,
            duration_ms=_elapsed_ms(start_time),
        )
        await self._record(request, model, start_time, success=False, error_message=error.message)
        metrics.requests_total.labels(outcome="failed", priority=request.priority.value).inc()

    async def _cancelled(self, request: ChatRequest, model: str, start_time: float) -> None:
        logger.info("request_cancelled", caller_identity=request.caller_identity, model=model)
        await self._record(request, model, start_time, success=False, error_message=CANCELLED_MESSAGE)
        metrics.requests_total.labels(outcome="cancelled", priority=request.priority.value).inc()

    async def _record(
        self,
        request: ChatRequest,
        model: str,
        start_time: float,
        *,
        success: bool,
        cached: bool = False,
        input_tokens: int = 0,
        output_tokens: int = 0,
        cost_usd: Decimal = Decimal("0"),
        error_message: str | None = None,
    ) -> CostLogEntry:
        return await self.accountant.log(
            caller_identity=request.caller_identity,
            model=model,
            priority=request.priority,
            latency_ms=_elapsed_ms(start_time),
            success=success,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=cost_usd,
            cached=cached,
            error_message=error_message,
        )

    async def _audit(self, event: str, **fields: Any) -> None:
        try:
            await self._repository.append_audit(event, **fields)
        except (RedisError, StoreError) as e:
            metrics.store_errors_total.labels(subsystem="audit").inc()
            logger.error("audit_write_failed", audit_event=event, error=str(e))


def _elapsed_ms(start_time: float) -> int:
    return int((time.perf_counter() - start_time) * 1000)


# Singleton instance
_service: Optional[GatewayService] = None


def get_service() -> GatewayService:
    """Get the service singleton."""
    global _service
    if _service is None:
        _service = GatewayService()
    return _service
