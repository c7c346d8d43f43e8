"""FastAPI application for the gateway."""

import asyncio
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.types import Receive, Scope, Send

from llmgate import __version__
from llmgate.config import get_settings
from llmgate.errors import GatewayError
from llmgate.logging import setup_logging
from llmgate.metrics import metrics
from llmgate.models import (
    BreakerSnapshot,
    ChatRequest,
    CostLogEntry,
    CostSummary,
    ErrorBody,
    RateLimitConfig,
)
from llmgate.repository import get_repository
from llmgate.service import StreamResult, get_service

logger = structlog.get_logger()


class RelayResponse(StreamingResponse):
    """Streams a ``StreamResult`` and always closes it afterwards.

    The result is closed even when the client disconnects before the body
    is read, so the provider connection is released and the request is
    accounted for.
    """

    def __init__(self, result: StreamResult, headers: dict[str, str] | None = None) -> None:
        super().__init__(result.body, media_type=result.media_type, headers=headers)
        self._result = result

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await asyncio.shield(self._result.aclose())


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan manager."""
    # Startup
    setup_logging()
    logger.info("llmgate_starting", version=__version__)

    repository = get_repository()
    try:
        await repository.connect()
    except Exception as e:
        logger.error("redis_connection_failed", error=str(e))
        raise

    # Builds the dispatcher; missing provider credentials stop startup here
    try:
        service = get_service()
    except GatewayError as e:
        logger.error("gateway_configuration_invalid", error=e.message)
        await repository.disconnect()
        raise

    yield

    # Shutdown
    await service.aclose()
    await repository.disconnect()
    logger.info("llmgate_stopped")


app = FastAPI(
    title="LLM Request Gateway",
    version=__version__,
    description="Admission control, response caching, circuit breaking and cost accounting for LLM calls",
    lifespan=lifespan,
)


# === Middleware ===


@app.middleware("http")
async def metrics_middleware(request: Request, call_next: Callable[[Request], Any]) -> Response:
    """Record HTTP metrics for each request."""
    start_time = time.perf_counter()

    response: Response = await call_next(request)

    duration = time.perf_counter() - start_time
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    method = request.method

    metrics.http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status=response.status_code,
    ).inc()

    metrics.http_request_duration.labels(
        method=method,
        endpoint=endpoint,
    ).observe(duration)

    return response


# === Health endpoints ===


@app.get("/health", tags=["Health"])
async def health() -> dict[str, Any]:
    """Health check endpoint."""
    repository = get_repository()
    redis_healthy = await repository.health_check()

    status = "healthy" if redis_healthy else "degraded"

    return {
        "status": status,
        "version": __version__,
        "checks": {
            "redis": "ok" if redis_healthy else "error",
        },
    }


@app.get("/ready", tags=["Health"])
async def ready() -> dict[str, str]:
    """Readiness check endpoint."""
    repository = get_repository()
    if not await repository.health_check():
        raise HTTPException(status_code=503, detail="Redis not available")
    return {"status": "ready"}


# === Metrics endpoint ===


@app.get("/metrics", tags=["Observability"])
async def prometheus_metrics() -> Response:
    """Prometheus metrics endpoint."""
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# === Rate limit config endpoints ===


@app.post("/rate-limits", response_model=RateLimitConfig, status_code=201, tags=["Rate Limits"])
async def save_rate_limit(config: RateLimitConfig) -> RateLimitConfig:
    """Create or replace the rate limit config for a caller."""
    service = get_service()
    return await service.save_rate_limit_config(config)


@app.get("/rate-limits/{caller_identity}", response_model=RateLimitConfig, tags=["Rate Limits"])
async def get_rate_limit(caller_identity: str) -> RateLimitConfig:
    """Get the rate limit config for a caller."""
    service = get_service()
    config = await service.get_rate_limit_config(caller_identity)
    if config is None:
        raise HTTPException(status_code=404, detail="Rate limit config not found")
    return config


@app.delete("/rate-limits/{caller_identity}", status_code=204, tags=["Rate Limits"])
async def delete_rate_limit(caller_identity: str) -> Response:
    """Delete the rate limit config for a caller."""
    service = get_service()
    deleted = await service.delete_rate_limit_config(caller_identity)
    if not deleted:
        raise HTTPException(status_code=404, detail="Rate limit config not found")
    return Response(status_code=204)


# === Gateway endpoint ===


@app.post(
    "/v1/chat/completions",
    tags=["Gateway"],
    responses={
        402: {"model": ErrorBody},
        429: {"model": ErrorBody},
        500: {"model": ErrorBody},
        503: {"model": ErrorBody},
    },
)
async def chat_completions(request: ChatRequest) -> Response:
    """Mediate a chat-completion call to the provider."""
    service = get_service()
    result = await service.complete(request)

    if isinstance(result, StreamResult):
        return RelayResponse(
            result,
            headers={"X-Cache": result.cache_status, "X-Gateway-Model": result.model},
        )

    return JSONResponse(
        content=result.payload,
        headers={"X-Cache": result.cache_status, "X-Gateway-Model": result.model},
    )


# === Reporting endpoints ===


@app.get("/breaker", response_model=BreakerSnapshot, tags=["Observability"])
async def breaker_state() -> BreakerSnapshot:
    """Current circuit breaker state."""
    service = get_service()
    return await service.breaker_snapshot()


@app.get("/costs", response_model=list[CostLogEntry], tags=["Costs"])
async def recent_costs(count: int = Query(100, ge=1, le=1000)) -> list[CostLogEntry]:
    """Most recent cost log entries, newest first."""
    service = get_service()
    return await service.recent_costs(count)


@app.get("/costs/{caller_identity}", response_model=CostSummary, tags=["Costs"])
async def cost_summary(
    caller_identity: str,
    month: str | None = Query(None, pattern=r"^\d{4}-\d{2}$"),
) -> CostSummary:
    """Monthly spend for a caller (defaults to the current UTC month)."""
    service = get_service()
    month = month or datetime.now(UTC).strftime("%Y-%m")
    return await service.cost_summary(caller_identity, month)


# === Error handlers ===


@app.exception_handler(GatewayError)
async def gateway_exception_handler(request: Request, exc: GatewayError) -> JSONResponse:
    """Render gateway errors as structured bodies."""
    headers = {}
    if exc.retry_after is not None:
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_body().model_dump(exclude_none=True),
        headers=headers,
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.exception("unhandled_exception", error=str(exc), path=request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error_kind": "internal_error", "message": "Internal server error"},
    )


def create_app() -> FastAPI:
    """Factory function to create the app."""
    return app
