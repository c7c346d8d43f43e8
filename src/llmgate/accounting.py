"""Token estimation, pricing and the cost log."""

import math
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Protocol

import structlog
from redis.exceptions import RedisError

from llmgate.errors import StoreError
from llmgate.metrics import metrics
from llmgate.models import ChatMessage, CostLogEntry, Priority

logger = structlog.get_logger()

CHARS_PER_TOKEN = 4
ONE_MILLION = Decimal(1_000_000)


class TokenEstimator(Protocol):
    """Anything that can turn a set of texts into a token count."""

    def estimate(self, texts: Iterable[str]) -> int: ...


class CharacterEstimator:
    """Heuristic estimator: one token per four characters, rounded up."""

    def estimate(self, texts: Iterable[str]) -> int:
        total = sum(len(text) for text in texts)
        return math.ceil(total / CHARS_PER_TOKEN)


@dataclass(frozen=True)
class ModelPricing:
    """USD price per million tokens."""

    input_per_million: Decimal
    output_per_million: Decimal


DEFAULT_PRICING_KEY = "default"

PRICING_TABLE: dict[str, ModelPricing] = {
    "gemini-2.0-flash": ModelPricing(Decimal("0.10"), Decimal("0.40")),
    "gemini-2.0-flash-lite": ModelPricing(Decimal("0.075"), Decimal("0.30")),
    "gemini-1.5-flash": ModelPricing(Decimal("0.075"), Decimal("0.30")),
    "gemini-1.5-pro": ModelPricing(Decimal("1.25"), Decimal("5.00")),
    "gemini-2.5-flash": ModelPricing(Decimal("0.30"), Decimal("2.50")),
    "gemini-2.5-pro": ModelPricing(Decimal("1.25"), Decimal("10.00")),
    "gpt-4o": ModelPricing(Decimal("2.50"), Decimal("10.00")),
    "gpt-4o-mini": ModelPricing(Decimal("0.15"), Decimal("0.60")),
    DEFAULT_PRICING_KEY: ModelPricing(Decimal("0.10"), Decimal("0.40")),
}


def get_pricing(model: str) -> ModelPricing:
    """Get pricing for a model, falling back to the default row."""
    return PRICING_TABLE.get(model, PRICING_TABLE[DEFAULT_PRICING_KEY])


def response_texts(payload: dict[str, Any]) -> list[str]:
    """Extract the generated message contents from a chat-completion payload."""
    texts = []
    choices = payload.get("choices")
    if not isinstance(choices, list):
        return texts
    for choice in choices:
        if not isinstance(choice, dict):
            continue
        message = choice.get("message")
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            texts.append(message["content"])
    return texts


class CostAccountant:
    """Estimates tokens and cost, and writes the append-only cost log.

    The repository is any object exposing ``append_cost_log(entry)``.
    """

    def __init__(self, repository: Any, estimator: TokenEstimator | None = None) -> None:
        self._repository = repository
        self._estimator = estimator or CharacterEstimator()

    def estimate_tokens(self, messages: Iterable[ChatMessage]) -> int:
        """Estimate the input tokens of a message set."""
        return self._estimator.estimate(message.content for message in messages)

    def estimate_output_tokens(self, payload: dict[str, Any]) -> int:
        """Output tokens from provider usage, or an estimate over the generated text."""
        usage = payload.get("usage")
        reported = usage.get("completion_tokens") if isinstance(usage, dict) else None
        if isinstance(reported, int) and not isinstance(reported, bool) and reported >= 0:
            return reported
        return self._estimator.estimate(response_texts(payload))

    def cost(self, model: str, input_tokens: int, output_tokens: int) -> Decimal:
        """Compute the USD cost of a call."""
        pricing = get_pricing(model)
        return (
            Decimal(input_tokens) / ONE_MILLION * pricing.input_per_million
            + Decimal(output_tokens) / ONE_MILLION * pricing.output_per_million
        )

    async def log(
        self,
        *,
        caller_identity: str,
        model: str,
        priority: Priority,
        latency_ms: int,
        success: bool,
        input_tokens: int = 0,
        output_tokens: int = 0,
        cost_usd: Decimal = Decimal("0"),
        cached: bool = False,
        error_message: str | None = None,
    ) -> CostLogEntry:
        """Record one request outcome.

        A store failure is logged and absorbed; the entry is still returned
        and emitted to the structured log.
        """
        entry = CostLogEntry(
            caller_identity=caller_identity,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=cost_usd,
            cached=cached,
            priority=priority,
            latency_ms=latency_ms,
            success=success,
            error_message=error_message,
            created_at=datetime.now(UTC),
        )

        try:
            await self._repository.append_cost_log(entry)
        except (RedisError, StoreError) as e:
            metrics.store_errors_total.labels(subsystem="cost_log").inc()
            logger.error("cost_log_write_failed", caller_identity=caller_identity, error=str(e))

        if not cached:
            metrics.tokens_total.labels(model=model, direction="input").inc(input_tokens)
            metrics.tokens_total.labels(model=model, direction="output").inc(output_tokens)
            metrics.cost_usd_total.labels(model=model).inc(float(cost_usd))

        logger.info(
            "cost_logged",
            caller_identity=caller_identity,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=str(cost_usd),
            cached=cached,
            success=success,
            latency_ms=latency_ms,
            error=error_message,
        )
        return entry
