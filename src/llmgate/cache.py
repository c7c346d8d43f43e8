"""Content-addressed response cache with lazy TTL expiry."""

import hashlib
import json
import time
from collections.abc import Callable, Sequence
from decimal import Decimal
from typing import Any

import structlog
from redis.exceptions import RedisError

from llmgate.errors import StoreError
from llmgate.metrics import metrics
from llmgate.models import CacheEntry, ChatMessage

logger = structlog.get_logger()


def cache_key(messages: Sequence[ChatMessage], model: str) -> str:
    """Deterministic SHA-256 over the model and the ordered message list."""
    material = json.dumps(
        {"model": model, "messages": [m.model_dump() for m in messages]},
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


class ResponseCache:
    """Memoizes completed non-streaming responses.

    Store failures degrade to a miss on lookup and a no-op on write.
    """

    def __init__(self, repository: Any, clock: Callable[[], float] = time.time) -> None:
        self._repository = repository
        self._clock = clock

    async def lookup(self, messages: Sequence[ChatMessage], model: str) -> CacheEntry | None:
        key = cache_key(messages, model)
        now = self._clock()

        try:
            entry = await self._repository.get_cache_entry(key, now)
        except (RedisError, StoreError) as e:
            metrics.store_errors_total.labels(subsystem="cache").inc()
            metrics.cache_lookups_total.labels(result="error").inc()
            logger.warning("cache_lookup_failed", cache_key=key, error=str(e))
            return None

        # Expired entries are never returned, whatever the store reports
        if entry is None or entry.is_expired(now):
            metrics.cache_lookups_total.labels(result="miss").inc()
            logger.debug("cache_miss", cache_key=key, model=model)
            return None

        metrics.cache_lookups_total.labels(result="hit").inc()
        logger.info("cache_hit", cache_key=key, model=model, hit_count=entry.hit_count)
        return entry

    async def store(
        self,
        messages: Sequence[ChatMessage],
        model: str,
        response: dict[str, Any],
        input_tokens: int,
        output_tokens: int,
        cost: Decimal,
        ttl_seconds: int,
        served_by: str | None = None,
    ) -> CacheEntry | None:
        """Store a response under the key of the requested model.

        ``served_by`` records the model that actually produced the response
        when it differs from the requested one.
        """
        now = self._clock()
        entry = CacheEntry(
            cache_key=cache_key(messages, model),
            model=served_by or model,
            response=response,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_estimate=cost,
            created_at=now,
            expires_at=now + ttl_seconds,
        )

        try:
            await self._repository.save_cache_entry(entry)
        except (RedisError, StoreError) as e:
            metrics.store_errors_total.labels(subsystem="cache").inc()
            logger.warning("cache_store_failed", cache_key=entry.cache_key, error=str(e))
            return None

        logger.debug("cache_stored", cache_key=entry.cache_key, ttl_seconds=ttl_seconds)
        return entry
