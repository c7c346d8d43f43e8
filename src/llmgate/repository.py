"""Redis repository for rate-limit configs, window counters, cached responses and logs."""

import json
from collections.abc import Mapping
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import redis.asyncio as redis
import structlog
from redis.exceptions import NoScriptError

from llmgate.config import get_settings
from llmgate.errors import StoreError
from llmgate.models import CacheEntry, CostLogEntry, CostSummary, RateLimitConfig, WindowKind

logger = structlog.get_logger()

COST_LOG_STREAM = "costlog"
AUDIT_STREAM = "audit"
STREAM_MAX_LEN = 100_000

# Monthly cost totals are kept as whole nano-dollars so HINCRBY sums them exactly
NANOS_PER_USD = Decimal(1_000_000_000)

# Kept in storage a while past logical expiry; lookups never return it.
CACHE_RETENTION_SECONDS = 3600

# Lua script for cache lookup (atomic expiry check + hit accounting)
CACHE_LOOKUP_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])

local expires_at = redis.call('HGET', key, 'expires_at')
if expires_at == false then
    return false
end

if tonumber(expires_at) <= now then
    return false
end

redis.call('HINCRBY', key, 'hit_count', 1)
redis.call('HSET', key, 'last_accessed_at', ARGV[1])
return redis.call('HGETALL', key)
"""


def window_key(caller_identity: str, window: WindowKind, now: float) -> str:
    return f"ratelimit:{caller_identity}:{window.value}:{window.start(now)}"


def cost_summary_key(caller_identity: str, month: str) -> str:
    return f"costsum:{caller_identity}:{month}"


def usd_to_nanos(amount: Decimal) -> int:
    """Convert a USD amount to whole nano-dollars, rounding half to even."""
    return int((amount * NANOS_PER_USD).to_integral_value())


class RedisRepository:
    """Repository for Redis operations."""

    def __init__(self) -> None:
        self._client: redis.Redis | None = None
        self._cache_lookup_sha: str | None = None

    async def connect(self) -> None:
        """Connect to Redis."""
        settings = get_settings()
        self._client = redis.Redis(
            host=settings.redis_host,
            port=settings.redis_port,
            password=settings.redis_password or None,
            db=settings.redis_db,
            decode_responses=True,
            max_connections=settings.redis_pool_size,
        )
        await self._client.ping()
        logger.info("redis_connected", host=settings.redis_host, port=settings.redis_port)

        self._cache_lookup_sha = await self._client.script_load(CACHE_LOOKUP_SCRIPT)
        logger.info("lua_scripts_loaded", scripts=["cache_lookup"])

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._client:
            await self._client.aclose()
            logger.info("redis_disconnected")

    async def health_check(self) -> bool:
        """Check if Redis is healthy."""
        try:
            if self._client:
                await self._client.ping()
                return True
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
        return False

    def _require_client(self) -> redis.Redis:
        if not self._client:
            raise StoreError("Redis not connected")
        return self._client

    # === Rate limit config operations ===

    async def save_rate_limit_config(self, config: RateLimitConfig) -> RateLimitConfig:
        """Create or replace the config for a caller."""
        client = self._require_client()
        await client.set(config.get_key(), config.model_dump_json())
        logger.info("rate_limit_config_saved", caller_identity=config.caller_identity)
        return config

    async def get_rate_limit_config(self, caller_identity: str) -> RateLimitConfig | None:
        """Get the config for a caller, if any."""
        client = self._require_client()
        data = await client.get(f"ratelimit:config:{caller_identity}")
        if data:
            return RateLimitConfig.model_validate_json(data)
        return None

    async def delete_rate_limit_config(self, caller_identity: str) -> bool:
        """Delete the config for a caller."""
        client = self._require_client()
        deleted = await client.delete(f"ratelimit:config:{caller_identity}")
        logger.info(
            "rate_limit_config_deleted", caller_identity=caller_identity, deleted=deleted > 0
        )
        return bool(deleted > 0)

    # === Window counter operations ===

    async def get_window_counts(self, caller_identity: str, now: float) -> dict[WindowKind, int]:
        """Read the current minute, hour and day counters for a caller."""
        client = self._require_client()
        windows = list(WindowKind)
        values = await client.mget([window_key(caller_identity, w, now) for w in windows])
        return {w: int(v) if v else 0 for w, v in zip(windows, values)}

    async def increment_windows(self, caller_identity: str, now: float) -> None:
        """Increment all three window counters for a caller.

        Each counter expires once its window has rolled over twice.
        """
        client = self._require_client()
        async with client.pipeline(transaction=False) as pipe:
            for window in WindowKind:
                key = window_key(caller_identity, window, now)
                pipe.incr(key)
                pipe.expire(key, window.seconds * 2)
            await pipe.execute()

        logger.debug("rate_limit_windows_incremented", caller_identity=caller_identity)

    # === Cache operations ===

    async def get_cache_entry(self, cache_key: str, now: float) -> CacheEntry | None:
        """Fetch a live cache entry and count the hit.

        Entries whose ``expires_at`` is not after ``now`` are treated as absent.
        """
        client = self._require_client()
        if not self._cache_lookup_sha:
            self._cache_lookup_sha = await client.script_load(CACHE_LOOKUP_SCRIPT)

        try:
            result = await client.evalsha(  # type: ignore[misc]
                self._cache_lookup_sha,
                1,
                f"cache:{cache_key}",
                repr(now),
            )
        except NoScriptError:
            # Script was flushed, reload it
            self._cache_lookup_sha = await client.script_load(CACHE_LOOKUP_SCRIPT)
            return await self.get_cache_entry(cache_key, now)

        if not result:
            return None

        fields = dict(zip(result[::2], result[1::2]))
        return _cache_entry_from_hash(cache_key, fields)

    async def save_cache_entry(self, entry: CacheEntry) -> None:
        """Store a cache entry, replacing any previous one under the same key."""
        client = self._require_client()
        key = f"cache:{entry.cache_key}"
        mapping = {
            "model": entry.model,
            "response_json": json.dumps(entry.response),
            "input_tokens": entry.input_tokens,
            "output_tokens": entry.output_tokens,
            "cost_estimate": str(entry.cost_estimate),
            "created_at": repr(entry.created_at),
            "expires_at": repr(entry.expires_at),
            "hit_count": entry.hit_count,
        }
        ttl = max(1, int(entry.expires_at - entry.created_at)) + CACHE_RETENTION_SECONDS

        async with client.pipeline(transaction=True) as pipe:
            pipe.delete(key)
            pipe.hset(key, mapping=mapping)
            pipe.expire(key, ttl)
            await pipe.execute()

        logger.debug("cache_entry_saved", cache_key=entry.cache_key, model=entry.model)

    # === Cost log operations ===

    async def append_cost_log(self, entry: CostLogEntry) -> None:
        """Append an entry to the cost log and fold it into the monthly summary."""
        client = self._require_client()
        month = entry.created_at.strftime("%Y-%m")
        summary_key = cost_summary_key(entry.caller_identity, month)

        async with client.pipeline(transaction=False) as pipe:
            pipe.xadd(
                COST_LOG_STREAM,
                {"entry": entry.model_dump_json()},
                maxlen=STREAM_MAX_LEN,
                approximate=True,
            )
            pipe.hincrby(summary_key, "request_count", 1)
            pipe.hincrby(summary_key, "cached_count", int(entry.cached))
            pipe.hincrby(summary_key, "failed_count", int(not entry.success))
            pipe.hincrby(summary_key, "input_tokens", entry.input_tokens)
            pipe.hincrby(summary_key, "output_tokens", entry.output_tokens)
            pipe.hincrby(summary_key, "total_cost_nanos", usd_to_nanos(entry.cost_usd))
            await pipe.execute()

    async def get_cost_summary(self, caller_identity: str, month: str) -> CostSummary:
        """Get the monthly spend summary for a caller."""
        client = self._require_client()
        data = await client.hgetall(cost_summary_key(caller_identity, month))  # type: ignore[misc]
        return CostSummary(
            caller_identity=caller_identity,
            month=month,
            request_count=int(data.get("request_count", 0)),
            cached_count=int(data.get("cached_count", 0)),
            failed_count=int(data.get("failed_count", 0)),
            input_tokens=int(data.get("input_tokens", 0)),
            output_tokens=int(data.get("output_tokens", 0)),
            total_cost_usd=Decimal(int(data.get("total_cost_nanos", 0))) / NANOS_PER_USD,
        )

    async def get_recent_cost_log(self, count: int = 100) -> list[CostLogEntry]:
        """Get the most recent cost log entries, newest first."""
        client = self._require_client()
        rows = await client.xrevrange(COST_LOG_STREAM, count=count)
        return [CostLogEntry.model_validate_json(fields["entry"]) for _, fields in rows]

    # === Audit sink ===

    async def append_audit(self, event: str, **fields: Any) -> None:
        """Append a structured event to the audit stream."""
        client = self._require_client()
        record = {
            "event": event,
            "timestamp": datetime.now(UTC).isoformat(),
            "data": json.dumps(fields, default=str),
        }
        await client.xadd(AUDIT_STREAM, record, maxlen=STREAM_MAX_LEN, approximate=True)


def _cache_entry_from_hash(cache_key: str, fields: Mapping[str, str]) -> CacheEntry:
    last_accessed = fields.get("last_accessed_at")
    return CacheEntry(
        cache_key=cache_key,
        model=fields["model"],
        response=json.loads(fields["response_json"]),
        input_tokens=int(fields.get("input_tokens", 0)),
        output_tokens=int(fields.get("output_tokens", 0)),
        cost_estimate=Decimal(fields.get("cost_estimate", "0")),
        created_at=float(fields["created_at"]),
        expires_at=float(fields["expires_at"]),
        hit_count=int(fields.get("hit_count", 0)),
        last_accessed_at=float(last_accessed) if last_accessed else None,
    )


# Singleton instance
_repository: RedisRepository | None = None


def get_repository() -> RedisRepository:
    """Get the repository singleton."""
    global _repository
    if _repository is None:
        _repository = RedisRepository()
    return _repository
