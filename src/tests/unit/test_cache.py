"""Unit tests for the response cache."""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from llmgate.cache import ResponseCache, cache_key
from llmgate.models import ChatMessage
from tests.conftest import FALLBACK_MODEL, PRIMARY_MODEL, completion_payload


class TestCacheKey:
    """Tests for content-addressed keys."""

    def test_deterministic(self, sample_messages):
        assert cache_key(sample_messages, PRIMARY_MODEL) == cache_key(list(sample_messages), PRIMARY_MODEL)

    def test_hex_sha256(self, sample_messages):
        key = cache_key(sample_messages, PRIMARY_MODEL)

        assert len(key) == 64
        int(key, 16)

    def test_model_changes_key(self, sample_messages):
        assert cache_key(sample_messages, PRIMARY_MODEL) != cache_key(sample_messages, FALLBACK_MODEL)

    def test_order_matters(self, sample_messages):
        reversed_messages = list(reversed(sample_messages))

        assert cache_key(sample_messages, PRIMARY_MODEL) != cache_key(reversed_messages, PRIMARY_MODEL)

    def test_content_matters(self):
        a = [ChatMessage(role="user", content="hello")]
        b = [ChatMessage(role="user", content="hello!")]

        assert cache_key(a, PRIMARY_MODEL) != cache_key(b, PRIMARY_MODEL)

    def test_role_matters(self):
        a = [ChatMessage(role="user", content="hello")]
        b = [ChatMessage(role="assistant", content="hello")]

        assert cache_key(a, PRIMARY_MODEL) != cache_key(b, PRIMARY_MODEL)


class TestResponseCache:
    """Tests for ResponseCache against fake Redis."""

    @pytest.fixture
    def cache(self, repository, clock):
        return ResponseCache(repository, clock=clock)

    @pytest.mark.asyncio
    async def test_miss_when_empty(self, cache, sample_messages):
        assert await cache.lookup(sample_messages, PRIMARY_MODEL) is None

    @pytest.mark.asyncio
    async def test_store_then_hit(self, cache, sample_messages):
        payload = completion_payload()
        await cache.store(sample_messages, PRIMARY_MODEL, payload, 10, 7, Decimal("0.001"), 3600)

        entry = await cache.lookup(sample_messages, PRIMARY_MODEL)

        assert entry is not None
        assert entry.response == payload
        assert entry.input_tokens == 10
        assert entry.output_tokens == 7
        assert entry.cost_estimate == Decimal("0.001")
        assert entry.hit_count == 1

    @pytest.mark.asyncio
    async def test_hit_count_and_last_access(self, cache, clock, sample_messages):
        await cache.store(sample_messages, PRIMARY_MODEL, completion_payload(), 1, 1, Decimal("0"), 3600)

        await cache.lookup(sample_messages, PRIMARY_MODEL)
        clock.advance(10)
        entry = await cache.lookup(sample_messages, PRIMARY_MODEL)

        assert entry.hit_count == 2
        assert entry.last_accessed_at == clock.now

    @pytest.mark.asyncio
    async def test_expires_at_ttl(self, cache, clock, sample_messages):
        await cache.store(sample_messages, PRIMARY_MODEL, completion_payload(), 1, 1, Decimal("0"), 60)

        clock.advance(59)
        assert await cache.lookup(sample_messages, PRIMARY_MODEL) is not None

        clock.advance(1)
        assert await cache.lookup(sample_messages, PRIMARY_MODEL) is None

    @pytest.mark.asyncio
    async def test_other_model_misses(self, cache, sample_messages):
        await cache.store(sample_messages, PRIMARY_MODEL, completion_payload(), 1, 1, Decimal("0"), 3600)

        assert await cache.lookup(sample_messages, FALLBACK_MODEL) is None

    @pytest.mark.asyncio
    async def test_served_by_recorded(self, cache, sample_messages):
        await cache.store(
            sample_messages,
            PRIMARY_MODEL,
            completion_payload(model=FALLBACK_MODEL),
            1,
            1,
            Decimal("0"),
            3600,
            served_by=FALLBACK_MODEL,
        )

        entry = await cache.lookup(sample_messages, PRIMARY_MODEL)

        assert entry.model == FALLBACK_MODEL

    @pytest.mark.asyncio
    async def test_overwrite_resets_entry(self, cache, clock, sample_messages):
        await cache.store(sample_messages, PRIMARY_MODEL, completion_payload(content="old"), 1, 1, Decimal("0"), 60)
        await cache.lookup(sample_messages, PRIMARY_MODEL)

        await cache.store(sample_messages, PRIMARY_MODEL, completion_payload(content="new"), 1, 1, Decimal("0"), 60)
        entry = await cache.lookup(sample_messages, PRIMARY_MODEL)

        assert entry.response["choices"][0]["message"]["content"] == "new"
        assert entry.hit_count == 1

    @pytest.mark.asyncio
    async def test_lookup_failure_is_miss(self, clock, sample_messages):
        repo = MagicMock()
        repo.get_cache_entry = AsyncMock(side_effect=RedisConnectionError("down"))
        cache = ResponseCache(repo, clock=clock)

        assert await cache.lookup(sample_messages, PRIMARY_MODEL) is None

    @pytest.mark.asyncio
    async def test_store_failure_absorbed(self, clock, sample_messages):
        repo = MagicMock()
        repo.save_cache_entry = AsyncMock(side_effect=RedisConnectionError("down"))
        cache = ResponseCache(repo, clock=clock)

        result = await cache.store(sample_messages, PRIMARY_MODEL, completion_payload(), 1, 1, Decimal("0"), 60)

        assert result is None

    @pytest.mark.asyncio
    async def test_expired_entry_from_store_not_returned(self, repository, clock, sample_messages):
        cache = ResponseCache(repository, clock=clock)
        stale = await cache.store(sample_messages, PRIMARY_MODEL, completion_payload(), 1, 1, Decimal("0"), 60)
        repo = MagicMock()
        repo.get_cache_entry = AsyncMock(return_value=stale)
        clock.advance(120)

        assert await ResponseCache(repo, clock=clock).lookup(sample_messages, PRIMARY_MODEL) is None
