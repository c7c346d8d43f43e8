"""Pytest configuration and fixtures."""

import json
from collections import deque
from typing import Any

import fakeredis
import fakeredis.aioredis
import httpx
import pytest

from llmgate.config import Settings

PROVIDER_URL = "https://provider.test/v1/chat/completions"
PRIMARY_MODEL = "gemini-2.0-flash"
FALLBACK_MODEL = "gemini-2.0-flash-lite"

# 2023-11-14T22:13:20Z, 20 seconds into its minute
START_TIME = 1_700_000_000.0


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, now: float = START_TIME) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def completion_payload(model: str = PRIMARY_MODEL, content: str = "Hello there!", usage: bool = True) -> dict:
    payload: dict[str, Any] = {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
    }
    if usage:
        payload["usage"] = {"prompt_tokens": 12, "completion_tokens": 7, "total_tokens": 19}
    return payload


class ProviderStub:
    """Scripted chat-completions endpoint for httpx.MockTransport.

    Queued responses are served in order; once the queue is empty every call
    succeeds with a completion echoing the requested model.
    """

    def __init__(self) -> None:
        self.calls: list[dict] = []
        self._queue: deque[httpx.Response | Exception] = deque()

    def queue(self, *responses: httpx.Response | Exception) -> None:
        self._queue.extend(responses)

    def fail(self, times: int, status: int = 500) -> None:
        for _ in range(times):
            self._queue.append(httpx.Response(status, text="upstream exploded"))

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.calls.append(body)
        if self._queue:
            item = self._queue.popleft()
            if isinstance(item, Exception):
                raise item
            return item
        return httpx.Response(200, json=completion_payload(model=body["model"]))

    @property
    def models(self) -> list[str]:
        return [call["model"] for call in self.calls]


@pytest.fixture
def settings():
    """Settings isolated from the environment."""
    return Settings(
        _env_file=None,
        provider_api_url=PROVIDER_URL,
        provider_api_key="test-key",
        provider_timeout_seconds=5.0,
        default_model=PRIMARY_MODEL,
        fallback_models=[PRIMARY_MODEL, FALLBACK_MODEL],
        breaker_failure_threshold=5,
        breaker_cooldown_seconds=60.0,
        default_cache_ttl_seconds=3600,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis():
    """Create a fake Redis client on a private server."""
    return fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def repository(fake_redis):
    """Create a repository backed by fake Redis."""
    from llmgate.repository import RedisRepository

    repo = RedisRepository()
    repo._client = fake_redis
    return repo


@pytest.fixture
def provider():
    return ProviderStub()


@pytest.fixture
def http_client(provider):
    return httpx.AsyncClient(transport=httpx.MockTransport(provider.handler))


@pytest.fixture
def dispatcher(settings, http_client):
    from llmgate.dispatcher import Dispatcher

    return Dispatcher(settings=settings, client=http_client)


@pytest.fixture
def service(repository, dispatcher, settings, clock):
    """Gateway service wired to fake Redis and the scripted provider."""
    from llmgate.service import GatewayService

    return GatewayService(
        repository=repository,
        dispatcher=dispatcher,
        settings=settings,
        clock=clock,
    )


@pytest.fixture
def sample_messages():
    from llmgate.models import ChatMessage

    return [
        ChatMessage(role="system", content="You are a concise assistant."),
        ChatMessage(role="user", content="Summarise the quarterly numbers."),
    ]


@pytest.fixture
def sample_rate_limit():
    from llmgate.models import RateLimitConfig

    return RateLimitConfig(
        caller_identity="agent-b",
        requests_per_minute=2,
        requests_per_hour=100,
        requests_per_day=1000,
    )
