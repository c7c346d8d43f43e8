"""Unit tests for token estimation, pricing and cost logging."""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from llmgate.accounting import (
    CharacterEstimator,
    CostAccountant,
    PRICING_TABLE,
    get_pricing,
    response_texts,
)
from llmgate.models import ChatMessage, Priority


class FixedEstimator:
    """Estimator returning a preset count."""

    def __init__(self, count: int) -> None:
        self.count = count

    def estimate(self, texts) -> int:
        list(texts)
        return self.count


class TestCharacterEstimator:
    """Tests for the chars/4 heuristic."""

    def test_rounds_up(self):
        estimator = CharacterEstimator()

        assert estimator.estimate(["abcd"]) == 1
        assert estimator.estimate(["abcde"]) == 2

    def test_concatenates(self):
        estimator = CharacterEstimator()

        assert estimator.estimate(["ab", "cd", "e"]) == 2

    def test_empty(self):
        assert CharacterEstimator().estimate([]) == 0


class TestPricing:
    """Tests for the pricing table."""

    def test_known_model(self):
        assert get_pricing("gpt-4o") is PRICING_TABLE["gpt-4o"]

    def test_unknown_model_uses_default(self):
        assert get_pricing("some-new-model") is PRICING_TABLE["default"]


class TestCostAccountant:
    """Tests for CostAccountant."""

    @pytest.fixture
    def mock_repository(self):
        repo = MagicMock()
        repo.append_cost_log = AsyncMock()
        return repo

    @pytest.fixture
    def accountant(self, mock_repository):
        return CostAccountant(mock_repository)

    def test_estimate_tokens(self, accountant):
        messages = [
            ChatMessage(role="system", content="x" * 10),
            ChatMessage(role="user", content="y" * 7),
        ]

        assert accountant.estimate_tokens(messages) == 5

    def test_injected_estimator(self, mock_repository):
        accountant = CostAccountant(mock_repository, estimator=FixedEstimator(42))

        assert accountant.estimate_tokens([ChatMessage(role="user", content="hi")]) == 42

    def test_output_tokens_from_usage(self, accountant):
        payload = {"usage": {"completion_tokens": 17}, "choices": []}

        assert accountant.estimate_output_tokens(payload) == 17

    def test_output_tokens_estimated_without_usage(self, accountant):
        payload = {"choices": [{"message": {"role": "assistant", "content": "z" * 9}}]}

        assert accountant.estimate_output_tokens(payload) == 3

    def test_response_texts_skips_non_string_content(self):
        payload = {
            "choices": [
                {"message": {"content": None}},
                {"message": {"content": "ok"}},
                {},
            ]
        }

        assert response_texts(payload) == ["ok"]

    def test_response_texts_skips_malformed_choices(self):
        payload = {"choices": ["text", None, {"message": "hi"}, {"message": {"content": "ok"}}]}

        assert response_texts(payload) == ["ok"]
        assert response_texts({"choices": "nope"}) == []

    def test_output_tokens_ignores_malformed_usage(self, accountant):
        payload = {"usage": ["completion_tokens", 99], "choices": [{"message": {"content": "z" * 8}}]}

        assert accountant.estimate_output_tokens(payload) == 2

    def test_cost(self, accountant):
        # gpt-4o: 2.50 in / 10.00 out per million
        cost = accountant.cost("gpt-4o", 1_000_000, 500_000)

        assert cost == Decimal("7.5")

    def test_cost_unknown_model(self, accountant):
        default = PRICING_TABLE["default"]

        cost = accountant.cost("mystery", 2_000_000, 0)

        assert cost == 2 * default.input_per_million

    @pytest.mark.asyncio
    async def test_log_writes_entry(self, accountant, mock_repository):
        entry = await accountant.log(
            caller_identity="agent-a",
            model="gpt-4o",
            priority=Priority.LOW,
            latency_ms=12,
            success=True,
            input_tokens=3,
            output_tokens=4,
            cost_usd=Decimal("0.01"),
        )

        mock_repository.append_cost_log.assert_awaited_once_with(entry)
        assert entry.caller_identity == "agent-a"
        assert entry.priority is Priority.LOW
        assert entry.cached is False

    @pytest.mark.asyncio
    async def test_log_survives_store_failure(self, accountant, mock_repository):
        mock_repository.append_cost_log.side_effect = RedisConnectionError("down")

        entry = await accountant.log(
            caller_identity="agent-a",
            model="gpt-4o",
            priority=Priority.MEDIUM,
            latency_ms=1,
            success=False,
            error_message="boom",
        )

        assert entry.error_message == "boom"
