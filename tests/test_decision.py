"""
Tests for decision parsing and the OpenAI-backed provider.
"""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from fleet_trader.decision import OpenAIDecisionProvider, StaticDecisionProvider, parse_decision
from fleet_trader.schemas import AccountState, MarketInfo, MarketState, PositionInfo, TradeAction

from conftest import AGENT_ADDRESS, make_agent


def completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


@pytest.fixture
def market():
    return MarketState(markets={"BTC": MarketInfo(coin="BTC", price=50_000.0, funding_rate=0.0001)})


@pytest.fixture
def account():
    return AccountState(
        address=AGENT_ADDRESS,
        withdrawable=5_000.0,
        account_value=6_000.0,
        positions=[PositionInfo(coin="ETH", size=-1.5, entry_price=2_400.0)],
    )


@pytest.fixture
def mock_openai():
    client = MagicMock()
    client.chat.completions.create = AsyncMock()
    return client


class TestParseDecision:
    """Model output is normalized or degraded to hold."""

    def test_valid_long(self):
        decision = parse_decision(
            {"action": "LONG", "asset": "btc", "size": 0.2, "leverage": 3, "confidence": 0.8, "reasoning": "trend"}
        )
        assert decision.action == TradeAction.LONG
        assert decision.asset == "BTC"
        assert decision.size == 0.2

    def test_hold_ignores_size(self):
        decision = parse_decision({"action": "hold", "size": 5, "confidence": 0.4})
        assert decision.action == TradeAction.HOLD
        assert decision.size == 0.0

    @pytest.mark.parametrize(
        "raw",
        [
            {"action": "buy_everything"},
            {"action": "long", "asset": "BTC", "size": 0},
            {"action": "long", "asset": "BTC", "size": 1.5, "confidence": 0.9},
            {"action": "short", "size": 0.1},
        ],
    )
    def test_invalid_becomes_hold(self, raw):
        decision = parse_decision(raw)
        assert decision.action == TradeAction.HOLD
        assert decision.reasoning.startswith("Invalid decision")


class TestOpenAIDecisionProvider:
    """Tests for the chat-completion provider."""

    @pytest.mark.asyncio
    async def test_decides(self, settings, mock_openai, market, account):
        mock_openai.chat.completions.create.return_value = completion(
            json.dumps({"action": "short", "asset": "BTC", "size": 0.1, "leverage": 2, "confidence": 0.85})
        )
        provider = OpenAIDecisionProvider(settings, client=mock_openai)

        decision = await provider.decide(make_agent(), market, account)

        assert decision.action == TradeAction.SHORT
        kwargs = mock_openai.chat.completions.create.call_args.kwargs
        assert kwargs["response_format"] == {"type": "json_object"}
        prompt = kwargs["messages"][1]["content"]
        assert "ALLOWED MARKETS: BTC, ETH" in prompt
        assert "ETH: SHORT 1.5" in prompt
        assert "ETH: no data" in prompt

    @pytest.mark.asyncio
    async def test_invalid_json_holds(self, settings, mock_openai, market, account):
        mock_openai.chat.completions.create.return_value = completion("not json")
        provider = OpenAIDecisionProvider(settings, client=mock_openai)

        decision = await provider.decide(make_agent(), market, account)
        assert decision.action == TradeAction.HOLD

    @pytest.mark.asyncio
    async def test_empty_content_holds(self, settings, mock_openai, market, account):
        mock_openai.chat.completions.create.return_value = completion(None)
        provider = OpenAIDecisionProvider(settings, client=mock_openai)
        assert (await provider.decide(make_agent(), market, account)).action == TradeAction.HOLD

    @pytest.mark.asyncio
    async def test_transport_error_propagates(self, settings, mock_openai, market, account):
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        mock_openai.chat.completions.create.side_effect = openai.APIConnectionError(request=request)
        provider = OpenAIDecisionProvider(settings, client=mock_openai)

        with pytest.raises(openai.APIConnectionError):
            await provider.decide(make_agent(), market, account)


class TestStaticDecisionProvider:
    @pytest.mark.asyncio
    async def test_defaults_to_hold(self, market, account):
        decision = await StaticDecisionProvider().decide(make_agent(), market, account)
        assert decision.action == TradeAction.HOLD
