"""
Decision providers - the seam between the orchestrator and whatever
model produces trade decisions.
"""
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from openai import AsyncOpenAI
from pydantic import ValidationError

from .config import FleetSettings
from .schemas import AccountState, Agent, MarketState, TradeAction, TradeDecision

logger = logging.getLogger("fleet_trader.decision")


SYSTEM_PROMPT = """You are an autonomous perpetual futures trading agent on Hyperliquid.
Analyze the market and account state and decide on ONE action.

RULES:
1. Default to "hold". Only trade when you see a clear edge.
2. Only trade markets listed under ALLOWED MARKETS.
3. "size" is the fraction (0-1] of available balance to commit.
4. "leverage" must not exceed MAX LEVERAGE.
5. Use "close" only for an asset with an open position.
6. Include stop_loss / take_profit prices when opening a position.

Respond with ONLY valid JSON:
{
  "action": "long" | "short" | "close" | "hold",
  "asset": "BTC",
  "size": 0.1,
  "leverage": 3,
  "confidence": 0.0 to 1.0,
  "reasoning": "short explanation",
  "stop_loss": null or price,
  "take_profit": null or price
}

Respond with JSON only. No markdown, no explanation outside JSON."""


def parse_decision(raw: Dict[str, Any]) -> TradeDecision:
    """
    Parse a raw model response into a TradeDecision.

    Anything that fails validation becomes a hold, never an exception.
    """
    try:
        data = dict(raw)
        action = str(data.get("action", "hold")).lower()
        data["action"] = action
        if data.get("asset"):
            data["asset"] = str(data["asset"]).upper()
        if action == TradeAction.HOLD.value:
            data["size"] = 0.0
        return TradeDecision.model_validate(data)
    except (ValidationError, ValueError, TypeError) as e:
        return TradeDecision.hold(reasoning=f"Invalid decision from model: {e}")


class DecisionProvider(ABC):
    """Produces a decision for one agent from the current market/account state."""

    @abstractmethod
    async def decide(self, agent: Agent, market: MarketState, account: AccountState) -> TradeDecision:
        ...


class StaticDecisionProvider(DecisionProvider):
    """Always returns the same decision. Useful for dry runs."""

    def __init__(self, decision: Optional[TradeDecision] = None):
        self.decision = decision or TradeDecision.hold(reasoning="Static provider")

    async def decide(self, agent: Agent, market: MarketState, account: AccountState) -> TradeDecision:
        return self.decision


class OpenAIDecisionProvider(DecisionProvider):
    """
    Decision provider backed by an OpenAI chat model.

    Malformed model output degrades to hold. Transport errors propagate so
    the tick records them as errors.
    """

    def __init__(self, settings: FleetSettings, client: Optional[AsyncOpenAI] = None):
        self.client = client or AsyncOpenAI(api_key=settings.openai_api_key)
        self.model = settings.decision_model

    async def decide(self, agent: Agent, market: MarketState, account: AccountState) -> TradeDecision:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": self._build_prompt(agent, market, account)},
            ],
            temperature=0.2,
            max_tokens=500,
            response_format={"type": "json_object"},
        )

        content = response.choices[0].message.content
        if not content:
            return TradeDecision.hold(reasoning="Empty response from model")

        try:
            raw = json.loads(content)
        except json.JSONDecodeError as e:
            logger.warning(f"[Agent {agent.id}] Model returned invalid JSON: {e}")
            return TradeDecision.hold(reasoning=f"JSON parse error: {e}")
        return parse_decision(raw)

    def _build_prompt(self, agent: Agent, market: MarketState, account: AccountState) -> str:
        lines = [
            f"AGENT: {agent.name or agent.id}",
            f"RISK LEVEL: {agent.risk_level.value}",
            f"MAX LEVERAGE: {agent.max_leverage}x",
            f"ALLOWED MARKETS: {', '.join(agent.markets)}",
            f"AGGRESSIVENESS: {agent.autonomy.aggressiveness:.0f}/100",
            "",
            "ACCOUNT:",
            f"  Account value: ${account.account_value:,.2f}",
            f"  Available balance: ${account.withdrawable:,.2f}",
            "",
            "OPEN POSITIONS:",
        ]
        if account.positions:
            for pos in account.positions:
                side = "LONG" if pos.size > 0 else "SHORT"
                lines.append(
                    f"  {pos.coin}: {side} {abs(pos.size)} @ ${pos.entry_price:,.4f} "
                    f"(uPnL ${pos.unrealized_pnl:,.2f})"
                )
        else:
            lines.append("  No open positions")

        lines.extend(["", "MARKETS:"])
        for coin in agent.markets:
            info = market.markets.get(coin.upper())
            if info is None:
                lines.append(f"  {coin}: no data")
                continue
            lines.append(
                f"  {coin}: ${info.price:,.4f} funding {info.funding_rate:+.6f} "
                f"OI {info.open_interest:,.0f} 24h vol ${info.volume_24h:,.0f}"
            )

        lines.extend(["", "What is your decision? Respond with JSON only."])
        return "\n".join(lines)
