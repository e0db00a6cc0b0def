"""
Deterministic risk checks - run on every decision before the autonomy gate,
plus order sizing from a checked decision.
"""
import logging
from typing import List, Tuple

from .config import FleetSettings
from .errors import BusinessRejection
from .schemas import (
    AccountState,
    Agent,
    MarketState,
    OrderRequest,
    OrderSide,
    OrderType,
    RiskLevel,
    TradeAction,
    TradeDecision,
)

logger = logging.getLogger("fleet_trader.risk")

MAX_SIZE_BY_RISK = {
    RiskLevel.CONSERVATIVE: 0.2,
    RiskLevel.MODERATE: 0.5,
    RiskLevel.AGGRESSIVE: 0.75,
}


def _as_hold(decision: TradeDecision, reason: str) -> TradeDecision:
    return TradeDecision.hold(
        reasoning=f"{reason} (original: {decision.action.value} {decision.asset}; {decision.reasoning})",
        asset=decision.asset,
        confidence=decision.confidence,
    )


def sanitize_decision(
    agent: Agent,
    decision: TradeDecision,
    account: AccountState,
    market: MarketState,
) -> Tuple[TradeDecision, List[str]]:
    """
    Clamp a decision to the agent's limits.

    Returns:
        Tuple of (checked_decision, notes). The input is never mutated.
    """
    if decision.action == TradeAction.HOLD:
        return decision, []

    notes: List[str] = []
    asset = decision.asset.upper()

    if not agent.allows_market(asset):
        notes.append(f"{asset} is not in allowed markets {agent.markets}")
        return _as_hold(decision, notes[-1]), notes

    if decision.action == TradeAction.CLOSE:
        if account.position(asset) is None:
            notes.append(f"No open {asset} position to close")
            return _as_hold(decision, notes[-1]), notes
        return decision.model_copy(update={"asset": asset}), notes

    max_size = MAX_SIZE_BY_RISK.get(agent.risk_level, 0.5)
    size = min(decision.size, max_size)
    if size < decision.size:
        notes.append(f"Size capped {decision.size:.2f} -> {size:.2f} ({agent.risk_level.value})")

    leverage = max(1, min(int(round(decision.leverage)), agent.max_leverage))
    if leverage != decision.leverage:
        notes.append(f"Leverage clamped {decision.leverage}x -> {leverage}x")

    stop_loss = decision.stop_loss
    price = market.price(asset)
    if stop_loss is None and agent.stop_loss_percent and price:
        offset = agent.stop_loss_percent / 100
        stop_loss = price * (1 - offset) if decision.action == TradeAction.LONG else price * (1 + offset)
        notes.append(f"Protective stop at {stop_loss:.4f} ({agent.stop_loss_percent}%)")

    checked = decision.model_copy(
        update={
            "asset": asset,
            "size": size,
            "leverage": leverage,
            "confidence": max(0.0, min(1.0, decision.confidence)),
            "stop_loss": stop_loss,
        }
    )
    return checked, notes


def plan_order(
    decision: TradeDecision,
    account: AccountState,
    market: MarketState,
    settings: FleetSettings,
) -> OrderRequest:
    """
    Size an order for a long/short/close decision.

    Opening orders spend `size` of withdrawable balance; closes flatten the
    whole position with a reduce-only order.
    """
    asset = decision.asset.upper()
    price = market.price(asset)
    if not price or price <= 0:
        raise BusinessRejection(f"No price for {asset}")

    if decision.action == TradeAction.CLOSE:
        position = account.position(asset)
        if position is None:
            raise BusinessRejection(f"No open {asset} position to close")
        return OrderRequest(
            coin=asset,
            side=OrderSide.SELL if position.size > 0 else OrderSide.BUY,
            size=abs(position.size),
            order_type=OrderType.MARKET,
            price=price,
            reduce_only=True,
            slippage_percent=settings.default_slippage_percent,
        )

    if decision.action not in (TradeAction.LONG, TradeAction.SHORT):
        raise BusinessRejection(f"Cannot size a {decision.action.value} decision")

    notional = account.withdrawable * decision.size
    if notional < settings.min_order_notional_usd:
        raise BusinessRejection(
            f"Notional ${notional:.2f} below minimum ${settings.min_order_notional_usd:.2f}"
        )

    logger.info(f"Order calculation: notional=${notional:.2f}, price=${price}, size={notional / price}")
    return OrderRequest(
        coin=asset,
        side=OrderSide.BUY if decision.action == TradeAction.LONG else OrderSide.SELL,
        size=notional / price,
        order_type=OrderType.MARKET,
        price=price,
        slippage_percent=settings.default_slippage_percent,
    )


def protective_orders(decision: TradeDecision, entry: OrderRequest) -> List[OrderRequest]:
    """Reduce-only stop-loss / take-profit triggers for an opening order."""
    if decision.action not in (TradeAction.LONG, TradeAction.SHORT):
        return []

    exit_side = OrderSide.SELL if entry.is_buy else OrderSide.BUY
    orders = []
    for order_type, trigger in (
        (OrderType.STOP_LOSS, decision.stop_loss),
        (OrderType.TAKE_PROFIT, decision.take_profit),
    ):
        if trigger:
            orders.append(
                OrderRequest(
                    coin=entry.coin,
                    side=exit_side,
                    size=entry.size,
                    order_type=order_type,
                    price=trigger,
                    trigger_price=trigger,
                    reduce_only=True,
                    slippage_percent=entry.slippage_percent,
                )
            )
    return orders
