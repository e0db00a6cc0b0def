"""
Execution router - the single path from a decision to an exchange order.

Resolves the agent's signer, makes sure the builder fee is approved,
sets leverage, then submits. Callers never know which custody path
signed the order.
"""
import asyncio
import logging
from typing import Dict, Optional

from ..config import FleetSettings
from ..custody import CustodyResolver, Signer
from ..errors import BusinessRejection, ConfigurationError, FleetError, LeverageUpdateFailed
from ..exchange import ExchangeAdapter
from ..risk import plan_order, protective_orders
from ..schemas import (
    AccountState,
    Agent,
    ExecutionReport,
    MarketState,
    OrderRequest,
    TradeAction,
    TradeDecision,
)
from ..store import AgentStore

logger = logging.getLogger("fleet_trader.runtime.execution")


class BuilderFeeManager:
    """
    One-time builder fee allowance per agent.

    Check-then-approve runs under a per-agent lock so concurrent first
    orders trigger at most one approval. Success is remembered; failure is
    not, so the next order tries again.
    """

    def __init__(self, adapter: ExchangeAdapter, settings: FleetSettings):
        self.adapter = adapter
        self.builder = settings.builder_address.lower() if settings.builder_address else None
        if self.builder and (not self.builder.startswith("0x") or len(self.builder) != 42):
            raise ConfigurationError(f"Builder address {settings.builder_address!r} is not a 0x-prefixed address")
        self.fee = settings.builder_fee_tenths_bp
        self._approved: set[tuple[str, str]] = set()
        self._locks: Dict[str, asyncio.Lock] = {}

    def builder_info(self) -> Optional[dict]:
        if not self.builder:
            return None
        return {"b": self.builder, "f": self.fee}

    def is_approved(self, agent_id: str, address: str) -> bool:
        return (agent_id, address.lower()) in self._approved

    async def ensure_approved(self, agent_id: str, signer: Signer) -> bool:
        """Returns True if an approval was submitted on this call."""
        if not self.builder:
            return False
        key = (agent_id, signer.address.lower())
        if key in self._approved:
            return False

        lock = self._locks.setdefault(agent_id, asyncio.Lock())
        async with lock:
            if key in self._approved:
                return False

            current = await self.adapter.max_builder_fee(signer.address, self.builder)
            if current >= self.fee:
                self._approved.add(key)
                return False

            logger.info(
                f"[Agent {agent_id}] Builder fee not approved ({current} < {self.fee}), "
                f"approving via {signer.signing_method.value} signer"
            )
            await self.adapter.approve_builder_fee(signer, self.builder, self.fee)
            self._approved.add(key)
            return True


class ExecutionRouter:
    """Routes orders through the agent's custody path to the exchange."""

    def __init__(
        self,
        store: AgentStore,
        custody: CustodyResolver,
        adapter: ExchangeAdapter,
        settings: FleetSettings,
        builder_fees: Optional[BuilderFeeManager] = None,
    ):
        self.store = store
        self.custody = custody
        self.adapter = adapter
        self.settings = settings
        self.builder_fees = builder_fees or BuilderFeeManager(adapter, settings)

    async def execute_order(
        self,
        agent_id: str,
        order: OrderRequest,
        leverage: Optional[int] = None,
    ) -> ExecutionReport:
        """
        Submit one order for an agent.

        Raises:
            BusinessRejection: leverage above the agent's cap, or exchange rejection
            LeverageUpdateFailed: the leverage change failed; nothing was submitted
            TransientExchangeError: exchange unreachable after retries
        """
        agent = await self.store.require_agent(agent_id)
        if leverage is not None and not 1 <= leverage <= agent.max_leverage:
            raise BusinessRejection(f"Leverage {leverage}x outside [1, {agent.max_leverage}]")

        signer = await self.custody.signer(agent_id)
        await self.builder_fees.ensure_approved(agent_id, signer)

        if leverage is not None:
            try:
                await self.adapter.update_leverage(signer, order.coin, leverage)
            except FleetError as e:
                logger.error(f"[Agent {agent_id}] Leverage update failed, aborting order: {e}")
                raise LeverageUpdateFailed(order.coin, leverage, e) from e

        result = await self.adapter.submit_order(signer, order, builder=self.builder_fees.builder_info())
        return ExecutionReport(result=result, signing_method=signer.signing_method)

    async def execute_decision(
        self,
        agent: Agent,
        decision: TradeDecision,
        account: Optional[AccountState] = None,
        market: Optional[MarketState] = None,
    ) -> ExecutionReport:
        """
        Size and execute a long/short/close decision, then place its
        stop-loss / take-profit triggers. Trigger failures are logged only.
        """
        if decision.action == TradeAction.HOLD:
            raise BusinessRejection("Hold decisions are not executable")
        if not agent.allows_market(decision.asset):
            raise BusinessRejection(f"{decision.asset} is not in allowed markets {agent.markets}")

        if account is None:
            account = await self.adapter.get_account_state(await self.custody.address(agent.id))
        if market is None:
            market = await self.adapter.get_market_state([decision.asset])

        order = plan_order(decision, account, market, self.settings)
        leverage = None if decision.action == TradeAction.CLOSE else decision.leverage
        report = await self.execute_order(agent.id, order, leverage)

        for trigger in protective_orders(decision, order):
            try:
                placed = await self.execute_order(agent.id, trigger)
                report.protective_orders.append(placed.result)
            except FleetError as e:
                logger.warning(f"[Agent {agent.id}] {trigger.order_type.value} order failed: {e}")

        fresh = await self.store.require_agent(agent.id)
        await self.store.update_agent(agent.id, total_trades=fresh.total_trades + 1)
        return report
