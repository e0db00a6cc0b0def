"""
Root conftest.py for pytest configuration.

Makes fleet_trader importable and provides fakes for the exchange,
signers and decision provider so runtime tests never touch the network.
"""

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, Iterable, List, Optional

root_dir = Path(__file__).parent.parent
if str(root_dir) not in sys.path:
    sys.path.insert(0, str(root_dir))

import pytest

from fleet_trader.config import FleetSettings
from fleet_trader.custody import CustodyResolver, Signer
from fleet_trader.decision import DecisionProvider
from fleet_trader.exchange import ExchangeAdapter
from fleet_trader.runtime import ApprovalStateMachine, ExecutionRouter, LifecycleSupervisor, TradingCycle
from fleet_trader.schemas import (
    AccountState,
    Agent,
    AgentStatus,
    AutonomyConfig,
    AutonomyMode,
    CustodyBinding,
    ExecutionResult,
    MarketInfo,
    MarketState,
    OrderRequest,
    PositionInfo,
    SigningMethod,
    TradeAction,
    TradeDecision,
)
from fleet_trader.store import InMemoryStore

pytest_plugins = ('pytest_asyncio',)

AGENT_ADDRESS = "0x1111111111111111111111111111111111111111"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeSigner(Signer):
    def __init__(self, address: str, signing_method: SigningMethod):
        super().__init__(address)
        self.signing_method = signing_method
        self.signed: List[Dict[str, Any]] = []

    async def sign_l1_action(self, action, nonce, is_mainnet):
        self.signed.append(action)
        return {"r": "0x01", "s": "0x02", "v": 27}

    async def sign_builder_approval(self, action, is_mainnet):
        self.signed.append(action)
        return {"r": "0x03", "s": "0x04", "v": 28}


class StubCustodyResolver(CustodyResolver):
    """Resolves bindings from the store but signs with FakeSigner."""

    async def signer(self, agent_id: str) -> Signer:
        binding = await self.binding(agent_id)
        cached = self._signers.get(agent_id)
        if cached and cached[0] == binding:
            return cached[1]
        signer = FakeSigner(binding.address, binding.signing_method)
        self._signers[agent_id] = (binding, signer)
        return signer


class FakeExchange(ExchangeAdapter):
    """In-memory exchange that records every call."""

    def __init__(self):
        self.prices: Dict[str, float] = {"BTC": 50_000.0, "ETH": 2_500.0}
        self.withdrawable = 10_000.0
        self.positions: List[PositionInfo] = []
        self.approved_builder_fee = 0
        self.calls: List[tuple] = []
        self.market_error: Optional[Exception] = None
        self.leverage_error: Optional[Exception] = None
        self.order_error: Optional[Exception] = None
        self.builder_error: Optional[Exception] = None
        self.order_gate: Optional[asyncio.Event] = None
        self.order_started = asyncio.Event()

    async def get_market_state(self, coins: Optional[Iterable[str]] = None) -> MarketState:
        self.calls.append(("market",))
        if self.market_error:
            raise self.market_error
        wanted = {c.upper() for c in coins} if coins else set(self.prices)
        return MarketState(
            markets={c: MarketInfo(coin=c, price=p) for c, p in self.prices.items() if c in wanted}
        )

    async def get_account_state(self, address: str) -> AccountState:
        self.calls.append(("account", address))
        return AccountState(
            address=address,
            withdrawable=self.withdrawable,
            account_value=self.withdrawable,
            positions=list(self.positions),
        )

    async def update_leverage(self, signer, coin, leverage, is_cross=True):
        self.calls.append(("leverage", coin, leverage))
        if self.leverage_error:
            raise self.leverage_error

    async def submit_order(self, signer, order: OrderRequest, builder=None) -> ExecutionResult:
        self.calls.append(("order", order.coin, order.side.value, order.order_type.value, order.reduce_only))
        self.order_started.set()
        if self.order_gate is not None:
            await self.order_gate.wait()
        if self.order_error:
            raise self.order_error
        return ExecutionResult(
            order_id=str(len(self.calls)),
            status="filled",
            fill_price=self.prices.get(order.coin, 0.0),
            fill_size=order.size,
        )

    async def max_builder_fee(self, user, builder) -> int:
        self.calls.append(("max_builder_fee", user))
        await asyncio.sleep(0)
        return self.approved_builder_fee

    async def approve_builder_fee(self, signer, builder, fee_tenths_bp):
        self.calls.append(("approve_builder_fee", signer.address, fee_tenths_bp))
        await asyncio.sleep(0)
        if self.builder_error:
            raise self.builder_error
        self.approved_builder_fee = fee_tenths_bp

    def count(self, kind: str) -> int:
        return sum(1 for call in self.calls if call[0] == kind)


class ScriptedDecisions(DecisionProvider):
    """Returns a fixed decision; optionally blocks until released or raises."""

    def __init__(self, decision: Optional[TradeDecision] = None):
        self.decision = decision or long_btc()
        self.error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.started = asyncio.Event()
        self.calls = 0

    async def decide(self, agent, market, account) -> TradeDecision:
        self.calls += 1
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.error:
            raise self.error
        return self.decision


def long_btc(confidence: float = 0.9, size: float = 0.1, leverage: int = 3, **extra) -> TradeDecision:
    return TradeDecision(
        action=TradeAction.LONG,
        asset="BTC",
        size=size,
        leverage=leverage,
        confidence=confidence,
        reasoning="breakout",
        **extra,
    )


def make_agent(agent_id: str = "agent-1", mode: AutonomyMode = AutonomyMode.FULL, **overrides) -> Agent:
    autonomy = overrides.pop(
        "autonomy",
        AutonomyConfig(mode=mode, min_confidence=0.6, max_trades_per_day=10, approval_timeout_ms=300_000),
    )
    fields = dict(
        id=agent_id,
        name=f"Agent {agent_id}",
        status=AgentStatus.ACTIVE,
        markets=["BTC", "ETH"],
        max_leverage=5,
        autonomy=autonomy,
    )
    fields.update(overrides)
    return Agent(**fields)


def make_binding(agent_id: str = "agent-1", method: SigningMethod = SigningMethod.DIRECT_KEY) -> CustodyBinding:
    if method == SigningMethod.THRESHOLD:
        return CustodyBinding(
            agent_id=agent_id,
            address=AGENT_ADDRESS,
            signing_method=method,
            pkp_public_key="0x04abcdef",
        )
    return CustodyBinding(agent_id=agent_id, address=AGENT_ADDRESS, signing_method=method, key_ref="AGENT_KEY")


async def seed(store: InMemoryStore, agent: Agent, method: SigningMethod = SigningMethod.DIRECT_KEY) -> Agent:
    await store.save_agent(agent)
    await store.save_custody_binding(make_binding(agent.id, method))
    return agent


@pytest.fixture
def settings() -> FleetSettings:
    return FleetSettings(
        _env_file=None,
        retry_max_attempts=3,
        retry_base_delay_sec=0.0,
        retry_max_delay_sec=0.0,
        auto_heal_interval_sec=0,
        builder_address=None,
        store_backend="memory",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def exchange() -> FakeExchange:
    return FakeExchange()


@pytest.fixture
def decisions() -> ScriptedDecisions:
    return ScriptedDecisions()


@pytest.fixture
def fleet(settings, clock, store, exchange, decisions):
    """Fully wired runtime over fakes."""
    custody = StubCustodyResolver(store)
    router = ExecutionRouter(store, custody, exchange, settings)
    approvals = ApprovalStateMachine(store, router, clock=clock)
    cycle = TradingCycle(store, exchange, custody, decisions, approvals, router, settings, clock=clock)
    supervisor = LifecycleSupervisor(store, cycle, settings, clock=clock)
    return SimpleNamespace(
        settings=settings,
        clock=clock,
        store=store,
        exchange=exchange,
        decisions=decisions,
        custody=custody,
        router=router,
        approvals=approvals,
        cycle=cycle,
        supervisor=supervisor,
    )
