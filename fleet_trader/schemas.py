"""
Pydantic schemas for the agent fleet: agent records, decisions,
approvals, trade logs, exchange views and lifecycle results.
"""
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------- agent

class AgentStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    STOPPED = "stopped"


class AutonomyMode(str, Enum):
    MANUAL = "manual"
    SEMI = "semi"
    FULL = "full"


class RiskLevel(str, Enum):
    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"


class AutonomyConfig(BaseModel):
    """How much freedom an agent has to act on its own decisions."""
    mode: AutonomyMode = AutonomyMode.SEMI
    aggressiveness: float = Field(default=50.0, ge=0, le=100)
    min_confidence: float = Field(default=0.75, ge=0, le=1, description="Decisions below this are held")
    max_trades_per_day: int = Field(default=10, ge=0)
    approval_timeout_ms: int = Field(default=300_000, ge=0)


class SigningMethod(str, Enum):
    THRESHOLD = "threshold"
    DIRECT_KEY = "direct_key"


class CustodyBinding(BaseModel):
    """Binds an agent to exactly one signing path."""
    agent_id: str
    address: str = Field(description="Trading account address on the exchange")
    signing_method: SigningMethod
    pkp_public_key: Optional[str] = Field(default=None, description="Threshold key handle")
    key_ref: Optional[str] = Field(default=None, description="Name of the secret holding a direct key")

    @model_validator(mode="after")
    def _one_path(self) -> "CustodyBinding":
        if self.signing_method == SigningMethod.THRESHOLD:
            if not self.pkp_public_key or self.key_ref:
                raise ValueError("threshold custody needs pkp_public_key and no key_ref")
        else:
            if not self.key_ref or self.pkp_public_key:
                raise ValueError("direct_key custody needs key_ref and no pkp_public_key")
        return self


# ---------------------------------------------------------------- decisions

class TradeAction(str, Enum):
    LONG = "long"
    SHORT = "short"
    CLOSE = "close"
    HOLD = "hold"


class TradeDecision(BaseModel):
    """Output of the decision function. Immutable once produced."""
    model_config = ConfigDict(frozen=True)

    action: TradeAction
    asset: str = Field(default="", description="Market symbol, e.g. BTC")
    size: float = Field(default=0.0, ge=0, le=1, description="Fraction of available capital")
    leverage: int = Field(default=1, ge=1)
    confidence: float = Field(default=0.0, ge=0, le=1)
    reasoning: str = ""
    stop_loss: Optional[float] = Field(default=None, gt=0, description="Protective stop price")
    take_profit: Optional[float] = Field(default=None, gt=0, description="Take-profit price")

    @model_validator(mode="after")
    def _check_size(self) -> "TradeDecision":
        if self.action in (TradeAction.LONG, TradeAction.SHORT):
            if self.size <= 0:
                raise ValueError(f"{self.action.value} decision needs size in (0, 1]")
            if not self.asset:
                raise ValueError(f"{self.action.value} decision needs an asset")
        if self.action == TradeAction.CLOSE and not self.asset:
            raise ValueError("close decision needs an asset")
        return self

    @classmethod
    def hold(cls, reasoning: str, asset: str = "", confidence: float = 0.0) -> "TradeDecision":
        return cls(action=TradeAction.HOLD, asset=asset, confidence=confidence, reasoning=reasoning)


# ---------------------------------------------------------------- approvals

class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


TERMINAL_APPROVAL_STATUSES = (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED, ApprovalStatus.EXPIRED)


class PendingApproval(BaseModel):
    """A decision awaiting an explicit human approve/reject."""
    id: str = Field(default_factory=new_id)
    agent_id: str
    decision: TradeDecision
    status: ApprovalStatus = ApprovalStatus.PENDING
    created_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime
    resolved_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    @classmethod
    def create(cls, agent_id: str, decision: TradeDecision, timeout_ms: int, now: datetime) -> "PendingApproval":
        return cls(
            agent_id=agent_id,
            decision=decision,
            created_at=now,
            expires_at=now + timedelta(milliseconds=timeout_ms),
        )


class Agent(BaseModel):
    """Persisted agent record."""
    id: str = Field(default_factory=new_id)
    name: str = ""
    status: AgentStatus = AgentStatus.PAUSED
    markets: List[str] = Field(default_factory=list)
    max_leverage: int = Field(default=5, ge=1)
    risk_level: RiskLevel = RiskLevel.MODERATE
    stop_loss_percent: Optional[float] = Field(default=None, gt=0, lt=100)
    autonomy: AutonomyConfig = Field(default_factory=AutonomyConfig)
    pending_approval: Optional[PendingApproval] = None
    tick_interval_ms: Optional[int] = None
    total_trades: int = 0
    created_at: datetime = Field(default_factory=utc_now)

    def allows_market(self, asset: str) -> bool:
        return asset.upper() in {m.upper() for m in self.markets}


# ---------------------------------------------------------------- exchange views

class OrderSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class OrderType(str, Enum):
    MARKET = "market"
    LIMIT = "limit"
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"


class OrderRequest(BaseModel):
    coin: str
    side: OrderSide
    size: float = Field(gt=0, description="Size in coin units")
    order_type: OrderType = OrderType.MARKET
    price: Optional[float] = Field(default=None, gt=0, description="Limit price, or reference price for market")
    trigger_price: Optional[float] = Field(default=None, gt=0)
    reduce_only: bool = False
    slippage_percent: float = Field(default=1.0, gt=0, lt=100)

    @property
    def is_buy(self) -> bool:
        return self.side == OrderSide.BUY


class ExecutionResult(BaseModel):
    order_id: Optional[str] = None
    status: str = Field(description="filled, resting or accepted")
    fill_price: float = 0.0
    fill_size: float = 0.0
    raw: Dict[str, Any] = Field(default_factory=dict)


class ExecutionReport(BaseModel):
    result: ExecutionResult
    signing_method: SigningMethod
    protective_orders: List[ExecutionResult] = Field(default_factory=list)


class MarketInfo(BaseModel):
    coin: str
    price: float
    funding_rate: float = 0.0
    open_interest: float = 0.0
    volume_24h: float = 0.0


class MarketState(BaseModel):
    markets: Dict[str, MarketInfo] = Field(default_factory=dict)
    fetched_at: datetime = Field(default_factory=utc_now)

    def price(self, coin: str) -> Optional[float]:
        info = self.markets.get(coin.upper())
        return info.price if info else None


class PositionInfo(BaseModel):
    coin: str
    size: float = Field(description="Signed size; negative is short")
    entry_price: float = 0.0
    unrealized_pnl: float = 0.0
    leverage: Optional[int] = None


class AccountState(BaseModel):
    address: str
    withdrawable: float = 0.0
    account_value: float = 0.0
    positions: List[PositionInfo] = Field(default_factory=list)

    def position(self, coin: str) -> Optional[PositionInfo]:
        for pos in self.positions:
            if pos.coin.upper() == coin.upper() and pos.size != 0:
                return pos
        return None


class VaultShares(BaseModel):
    agent_id: str
    total_shares: float = Field(default=0.0, ge=0)
    owner_shares: float = Field(default=0.0, ge=0)


# ---------------------------------------------------------------- lifecycle

class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    STOPPED = "stopped"


class ErrorInfo(BaseModel):
    code: str
    message: str


class ErrorRecord(BaseModel):
    at: datetime = Field(default_factory=utc_now)
    code: str
    message: str


class LifecycleState(BaseModel):
    """Per-agent runtime bookkeeping, persisted across restarts."""
    agent_id: str
    runner_active: bool = False
    health_status: HealthStatus = HealthStatus.STOPPED
    interval_ms: Optional[int] = None
    started_at: Optional[datetime] = None
    tick_count: int = 0
    last_tick_at: Optional[datetime] = None
    error_count: int = Field(default=0, description="Consecutive tick errors")
    total_errors: int = 0
    skipped_ticks: int = 0
    last_error: Optional[str] = None
    recent_errors: List[ErrorRecord] = Field(default_factory=list)


class TradeSource(str, Enum):
    TICK = "tick"
    APPROVAL = "approval"
    MANUAL = "manual"


class TradeLog(BaseModel):
    """Append-only record of every decision that reached a verdict."""
    id: str = Field(default_factory=new_id)
    agent_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    decision: TradeDecision
    executed: bool = False
    execution_result: Optional[ExecutionReport] = None
    source: TradeSource = TradeSource.TICK
    note: Optional[str] = None
    error: Optional[ErrorInfo] = None
    source_trade_id: Optional[str] = None


class GateVerdict(str, Enum):
    EXECUTE = "execute"
    PENDING_APPROVAL = "pending_approval"
    HOLD = "hold"


class GateOutcome(BaseModel):
    verdict: GateVerdict
    reason: str


class TickOutcome(BaseModel):
    agent_id: str
    trigger: str = "timer"
    skipped: bool = False
    verdict: Optional[GateVerdict] = None
    reason: Optional[str] = None
    trade_log: Optional[TradeLog] = None
    approval: Optional[PendingApproval] = None
    error: Optional[ErrorInfo] = None


class LifecycleResult(BaseModel):
    agent_id: str
    action: str
    ok: bool
    state: Optional[LifecycleState] = None
    note: Optional[str] = None
    error: Optional[ErrorInfo] = None


class HealthReport(BaseModel):
    ok: bool = True
    agents: List[LifecycleState] = Field(default_factory=list)
    error: Optional[ErrorInfo] = None


class InitializeReport(BaseModel):
    started: List[str] = Field(default_factory=list)
    stopped: List[str] = Field(default_factory=list)
    already_running: List[str] = Field(default_factory=list)
    errors: Dict[str, ErrorInfo] = Field(default_factory=dict)


class HealReport(BaseModel):
    checked: int = 0
    healed: List[str] = Field(default_factory=list)
    failed: Dict[str, ErrorInfo] = Field(default_factory=dict)


class LifecycleSummary(BaseModel):
    total_agents: int = 0
    running: int = 0
    by_health: Dict[str, int] = Field(default_factory=dict)
    agents: List[LifecycleState] = Field(default_factory=list)


class ApprovalResolution(BaseModel):
    approval: PendingApproval
    trade_log: TradeLog
    execution: Optional[ExecutionReport] = None


class WithdrawalCheck(BaseModel):
    owner_shares: float
    total_shares: float
    requested_shares: float
    max_withdrawable: float
    allowed: bool
