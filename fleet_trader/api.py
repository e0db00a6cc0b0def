"""
FastAPI service - lifecycle control, manual ticks, approvals and vault
checks over HTTP.
"""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import FleetSettings, get_settings
from .custody import CustodyResolver, EnvKeyProvider, ThresholdSigningClient
from .decision import DecisionProvider, OpenAIDecisionProvider, StaticDecisionProvider
from .errors import FleetError
from .exchange import ExchangeAdapter, HyperliquidAdapter
from .runtime import ApprovalStateMachine, ExecutionRouter, LifecycleSupervisor, TradingCycle
from .schemas import (
    ApprovalResolution,
    HealReport,
    HealthReport,
    InitializeReport,
    LifecycleResult,
    LifecycleSummary,
    PendingApproval,
    TickOutcome,
    TradeLog,
    WithdrawalCheck,
)
from .store import AgentStore, InMemoryStore, JsonFileStore
from .vault import WithdrawalGuard, check_withdrawal

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [FLEET] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("fleet_trader")

STATUS_BY_CODE = {
    "unknown_agent": 404,
    "approval_not_found": 404,
    "approval_expired": 409,
    "approval_invalid_state": 409,
    "invariant_violation": 409,
    "invalid_interval": 422,
    "invalid_config": 422,
    "scheduler_start_failed": 409,
    "business_rejection": 422,
    "leverage_update_failed": 502,
    "exchange_unavailable": 503,
    "exchange_circuit_open": 503,
    "custody_unavailable": 503,
    "execution_failed": 500,
    "execution_ambiguous": 502,
    "trade_not_found": 404,
    "trade_already_executed": 409,
    "trade_not_executable": 400,
}


def status_for(code: str) -> int:
    return STATUS_BY_CODE.get(code, 500)


@dataclass
class Services:
    settings: FleetSettings
    store: AgentStore
    adapter: ExchangeAdapter
    custody: CustodyResolver
    router: ExecutionRouter
    approvals: ApprovalStateMachine
    supervisor: LifecycleSupervisor
    vault: WithdrawalGuard
    threshold_client: Optional[ThresholdSigningClient] = None

    async def aclose(self) -> None:
        await self.supervisor.shutdown()
        await self.adapter.aclose()
        if self.threshold_client is not None:
            await self.threshold_client.aclose()


def build_services(
    settings: FleetSettings,
    store: Optional[AgentStore] = None,
    adapter: Optional[ExchangeAdapter] = None,
    decisions: Optional[DecisionProvider] = None,
) -> Services:
    """Wire every component from settings. Collaborators can be injected."""
    if store is None:
        store = JsonFileStore(settings.data_dir) if settings.store_backend == "json" else InMemoryStore()
    adapter = adapter or HyperliquidAdapter(settings)
    threshold_client = ThresholdSigningClient(settings) if settings.threshold_signer_url else None
    custody = CustodyResolver(store, EnvKeyProvider(), threshold_client)
    router = ExecutionRouter(store, custody, adapter, settings)
    approvals = ApprovalStateMachine(store, router)

    if decisions is None:
        if settings.openai_api_key:
            decisions = OpenAIDecisionProvider(settings)
        else:
            logger.warning("No OpenAI key configured - agents will always hold")
            decisions = StaticDecisionProvider()

    cycle = TradingCycle(store, adapter, custody, decisions, approvals, router, settings)
    supervisor = LifecycleSupervisor(store, cycle, settings)
    return Services(
        settings=settings,
        store=store,
        adapter=adapter,
        custody=custody,
        router=router,
        approvals=approvals,
        supervisor=supervisor,
        vault=WithdrawalGuard(store),
        threshold_client=threshold_client,
    )


_services: Optional[Services] = None


def get_services() -> Services:
    if _services is None:
        raise HTTPException(status_code=503, detail="Fleet service not initialized")
    return _services


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _services
    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level.upper())
    logger.info("Starting Fleet Trader service...")
    logger.info(f"Exchange: {settings.base_url} ({'mainnet' if settings.is_mainnet else 'testnet'})")
    logger.info(
        f"Tick interval bounds: {settings.tick_interval_min_ms}ms - {settings.tick_interval_max_ms}ms"
    )
    _services = build_services(settings)
    report = await _services.supervisor.initialize()
    logger.info(f"Started {len(report.started)} agent scheduler(s)")

    yield

    await _services.aclose()
    _services = None
    logger.info("Fleet service shutdown complete")


app = FastAPI(
    title="Fleet Trader",
    description="Lifecycle and execution orchestration for autonomous trading agents",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(FleetError)
async def fleet_error_handler(request: Request, exc: FleetError):
    return JSONResponse(status_code=status_for(exc.code), content={"detail": exc.to_dict()})


def _checked(result: LifecycleResult) -> LifecycleResult:
    if not result.ok and result.error is not None:
        raise HTTPException(status_code=status_for(result.error.code), detail=result.error.model_dump())
    return result


class ActivateRequest(BaseModel):
    interval_ms: Optional[int] = Field(default=None, description="Tick interval; clamped to platform bounds")


class WithdrawalCheckRequest(BaseModel):
    owner_shares: float = Field(ge=0)
    total_shares: float = Field(ge=0)
    requested_shares: float


class AgentWithdrawalRequest(BaseModel):
    requested_shares: float


class MaxWithdrawableResponse(BaseModel):
    agent_id: str
    max_withdrawable: float


@app.get("/health")
async def service_health():
    services = get_services()
    summary = await services.supervisor.summary()
    circuit = getattr(services.adapter, "circuit", None)
    return {
        "status": "ok",
        "agents": summary.total_agents,
        "running": summary.running,
        "by_health": summary.by_health,
        "exchange_circuit": circuit.get_state_info() if circuit else None,
    }


@app.get("/lifecycle", response_model=LifecycleSummary)
async def lifecycle_summary():
    return await get_services().supervisor.summary()


@app.post("/lifecycle/initialize", response_model=InitializeReport)
async def lifecycle_initialize():
    return await get_services().supervisor.initialize()


@app.post("/lifecycle/auto-heal", response_model=HealReport)
async def lifecycle_auto_heal():
    return await get_services().supervisor.auto_heal()


@app.post("/lifecycle/stop-all")
async def lifecycle_stop_all():
    stopped = await get_services().supervisor.stop_all()
    return {"stopped": stopped}


@app.post("/agents/{agent_id}/activate", response_model=LifecycleResult)
async def activate_agent(agent_id: str, body: Optional[ActivateRequest] = None):
    interval = body.interval_ms if body else None
    return _checked(await get_services().supervisor.activate(agent_id, interval))


@app.post("/agents/{agent_id}/deactivate", response_model=LifecycleResult)
async def deactivate_agent(agent_id: str):
    return _checked(await get_services().supervisor.deactivate(agent_id))


@app.get("/agents/{agent_id}/health", response_model=HealthReport)
async def agent_health(agent_id: str):
    report = await get_services().supervisor.health(agent_id)
    if not report.ok and report.error is not None:
        raise HTTPException(status_code=status_for(report.error.code), detail=report.error.model_dump())
    return report


@app.post("/agents/{agent_id}/tick", response_model=TickOutcome)
async def tick_agent(agent_id: str):
    outcome = await get_services().supervisor.tick(agent_id)
    if outcome.error is not None and outcome.error.code == "unknown_agent":
        raise HTTPException(status_code=404, detail=outcome.error.model_dump())
    return outcome


@app.get("/agents/{agent_id}/trades", response_model=List[TradeLog])
async def agent_trades(agent_id: str, limit: int = 50):
    services = get_services()
    await services.store.require_agent(agent_id)
    return await services.store.trade_logs(agent_id, limit=max(1, min(limit, 500)))


@app.post("/agents/{agent_id}/trades/{trade_id}/execute", response_model=TradeLog)
async def execute_trade(agent_id: str, trade_id: str):
    """Execute a skipped decision now, bypassing the autonomy gate."""
    log = await get_services().supervisor.execute_trade(agent_id, trade_id)
    if not log.executed:
        error = log.error.model_dump() if log.error else {"code": "execution_failed", "message": "Execution failed"}
        raise HTTPException(status_code=409, detail={**error, "trade_log": log.model_dump(mode="json")})
    return log


@app.get("/agents/{agent_id}/approval", response_model=Optional[PendingApproval])
async def agent_pending_approval(agent_id: str):
    return await get_services().approvals.pending_for(agent_id)


@app.get("/approvals/{approval_id}", response_model=PendingApproval)
async def get_approval(approval_id: str):
    return await get_services().approvals.get(approval_id)


@app.post("/approvals/{approval_id}/approve", response_model=ApprovalResolution)
async def approve_trade(approval_id: str):
    return await get_services().approvals.approve(approval_id)


@app.post("/approvals/{approval_id}/reject", response_model=ApprovalResolution)
async def reject_trade(approval_id: str):
    return await get_services().approvals.reject(approval_id)


@app.post("/vault/withdrawal-check", response_model=WithdrawalCheck)
async def vault_withdrawal_check(body: WithdrawalCheckRequest):
    return check_withdrawal(body.owner_shares, body.total_shares, body.requested_shares)


@app.get("/agents/{agent_id}/vault/max-withdrawable", response_model=MaxWithdrawableResponse)
async def agent_max_withdrawable(agent_id: str):
    services = get_services()
    await services.store.require_agent(agent_id)
    return MaxWithdrawableResponse(agent_id=agent_id, max_withdrawable=await services.vault.max_withdrawable(agent_id))


@app.post("/agents/{agent_id}/vault/withdrawal-check", response_model=WithdrawalCheck)
async def agent_withdrawal_check(agent_id: str, body: AgentWithdrawalRequest):
    services = get_services()
    await services.store.require_agent(agent_id)
    return await services.vault.authorize_withdrawal(agent_id, body.requested_shares)
