"""
TradingCycle - one evaluate-decide-gate-execute pass for one agent.

Handoffs (strict order):
  load agent -> market/account state -> decision -> risk checks
  -> autonomy gate -> execute / propose approval / hold -> trade log
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from ..config import FleetSettings
from ..custody import CustodyResolver
from ..decision import DecisionProvider
from ..errors import (
    BusinessRejection,
    ExecutionFailed,
    FleetError,
    TradeAlreadyExecuted,
    TradeNotExecutable,
    TradeNotFound,
)
from ..exchange import ExchangeAdapter
from ..risk import sanitize_decision
from ..schemas import (
    ErrorInfo,
    GateOutcome,
    GateVerdict,
    TickOutcome,
    TradeAction,
    TradeLog,
    TradeSource,
    utc_now,
)
from ..store import AgentStore
from .approvals import ApprovalStateMachine
from .autonomy import evaluate_gate
from .execution import ExecutionRouter

logger = logging.getLogger("fleet_trader.runtime.cycle")


def start_of_utc_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


class TradingCycle:
    """
    Runs a single tick. Exceptions other than business rejections
    propagate to the scheduler, which records them as tick errors; an
    execution failure is logged to the trade log before propagating.
    """

    def __init__(
        self,
        store: AgentStore,
        adapter: ExchangeAdapter,
        custody: CustodyResolver,
        decisions: DecisionProvider,
        approvals: ApprovalStateMachine,
        router: ExecutionRouter,
        settings: FleetSettings,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.adapter = adapter
        self.custody = custody
        self.decisions = decisions
        self.approvals = approvals
        self.router = router
        self.settings = settings
        self.clock = clock

    async def run(self, agent_id: str, trigger: str = "timer") -> TickOutcome:
        source = TradeSource.MANUAL if trigger == "manual" else TradeSource.TICK

        logger.info(f"[Agent {agent_id}] [1/6] Loading agent...")
        agent = await self.store.require_agent(agent_id)

        logger.info(f"[Agent {agent_id}] [2/6] Fetching market and account state...")
        address = await self.custody.address(agent_id)
        market = await self.adapter.get_market_state(agent.markets)
        account = await self.adapter.get_account_state(address)

        logger.info(f"[Agent {agent_id}] [3/6] Making decision...")
        raw_decision = await self.decisions.decide(agent, market, account)

        logger.info(f"[Agent {agent_id}] [4/6] Risk checks...")
        decision, notes = sanitize_decision(agent, raw_decision, account, market)
        for note in notes:
            logger.info(f"[Agent {agent_id}] Risk: {note}")

        logger.info(f"[Agent {agent_id}] [5/6] Autonomy gate...")
        executed_today = await self.store.count_executed_since(agent_id, start_of_utc_day(self.clock()))
        gate = evaluate_gate(agent.autonomy, decision, executed_today)
        logger.info(
            f"[Agent {agent_id}] Decision {decision.action.value} {decision.asset} "
            f"(conf {decision.confidence:.2f}) -> {gate.verdict.value}: {gate.reason}"
        )

        logger.info(f"[Agent {agent_id}] [6/6] Acting on verdict...")
        outcome = TickOutcome(agent_id=agent_id, trigger=trigger, verdict=gate.verdict, reason=gate.reason)
        log = TradeLog(
            agent_id=agent_id,
            timestamp=self.clock(),
            decision=decision,
            source=source,
            note=gate.reason,
        )

        if gate.verdict == GateVerdict.PENDING_APPROVAL:
            approval = await self.approvals.propose(agent_id, decision)
            if approval is None:
                gate = GateOutcome(verdict=GateVerdict.HOLD, reason="An approval is already pending")
                outcome.verdict, outcome.reason = gate.verdict, gate.reason
                log.note = gate.reason
            else:
                outcome.approval = approval
                log.note = f"Awaiting approval {approval.id} until {approval.expires_at.isoformat()}"

        elif gate.verdict == GateVerdict.EXECUTE:
            try:
                report = await self.router.execute_decision(agent, decision, account, market)
            except BusinessRejection as e:
                logger.warning(f"[Agent {agent_id}] Order rejected: {e.message}")
                log.error = ErrorInfo(**e.to_dict())
                outcome.reason = e.message
            except FleetError as e:
                log.error = ErrorInfo(**e.to_dict())
                await self.store.append_trade_log(log)
                raise
            except Exception as e:
                failure = ExecutionFailed(e)
                log.error = ErrorInfo(**failure.to_dict())
                await self.store.append_trade_log(log)
                raise failure from e
            else:
                log.executed = True
                log.execution_result = report
                log.note = f"Executed via {report.signing_method.value} signer"

        outcome.trade_log = await self.store.append_trade_log(log)
        return outcome

    async def execute_trade(self, agent_id: str, trade_id: str) -> TradeLog:
        """
        Execute a logged decision that was not executed, bypassing the
        autonomy gate. This is how manual-mode agents trade. Execution
        failures are recorded on the returned log, not raised.
        """
        agent = await self.store.require_agent(agent_id)
        original = await self.store.get_trade_log(agent_id, trade_id)
        if original is None:
            raise TradeNotFound(trade_id)
        if original.decision.action == TradeAction.HOLD:
            raise TradeNotExecutable(f"Trade '{trade_id}' is a hold decision")
        if await self.store.is_trade_executed(agent_id, trade_id):
            raise TradeAlreadyExecuted(f"Trade '{trade_id}' is already executed")

        log = TradeLog(
            agent_id=agent_id,
            timestamp=self.clock(),
            decision=original.decision,
            source=TradeSource.MANUAL,
            source_trade_id=trade_id,
            note=f"Manual execution of {trade_id}",
        )
        try:
            report = await self.router.execute_decision(agent, original.decision)
        except FleetError as e:
            logger.warning(f"[Agent {agent_id}] Manual execution of {trade_id} failed: {e}")
            log.error = ErrorInfo(**e.to_dict())
        except Exception as e:
            logger.error(f"[Agent {agent_id}] Manual execution of {trade_id} crashed: {e}", exc_info=True)
            log.error = ErrorInfo(**ExecutionFailed(e).to_dict())
        else:
            log.executed = True
            log.execution_result = report
            logger.info(f"[Agent {agent_id}] Trade {trade_id} executed manually via {report.signing_method.value}")

        return await self.store.append_trade_log(log)


def describe(outcome: Optional[TickOutcome]) -> str:
    if outcome is None:
        return "no outcome"
    if outcome.skipped:
        return "skipped"
    if outcome.error:
        return f"error {outcome.error.code}"
    executed = outcome.trade_log.executed if outcome.trade_log else False
    return f"{outcome.verdict.value if outcome.verdict else '-'}{' (executed)' if executed else ''}"
