"""
Approval state machine for semi-autonomous agents.

    pending -> approved   (approve before expiry; executes synchronously)
    pending -> rejected   (reject before expiry)
    pending -> expired    (observed lazily on any read after expires_at)

Terminal states never change. At most one approval per agent is pending;
every transition for an agent runs under that agent's lock.
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from ..errors import ApprovalExpired, ApprovalNotFound, ApprovalStateError, ExecutionFailed, FleetError
from ..schemas import (
    Agent,
    ApprovalResolution,
    ApprovalStatus,
    ErrorInfo,
    TERMINAL_APPROVAL_STATUSES,
    PendingApproval,
    TradeDecision,
    TradeLog,
    TradeSource,
    utc_now,
)
from ..store import AgentStore
from .execution import ExecutionRouter

logger = logging.getLogger("fleet_trader.runtime.approvals")


class ApprovalStateMachine:
    def __init__(self, store: AgentStore, router: ExecutionRouter, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.router = router
        self.clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, agent_id: str) -> asyncio.Lock:
        return self._locks.setdefault(agent_id, asyncio.Lock())

    async def _expire_if_due(self, agent: Agent) -> Optional[PendingApproval]:
        """Returns the agent's approval after applying lazy expiry."""
        approval = agent.pending_approval
        if approval is None or approval.status != ApprovalStatus.PENDING:
            return approval

        now = self.clock()
        if not approval.is_expired(now):
            return approval

        expired = approval.model_copy(update={"status": ApprovalStatus.EXPIRED, "resolved_at": now})
        await self.store.update_agent(agent.id, pending_approval=expired)
        logger.info(f"[Agent {agent.id}] Approval {approval.id} expired")
        return expired

    async def _locate(self, approval_id: str) -> Agent:
        agent = await self.store.find_agent_by_approval(approval_id)
        if agent is None:
            raise ApprovalNotFound(approval_id)
        return agent

    async def _load(self, agent_id: str, approval_id: str) -> PendingApproval:
        """Fresh read under the agent lock."""
        agent = await self.store.require_agent(agent_id)
        approval = await self._expire_if_due(agent)
        if approval is None or approval.id != approval_id:
            raise ApprovalNotFound(approval_id)
        return approval

    @staticmethod
    def _require_pending(approval: PendingApproval) -> None:
        if approval.status == ApprovalStatus.EXPIRED:
            raise ApprovalExpired(approval.id)
        if approval.status in TERMINAL_APPROVAL_STATUSES:
            raise ApprovalStateError(f"Approval '{approval.id}' is already {approval.status.value}")

    async def propose(self, agent_id: str, decision: TradeDecision) -> Optional[PendingApproval]:
        """
        Create a pending approval, or return None if one is already pending.
        Never overwrites or stacks approvals.
        """
        async with self._lock(agent_id):
            agent = await self.store.require_agent(agent_id)
            current = await self._expire_if_due(agent)
            if current is not None and current.status == ApprovalStatus.PENDING:
                logger.info(f"[Agent {agent_id}] Approval {current.id} already pending, not proposing")
                return None

            approval = PendingApproval.create(
                agent_id=agent_id,
                decision=decision,
                timeout_ms=agent.autonomy.approval_timeout_ms,
                now=self.clock(),
            )
            await self.store.update_agent(agent_id, pending_approval=approval)
            logger.info(
                f"TRADE QUEUED: {approval.id} - {decision.action.value} {decision.asset} "
                f"size {decision.size:.2f} (expires {approval.expires_at.isoformat()})"
            )
            return approval

    async def get(self, approval_id: str) -> PendingApproval:
        agent = await self._locate(approval_id)
        async with self._lock(agent.id):
            return await self._load(agent.id, approval_id)

    async def pending_for(self, agent_id: str) -> Optional[PendingApproval]:
        """The agent's approval if it is still pending, after lazy expiry."""
        async with self._lock(agent_id):
            agent = await self.store.require_agent(agent_id)
            approval = await self._expire_if_due(agent)
            if approval is not None and approval.status == ApprovalStatus.PENDING:
                return approval
            return None

    async def approve(self, approval_id: str) -> ApprovalResolution:
        """
        Approve and execute. Execution failures are recorded in the
        returned trade log; the approval itself stays approved.
        """
        agent = await self._locate(approval_id)
        async with self._lock(agent.id):
            approval = await self._load(agent.id, approval_id)
            self._require_pending(approval)

            approved = approval.model_copy(update={"status": ApprovalStatus.APPROVED, "resolved_at": self.clock()})
            agent = await self.store.update_agent(agent.id, pending_approval=approved)
            logger.info(f"[Agent {agent.id}] Approval {approval_id} approved, executing")

            log = TradeLog(
                agent_id=agent.id,
                timestamp=self.clock(),
                decision=approved.decision,
                source=TradeSource.APPROVAL,
                note=f"Approved {approval_id}",
            )
            execution = None
            try:
                execution = await self.router.execute_decision(agent, approved.decision)
            except FleetError as e:
                logger.error(f"[Agent {agent.id}] Approved trade {approval_id} failed: {e}")
                log.error = ErrorInfo(**e.to_dict())
            except Exception as e:
                logger.error(f"[Agent {agent.id}] Approved trade {approval_id} crashed: {e}", exc_info=True)
                log.error = ErrorInfo(**ExecutionFailed(e).to_dict())
            else:
                log.executed = True
                log.execution_result = execution

            await self.store.append_trade_log(log)
            return ApprovalResolution(approval=approved, trade_log=log, execution=execution)

    async def reject(self, approval_id: str) -> ApprovalResolution:
        agent = await self._locate(approval_id)
        async with self._lock(agent.id):
            approval = await self._load(agent.id, approval_id)
            self._require_pending(approval)

            rejected = approval.model_copy(update={"status": ApprovalStatus.REJECTED, "resolved_at": self.clock()})
            await self.store.update_agent(agent.id, pending_approval=rejected)
            logger.info(f"[Agent {agent.id}] Approval {approval_id} rejected")

            log = TradeLog(
                agent_id=agent.id,
                timestamp=self.clock(),
                decision=rejected.decision,
                executed=False,
                source=TradeSource.APPROVAL,
                note=f"Rejected {approval_id}",
            )
            await self.store.append_trade_log(log)
            return ApprovalResolution(approval=rejected, trade_log=log)
