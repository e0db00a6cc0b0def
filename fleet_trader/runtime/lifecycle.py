"""
LifecycleSupervisor - owns the per-agent scheduler registry and
reconciles it with agent status.

Public operations return structured results instead of raising for
expected conditions (unknown agent, invalid interval, exchange down).
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from ..config import FleetSettings
from ..errors import FleetError, InvalidIntervalError, UnknownAgentError
from ..schemas import (
    Agent,
    AgentStatus,
    ErrorInfo,
    HealReport,
    HealthReport,
    HealthStatus,
    InitializeReport,
    LifecycleResult,
    LifecycleState,
    LifecycleSummary,
    TickOutcome,
    TradeLog,
    utc_now,
)
from ..store import AgentStore
from .cycle import TradingCycle
from .health import assess_health
from .scheduler import TickScheduler

logger = logging.getLogger("fleet_trader.runtime.lifecycle")


def _error(e: Exception) -> ErrorInfo:
    if isinstance(e, FleetError):
        return ErrorInfo(**e.to_dict())
    return ErrorInfo(code="internal_error", message=f"{type(e).__name__}: {e}")


class LifecycleSupervisor:
    def __init__(
        self,
        store: AgentStore,
        cycle: TradingCycle,
        settings: FleetSettings,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.cycle = cycle
        self.settings = settings
        self.clock = clock
        self._schedulers: Dict[str, TickScheduler] = {}
        self._states: Dict[str, LifecycleState] = {}
        self._guards: Dict[str, asyncio.Lock] = {}
        self._registry_lock = asyncio.Lock()
        self._heal_task: Optional[asyncio.Task] = None
        self._draining: List[TickScheduler] = []

    # ------------------------------------------------------------ internals

    def is_running(self, agent_id: str) -> bool:
        scheduler = self._schedulers.get(agent_id)
        return scheduler is not None and scheduler.running

    def _guard(self, agent_id: str) -> asyncio.Lock:
        return self._guards.setdefault(agent_id, asyncio.Lock())

    async def _state(self, agent_id: str) -> LifecycleState:
        state = self._states.get(agent_id)
        if state is None:
            state = await self.store.get_lifecycle_state(agent_id) or LifecycleState(agent_id=agent_id)
            # A persisted state from a previous process is never running here.
            state.runner_active = False
            self._states[agent_id] = state
        return state

    def _resolve_interval(self, agent: Agent, interval_ms: Optional[int]) -> int:
        if interval_ms is None:
            interval_ms = agent.tick_interval_ms or self.settings.default_tick_interval_ms
        if isinstance(interval_ms, bool) or not isinstance(interval_ms, int) or interval_ms <= 0:
            raise InvalidIntervalError(f"Tick interval must be a positive integer of ms, got {interval_ms!r}")
        clamped = self.settings.clamp_interval(interval_ms)
        if clamped != interval_ms:
            logger.info(f"[Agent {agent.id}] Interval {interval_ms}ms clamped to {clamped}ms")
        return clamped

    async def _scheduler_for(self, agent_id: str, interval_ms: int) -> TickScheduler:
        return TickScheduler(
            agent_id=agent_id,
            cycle=self.cycle,
            state=await self._state(agent_id),
            guard=self._guard(agent_id),
            settings=self.settings,
            interval_ms=interval_ms,
            on_state_change=self.store.save_lifecycle_state,
            clock=self.clock,
        )

    async def _start(self, agent: Agent, interval_ms: Optional[int]) -> LifecycleState:
        """Caller holds the registry lock."""
        interval = self._resolve_interval(agent, interval_ms)
        scheduler = await self._scheduler_for(agent.id, interval)
        state = await scheduler.start()
        self._schedulers[agent.id] = scheduler
        return state

    async def _stop(self, agent_id: str) -> LifecycleState:
        """
        Caller holds the registry lock. The cached runtime state is dropped;
        the persisted snapshot is what a later start rebuilds from. A
        scheduler with a tick in flight keeps its state until it drains.
        """
        self._prune_draining()
        scheduler = self._schedulers.pop(agent_id, None)
        if scheduler is not None:
            state = await scheduler.stop()
            if scheduler.inflight:
                self._draining.append(scheduler)
            else:
                self._states.pop(agent_id, None)
            return state
        state = await self._state(agent_id)
        state.runner_active = False
        state.health_status = HealthStatus.STOPPED
        await self.store.save_lifecycle_state(state)
        self._states.pop(agent_id, None)
        return state

    def _prune_draining(self) -> None:
        draining = []
        for scheduler in self._draining:
            if scheduler.inflight:
                draining.append(scheduler)
            elif scheduler.agent_id not in self._schedulers and self._states.get(scheduler.agent_id) is scheduler.state:
                self._states.pop(scheduler.agent_id)
        self._draining = draining

    def _evaluate(self, agent: Agent, state: LifecycleState) -> LifecycleState:
        state.health_status = assess_health(
            state,
            self.settings,
            self.clock(),
            running=self.is_running(agent.id),
            expected_running=agent.status == AgentStatus.ACTIVE,
        )
        return state.model_copy(deep=True)

    # ------------------------------------------------------------ operations

    async def initialize(self) -> InitializeReport:
        """
        Start a scheduler for every active agent that has none and stop
        schedulers of agents that are no longer active. Idempotent.
        """
        report = InitializeReport()
        async with self._registry_lock:
            for agent in await self.store.list_agents():
                try:
                    if agent.status == AgentStatus.ACTIVE:
                        if self.is_running(agent.id):
                            report.already_running.append(agent.id)
                        else:
                            await self._start(agent, None)
                            report.started.append(agent.id)
                    elif self.is_running(agent.id):
                        await self._stop(agent.id)
                        report.stopped.append(agent.id)
                except Exception as e:
                    logger.error(f"[Lifecycle] Failed to reconcile agent {agent.id}: {e}")
                    report.errors[agent.id] = _error(e)

        self._start_auto_heal_loop()
        logger.info(
            f"[Lifecycle] Initialized: {len(report.started)} started, {len(report.stopped)} stopped, "
            f"{len(report.already_running)} already running, {len(report.errors)} errors"
        )
        return report

    async def activate(self, agent_id: str, interval_ms: Optional[int] = None) -> LifecycleResult:
        """Start the scheduler, then mark the agent active. No-op if already running."""
        async with self._registry_lock:
            try:
                agent = await self.store.require_agent(agent_id)
                if self.is_running(agent_id):
                    return LifecycleResult(
                        agent_id=agent_id,
                        action="activate",
                        ok=True,
                        state=self._evaluate(agent, await self._state(agent_id)),
                        note="Already running",
                    )
                state = await self._start(agent, interval_ms)
                if agent.status != AgentStatus.ACTIVE:
                    try:
                        await self.store.update_agent(agent_id, status=AgentStatus.ACTIVE)
                    except Exception:
                        await self._stop(agent_id)
                        raise
                logger.info(f"[Lifecycle] Agent {agent_id} activated")
                return LifecycleResult(agent_id=agent_id, action="activate", ok=True, state=state.model_copy(deep=True))
            except Exception as e:
                logger.warning(f"[Lifecycle] Activate failed for {agent_id}: {e}")
                return LifecycleResult(agent_id=agent_id, action="activate", ok=False, error=_error(e))

    async def deactivate(self, agent_id: str, status: AgentStatus = AgentStatus.PAUSED) -> LifecycleResult:
        """Stop the scheduler, then set the agent's status. Safe on a stopped agent."""
        async with self._registry_lock:
            try:
                agent = await self.store.require_agent(agent_id)
                state = await self._stop(agent_id)
                if agent.status != status:
                    await self.store.update_agent(agent_id, status=status)
                logger.info(f"[Lifecycle] Agent {agent_id} deactivated ({status.value})")
                return LifecycleResult(
                    agent_id=agent_id, action="deactivate", ok=True, state=state.model_copy(deep=True)
                )
            except Exception as e:
                logger.warning(f"[Lifecycle] Deactivate failed for {agent_id}: {e}")
                return LifecycleResult(agent_id=agent_id, action="deactivate", ok=False, error=_error(e))

    async def handle_status_change(self, agent_id: str, status: AgentStatus) -> LifecycleResult:
        """Bring the scheduler in line with a status set elsewhere (e.g. a settings update)."""
        if status == AgentStatus.ACTIVE:
            return await self.activate(agent_id)
        return await self.deactivate(agent_id, status=status)

    async def health(self, agent_id: Optional[str] = None) -> HealthReport:
        try:
            if agent_id is not None:
                agents = [await self.store.require_agent(agent_id)]
            else:
                agents = await self.store.list_agents()
            states = []
            for agent in agents:
                state = await self._state(agent.id)
                states.append(self._evaluate(agent, state))
            return HealthReport(ok=True, agents=states)
        except Exception as e:
            return HealthReport(ok=False, error=_error(e))

    async def auto_heal(self) -> HealReport:
        """
        Restart active agents that are unhealthy or degraded. Agents that
        are not active are never touched.
        """
        report = HealReport()
        async with self._registry_lock:
            for agent in await self.store.list_agents(status=AgentStatus.ACTIVE):
                report.checked += 1
                state = self._evaluate(agent, await self._state(agent.id))
                if state.health_status not in (HealthStatus.UNHEALTHY, HealthStatus.DEGRADED):
                    continue

                interval = self._schedulers[agent.id].interval_ms if agent.id in self._schedulers else None
                logger.info(f"[Lifecycle] Healing agent {agent.id} ({state.health_status.value})")
                try:
                    await self._stop(agent.id)
                    await self._start(agent, interval)
                    report.healed.append(agent.id)
                except Exception as e:
                    logger.error(f"[Lifecycle] Heal failed for {agent.id}: {e}")
                    report.failed[agent.id] = _error(e)

        if report.healed or report.failed:
            logger.info(f"[Lifecycle] Auto-heal: {len(report.healed)} healed, {len(report.failed)} failed")
        return report

    async def stop_all(self) -> List[str]:
        """Stop every scheduler. Agent statuses are left as they are."""
        async with self._registry_lock:
            stopped = list(self._schedulers)
            for agent_id in stopped:
                await self._stop(agent_id)
        logger.info(f"[Lifecycle] Stopped {len(stopped)} scheduler(s)")
        return stopped

    async def tick(self, agent_id: str) -> TickOutcome:
        """Run one tick now, through the same single-flight guard as the timer."""
        try:
            agent = await self.store.require_agent(agent_id)
        except UnknownAgentError as e:
            return TickOutcome(agent_id=agent_id, trigger="manual", error=_error(e))

        scheduler = self._schedulers.get(agent_id)
        if scheduler is None:
            interval = agent.tick_interval_ms or self.settings.default_tick_interval_ms
            scheduler = await self._scheduler_for(agent_id, self.settings.clamp_interval(interval))
        return await scheduler.run_tick("manual")

    async def execute_trade(self, agent_id: str, trade_id: str) -> TradeLog:
        """
        Execute a logged, unexecuted decision now. Waits for any tick in
        flight for the agent, then runs under the same guard.
        """
        async with self._guard(agent_id):
            return await self.cycle.execute_trade(agent_id, trade_id)

    async def summary(self) -> LifecycleSummary:
        report = await self.health()
        by_health: Dict[str, int] = {status.value: 0 for status in HealthStatus}
        for state in report.agents:
            by_health[state.health_status.value] += 1
        return LifecycleSummary(
            total_agents=len(report.agents),
            running=sum(1 for s in report.agents if self.is_running(s.agent_id)),
            by_health=by_health,
            agents=report.agents,
        )

    # ------------------------------------------------------------ background

    def _start_auto_heal_loop(self) -> None:
        if self.settings.auto_heal_interval_sec <= 0:
            return
        if self._heal_task is not None and not self._heal_task.done():
            return
        self._heal_task = asyncio.create_task(self._auto_heal_loop(), name="auto-heal")

    async def _auto_heal_loop(self) -> None:
        logger.info(f"[Lifecycle] Auto-heal every {self.settings.auto_heal_interval_sec:.0f}s")
        while True:
            await asyncio.sleep(self.settings.auto_heal_interval_sec)
            try:
                await self.auto_heal()
            except Exception as e:
                logger.error(f"[Lifecycle] Auto-heal pass failed: {e}", exc_info=True)

    async def wait_idle(self) -> None:
        """Wait for in-flight ticks, including those of stopped schedulers."""
        for scheduler in list(self._schedulers.values()) + self._draining:
            await scheduler.wait_idle()
        self._prune_draining()

    async def shutdown(self) -> None:
        if self._heal_task is not None:
            self._heal_task.cancel()
            try:
                await self._heal_task
            except asyncio.CancelledError:
                pass
            self._heal_task = None
        await self.stop_all()
        await self.wait_idle()
