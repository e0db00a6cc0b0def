"""
TickScheduler - fires one tick per interval for a single agent.

The timer loop never waits on a tick: each firing spawns its own task.
A tick that finds the agent's guard held is skipped and counted, never
queued. Stopping cancels future firings only; in-flight ticks finish and
write their trade log.
"""
import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional, Set

from ..config import FleetSettings
from ..errors import FleetError, SchedulerStartError
from ..schemas import ErrorInfo, ErrorRecord, LifecycleState, TickOutcome, utc_now
from .cycle import TradingCycle, describe
from .health import assess_health

logger = logging.getLogger("fleet_trader.runtime.scheduler")

StateSink = Callable[[LifecycleState], Awaitable[None]]


class TickScheduler:
    def __init__(
        self,
        agent_id: str,
        cycle: TradingCycle,
        state: LifecycleState,
        guard: asyncio.Lock,
        settings: FleetSettings,
        interval_ms: int,
        on_state_change: Optional[StateSink] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.agent_id = agent_id
        self.cycle = cycle
        self.state = state
        self.guard = guard
        self.settings = settings
        self.interval_ms = interval_ms
        self.on_state_change = on_state_change
        self.clock = clock
        self._task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    async def _publish(self) -> None:
        self.state.health_status = assess_health(self.state, self.settings, self.clock(), self.state.runner_active)
        if self.on_state_change:
            await self.on_state_change(self.state)

    async def start(self) -> LifecycleState:
        if self.running:
            raise SchedulerStartError(f"Scheduler for agent {self.agent_id} is already running")

        self._task = asyncio.create_task(self._loop(), name=f"tick-loop-{self.agent_id}")
        self.state.runner_active = True
        self.state.interval_ms = self.interval_ms
        self.state.started_at = self.clock()
        self.state.error_count = 0
        self.state.recent_errors = []
        await self._publish()
        logger.info(f"[Agent {self.agent_id}] Scheduler started (every {self.interval_ms / 1000:.0f}s)")
        return self.state

    async def stop(self) -> LifecycleState:
        """Cancel future firings. In-flight ticks keep running."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info(f"[Agent {self.agent_id}] Scheduler stopped ({self.inflight} tick(s) still in flight)")

        self.state.runner_active = False
        await self._publish()
        return self.state

    async def wait_idle(self) -> None:
        """Wait for every in-flight tick to finish."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def _loop(self) -> None:
        interval = self.interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            task = asyncio.create_task(self.run_tick("timer"), name=f"tick-{self.agent_id}")
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def run_tick(self, trigger: str = "timer") -> TickOutcome:
        """Run one tick under the single-flight guard."""
        if self.guard.locked():
            self.state.skipped_ticks += 1
            logger.info(f"[Agent {self.agent_id}] Tick already in flight, skipping {trigger} tick")
            await self._publish()
            return TickOutcome(
                agent_id=self.agent_id,
                trigger=trigger,
                skipped=True,
                reason="Tick already in flight",
            )

        async with self.guard:
            try:
                outcome = await self.cycle.run(self.agent_id, trigger)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = self._error_info(e)
                await self._record_failure(error)
                return TickOutcome(agent_id=self.agent_id, trigger=trigger, error=error)

            await self._record_success()
            logger.info(f"[Agent {self.agent_id}] Tick #{self.state.tick_count} complete: {describe(outcome)}")
            return outcome

    @staticmethod
    def _error_info(error: Exception) -> ErrorInfo:
        if isinstance(error, FleetError):
            return ErrorInfo(**error.to_dict())
        return ErrorInfo(code="tick_failed", message=f"{type(error).__name__}: {error}")

    async def _record_success(self) -> None:
        self.state.tick_count += 1
        self.state.last_tick_at = self.clock()
        self.state.error_count = 0
        await self._publish()

    async def _record_failure(self, error: ErrorInfo) -> None:
        now = self.clock()
        self.state.tick_count += 1
        self.state.last_tick_at = now
        self.state.error_count += 1
        self.state.total_errors += 1
        self.state.last_error = error.message
        self.state.recent_errors.append(ErrorRecord(at=now, code=error.code, message=error.message))
        self.state.recent_errors = self.state.recent_errors[-self.settings.max_recorded_errors:]
        logger.error(
            f"[Agent {self.agent_id}] Tick failed ({self.state.error_count} consecutive): "
            f"{error.code}: {error.message}"
        )
        await self._publish()
