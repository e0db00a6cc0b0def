"""
Tests for a single trading cycle: decide, check, gate, act, log.
"""

import pytest

from fleet_trader.errors import (
    ExecutionFailed,
    TradeAlreadyExecuted,
    TradeNotExecutable,
    TradeNotFound,
    TransientExchangeError,
    UnknownAgentError,
)
from fleet_trader.runtime.cycle import describe, start_of_utc_day
from fleet_trader.schemas import (
    ApprovalStatus,
    AutonomyConfig,
    AutonomyMode,
    GateVerdict,
    TradeAction,
    TradeDecision,
    TradeSource,
)

from conftest import long_btc, make_agent, seed


class TestFullAutonomy:
    """Ticks for agents that execute on their own."""

    @pytest.mark.asyncio
    async def test_executes_and_logs(self, fleet):
        await seed(fleet.store, make_agent())
        outcome = await fleet.cycle.run("agent-1")

        assert outcome.verdict == GateVerdict.EXECUTE
        assert outcome.trade_log.executed is True
        assert outcome.trade_log.source == TradeSource.TICK
        assert outcome.trade_log.note == "Executed via direct_key signer"
        assert fleet.exchange.count("order") == 1

        logs = await fleet.store.trade_logs("agent-1")
        assert [log.id for log in logs] == [outcome.trade_log.id]

    @pytest.mark.asyncio
    async def test_manual_trigger_source(self, fleet):
        await seed(fleet.store, make_agent())
        outcome = await fleet.cycle.run("agent-1", trigger="manual")
        assert outcome.trade_log.source == TradeSource.MANUAL

    @pytest.mark.asyncio
    async def test_low_confidence_holds(self, fleet):
        await seed(fleet.store, make_agent())
        fleet.decisions.decision = long_btc(confidence=0.3)

        outcome = await fleet.cycle.run("agent-1")
        assert outcome.verdict == GateVerdict.HOLD
        assert outcome.trade_log.executed is False
        assert fleet.exchange.count("order") == 0

    @pytest.mark.asyncio
    async def test_daily_cap(self, fleet):
        autonomy = AutonomyConfig(mode=AutonomyMode.FULL, min_confidence=0.5, max_trades_per_day=1)
        await seed(fleet.store, make_agent(autonomy=autonomy))

        first = await fleet.cycle.run("agent-1")
        second = await fleet.cycle.run("agent-1")
        assert first.trade_log.executed is True
        assert second.verdict == GateVerdict.HOLD
        assert "Daily trade cap" in second.reason

        # A new UTC day resets the count.
        fleet.clock.advance(days=1)
        third = await fleet.cycle.run("agent-1")
        assert third.trade_log.executed is True

    @pytest.mark.asyncio
    async def test_business_rejection_is_not_an_error(self, fleet):
        await seed(fleet.store, make_agent())
        fleet.exchange.withdrawable = 50.0

        outcome = await fleet.cycle.run("agent-1")
        assert outcome.error is None
        assert outcome.trade_log.executed is False
        assert outcome.trade_log.error.code == "business_rejection"

    @pytest.mark.asyncio
    async def test_execution_failure_logged_then_raised(self, fleet):
        await seed(fleet.store, make_agent())
        fleet.exchange.order_error = TransientExchangeError("exchange down")

        with pytest.raises(TransientExchangeError):
            await fleet.cycle.run("agent-1")

        logs = await fleet.store.trade_logs("agent-1")
        assert len(logs) == 1
        assert logs[0].executed is False
        assert logs[0].error.code == "exchange_unavailable"

    @pytest.mark.asyncio
    async def test_unexpected_execution_error_logged_then_raised(self, fleet):
        await seed(fleet.store, make_agent())
        fleet.exchange.order_error = KeyError("statuses")

        with pytest.raises(ExecutionFailed) as exc_info:
            await fleet.cycle.run("agent-1")
        assert isinstance(exc_info.value.cause, KeyError)

        logs = await fleet.store.trade_logs("agent-1")
        assert len(logs) == 1
        assert logs[0].executed is False
        assert logs[0].error.code == "execution_failed"

    @pytest.mark.asyncio
    async def test_market_failure_writes_no_log(self, fleet):
        await seed(fleet.store, make_agent())
        fleet.exchange.market_error = TransientExchangeError("exchange down")

        with pytest.raises(TransientExchangeError):
            await fleet.cycle.run("agent-1")
        assert await fleet.store.trade_logs("agent-1") == []
        assert fleet.decisions.calls == 0

    @pytest.mark.asyncio
    async def test_unknown_agent(self, fleet):
        with pytest.raises(UnknownAgentError):
            await fleet.cycle.run("ghost")

    @pytest.mark.asyncio
    async def test_disallowed_market_held_by_risk_checks(self, fleet):
        await seed(fleet.store, make_agent(markets=["ETH"]))
        outcome = await fleet.cycle.run("agent-1")

        assert outcome.verdict == GateVerdict.HOLD
        assert outcome.trade_log.decision.action == TradeAction.HOLD
        assert fleet.exchange.count("order") == 0


class TestSemiAutonomy:
    """Ticks that hand decisions to a human."""

    @pytest.mark.asyncio
    async def test_proposes_approval(self, fleet):
        await seed(fleet.store, make_agent(mode=AutonomyMode.SEMI))
        outcome = await fleet.cycle.run("agent-1")

        assert outcome.verdict == GateVerdict.PENDING_APPROVAL
        assert outcome.approval.status == ApprovalStatus.PENDING
        assert outcome.trade_log.executed is False
        assert outcome.approval.id in outcome.trade_log.note
        assert fleet.exchange.count("order") == 0

    @pytest.mark.asyncio
    async def test_second_tick_does_not_stack(self, fleet):
        await seed(fleet.store, make_agent(mode=AutonomyMode.SEMI))
        first = await fleet.cycle.run("agent-1")
        second = await fleet.cycle.run("agent-1")

        assert second.verdict == GateVerdict.HOLD
        assert second.reason == "An approval is already pending"
        assert second.approval is None
        pending = await fleet.approvals.pending_for("agent-1")
        assert pending.id == first.approval.id


class TestManualMode:
    """Manual agents record decisions and act only on an explicit request."""

    @pytest.mark.asyncio
    async def test_logs_original_decision(self, fleet):
        await seed(fleet.store, make_agent(mode=AutonomyMode.MANUAL))
        outcome = await fleet.cycle.run("agent-1")

        assert outcome.verdict == GateVerdict.HOLD
        assert outcome.trade_log.decision.action == TradeAction.LONG
        assert outcome.trade_log.executed is False
        assert outcome.trade_log.note.startswith("Manual mode")
        assert (await fleet.store.get_agent("agent-1")).pending_approval is None

    @pytest.mark.asyncio
    async def test_logged_decision_executed_on_request(self, fleet):
        await seed(fleet.store, make_agent(mode=AutonomyMode.MANUAL))
        held = (await fleet.cycle.run("agent-1")).trade_log
        assert fleet.exchange.count("order") == 0

        log = await fleet.cycle.execute_trade("agent-1", held.id)

        assert log.executed is True
        assert log.source == TradeSource.MANUAL
        assert log.source_trade_id == held.id
        assert log.decision == held.decision
        assert fleet.exchange.count("order") == 1
        assert await fleet.store.is_trade_executed("agent-1", held.id)

    @pytest.mark.asyncio
    async def test_executed_trade_not_repeated(self, fleet):
        await seed(fleet.store, make_agent(mode=AutonomyMode.MANUAL))
        held = (await fleet.cycle.run("agent-1")).trade_log
        await fleet.cycle.execute_trade("agent-1", held.id)

        with pytest.raises(TradeAlreadyExecuted):
            await fleet.cycle.execute_trade("agent-1", held.id)
        assert fleet.exchange.count("order") == 1

    @pytest.mark.asyncio
    async def test_hold_and_unknown_trades_rejected(self, fleet):
        await seed(fleet.store, make_agent(mode=AutonomyMode.MANUAL))
        fleet.decisions.decision = TradeDecision.hold("flat")
        held = (await fleet.cycle.run("agent-1")).trade_log

        with pytest.raises(TradeNotExecutable):
            await fleet.cycle.execute_trade("agent-1", held.id)
        with pytest.raises(TradeNotFound):
            await fleet.cycle.execute_trade("agent-1", "missing")
        assert fleet.exchange.count("order") == 0

    @pytest.mark.asyncio
    async def test_failed_execution_recorded_and_retryable(self, fleet):
        await seed(fleet.store, make_agent(mode=AutonomyMode.MANUAL))
        held = (await fleet.cycle.run("agent-1")).trade_log
        fleet.exchange.order_error = TransientExchangeError("exchange down")

        failed = await fleet.cycle.execute_trade("agent-1", held.id)
        assert failed.executed is False
        assert failed.error.code == "exchange_unavailable"

        fleet.exchange.order_error = None
        retried = await fleet.cycle.execute_trade("agent-1", held.id)
        assert retried.executed is True
        assert len(await fleet.store.trade_logs("agent-1")) == 3


class TestHelpers:
    def test_start_of_utc_day(self, clock):
        assert start_of_utc_day(clock.now).hour == 0
        assert start_of_utc_day(clock.now).date() == clock.now.date()

    def test_describe(self):
        assert describe(None) == "no outcome"

    @pytest.mark.asyncio
    async def test_describe_hold(self, fleet):
        await seed(fleet.store, make_agent())
        fleet.decisions.decision = TradeDecision.hold("flat")
        outcome = await fleet.cycle.run("agent-1")
        assert describe(outcome) == "hold"
