"""
Tests for the approval state machine.
"""

import pytest

from fleet_trader.errors import (
    ApprovalExpired,
    ApprovalNotFound,
    ApprovalStateError,
    TransientExchangeError,
)
from fleet_trader.schemas import ApprovalStatus, AutonomyMode, TradeSource

from conftest import long_btc, make_agent, seed


class TestPropose:
    """Tests for creating approvals."""

    @pytest.mark.asyncio
    async def test_creates_pending_with_timeout(self, fleet):
        await seed(fleet.store, make_agent(mode=AutonomyMode.SEMI))
        approval = await fleet.approvals.propose("agent-1", long_btc())

        assert approval.status == ApprovalStatus.PENDING
        assert (approval.expires_at - approval.created_at).total_seconds() == 300
        stored = await fleet.store.get_agent("agent-1")
        assert stored.pending_approval.id == approval.id

    @pytest.mark.asyncio
    async def test_never_stacks(self, fleet):
        await seed(fleet.store, make_agent(mode=AutonomyMode.SEMI))
        first = await fleet.approvals.propose("agent-1", long_btc())
        second = await fleet.approvals.propose("agent-1", long_btc(confidence=0.95))

        assert second is None
        stored = await fleet.store.get_agent("agent-1")
        assert stored.pending_approval.id == first.id

    @pytest.mark.asyncio
    async def test_replaces_expired(self, fleet):
        await seed(fleet.store, make_agent(mode=AutonomyMode.SEMI))
        first = await fleet.approvals.propose("agent-1", long_btc())
        fleet.clock.advance(minutes=6)

        second = await fleet.approvals.propose("agent-1", long_btc())
        assert second is not None
        assert second.id != first.id


class TestExpiry:
    """Expiry is applied lazily on reads."""

    @pytest.mark.asyncio
    async def test_get_marks_expired(self, fleet):
        await seed(fleet.store, make_agent(mode=AutonomyMode.SEMI))
        approval = await fleet.approvals.propose("agent-1", long_btc())

        fleet.clock.advance(minutes=4, seconds=59)
        assert (await fleet.approvals.get(approval.id)).status == ApprovalStatus.PENDING

        fleet.clock.advance(seconds=1)
        expired = await fleet.approvals.get(approval.id)
        assert expired.status == ApprovalStatus.EXPIRED
        assert expired.resolved_at == fleet.clock.now
        assert await fleet.approvals.pending_for("agent-1") is None

    @pytest.mark.asyncio
    async def test_approve_after_expiry(self, fleet):
        await seed(fleet.store, make_agent(mode=AutonomyMode.SEMI))
        approval = await fleet.approvals.propose("agent-1", long_btc())
        fleet.clock.advance(minutes=10)

        with pytest.raises(ApprovalExpired):
            await fleet.approvals.approve(approval.id)
        assert fleet.exchange.count("order") == 0

    @pytest.mark.asyncio
    async def test_reject_after_expiry(self, fleet):
        await seed(fleet.store, make_agent(mode=AutonomyMode.SEMI))
        approval = await fleet.approvals.propose("agent-1", long_btc())
        fleet.clock.advance(minutes=10)

        with pytest.raises(ApprovalExpired):
            await fleet.approvals.reject(approval.id)


class TestResolve:
    """Tests for approve and reject."""

    @pytest.mark.asyncio
    async def test_approve_executes(self, fleet):
        await seed(fleet.store, make_agent(mode=AutonomyMode.SEMI))
        approval = await fleet.approvals.propose("agent-1", long_btc())

        resolution = await fleet.approvals.approve(approval.id)

        assert resolution.approval.status == ApprovalStatus.APPROVED
        assert resolution.trade_log.executed is True
        assert resolution.trade_log.source == TradeSource.APPROVAL
        assert resolution.execution.result.status == "filled"
        assert fleet.exchange.count("order") == 1
        # Fresh account state is read at approval time.
        assert fleet.exchange.count("account") == 1

        logs = await fleet.store.trade_logs("agent-1")
        assert len(logs) == 1
        assert (await fleet.store.get_agent("agent-1")).total_trades == 1

    @pytest.mark.asyncio
    async def test_approve_twice(self, fleet):
        await seed(fleet.store, make_agent(mode=AutonomyMode.SEMI))
        approval = await fleet.approvals.propose("agent-1", long_btc())
        await fleet.approvals.approve(approval.id)

        with pytest.raises(ApprovalStateError):
            await fleet.approvals.approve(approval.id)
        assert fleet.exchange.count("order") == 1

    @pytest.mark.asyncio
    async def test_reject(self, fleet):
        await seed(fleet.store, make_agent(mode=AutonomyMode.SEMI))
        approval = await fleet.approvals.propose("agent-1", long_btc())

        resolution = await fleet.approvals.reject(approval.id)

        assert resolution.approval.status == ApprovalStatus.REJECTED
        assert resolution.trade_log.executed is False
        assert resolution.execution is None
        assert fleet.exchange.count("order") == 0

        with pytest.raises(ApprovalStateError):
            await fleet.approvals.approve(approval.id)

    @pytest.mark.asyncio
    async def test_unknown_id(self, fleet):
        await seed(fleet.store, make_agent(mode=AutonomyMode.SEMI))
        with pytest.raises(ApprovalNotFound):
            await fleet.approvals.approve("missing")
        with pytest.raises(ApprovalNotFound):
            await fleet.approvals.get("missing")

    @pytest.mark.asyncio
    async def test_execution_failure_recorded(self, fleet):
        await seed(fleet.store, make_agent(mode=AutonomyMode.SEMI))
        approval = await fleet.approvals.propose("agent-1", long_btc())
        fleet.exchange.order_error = TransientExchangeError("exchange down", status_code=503)

        resolution = await fleet.approvals.approve(approval.id)

        assert resolution.approval.status == ApprovalStatus.APPROVED
        assert resolution.execution is None
        assert resolution.trade_log.executed is False
        assert resolution.trade_log.error.code == "exchange_unavailable"
        stored = await fleet.store.get_agent("agent-1")
        assert stored.pending_approval.status == ApprovalStatus.APPROVED

    @pytest.mark.asyncio
    async def test_unexpected_execution_error_recorded(self, fleet):
        await seed(fleet.store, make_agent(mode=AutonomyMode.SEMI))
        approval = await fleet.approvals.propose("agent-1", long_btc())
        fleet.exchange.order_error = ValueError("malformed exchange response")

        resolution = await fleet.approvals.approve(approval.id)

        assert resolution.approval.status == ApprovalStatus.APPROVED
        assert resolution.trade_log.executed is False
        assert resolution.trade_log.error.code == "execution_failed"
        assert "ValueError" in resolution.trade_log.error.message
        logs = await fleet.store.trade_logs("agent-1")
        assert [log.id for log in logs] == [resolution.trade_log.id]
