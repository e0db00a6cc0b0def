"""
Agent runtime: autonomy gate, approvals, execution routing, tick
scheduling and lifecycle supervision.
"""
from .approvals import ApprovalStateMachine
from .autonomy import evaluate_gate
from .cycle import TradingCycle
from .execution import BuilderFeeManager, ExecutionRouter
from .lifecycle import LifecycleSupervisor
from .scheduler import TickScheduler

__all__ = [
    "ApprovalStateMachine",
    "BuilderFeeManager",
    "ExecutionRouter",
    "LifecycleSupervisor",
    "TickScheduler",
    "TradingCycle",
    "evaluate_gate",
]
