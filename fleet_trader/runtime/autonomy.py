"""
Autonomy gate - decides whether a decision executes now, waits for a
human, or is held. Pure: no I/O, no clock.
"""
from ..schemas import AutonomyConfig, AutonomyMode, GateOutcome, GateVerdict, TradeAction, TradeDecision


def evaluate_gate(autonomy: AutonomyConfig, decision: TradeDecision, todays_executed_count: int) -> GateOutcome:
    """
    Checks run in a fixed order and the first match wins:

    1. hold decisions stay hold
    2. confidence below the floor holds
    3. daily trade cap reached holds
    4. full autonomy executes
    5. semi autonomy asks for approval
    6. manual holds (logged for the human to act on)
    """
    if decision.action == TradeAction.HOLD:
        return GateOutcome(verdict=GateVerdict.HOLD, reason="Decision is hold")

    if decision.confidence < autonomy.min_confidence:
        return GateOutcome(
            verdict=GateVerdict.HOLD,
            reason=f"Confidence {decision.confidence:.2f} below minimum {autonomy.min_confidence:.2f}",
        )

    if todays_executed_count >= autonomy.max_trades_per_day:
        return GateOutcome(
            verdict=GateVerdict.HOLD,
            reason=f"Daily trade cap reached ({todays_executed_count}/{autonomy.max_trades_per_day})",
        )

    if autonomy.mode == AutonomyMode.FULL:
        return GateOutcome(verdict=GateVerdict.EXECUTE, reason="Full autonomy")

    if autonomy.mode == AutonomyMode.SEMI:
        return GateOutcome(verdict=GateVerdict.PENDING_APPROVAL, reason="Semi autonomy requires approval")

    return GateOutcome(verdict=GateVerdict.HOLD, reason="Manual mode: decision recorded, not executed")
