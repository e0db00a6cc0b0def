"""
Error taxonomy for the orchestrator.

Every error carries a stable machine-readable code so that lifecycle
results and API responses can report it without string matching.
"""
from typing import Any, Dict, Optional


class FleetError(Exception):
    """Base class for all orchestrator errors."""

    code = "fleet_error"

    def __init__(self, message: str, code: Optional[str] = None):
        if code:
            self.code = code
        self.message = message
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class ConfigurationError(FleetError):
    code = "invalid_config"


class UnknownAgentError(FleetError):
    code = "unknown_agent"

    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"Unknown agent '{agent_id}'")


class InvalidIntervalError(FleetError):
    code = "invalid_interval"


class TransientExchangeError(FleetError):
    """Network timeouts, connection errors, rate limits and 5xx responses."""

    code = "exchange_unavailable"

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class CircuitBreakerOpen(FleetError):
    """Raised when circuit breaker is open and request is rejected."""

    code = "exchange_circuit_open"

    def __init__(self, service: str, remaining_seconds: float):
        self.service = service
        self.remaining_seconds = remaining_seconds
        super().__init__(
            f"Circuit breaker open for '{service}', retry in {remaining_seconds:.1f}s"
        )


class BusinessRejection(FleetError):
    """Exchange or pre-trade rejection that retrying cannot fix."""

    code = "business_rejection"


class LeverageUpdateFailed(FleetError):
    code = "leverage_update_failed"

    def __init__(self, coin: str, leverage: int, cause: Exception):
        self.coin = coin
        self.leverage = leverage
        self.cause = cause
        super().__init__(f"Leverage update to {leverage}x on {coin} failed: {cause}")


class InvariantViolation(FleetError):
    code = "invariant_violation"


class ApprovalNotFound(FleetError):
    code = "approval_not_found"

    def __init__(self, approval_id: str):
        self.approval_id = approval_id
        super().__init__(f"No approval with id '{approval_id}'")


class ApprovalExpired(FleetError):
    code = "approval_expired"

    def __init__(self, approval_id: str):
        self.approval_id = approval_id
        super().__init__(f"Approval '{approval_id}' has expired")


class ApprovalStateError(FleetError):
    code = "approval_invalid_state"


class CustodyError(FleetError):
    code = "custody_unavailable"


class SchedulerStartError(FleetError):
    code = "scheduler_start_failed"


class ExecutionFailed(FleetError):
    """An unexpected exception escaped order execution."""

    code = "execution_failed"

    def __init__(self, cause: Exception):
        self.cause = cause
        super().__init__(f"{type(cause).__name__}: {cause}")


class ExecutionAmbiguous(FleetError):
    """A resent action was rejected after an earlier attempt may have landed."""

    code = "execution_ambiguous"


class TradeNotFound(FleetError):
    code = "trade_not_found"

    def __init__(self, trade_id: str):
        self.trade_id = trade_id
        super().__init__(f"No trade log with id '{trade_id}'")


class TradeAlreadyExecuted(FleetError):
    code = "trade_already_executed"


class TradeNotExecutable(FleetError):
    code = "trade_not_executable"
