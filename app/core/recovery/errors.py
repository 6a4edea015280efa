"""
Recovery Errors

Defines the error taxonomy for recovery orchestration.
Admission errors are raised synchronously to callers of execute; step
failures are absorbed into the execution record and never surface.
"""

from typing import Any, Dict, Optional


class RecoveryError(Exception):
    """Base class for recovery orchestration errors."""

    code = "RECOVERY_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


# Admission errors (synchronous)
class StrategyNotFoundError(RecoveryError):
    """No strategy registered under the requested id."""

    code = "STRATEGY_NOT_FOUND"

    def __init__(self, strategy_id: str):
        super().__init__(
            f"Recovery strategy not found: {strategy_id}",
            details={"strategyId": strategy_id},
        )
        self.strategy_id = strategy_id


class ErrorNotFoundError(RecoveryError):
    """The error source has no record of the requested error."""

    code = "ERROR_NOT_FOUND"

    def __init__(self, error_id: str):
        super().__init__(
            f"Error not found: {error_id}",
            details={"errorId": error_id},
        )
        self.error_id = error_id


class RecoveryAlreadyInProgressError(RecoveryError):
    """Another execution is already running for the same error."""

    code = "RECOVERY_IN_PROGRESS"

    def __init__(self, error_id: str, execution_id: Optional[str] = None):
        super().__init__(
            f"Recovery already in progress for error: {error_id}",
            details={"errorId": error_id, "executionId": execution_id},
        )
        self.error_id = error_id
        self.execution_id = execution_id


class ConcurrencyLimitExceededError(RecoveryError):
    """Too many non-terminal executions are tracked."""

    code = "CONCURRENCY_LIMIT"

    def __init__(self, limit: int):
        super().__init__(
            "Maximum concurrent recoveries limit reached",
            details={"limit": limit},
        )
        self.limit = limit


class AutomationNotPermittedError(RecoveryError):
    """Unattended execution was requested but policy requires approval."""

    code = "AUTOMATION_NOT_PERMITTED"

    def __init__(self, strategy_id: str, reason: str):
        super().__init__(
            f"Unattended execution of {strategy_id} not permitted: {reason}",
            details={"strategyId": strategy_id, "reason": reason},
        )
        self.strategy_id = strategy_id
        self.reason = reason


class InvalidTransitionError(RecoveryError):
    """Execution status change not allowed from the current status."""

    code = "INVALID_TRANSITION"

    def __init__(self, from_status: Any, to_status: Any):
        from_value = getattr(from_status, "value", from_status)
        to_value = getattr(to_status, "value", to_status)
        super().__init__(
            f"Invalid transition from {from_value} to {to_value}",
            details={"from": from_value, "to": to_value},
        )
        self.from_status = from_status
        self.to_status = to_status


# Step failures (recorded on the execution, never raised to callers)
class StepActionFailure(RecoveryError):
    """A step action attempt failed."""

    code = "STEP_ACTION_FAILED"

    def __init__(self, message: str, step_id: Optional[str] = None, retryable: bool = True):
        super().__init__(message, details={"stepId": step_id, "retryable": retryable})
        self.step_id = step_id
        self.retryable = retryable


class UnsupportedStepTypeError(StepActionFailure):
    """No action handler is registered for the step type."""

    code = "UNSUPPORTED_STEP_TYPE"

    def __init__(self, step_type: Any, step_id: Optional[str] = None):
        type_value = getattr(step_type, "value", step_type)
        super().__init__(
            f"Unsupported step type: {type_value}",
            step_id=step_id,
            retryable=False,
        )
        self.step_type = step_type
