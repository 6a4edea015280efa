"""
Automation Gate

Decides whether a strategy may run without a human approving it.
All checks are pure functions of the strategy, the error, the confidence
and the auto-recovery config.
"""

from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from .models import (
    AutoRecoveryConfig,
    RecoveryExecution,
    RecoveryStrategy,
    RiskLevel,
    StructuredError,
)

AUTOMATION_CONFIDENCE_THRESHOLD = 0.7
PRODUCTION_ENVIRONMENT = "production"


def automation_block_reason(
    strategy: RecoveryStrategy,
    error: StructuredError,
    confidence: float,
    config: AutoRecoveryConfig,
) -> Optional[str]:
    """
    Return the first rule that prevents unattended execution, or None.

    Rules are checked in order: global switch, strategy flag, high risk,
    production environment, critical services, confidence.
    """
    approvals = config.required_approvals

    if not config.enabled:
        return "Automatic recovery is disabled"

    if not strategy.automatic_execution:
        return "Strategy does not allow automatic execution"

    if strategy.risk_level == RiskLevel.HIGH and approvals.high_risk:
        return "High risk strategies require approval"

    if error.context.environment == PRODUCTION_ENVIRONMENT and approvals.production_environment:
        return "Production environment requires approval"

    if error.context.service in approvals.critical_services:
        return f"Service {error.context.service} is critical and requires approval"

    if not confidence > AUTOMATION_CONFIDENCE_THRESHOLD:
        return f"Confidence {confidence:.2f} is below {AUTOMATION_CONFIDENCE_THRESHOLD}"

    return None


def should_automate(
    strategy: RecoveryStrategy,
    error: StructuredError,
    confidence: float,
    config: AutoRecoveryConfig,
) -> bool:
    return automation_block_reason(strategy, error, confidence, config) is None


def is_blacklisted(error: StructuredError, config: AutoRecoveryConfig) -> bool:
    return error.context.service in config.blacklisted_services


def cooldown_remaining(
    error_id: str,
    executions: Iterable[RecoveryExecution],
    cooldown_period: float,
    now: Optional[datetime] = None,
) -> float:
    """
    Seconds left before another unattended run for ``error_id`` is allowed.

    Counts only executions for the same error that have ended.
    """
    if cooldown_period <= 0:
        return 0.0

    now = now or datetime.now(timezone.utc)
    window = timedelta(seconds=cooldown_period)
    remaining = 0.0
    for execution in executions:
        if execution.error_id != error_id or execution.end_time is None:
            continue
        elapsed = now - execution.end_time
        if elapsed < window:
            remaining = max(remaining, (window - elapsed).total_seconds())
    return remaining


def admission_block_reason(
    strategy: RecoveryStrategy,
    error: StructuredError,
    confidence: float,
    config: AutoRecoveryConfig,
    recent_executions: Iterable[RecoveryExecution],
    now: Optional[datetime] = None,
) -> Optional[str]:
    """Checks applied when an execution is requested unattended."""
    reason = automation_block_reason(strategy, error, confidence, config)
    if reason:
        return reason

    if is_blacklisted(error, config):
        return f"Service {error.context.service} is blacklisted for automatic recovery"

    remaining = cooldown_remaining(error.id, recent_executions, config.cooldown_period, now)
    if remaining > 0:
        return f"Cooldown active for error {error.id} ({remaining:.0f}s remaining)"

    return None
