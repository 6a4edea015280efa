"""
Recovery Execution State Machine

Validates status transitions of recovery executions.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Set

from .errors import InvalidTransitionError
from .models import RecoveryExecution, RecoveryStatus


class ExecutionStateMachine:
    """
    Guards ``RecoveryExecution.status``.

    Only pending and in_progress have outgoing transitions. Entering a
    terminal status stamps the end time if it is not already set.
    """

    TRANSITIONS: Dict[RecoveryStatus, Set[RecoveryStatus]] = {
        RecoveryStatus.PENDING: {
            RecoveryStatus.IN_PROGRESS,
            RecoveryStatus.CANCELLED,
            RecoveryStatus.FAILED,
        },
        RecoveryStatus.IN_PROGRESS: {
            RecoveryStatus.COMPLETED,
            RecoveryStatus.FAILED,
            RecoveryStatus.CANCELLED,
            RecoveryStatus.ROLLED_BACK,
        },
        RecoveryStatus.FAILED: set(),
        RecoveryStatus.COMPLETED: set(),
        RecoveryStatus.ROLLED_BACK: set(),
        RecoveryStatus.CANCELLED: set(),
    }

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def can_transition(cls, from_status: RecoveryStatus, to_status: RecoveryStatus) -> bool:
        return to_status in cls.TRANSITIONS.get(from_status, set())

    def transition(
        self,
        execution: RecoveryExecution,
        to_status: RecoveryStatus,
        reason: Optional[str] = None,
    ) -> None:
        """
        Move ``execution`` to ``to_status``.

        Raises:
            InvalidTransitionError: If transition is not allowed
        """
        from_status = execution.status
        if not self.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status)

        execution.status = to_status
        if execution.is_terminal and execution.end_time is None:
            execution.end_time = datetime.now(timezone.utc)

        self.logger.info(
            f"Recovery {execution.id}: {from_status.value} -> {to_status.value}"
            f"{f' ({reason})' if reason else ''}"
        )
