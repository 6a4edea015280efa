"""
Recovery Execution Engine

Admits recovery requests, runs each execution's steps in order with
per-step retry, backoff and timeout, and finalises the execution record.

Executions are run one at a time by the execution queue. Callers only
create, read and cancel; every other mutation happens on the worker.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import structlog

from .actions import ActionResult, StepActionDispatcher, StepContext
from .errors import (
    AutomationNotPermittedError,
    ConcurrencyLimitExceededError,
    ErrorNotFoundError,
    RecoveryAlreadyInProgressError,
    StepActionFailure,
    UnsupportedStepTypeError,
)
from .events import RecoveryEventBus, RecoveryEventType
from .models import (
    AutoRecoveryConfig,
    LogLevel,
    RecoveryExecution,
    RecoveryLog,
    RecoveryStatus,
    RecoveryStep,
    RecoveryStepExecution,
    RiskLevel,
    StructuredError,
)
from .persistence import ErrorSource, ExecutionStore
from .policy import admission_block_reason
from .queue import ExecutionQueue
from .recommender import strategy_confidence
from .state_machine import ExecutionStateMachine
from .strategies import StrategyCatalog
from .templates import render_parameters

SleepFn = Callable[[float], Awaitable[Any]]

_slog = structlog.stdlib.get_logger("recovery.executor")

_LOG_METHODS = {
    LogLevel.DEBUG: "debug",
    LogLevel.INFO: "info",
    LogLevel.WARN: "warning",
    LogLevel.ERROR: "error",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_recommendations(execution: RecoveryExecution) -> List[str]:
    result = execution.result
    recommendations: List[str] = []

    if result.success:
        recommendations.append("Monitor system for 30 minutes to ensure stability")
        if execution.strategy.risk_level == RiskLevel.HIGH:
            recommendations.append("Review system performance metrics after recovery")
        if result.steps_completed < result.total_steps:
            recommendations.append("Investigate why some recovery steps were skipped")
    else:
        recommendations.append("Escalate to manual intervention")
        recommendations.append("Review recovery strategy effectiveness")
        if result.steps_completed > 0:
            recommendations.append("Consider partial rollback of completed steps")

    return recommendations


def generate_follow_up_actions(execution: RecoveryExecution) -> List[str]:
    if execution.result.success:
        return [
            "Update monitoring thresholds if needed",
            "Document successful recovery for future reference",
        ]
    return [
        "Create incident report",
        "Review and improve recovery strategy",
        "Consider additional monitoring for this error pattern",
    ]


class RecoveryExecutionEngine:
    """
    Runs recovery strategies against errors.

    Features:
    - Synchronous admission checks (lookup, duplicate, concurrency, automation)
    - Sequential steps with retry and linear backoff
    - Per-step timeouts
    - Cooperative cancellation at step and attempt boundaries
    - Optional rollback of completed steps when an execution fails
    """

    def __init__(
        self,
        catalog: StrategyCatalog,
        error_source: ErrorSource,
        store: ExecutionStore,
        dispatcher: StepActionDispatcher,
        events: RecoveryEventBus,
        config: Optional[AutoRecoveryConfig] = None,
        *,
        retry_base_delay: float = 2.0,
        resolution_window: timedelta = timedelta(minutes=10),
        auto_rollback: bool = False,
        continue_after_retry_exhaustion: bool = False,
        sleep: Optional[SleepFn] = None,
        queue: Optional[ExecutionQueue] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.catalog = catalog
        self.error_source = error_source
        self.store = store
        self.dispatcher = dispatcher
        self.events = events
        self.config = config or AutoRecoveryConfig()
        self.retry_base_delay = retry_base_delay
        self.resolution_window = resolution_window
        self.auto_rollback = auto_rollback
        self.continue_after_retry_exhaustion = continue_after_retry_exhaustion
        self.logger = logger or logging.getLogger(__name__)

        self._sleep: SleepFn = sleep or asyncio.sleep
        self._state = ExecutionStateMachine(self.logger)
        self._active: Dict[str, RecoveryExecution] = {}
        self._last_finished: Dict[str, RecoveryExecution] = {}
        self.queue = queue or ExecutionQueue(self.run_queued, logger=self.logger)

    # ---------------------------
    # Introspection
    # ---------------------------
    @property
    def active(self) -> Dict[str, RecoveryExecution]:
        """Tracked executions keyed by id. Read-only view for callers."""
        return self._active

    def get_active(self, execution_id: str) -> Optional[RecoveryExecution]:
        return self._active.get(execution_id)

    def list_active(self) -> List[RecoveryExecution]:
        """Pending and in-progress executions."""
        return [e for e in self._active.values() if not e.is_terminal]

    def evict(self, execution_id: str) -> bool:
        return self._active.pop(execution_id, None) is not None

    # ---------------------------
    # Admission
    # ---------------------------
    async def execute(
        self,
        error_id: str,
        strategy_id: str,
        initiated_by: str,
        auto_execution: bool = False,
    ) -> RecoveryExecution:
        """
        Admit and enqueue a recovery execution.

        Returns the new execution with status pending.

        Raises:
            StrategyNotFoundError: unknown strategy id
            ErrorNotFoundError: the error source has no such error
            RecoveryAlreadyInProgressError: the error is already being recovered
            ConcurrencyLimitExceededError: too many tracked executions
            AutomationNotPermittedError: unattended run refused by policy
        """
        strategy = self.catalog.get(strategy_id)

        error = await self.error_source.get_error(error_id)
        if error is None:
            raise ErrorNotFoundError(error_id)

        for existing in self._active.values():
            if existing.error_id == error_id and existing.status == RecoveryStatus.IN_PROGRESS:
                raise RecoveryAlreadyInProgressError(error_id, existing.id)

        tracked = sum(1 for e in self._active.values() if not e.is_terminal)
        if tracked >= self.config.max_concurrent_recoveries:
            raise ConcurrencyLimitExceededError(self.config.max_concurrent_recoveries)

        if auto_execution:
            confidence = strategy_confidence(strategy, error)
            reason = admission_block_reason(
                strategy,
                error,
                confidence,
                self.config,
                self._last_finished.values(),
            )
            if reason:
                self.logger.info(f"Unattended recovery of {error_id} with {strategy_id} refused: {reason}")
                raise AutomationNotPermittedError(strategy_id, reason)

        execution = RecoveryExecution.create(
            error_id=error_id,
            strategy=strategy,
            initiated_by=initiated_by,
            auto_execution=auto_execution,
        )
        self._log(
            execution,
            LogLevel.INFO,
            f"Recovery execution created for strategy: {strategy.name}",
            initiatedBy=initiated_by,
            autoExecution=auto_execution,
        )

        # Tracked before the first await so concurrent admissions see it
        self._active[execution.id] = execution
        try:
            await self._persist_create(execution)
            await self.events.emit(
                RecoveryEventType.RECOVERY_INITIATED,
                {
                    "executionId": execution.id,
                    "errorId": error_id,
                    "strategyId": strategy.id,
                    "autoExecution": auto_execution,
                },
            )
            await self.queue.enqueue(execution.id)
        except Exception:
            self._active.pop(execution.id, None)
            raise

        return execution

    # ---------------------------
    # Cancellation
    # ---------------------------
    async def cancel(self, execution_id: str, cancelled_by: str) -> bool:
        """
        Cancel an in-progress execution.

        Takes effect at the worker's next step or attempt boundary. Returns
        False for unknown ids and executions that are not in progress.
        """
        execution = self._active.get(execution_id)
        if execution is None or execution.status != RecoveryStatus.IN_PROGRESS:
            return False

        self._state.transition(execution, RecoveryStatus.CANCELLED, reason=f"cancelled by {cancelled_by}")
        execution.end_time = _utcnow()
        self._log(execution, LogLevel.WARN, f"Recovery cancelled by {cancelled_by}")

        await self._persist_update(execution)
        self._active.pop(execution_id, None)

        await self.events.emit(
            RecoveryEventType.RECOVERY_CANCELLED,
            {
                "executionId": execution.id,
                "errorId": execution.error_id,
                "cancelledBy": cancelled_by,
            },
        )
        return True

    # ---------------------------
    # Running
    # ---------------------------
    async def run_queued(self, execution_id: str) -> None:
        """Queue worker entry point."""
        execution = self._active.get(execution_id)
        if execution is None:
            self.logger.debug(f"Execution {execution_id} no longer tracked, skipping")
            return
        await self.run_execution(execution)

    async def run_execution(self, execution: RecoveryExecution) -> None:
        if execution.status != RecoveryStatus.PENDING:
            self.logger.debug(f"Execution {execution.id} is {execution.status.value}, skipping")
            return

        try:
            error = await self.error_source.get_error(execution.error_id)
        except Exception as exc:  # noqa: BLE001
            self.logger.warning(f"Failed to load error {execution.error_id}: {exc}")
            error = None

        if error is None:
            self._state.transition(execution, RecoveryStatus.FAILED)
            self._log(execution, LogLevel.ERROR, "Associated error not found")
            await self._finalize(execution)
            return

        try:
            self._state.transition(execution, RecoveryStatus.IN_PROGRESS)
            self._log(
                execution,
                LogLevel.INFO,
                f"Starting recovery execution for strategy: {execution.strategy.name}",
            )
            await self._persist_update(execution)
            await self._run_steps(execution, error)
        except Exception as exc:  # noqa: BLE001
            if not execution.is_terminal:
                self._state.transition(execution, RecoveryStatus.FAILED)
            self._log(execution, LogLevel.ERROR, f"Recovery execution failed: {exc}")
        finally:
            await self._finalize(execution)

    async def _run_steps(self, execution: RecoveryExecution, error: StructuredError) -> None:
        steps = execution.strategy.steps
        total = len(steps)

        for index, step in enumerate(steps):
            if self._is_cancelled(execution):
                return

            execution.current_step = index
            self._log(execution, LogLevel.INFO, f"Executing step {index + 1}/{total}: {step.name}", step.id)

            step_execution = execution.steps[index]
            success, fatal = await self._run_step(execution, error, step, step_execution)
            if success:
                execution.result.steps_completed += 1
                self._log(execution, LogLevel.INFO, f"Step completed successfully: {step.name}", step.id)

            if self._is_cancelled(execution):
                return

            if not success:
                self._log(
                    execution,
                    LogLevel.ERROR,
                    f"Step failed: {step.name} - {step_execution.error}",
                    step.id,
                )
                if fatal or not step.retryable or not self.continue_after_retry_exhaustion:
                    await self._fail(execution, error, f"Recovery aborted at step {step.id}")
                    return

            await self._persist_update(execution)

        if self._is_cancelled(execution):
            return

        if execution.result.steps_completed == total:
            error_resolved = await self._check_resolution(execution, error)
            if self._is_cancelled(execution):
                return
            execution.result.success = True
            execution.result.error_resolved = error_resolved
            self._state.transition(execution, RecoveryStatus.COMPLETED)
            self._log(execution, LogLevel.INFO, "Recovery execution completed successfully")
        else:
            await self._fail(execution, error, "Recovery execution failed - not all steps completed")

    async def _run_step(
        self,
        execution: RecoveryExecution,
        error: StructuredError,
        step: RecoveryStep,
        step_execution: RecoveryStepExecution,
    ) -> Tuple[bool, bool]:
        """
        Run one step with retries.

        Returns (success, fatal). A fatal failure aborts the execution
        regardless of the step's retry settings.
        """
        step_execution.start_time = _utcnow()
        step_execution.status = RecoveryStatus.IN_PROGRESS
        max_attempts = max(1, step.max_retries)
        template_context = {"error": error, "execution": execution}

        for attempt in range(1, max_attempts + 1):
            step_execution.attempts = attempt
            fatal = False

            try:
                parameters = render_parameters(step.parameters, template_context)
                result = await self._invoke(step, parameters, StepContext(error, execution, step, attempt))
            except UnsupportedStepTypeError as exc:
                result = ActionResult(success=False, error=exc.message)
                fatal = True
            except StepActionFailure as exc:
                result = ActionResult(success=False, error=exc.message)
                fatal = not exc.retryable
            except asyncio.TimeoutError:
                result = ActionResult(success=False, error=f"Step timed out after {step.timeout}s")
            except Exception as exc:  # noqa: BLE001
                result = ActionResult(success=False, error=str(exc) or type(exc).__name__)

            # A finished attempt keeps its outcome even if a cancel arrived meanwhile
            if self._is_cancelled(execution) and not result.success:
                step_execution.status = RecoveryStatus.CANCELLED
                step_execution.end_time = _utcnow()
                return False, False

            if result.success:
                step_execution.status = RecoveryStatus.COMPLETED
                step_execution.output = result.output
                step_execution.end_time = _utcnow()
                return True, False

            self._log(
                execution,
                LogLevel.WARN,
                f"Step attempt {attempt}/{max_attempts} failed: {result.error}",
                step.id,
            )

            if attempt < max_attempts and step.retryable and not fatal:
                await self._sleep(self.retry_base_delay * attempt)
                if self._is_cancelled(execution):
                    step_execution.status = RecoveryStatus.CANCELLED
                    step_execution.end_time = _utcnow()
                    return False, False
                continue

            step_execution.status = RecoveryStatus.FAILED
            step_execution.error = result.error
            step_execution.end_time = _utcnow()
            return False, fatal

        return False, False

    async def _invoke(
        self,
        step: RecoveryStep,
        parameters: Dict[str, Any],
        context: StepContext,
    ) -> ActionResult:
        call = self.dispatcher.dispatch(step, parameters, context)
        if step.timeout and step.timeout > 0:
            return await asyncio.wait_for(call, timeout=step.timeout)
        return await call

    async def _fail(self, execution: RecoveryExecution, error: StructuredError, message: str) -> None:
        self._log(execution, LogLevel.ERROR, message)
        rolled_back = self.auto_rollback and await self._rollback(execution, error)
        if self._is_cancelled(execution):
            return
        if rolled_back:
            self._state.transition(execution, RecoveryStatus.ROLLED_BACK)
            return
        self._state.transition(execution, RecoveryStatus.FAILED)

    async def _rollback(self, execution: RecoveryExecution, error: StructuredError) -> bool:
        """Roll back completed steps that require it, newest first."""
        pairs = [
            (step, step_execution)
            for step, step_execution in zip(execution.strategy.steps, execution.steps)
            if step.rollback_required and step_execution.status == RecoveryStatus.COMPLETED
        ]
        if not pairs:
            return False

        template_context = {"error": error, "execution": execution}
        for step, step_execution in reversed(pairs):
            try:
                parameters = render_parameters(step.parameters, template_context)
                result = await self.dispatcher.rollback(step, parameters, StepContext(error, execution, step))
            except Exception as exc:  # noqa: BLE001
                result = ActionResult(success=False, error=str(exc))

            if result.success:
                step_execution.rollback_performed = True
                self._log(execution, LogLevel.INFO, f"Rolled back step: {step.name}", step.id)
            else:
                self._log(execution, LogLevel.ERROR, f"Rollback failed for step {step.name}: {result.error}", step.id)

        execution.rollback_executed = True
        return True

    async def _check_resolution(self, execution: RecoveryExecution, error: StructuredError) -> bool:
        try:
            recent = await self.error_source.find_recent_occurrences(error.fingerprint, self.resolution_window)
        except Exception as exc:  # noqa: BLE001
            self._log(execution, LogLevel.WARN, f"Error resolution check failed: {exc}")
            return False
        return len(recent) == 0

    async def _finalize(self, execution: RecoveryExecution) -> None:
        execution.end_time = _utcnow()
        result = execution.result
        result.time_taken_ms = (execution.end_time - execution.start_time).total_seconds() * 1000
        result.recommendations = generate_recommendations(execution)
        result.follow_up_actions = generate_follow_up_actions(execution)
        result.side_effects = [
            step_execution.output
            for step, step_execution in zip(execution.strategy.steps, execution.steps)
            if step.rollback_required
            and step_execution.status == RecoveryStatus.COMPLETED
            and step_execution.output
        ]

        await self._persist_update(execution)
        self._active.pop(execution.id, None)
        self._last_finished[execution.error_id] = execution

        await self.events.emit(
            RecoveryEventType.RECOVERY_COMPLETED,
            {
                "executionId": execution.id,
                "errorId": execution.error_id,
                "status": execution.status.value,
                "success": result.success,
                "errorResolved": result.error_resolved,
            },
        )

    # ---------------------------
    # Helpers
    # ---------------------------
    @staticmethod
    def _is_cancelled(execution: RecoveryExecution) -> bool:
        return execution.status == RecoveryStatus.CANCELLED

    def _log(
        self,
        execution: RecoveryExecution,
        level: LogLevel,
        message: str,
        step_id: Optional[str] = None,
        **metadata: Any,
    ) -> None:
        execution.logs.append(RecoveryLog(level=level, message=message, step_id=step_id, metadata=metadata))
        bound = _slog.bind(execution_id=execution.id, step_id=step_id)
        getattr(bound, _LOG_METHODS[level])(message, **metadata)

    async def _persist_create(self, execution: RecoveryExecution) -> None:
        try:
            await self.store.create(execution)
        except Exception as exc:  # noqa: BLE001
            self.logger.error(f"Failed to store recovery execution {execution.id}: {exc}")

    async def _persist_update(self, execution: RecoveryExecution) -> None:
        try:
            await self.store.update(execution)
        except Exception as exc:  # noqa: BLE001
            self.logger.error(f"Failed to update recovery execution {execution.id}: {exc}")
