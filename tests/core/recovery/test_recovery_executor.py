"""
Tests for the Recovery Execution Engine

Covers admission checks, step retry and timeout handling, cancellation,
rollback, resolution checks and the persisted audit trail.
"""

import asyncio
from typing import Any, Dict, List

import pytest
import pytest_asyncio

from app.core.recovery import (
    ActionResult,
    AutomationNotPermittedError,
    ConcurrencyLimitExceededError,
    ConditionOperator,
    ErrorCategory,
    ErrorNotFoundError,
    ErrorRecoveryService,
    InMemoryErrorSource,
    InMemoryExecutionStore,
    RecoveryAlreadyInProgressError,
    RecoveryCondition,
    RecoveryEventType,
    RecoveryStatus,
    RecoveryStep,
    RecoveryStepType,
    RecoveryStrategy,
    RiskLevel,
    StepActionFailure,
    StrategyNotFoundError,
)


def make_step(step_id: str, step_type: RecoveryStepType, **kwargs: Any) -> RecoveryStep:
    return RecoveryStep(id=step_id, name=f"Step {step_id}", type=step_type, **kwargs)


def make_strategy(steps: List[RecoveryStep], strategy_id: str = "test_recovery", **kwargs: Any) -> RecoveryStrategy:
    fields: Dict[str, Any] = {
        "name": "Test Recovery",
        "category": ErrorCategory.DATABASE,
        "applicable_conditions": [
            RecoveryCondition("category", ConditionOperator.EQUALS, ErrorCategory.DATABASE, 1.0),
        ],
        "automatic_execution": True,
        "risk_level": RiskLevel.MEDIUM,
        "success_rate": 0.9,
    }
    fields.update(kwargs)
    return RecoveryStrategy(id=strategy_id, steps=steps, **fields)


def messages(execution) -> List[str]:
    return [log.message for log in execution.logs]


def collect(service: ErrorRecoveryService, event_type: RecoveryEventType) -> List[Dict[str, Any]]:
    received: List[Dict[str, Any]] = []
    service.subscribe(event_type, received.append)
    return received


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def ready(service, db_error):
    """Service that knows about db_error."""
    service.error_source.add(db_error)
    return service


@pytest_asyncio.fixture
async def build_service(recording_sleep, permissive_config, db_error):
    """Factory for services with non-default engine options."""
    created: List[ErrorRecoveryService] = []

    def _build(**kwargs: Any) -> ErrorRecoveryService:
        kwargs.setdefault("config", permissive_config)
        kwargs.setdefault("seed_defaults", False)
        kwargs.setdefault("sleep", recording_sleep)
        svc = ErrorRecoveryService(**kwargs)
        svc.error_source.add(db_error)
        created.append(svc)
        return svc

    yield _build
    for svc in created:
        await svc.shutdown()


async def run(service: ErrorRecoveryService, strategy: RecoveryStrategy, error_id: str = "err-db-1", **kwargs: Any):
    service.add_recovery_strategy(strategy)
    execution = await service.execute_recovery_strategy(error_id, strategy.id, "tester", **kwargs)
    await asyncio.wait_for(service.wait_idle(), timeout=2.0)
    return execution


# =============================================================================
# Successful Runs
# =============================================================================

class TestSuccessfulExecution:
    """Tests for executions where every step succeeds."""

    @pytest.mark.asyncio
    async def test_three_step_success(self, ready, scripted, recording_sleep):
        ready.dispatcher.register(RecoveryStepType.CLEAR_CACHE, scripted(ActionResult(True, "cache cleared")))
        ready.dispatcher.register(RecoveryStepType.RESET_CONNECTION, scripted(ActionResult(True, "pool reset")))
        strategy = make_strategy([
            make_step("clear", RecoveryStepType.CLEAR_CACHE),
            make_step("reset", RecoveryStepType.RESET_CONNECTION),
            make_step(
                "notify",
                RecoveryStepType.SEND_NOTIFICATION,
                parameters={"channels": ["ops"], "message": "Recovered {{error.id}}"},
            ),
        ])

        execution = await run(ready, strategy)

        assert execution.status == RecoveryStatus.COMPLETED
        assert execution.result.success is True
        assert execution.result.steps_completed == 3
        assert execution.result.total_steps == 3
        assert execution.result.error_resolved is True
        assert execution.result.recommendations == ["Monitor system for 30 minutes to ensure stability"]
        assert execution.result.follow_up_actions == [
            "Update monitoring thresholds if needed",
            "Document successful recovery for future reference",
        ]
        assert [s.status for s in execution.steps] == [RecoveryStatus.COMPLETED] * 3
        assert execution.steps[2].output == "Notification sent to channels: ops"
        assert execution.end_time is not None
        assert execution.result.time_taken_ms >= 0
        assert recording_sleep.delays == []
        assert "Recovery execution completed successfully" in messages(execution)

    @pytest.mark.asyncio
    async def test_returned_execution_is_pending(self, ready, scripted):
        ready.dispatcher.register(RecoveryStepType.CLEAR_CACHE, scripted())
        ready.add_recovery_strategy(make_strategy([make_step("clear", RecoveryStepType.CLEAR_CACHE)]))

        execution = await ready.execute_recovery_strategy("err-db-1", "test_recovery", "tester")

        assert execution.status == RecoveryStatus.PENDING
        assert execution.id.startswith("recovery_")
        assert ready.get_active_recoveries() == [execution]

        await ready.wait_idle()
        assert execution.status == RecoveryStatus.COMPLETED
        assert ready.get_active_recoveries() == []
        assert execution.id not in ready.engine.active

    @pytest.mark.asyncio
    async def test_events_are_emitted(self, ready, scripted):
        initiated = collect(ready, RecoveryEventType.RECOVERY_INITIATED)
        completed = collect(ready, RecoveryEventType.RECOVERY_COMPLETED)
        ready.dispatcher.register(RecoveryStepType.CLEAR_CACHE, scripted())

        execution = await run(ready, make_strategy([make_step("clear", RecoveryStepType.CLEAR_CACHE)]))

        assert initiated == [{
            "executionId": execution.id,
            "errorId": "err-db-1",
            "strategyId": "test_recovery",
            "autoExecution": False,
        }]
        assert completed == [{
            "executionId": execution.id,
            "errorId": "err-db-1",
            "status": "completed",
            "success": True,
            "errorResolved": True,
        }]

    @pytest.mark.asyncio
    async def test_parameters_are_rendered(self, ready, scripted):
        handler = scripted()
        ready.dispatcher.register(RecoveryStepType.RESTART_SERVICE, handler)
        strategy = make_strategy([
            make_step(
                "restart",
                RecoveryStepType.RESTART_SERVICE,
                parameters={
                    "service": "{{error.context.service}}",
                    "ref": "{{execution.id}}",
                    "cluster": "{{error.context.cluster}}",
                    "graceful": True,
                },
            ),
        ])

        execution = await run(ready, strategy)

        assert handler.calls == [{
            "service": "orders-api",
            "ref": execution.id,
            "cluster": "{{error.context.cluster}}",
            "graceful": True,
        }]
        assert strategy.steps[0].parameters["service"] == "{{error.context.service}}"

    @pytest.mark.asyncio
    async def test_strategy_is_snapshotted_at_creation(self, ready, scripted):
        handler = scripted()
        ready.dispatcher.register(RecoveryStepType.CLEAR_CACHE, handler)
        ready.add_recovery_strategy(make_strategy([
            make_step("a", RecoveryStepType.CLEAR_CACHE),
            make_step("b", RecoveryStepType.CLEAR_CACHE),
        ]))

        execution = await ready.execute_recovery_strategy("err-db-1", "test_recovery", "tester")
        ready.add_recovery_strategy(make_strategy([]))
        await ready.wait_idle()

        assert execution.status == RecoveryStatus.COMPLETED
        assert len(execution.strategy.steps) == 2
        assert len(handler.calls) == 2


# =============================================================================
# Step Failures
# =============================================================================

class TestStepFailures:
    """Tests for retry, backoff, timeout and abort behaviour."""

    @pytest.mark.asyncio
    async def test_retry_exhaustion_halts_execution(self, ready, scripted, recording_sleep):
        failing = scripted(ActionResult(False, error="pool busy"))
        second = scripted()
        ready.dispatcher.register(RecoveryStepType.RESET_CONNECTION, failing)
        ready.dispatcher.register(RecoveryStepType.CLEAR_CACHE, second)
        strategy = make_strategy([
            make_step("reset", RecoveryStepType.RESET_CONNECTION, max_retries=2),
            make_step("clear", RecoveryStepType.CLEAR_CACHE),
        ])

        execution = await run(ready, strategy)

        assert execution.status == RecoveryStatus.FAILED
        assert execution.result.success is False
        assert execution.result.steps_completed == 0
        assert execution.steps[0].status == RecoveryStatus.FAILED
        assert execution.steps[0].attempts == 2
        assert execution.steps[0].error == "pool busy"
        assert execution.steps[1].status == RecoveryStatus.PENDING
        assert execution.steps[1].attempts == 0
        assert second.calls == []
        assert recording_sleep.delays == [2.0]
        assert "Recovery aborted at step reset" in messages(execution)
        assert execution.result.recommendations == [
            "Escalate to manual intervention",
            "Review recovery strategy effectiveness",
        ]
        assert execution.result.follow_up_actions == [
            "Create incident report",
            "Review and improve recovery strategy",
            "Consider additional monitoring for this error pattern",
        ]

    @pytest.mark.asyncio
    async def test_backoff_grows_linearly(self, ready, scripted, recording_sleep):
        ready.dispatcher.register(RecoveryStepType.RESET_CONNECTION, scripted(ActionResult(False, error="down")))

        execution = await run(ready, make_strategy([make_step("reset", RecoveryStepType.RESET_CONNECTION, max_retries=4)]))

        assert execution.steps[0].attempts == 4
        assert recording_sleep.delays == [2.0, 4.0, 6.0]

    @pytest.mark.asyncio
    async def test_continue_after_retry_exhaustion(self, build_service, scripted):
        service = build_service(continue_after_retry_exhaustion=True)
        second = scripted()
        service.dispatcher.register(RecoveryStepType.RESET_CONNECTION, scripted(ActionResult(False, error="down")))
        service.dispatcher.register(RecoveryStepType.CLEAR_CACHE, second)
        strategy = make_strategy([
            make_step("reset", RecoveryStepType.RESET_CONNECTION, max_retries=2),
            make_step("clear", RecoveryStepType.CLEAR_CACHE),
        ])

        execution = await run(service, strategy)

        assert len(second.calls) == 1
        assert execution.status == RecoveryStatus.FAILED
        assert execution.result.steps_completed == 1
        assert "Recovery execution failed - not all steps completed" in messages(execution)
        assert "Consider partial rollback of completed steps" in execution.result.recommendations

    @pytest.mark.asyncio
    async def test_non_retryable_step_gets_one_attempt(self, build_service, scripted, recording_sleep):
        service = build_service(continue_after_retry_exhaustion=True)
        second = scripted()
        service.dispatcher.register(RecoveryStepType.RESTART_SERVICE, scripted(ActionResult(False, error="refused")))
        service.dispatcher.register(RecoveryStepType.CLEAR_CACHE, second)
        strategy = make_strategy([
            make_step("restart", RecoveryStepType.RESTART_SERVICE, retryable=False, max_retries=3),
            make_step("clear", RecoveryStepType.CLEAR_CACHE),
        ])

        execution = await run(service, strategy)

        assert execution.steps[0].attempts == 1
        assert recording_sleep.delays == []
        assert second.calls == []
        assert execution.status == RecoveryStatus.FAILED

    @pytest.mark.asyncio
    async def test_non_retryable_action_failure_is_fatal(self, build_service, scripted):
        service = build_service(continue_after_retry_exhaustion=True)
        handler = scripted(StepActionFailure("permission denied", retryable=False))
        second = scripted()
        service.dispatcher.register(RecoveryStepType.SCALE_RESOURCES, handler)
        service.dispatcher.register(RecoveryStepType.CLEAR_CACHE, second)
        strategy = make_strategy([
            make_step("scale", RecoveryStepType.SCALE_RESOURCES, max_retries=3),
            make_step("clear", RecoveryStepType.CLEAR_CACHE),
        ])

        execution = await run(service, strategy)

        assert len(handler.calls) == 1
        assert execution.steps[0].error == "permission denied"
        assert second.calls == []

    @pytest.mark.asyncio
    async def test_exception_then_success(self, ready, scripted, recording_sleep):
        handler = scripted(RuntimeError("boom"), ActionResult(True, "ok"))
        ready.dispatcher.register(RecoveryStepType.EXECUTE_SCRIPT, handler)

        execution = await run(ready, make_strategy([make_step("script", RecoveryStepType.EXECUTE_SCRIPT, max_retries=3)]))

        assert execution.status == RecoveryStatus.COMPLETED
        assert execution.steps[0].attempts == 2
        assert execution.steps[0].error is None
        assert recording_sleep.delays == [2.0]
        assert "Step attempt 1/3 failed: boom" in messages(execution)

    @pytest.mark.asyncio
    async def test_step_timeout(self, ready):
        async def slow(parameters, context):
            await asyncio.sleep(5)
            return ActionResult(True, "too late")

        ready.dispatcher.register(RecoveryStepType.SCALE_RESOURCES, slow)

        execution = await run(ready, make_strategy([make_step("scale", RecoveryStepType.SCALE_RESOURCES, timeout=0.01)]))

        assert execution.status == RecoveryStatus.FAILED
        assert execution.steps[0].error == "Step timed out after 0.01s"

    @pytest.mark.asyncio
    async def test_unsupported_step_type_aborts(self, build_service):
        service = build_service(continue_after_retry_exhaustion=True)
        strategy = make_strategy([
            make_step("rollback", RecoveryStepType.ROLLBACK_DEPLOYMENT, max_retries=3),
            make_step("notify", RecoveryStepType.SEND_NOTIFICATION, parameters={"channels": ["ops"]}),
        ])

        execution = await run(service, strategy)

        assert execution.status == RecoveryStatus.FAILED
        assert execution.steps[0].attempts == 1
        assert execution.steps[0].error == "Unsupported step type: rollback_deployment"
        assert execution.steps[1].status == RecoveryStatus.PENDING

    @pytest.mark.asyncio
    async def test_error_removed_before_run(self, ready, scripted):
        handler = scripted()
        ready.dispatcher.register(RecoveryStepType.CLEAR_CACHE, handler)
        ready.add_recovery_strategy(make_strategy([make_step("clear", RecoveryStepType.CLEAR_CACHE)]))

        execution = await ready.execute_recovery_strategy("err-db-1", "test_recovery", "tester")
        ready.error_source.remove("err-db-1")
        await ready.wait_idle()

        assert execution.status == RecoveryStatus.FAILED
        assert "Associated error not found" in messages(execution)
        assert handler.calls == []
        assert execution.end_time is not None


# =============================================================================
# Resolution
# =============================================================================

class TestResolutionCheck:
    """Tests for the post-recovery recurrence check."""

    @pytest.mark.asyncio
    async def test_recurrence_means_not_resolved(self, ready, scripted, db_error):
        ready.dispatcher.register(RecoveryStepType.CLEAR_CACHE, scripted())
        ready.error_source.record_occurrence(db_error)

        execution = await run(ready, make_strategy([make_step("clear", RecoveryStepType.CLEAR_CACHE)]))

        assert execution.status == RecoveryStatus.COMPLETED
        assert execution.result.error_resolved is False

    @pytest.mark.asyncio
    async def test_failing_check_means_not_resolved(self, build_service, scripted):
        class FlakySource(InMemoryErrorSource):
            async def find_recent_occurrences(self, fingerprint, window):
                raise ConnectionError("error store unreachable")

        service = build_service(error_source=FlakySource())
        service.dispatcher.register(RecoveryStepType.CLEAR_CACHE, scripted())

        execution = await run(service, make_strategy([make_step("clear", RecoveryStepType.CLEAR_CACHE)]))

        assert execution.status == RecoveryStatus.COMPLETED
        assert execution.result.error_resolved is False
        assert "Error resolution check failed: error store unreachable" in messages(execution)


# =============================================================================
# Admission
# =============================================================================

class TestAdmission:
    """Tests for synchronous admission errors."""

    @pytest.mark.asyncio
    async def test_unknown_strategy(self, ready):
        with pytest.raises(StrategyNotFoundError):
            await ready.execute_recovery_strategy("err-db-1", "nonexistent", "tester")

    @pytest.mark.asyncio
    async def test_unknown_error(self, ready):
        ready.add_recovery_strategy(make_strategy([]))
        with pytest.raises(ErrorNotFoundError):
            await ready.execute_recovery_strategy("err-missing", "test_recovery", "tester")

    @pytest.mark.asyncio
    async def test_duplicate_in_progress(self, ready, blocking_handler):
        ready.dispatcher.register(RecoveryStepType.RESTART_SERVICE, blocking_handler)
        ready.add_recovery_strategy(make_strategy([make_step("restart", RecoveryStepType.RESTART_SERVICE)]))

        first = await ready.execute_recovery_strategy("err-db-1", "test_recovery", "tester")
        await asyncio.wait_for(blocking_handler.entered.wait(), timeout=2.0)

        with pytest.raises(RecoveryAlreadyInProgressError) as exc_info:
            await ready.execute_recovery_strategy("err-db-1", "test_recovery", "tester")
        assert exc_info.value.execution_id == first.id
        assert ready.get_active_recoveries() == [first]

        blocking_handler.release.set()
        await ready.wait_idle()
        assert first.status == RecoveryStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_concurrency_limit_counts_pending(self, ready, scripted, make_error):
        ready.config.max_concurrent_recoveries = 1
        ready.error_source.add(make_error(id="err-other", category=ErrorCategory.DATABASE))
        ready.dispatcher.register(RecoveryStepType.CLEAR_CACHE, scripted())
        ready.add_recovery_strategy(make_strategy([make_step("clear", RecoveryStepType.CLEAR_CACHE)]))

        await ready.execute_recovery_strategy("err-db-1", "test_recovery", "tester")
        with pytest.raises(ConcurrencyLimitExceededError) as exc_info:
            await ready.execute_recovery_strategy("err-other", "test_recovery", "tester")
        assert exc_info.value.limit == 1

        await ready.wait_idle()
        execution = await ready.execute_recovery_strategy("err-other", "test_recovery", "tester")
        await ready.wait_idle()
        assert execution.status == RecoveryStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_concurrency_limit_holds_for_simultaneous_requests(self, build_service, scripted, make_error):
        class SlowStore(InMemoryExecutionStore):
            async def create(self, execution):
                await asyncio.sleep(0)
                await super().create(execution)

        service = build_service(store=SlowStore())
        service.config.max_concurrent_recoveries = 1
        for error_id in ("err-a", "err-b"):
            service.error_source.add(make_error(id=error_id, category=ErrorCategory.DATABASE))
        service.dispatcher.register(RecoveryStepType.CLEAR_CACHE, scripted())
        service.add_recovery_strategy(make_strategy([make_step("clear", RecoveryStepType.CLEAR_CACHE)]))

        results = await asyncio.gather(
            *(
                service.execute_recovery_strategy(error_id, "test_recovery", "tester")
                for error_id in ("err-db-1", "err-a", "err-b")
            ),
            return_exceptions=True,
        )

        admitted = [r for r in results if not isinstance(r, Exception)]
        refused = [r for r in results if isinstance(r, ConcurrencyLimitExceededError)]
        assert len(admitted) == 1
        assert len(refused) == 2

        await service.wait_idle()
        assert admitted[0].status == RecoveryStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_failed_enqueue_releases_the_slot(self, ready, scripted):
        ready.add_recovery_strategy(make_strategy([make_step("clear", RecoveryStepType.CLEAR_CACHE)]))

        async def broken_enqueue(execution_id):
            raise RuntimeError("queue closed")

        ready.engine.queue.enqueue = broken_enqueue
        with pytest.raises(RuntimeError):
            await ready.execute_recovery_strategy("err-db-1", "test_recovery", "tester")
        assert ready.engine.active == {}

    @pytest.mark.asyncio
    async def test_unattended_run_refused_by_gate(self, ready):
        ready.add_recovery_strategy(make_strategy([], automatic_execution=False))

        with pytest.raises(AutomationNotPermittedError) as exc_info:
            await ready.execute_recovery_strategy("err-db-1", "test_recovery", "scheduler", auto_execution=True)
        assert exc_info.value.reason == "Strategy does not allow automatic execution"
        assert ready.engine.active == {}

    @pytest.mark.asyncio
    async def test_unattended_run_refused_for_blacklisted_service(self, ready):
        ready.config.blacklisted_services = ["orders-api"]
        ready.add_recovery_strategy(make_strategy([]))

        with pytest.raises(AutomationNotPermittedError) as exc_info:
            await ready.execute_recovery_strategy("err-db-1", "test_recovery", "scheduler", auto_execution=True)
        assert "blacklisted" in exc_info.value.reason

    @pytest.mark.asyncio
    async def test_unattended_run_respects_cooldown(self, ready, scripted):
        ready.dispatcher.register(RecoveryStepType.CLEAR_CACHE, scripted())
        strategy = make_strategy([make_step("clear", RecoveryStepType.CLEAR_CACHE)])

        first = await run(ready, strategy, auto_execution=True)
        assert first.auto_execution is True
        assert first.status == RecoveryStatus.COMPLETED

        with pytest.raises(AutomationNotPermittedError) as exc_info:
            await ready.execute_recovery_strategy("err-db-1", "test_recovery", "scheduler", auto_execution=True)
        assert exc_info.value.reason.startswith("Cooldown active for error err-db-1")

        # A human may still run it
        manual = await ready.execute_recovery_strategy("err-db-1", "test_recovery", "oncall")
        await ready.wait_idle()
        assert manual.status == RecoveryStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_manual_run_skips_gate(self, ready, scripted):
        ready.dispatcher.register(RecoveryStepType.CLEAR_CACHE, scripted())
        strategy = make_strategy(
            [make_step("clear", RecoveryStepType.CLEAR_CACHE)],
            automatic_execution=False,
            risk_level=RiskLevel.HIGH,
        )

        execution = await run(ready, strategy)

        assert execution.status == RecoveryStatus.COMPLETED


# =============================================================================
# Cancellation
# =============================================================================

class TestCancellation:
    """Tests for cancelling executions."""

    @pytest.mark.asyncio
    async def test_unknown_execution(self, ready):
        assert await ready.cancel_recovery("recovery_missing", "oncall") is False

    @pytest.mark.asyncio
    async def test_pending_and_finished_cannot_be_cancelled(self, ready, scripted):
        ready.dispatcher.register(RecoveryStepType.CLEAR_CACHE, scripted())
        ready.add_recovery_strategy(make_strategy([make_step("clear", RecoveryStepType.CLEAR_CACHE)]))

        execution = await ready.execute_recovery_strategy("err-db-1", "test_recovery", "tester")
        assert await ready.cancel_recovery(execution.id, "oncall") is False

        await ready.wait_idle()
        assert execution.status == RecoveryStatus.COMPLETED
        assert await ready.cancel_recovery(execution.id, "oncall") is False

    @pytest.mark.asyncio
    async def test_cancel_in_progress(self, ready, blocking_handler, scripted):
        cancelled = collect(ready, RecoveryEventType.RECOVERY_CANCELLED)
        completed = collect(ready, RecoveryEventType.RECOVERY_COMPLETED)
        second = scripted()
        ready.dispatcher.register(RecoveryStepType.RESTART_SERVICE, blocking_handler)
        ready.dispatcher.register(RecoveryStepType.CLEAR_CACHE, second)
        ready.add_recovery_strategy(make_strategy([
            make_step("restart", RecoveryStepType.RESTART_SERVICE),
            make_step("clear", RecoveryStepType.CLEAR_CACHE),
        ]))

        execution = await ready.execute_recovery_strategy("err-db-1", "test_recovery", "tester")
        await asyncio.wait_for(blocking_handler.entered.wait(), timeout=2.0)

        assert await ready.cancel_recovery(execution.id, "oncall") is True
        assert execution.status == RecoveryStatus.CANCELLED
        assert ready.get_active_recoveries() == []
        assert cancelled == [{"executionId": execution.id, "errorId": "err-db-1", "cancelledBy": "oncall"}]

        blocking_handler.release.set()
        await ready.wait_idle()

        assert execution.status == RecoveryStatus.CANCELLED
        # A successful attempt stays completed under a pending cancel
        assert execution.steps[0].status == RecoveryStatus.COMPLETED
        assert execution.steps[0].output == "released"
        assert execution.result.steps_completed == 1
        assert execution.result.success is False
        assert second.calls == []
        assert "Recovery cancelled by oncall" in messages(execution)
        assert completed[0]["status"] == "cancelled"
        assert completed[0]["success"] is False

    @pytest.mark.asyncio
    async def test_cancel_during_backoff(self, ready, scripted):
        handler = scripted(ActionResult(False, error="busy"))
        ready.dispatcher.register(RecoveryStepType.RESET_CONNECTION, handler)
        ready.add_recovery_strategy(make_strategy([make_step("reset", RecoveryStepType.RESET_CONNECTION, max_retries=5)]))

        async def cancel_while_sleeping(delay):
            await ready.cancel_recovery(execution.id, "oncall")

        ready.engine._sleep = cancel_while_sleeping
        execution = await ready.execute_recovery_strategy("err-db-1", "test_recovery", "tester")
        await ready.wait_idle()

        assert execution.status == RecoveryStatus.CANCELLED
        assert len(handler.calls) == 1
        assert execution.steps[0].status == RecoveryStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_failed_attempt_during_cancel_is_marked_cancelled(self, ready):
        async def fail_after_cancel(parameters, context):
            await ready.cancel_recovery(context.execution.id, "oncall")
            return ActionResult(False, error="connection refused")

        ready.dispatcher.register(RecoveryStepType.RESET_CONNECTION, fail_after_cancel)
        execution = await run(ready, make_strategy([make_step("reset", RecoveryStepType.RESET_CONNECTION)]))

        assert execution.status == RecoveryStatus.CANCELLED
        assert execution.steps[0].status == RecoveryStatus.CANCELLED
        assert execution.result.steps_completed == 0

    @pytest.mark.asyncio
    async def test_cancel_while_persisting_last_step(self, build_service, scripted):
        class CancellingStore(InMemoryExecutionStore):
            service = None

            async def update(self, execution):
                await super().update(execution)
                if execution.status == RecoveryStatus.IN_PROGRESS and execution.result.steps_completed == 1:
                    await self.service.cancel_recovery(execution.id, "oncall")

        store = CancellingStore()
        service = build_service(store=store)
        store.service = service
        service.dispatcher.register(RecoveryStepType.CLEAR_CACHE, scripted())
        completed = collect(service, RecoveryEventType.RECOVERY_COMPLETED)

        execution = await run(service, make_strategy([make_step("clear", RecoveryStepType.CLEAR_CACHE)]))

        assert execution.status == RecoveryStatus.CANCELLED
        assert execution.result.success is False
        assert execution.result.error_resolved is False
        assert execution.result.recommendations[0] == "Escalate to manual intervention"
        assert not any("Invalid transition" in m for m in messages(execution))
        assert completed[0]["status"] == "cancelled"
        assert (await service.get_recovery_history())[0].status == RecoveryStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_during_resolution_check(self, build_service, scripted):
        class CancellingSource(InMemoryErrorSource):
            service = None

            async def find_recent_occurrences(self, fingerprint, window):
                for execution in self.service.get_active_recoveries():
                    await self.service.cancel_recovery(execution.id, "oncall")
                return []

        source = CancellingSource()
        service = build_service(error_source=source)
        source.service = service
        service.dispatcher.register(RecoveryStepType.CLEAR_CACHE, scripted())

        execution = await run(service, make_strategy([make_step("clear", RecoveryStepType.CLEAR_CACHE)]))

        assert execution.status == RecoveryStatus.CANCELLED
        assert execution.result.success is False
        assert execution.result.steps_completed == 1
        assert not any("Invalid transition" in m for m in messages(execution))


# =============================================================================
# Rollback
# =============================================================================

class TestRollback:
    """Tests for automatic rollback of completed steps."""

    @pytest.mark.asyncio
    async def test_rollback_on_failure(self, build_service, scripted):
        service = build_service(auto_rollback=True)
        undo = scripted(ActionResult(True, "scaled back"))
        service.dispatcher.register(RecoveryStepType.SCALE_RESOURCES, scripted(ActionResult(True, "scaled up")))
        service.dispatcher.register_rollback(RecoveryStepType.SCALE_RESOURCES, undo)
        service.dispatcher.register(RecoveryStepType.RESTART_SERVICE, scripted(ActionResult(False, error="refused")))
        strategy = make_strategy([
            make_step("scale", RecoveryStepType.SCALE_RESOURCES, rollback_required=True),
            make_step("restart", RecoveryStepType.RESTART_SERVICE, retryable=False),
        ])

        execution = await run(service, strategy)

        assert execution.status == RecoveryStatus.ROLLED_BACK
        assert execution.rollback_executed is True
        assert execution.steps[0].rollback_performed is True
        assert len(undo.calls) == 1
        assert execution.result.side_effects == ["scaled up"]

    @pytest.mark.asyncio
    async def test_no_rollback_by_default(self, ready, scripted):
        ready.dispatcher.register(RecoveryStepType.SCALE_RESOURCES, scripted(ActionResult(True, "scaled up")))
        ready.dispatcher.register(RecoveryStepType.RESTART_SERVICE, scripted(ActionResult(False, error="refused")))
        strategy = make_strategy([
            make_step("scale", RecoveryStepType.SCALE_RESOURCES, rollback_required=True),
            make_step("restart", RecoveryStepType.RESTART_SERVICE, retryable=False),
        ])

        execution = await run(ready, strategy)

        assert execution.status == RecoveryStatus.FAILED
        assert execution.rollback_executed is False
        assert execution.steps[0].rollback_performed is False


# =============================================================================
# History
# =============================================================================

class TestHistory:
    """Tests for the persisted audit trail."""

    @pytest.mark.asyncio
    async def test_history_newest_first_with_filter(self, ready, scripted, make_error):
        ready.error_source.add(make_error(id="err-other", category=ErrorCategory.DATABASE))
        ready.dispatcher.register(RecoveryStepType.CLEAR_CACHE, scripted())
        strategy = make_strategy([make_step("clear", RecoveryStepType.CLEAR_CACHE)])

        first = await run(ready, strategy)
        other = await run(ready, strategy, error_id="err-other")
        second = await run(ready, strategy)

        history = await ready.get_recovery_history()
        assert [e.id for e in history] == [second.id, other.id, first.id]

        filtered = await ready.get_recovery_history("err-db-1")
        assert [e.id for e in filtered] == [second.id, first.id]
        assert all(e.status == RecoveryStatus.COMPLETED for e in filtered)

    @pytest.mark.asyncio
    async def test_history_holds_snapshots(self, ready, scripted):
        ready.dispatcher.register(RecoveryStepType.CLEAR_CACHE, scripted())
        execution = await run(ready, make_strategy([make_step("clear", RecoveryStepType.CLEAR_CACHE)]))

        [stored] = await ready.get_recovery_history()
        stored.logs.clear()

        assert stored is not execution
        assert execution.logs
        assert (await ready.get_recovery_history())[0].logs

    @pytest.mark.asyncio
    async def test_store_failures_do_not_fail_execution(self, build_service, scripted):
        class BrokenStore(InMemoryExecutionStore):
            async def create(self, execution):
                raise ConnectionError("audit store down")

            async def update(self, execution):
                raise ConnectionError("audit store down")

            async def list_executions(self, error_id=None, limit=100):
                raise ConnectionError("audit store down")

        service = build_service(store=BrokenStore())
        service.dispatcher.register(RecoveryStepType.CLEAR_CACHE, scripted())

        execution = await run(service, make_strategy([make_step("clear", RecoveryStepType.CLEAR_CACHE)]))

        assert execution.status == RecoveryStatus.COMPLETED
        assert await service.get_recovery_history() == []
