"""
Error Recovery Service

Facade over the recovery components: catalog, recommender, execution
engine, queue and retention sweep. This is what the API layer and other
services talk to.
"""

import logging
from datetime import timedelta
from typing import List, Optional

from app.workers.retention_worker import RetentionConfig, RetentionSweepWorker

from .actions import HttpHealthCheckAction, StepActionDispatcher, register_builtin_actions
from .events import EventCallback, RecoveryEventBus, RecoveryEventType
from .executor import RecoveryExecutionEngine, SleepFn
from .models import (
    AutoRecoveryConfig,
    RecoveryExecution,
    RecoveryStatus,
    RecoveryStrategy,
    RecoverySuggestion,
    RootCauseAnalysis,
    StructuredError,
)
from .persistence import ErrorSource, ExecutionStore, InMemoryErrorSource, InMemoryExecutionStore
from .recommender import StrategyRecommender
from .strategies import StrategyCatalog, default_strategies

logger = logging.getLogger(__name__)

SHUTDOWN_CANCELLER = "system-shutdown"


class ErrorRecoveryService:
    """
    Automated error recovery orchestration.

    Suggests strategies for classified errors, runs them step by step on
    a single background worker, and decides whether a run may proceed
    without human approval.
    """

    def __init__(
        self,
        error_source: Optional[ErrorSource] = None,
        store: Optional[ExecutionStore] = None,
        config: Optional[AutoRecoveryConfig] = None,
        *,
        catalog: Optional[StrategyCatalog] = None,
        dispatcher: Optional[StepActionDispatcher] = None,
        events: Optional[RecoveryEventBus] = None,
        seed_defaults: bool = True,
        retry_base_delay: float = 2.0,
        resolution_window: timedelta = timedelta(minutes=10),
        auto_rollback: bool = False,
        continue_after_retry_exhaustion: bool = False,
        history_limit: int = 100,
        retention: Optional[RetentionConfig] = None,
        health_check_base_url: str = "",
        health_check_timeout_s: Optional[float] = None,
        sleep: Optional[SleepFn] = None,
    ):
        self.config = config or AutoRecoveryConfig()
        self.error_source = error_source if error_source is not None else InMemoryErrorSource()
        self.store = store if store is not None else InMemoryExecutionStore()
        self.events = events or RecoveryEventBus()
        self.catalog = catalog or StrategyCatalog()
        self.dispatcher = dispatcher or StepActionDispatcher()
        self.history_limit = history_limit

        if seed_defaults:
            self.catalog.seed(default_strategies())

        self._health_check: Optional[HttpHealthCheckAction] = register_builtin_actions(
            self.dispatcher,
            self.events,
            health_check_base_url=health_check_base_url,
            health_check_timeout_s=health_check_timeout_s,
        )

        self.recommender = StrategyRecommender(self.catalog, self.config, self.events)
        self.engine = RecoveryExecutionEngine(
            catalog=self.catalog,
            error_source=self.error_source,
            store=self.store,
            dispatcher=self.dispatcher,
            events=self.events,
            config=self.config,
            retry_base_delay=retry_base_delay,
            resolution_window=resolution_window,
            auto_rollback=auto_rollback,
            continue_after_retry_exhaustion=continue_after_retry_exhaustion,
            sleep=sleep,
        )
        self.retention = RetentionSweepWorker(self.engine, retention)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the queue worker and the retention sweep."""
        await self.engine.queue.start()
        self.retention.start()
        logger.info(
            f"Error recovery service started: {len(self.catalog)} strategies, "
            f"{self.catalog.enabled_count()} automatic"
        )

    async def shutdown(self) -> None:
        """Cancel in-progress executions and stop background work."""
        for execution in self.engine.list_active():
            if execution.is_active:
                await self.engine.cancel(execution.id, SHUTDOWN_CANCELLER)

        await self.engine.queue.stop()
        await self.retention.stop()
        if self._health_check is not None:
            await self._health_check.close()
        self.events.clear()
        logger.info("Error recovery service shut down")

    # =========================================================================
    # Events
    # =========================================================================

    def subscribe(self, event_type: RecoveryEventType, callback: EventCallback) -> None:
        self.events.subscribe(event_type, callback)

    def unsubscribe(self, event_type: RecoveryEventType, callback: EventCallback) -> None:
        self.events.unsubscribe(event_type, callback)

    # =========================================================================
    # Operations
    # =========================================================================

    async def suggest_recovery_strategies(
        self,
        error: StructuredError,
        root_cause: Optional[RootCauseAnalysis] = None,
    ) -> List[RecoverySuggestion]:
        return await self.recommender.suggest(error, root_cause)

    async def execute_recovery_strategy(
        self,
        error_id: str,
        strategy_id: str,
        initiated_by: str,
        auto_execution: bool = False,
    ) -> RecoveryExecution:
        return await self.engine.execute(error_id, strategy_id, initiated_by, auto_execution)

    async def cancel_recovery(self, execution_id: str, cancelled_by: str) -> bool:
        return await self.engine.cancel(execution_id, cancelled_by)

    def add_recovery_strategy(self, strategy: RecoveryStrategy) -> None:
        self.catalog.add(strategy)

    def remove_recovery_strategy(self, strategy_id: str) -> bool:
        return self.catalog.remove(strategy_id)

    def get_recovery_strategies(self) -> List[RecoveryStrategy]:
        return self.catalog.list()

    def get_active_recoveries(self) -> List[RecoveryExecution]:
        """Tracked executions that have not finished yet."""
        return self.engine.list_active()

    async def get_recovery_history(self, error_id: Optional[str] = None) -> List[RecoveryExecution]:
        """Persisted executions, newest first. Store failures yield []."""
        try:
            return await self.store.list_executions(error_id=error_id, limit=self.history_limit)
        except Exception as e:
            logger.error(f"Failed to get recovery history: {e}")
            return []

    async def wait_idle(self) -> None:
        """Block until every queued execution has been run."""
        await self.engine.queue.join()

    def status(self) -> dict:
        tracked = list(self.engine.active.values())
        return {
            "strategies": len(self.catalog),
            "automaticStrategies": self.catalog.enabled_count(),
            "tracked": len(tracked),
            "inProgress": sum(1 for e in tracked if e.status == RecoveryStatus.IN_PROGRESS),
            "queued": self.engine.queue.pending,
            "workerRunning": self.engine.queue.is_running,
            "retentionRunning": self.retention.is_running,
        }


# Singleton instance
_service_instance: Optional[ErrorRecoveryService] = None


def get_recovery_service() -> ErrorRecoveryService:
    """Get the singleton ErrorRecoveryService instance."""
    global _service_instance
    if _service_instance is None:
        from ...config import settings

        _service_instance = ErrorRecoveryService(
            config=settings.auto_recovery_config(),
            seed_defaults=settings.recovery_seed_default_strategies,
            retry_base_delay=settings.recovery_retry_base_delay_seconds,
            resolution_window=timedelta(minutes=settings.recovery_resolution_window_minutes),
            auto_rollback=settings.recovery_auto_rollback,
            continue_after_retry_exhaustion=settings.recovery_continue_after_retry_exhaustion,
            history_limit=settings.recovery_history_limit,
            retention=RetentionConfig(
                interval_seconds=settings.recovery_retention_interval_seconds,
                max_age_seconds=settings.recovery_retention_max_age_seconds,
            ),
            health_check_base_url=settings.recovery_health_check_base_url,
            health_check_timeout_s=settings.recovery_health_check_timeout_seconds,
        )

    return _service_instance


def reset_recovery_service() -> None:
    """Drop the singleton. Used by tests."""
    global _service_instance
    _service_instance = None
