"""
Recovery Retention Worker

Periodically evicts finished executions from the engine's active set.
Persisted execution records are never touched.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from app.core.recovery.executor import RecoveryExecutionEngine

logger = logging.getLogger(__name__)


@dataclass
class RetentionConfig:
    """Configuration for the retention sweep."""
    interval_seconds: float = 3600  # 1 hour between sweeps
    max_age_seconds: float = 86400  # Evict executions that ended over 24 hours ago


@dataclass
class RetentionResult:
    """Result from a sweep."""
    started_at: datetime
    ended_at: datetime
    scanned: int
    evicted: int

    @property
    def duration_seconds(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "startedAt": self.started_at.isoformat(),
            "endedAt": self.ended_at.isoformat(),
            "durationSeconds": self.duration_seconds,
            "scanned": self.scanned,
            "evicted": self.evicted,
        }


class RetentionSweepWorker:
    """
    Removes stale executions from the active set.

    An execution is stale once its end time is older than
    ``max_age_seconds``. Executions without an end time are kept.

    Known limitation: the engine already drops executions from its active
    set when they finish or are cancelled, so with the stock engine the
    sweep finds nothing to evict. It only acts on executions that are left
    tracked after they end, e.g. ones put there by an engine subclass or
    by hand.
    """

    def __init__(
        self,
        engine: RecoveryExecutionEngine,
        config: Optional[RetentionConfig] = None,
    ):
        self._engine = engine
        self._config = config or RetentionConfig()
        self._task: Optional[asyncio.Task] = None
        self._last_result: Optional[RetentionResult] = None

    @property
    def last_result(self) -> Optional[RetentionResult]:
        return self._last_result

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def sweep(self, now: Optional[datetime] = None) -> int:
        """Evict stale executions. Returns how many were evicted."""
        return self.run_once(now).evicted

    def run_once(self, now: Optional[datetime] = None) -> RetentionResult:
        started_at = datetime.now(timezone.utc)
        now = now or started_at
        cutoff = now - timedelta(seconds=self._config.max_age_seconds)

        candidates = list(self._engine.active.values())
        evicted = 0
        for execution in candidates:
            if execution.end_time is not None and execution.end_time < cutoff:
                if self._engine.evict(execution.id):
                    evicted += 1

        if evicted:
            logger.info(f"Retention sweep evicted {evicted} of {len(candidates)} executions")

        self._last_result = RetentionResult(
            started_at=started_at,
            ended_at=datetime.now(timezone.utc),
            scanned=len(candidates),
            evicted=evicted,
        )
        return self._last_result

    def start(self) -> None:
        """Start the periodic sweep as a background task."""
        if self.is_running:
            return
        self._task = asyncio.create_task(
            run_retention_loop(self, interval_seconds=self._config.interval_seconds),
            name="recovery-retention-sweep",
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None


async def run_retention_loop(
    worker: RetentionSweepWorker,
    interval_seconds: float = 3600,
    max_iterations: Optional[int] = None,
):
    """
    Run the retention sweep in a continuous loop.

    Args:
        worker: Sweep worker bound to an engine
        interval_seconds: Seconds between sweeps
        max_iterations: Max iterations (None for infinite)
    """
    iterations = 0
    while max_iterations is None or iterations < max_iterations:
        try:
            result = worker.run_once()
            logger.debug(f"Retention sweep {iterations + 1}: {result.evicted} evicted")
        except Exception as e:
            logger.error(f"Retention sweep {iterations + 1} failed: {e}")

        iterations += 1

        if max_iterations is None or iterations < max_iterations:
            await asyncio.sleep(interval_seconds)
