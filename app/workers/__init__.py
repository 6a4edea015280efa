"""
Background Workers

Workers for scheduled and background tasks.
"""

from .retention_worker import (
    RetentionConfig,
    RetentionResult,
    RetentionSweepWorker,
    run_retention_loop,
)

__all__ = [
    "RetentionConfig",
    "RetentionResult",
    "RetentionSweepWorker",
    "run_retention_loop",
]
