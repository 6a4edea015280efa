"""
Recovery Persistence

Storage seams for the recovery engine. The engine never persists durably on
its own: strategies go through a key/value store, executions through an
execution store, and errors are read from an error source. In-memory
implementations back tests and single-process deployments.
"""

import copy
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Generic, List, Optional, Protocol, TypeVar

from .models import RecoveryExecution, StructuredError

T = TypeVar("T")


class KeyValueStore(Protocol[T]):
    """Minimal keyed storage used by the strategy catalog."""

    def get(self, key: str) -> Optional[T]:
        ...

    def put(self, key: str, value: T) -> None:
        ...

    def list(self) -> List[T]:
        ...

    def delete(self, key: str) -> bool:
        ...


class InMemoryStore(Generic[T]):
    """Dict-backed KeyValueStore. Preserves insertion order."""

    def __init__(self) -> None:
        self._items: Dict[str, T] = {}

    def get(self, key: str) -> Optional[T]:
        return self._items.get(key)

    def put(self, key: str, value: T) -> None:
        self._items[key] = value

    def list(self) -> List[T]:
        return list(self._items.values())

    def delete(self, key: str) -> bool:
        return self._items.pop(key, None) is not None

    def __len__(self) -> int:
        return len(self._items)


class ExecutionStore(Protocol):
    """Audit store for execution records."""

    async def create(self, execution: RecoveryExecution) -> None:
        ...

    async def update(self, execution: RecoveryExecution) -> None:
        ...

    async def get(self, execution_id: str) -> Optional[RecoveryExecution]:
        ...

    async def list_executions(
        self,
        error_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[RecoveryExecution]:
        ...


class InMemoryExecutionStore:
    """
    Keeps deep-copied snapshots of executions.

    Callers never share objects with the store, so later mutation of a
    live execution only shows up after the next ``update``.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._records: Dict[str, RecoveryExecution] = {}

    async def create(self, execution: RecoveryExecution) -> None:
        self._records[execution.id] = copy.deepcopy(execution)

    async def update(self, execution: RecoveryExecution) -> None:
        if execution.id not in self._records:
            self.logger.debug(f"Updating unknown execution {execution.id}, storing it")
        self._records[execution.id] = copy.deepcopy(execution)

    async def get(self, execution_id: str) -> Optional[RecoveryExecution]:
        record = self._records.get(execution_id)
        return copy.deepcopy(record) if record else None

    async def list_executions(
        self,
        error_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[RecoveryExecution]:
        records = [
            r for r in self._records.values()
            if error_id is None or r.error_id == error_id
        ]
        records.sort(key=lambda r: r.start_time, reverse=True)
        return [copy.deepcopy(r) for r in records[:limit]]


class ErrorSource(Protocol):
    """Read access to classified errors."""

    async def get_error(self, error_id: str) -> Optional[StructuredError]:
        ...

    async def find_recent_occurrences(
        self,
        fingerprint: str,
        window: timedelta,
    ) -> List[StructuredError]:
        ...


class InMemoryErrorSource:
    """
    Error source fed directly by callers.

    ``record_occurrence`` stores a new sighting of a fingerprint so the
    resolution check can see that an error came back.
    """

    def __init__(self) -> None:
        self._errors: Dict[str, StructuredError] = {}
        self._occurrences: List[StructuredError] = []

    def add(self, error: StructuredError) -> None:
        self._errors[error.id] = error

    def remove(self, error_id: str) -> None:
        self._errors.pop(error_id, None)

    def record_occurrence(self, error: StructuredError) -> None:
        self._occurrences.append(error)

    async def get_error(self, error_id: str) -> Optional[StructuredError]:
        return self._errors.get(error_id)

    async def find_recent_occurrences(
        self,
        fingerprint: str,
        window: timedelta,
    ) -> List[StructuredError]:
        cutoff = datetime.now(timezone.utc) - window
        return [
            e for e in self._occurrences
            if e.fingerprint == fingerprint and e.last_seen >= cutoff
        ]
