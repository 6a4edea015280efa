"""
Shared fixtures for recovery tests.

Deterministic action handlers and a recording sleep stand in for real
infrastructure and backoff delays.
"""

import asyncio
from typing import Any, Dict, List

import pytest
import pytest_asyncio

from app.core.recovery import (
    ActionResult,
    AutoRecoveryConfig,
    ErrorCategory,
    ErrorContext,
    ErrorRecoveryService,
    ErrorSeverity,
    RequiredApprovals,
    StructuredError,
)


class ScriptedHandler:
    """
    Returns queued outcomes in order, repeating the last one.

    An outcome may be an ActionResult or an exception to raise.
    """

    def __init__(self, *outcomes: Any):
        self.outcomes: List[Any] = list(outcomes) or [ActionResult(success=True, output="ok")]
        self.calls: List[Dict[str, Any]] = []

    async def __call__(self, parameters, context):
        self.calls.append(parameters)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class BlockingHandler:
    """Succeeds once ``release`` is set. ``entered`` is set when called."""

    def __init__(self):
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.calls = 0

    async def __call__(self, parameters, context):
        self.calls += 1
        self.entered.set()
        await self.release.wait()
        return ActionResult(success=True, output="released")


class RecordingSleep:
    """Records backoff delays without waiting."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def scripted():
    """Factory for scripted handlers."""
    return ScriptedHandler


@pytest.fixture
def blocking_handler() -> BlockingHandler:
    return BlockingHandler()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def permissive_config() -> AutoRecoveryConfig:
    """Auto recovery config with no approval requirements."""
    return AutoRecoveryConfig(
        enabled=True,
        max_concurrent_recoveries=5,
        cooldown_period=300.0,
        required_approvals=RequiredApprovals(
            high_risk=False,
            production_environment=False,
            critical_services=[],
        ),
    )


@pytest.fixture
def db_error() -> StructuredError:
    """Database connection error from a staging service."""
    return StructuredError(
        id="err-db-1",
        fingerprint="fp-db-connection",
        message="Database connection timeout",
        category=ErrorCategory.DATABASE,
        severity=ErrorSeverity.HIGH,
        error_type="ConnectionError",
        context=ErrorContext(service="orders-api", version="1.4.2", environment="staging"),
        count=3,
    )


@pytest.fixture
def make_error():
    """Factory for structured errors with overridable fields."""

    def _make(**overrides: Any) -> StructuredError:
        context = overrides.pop("context", None) or ErrorContext(
            service=overrides.pop("service", "orders-api"),
            environment=overrides.pop("environment", "staging"),
        )
        fields: Dict[str, Any] = {
            "id": "err-1",
            "fingerprint": "fp-1",
            "message": "Something failed",
            "category": ErrorCategory.UNKNOWN,
            "severity": ErrorSeverity.MEDIUM,
        }
        fields.update(overrides)
        return StructuredError(context=context, **fields)

    return _make


@pytest_asyncio.fixture
async def service(recording_sleep, permissive_config):
    """Service without default strategies, instant backoff."""
    svc = ErrorRecoveryService(
        config=permissive_config,
        seed_defaults=False,
        sleep=recording_sleep,
    )
    yield svc
    await svc.shutdown()


async def wait_for_status(execution, status, timeout: float = 2.0) -> None:
    """Yield to the worker until ``execution`` reaches ``status``."""

    async def _poll():
        while execution.status != status:
            await asyncio.sleep(0)

    await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.fixture
def until_status():
    return wait_for_status
