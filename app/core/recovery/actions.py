"""
Step Actions

Maps recovery step types to the handlers that perform them. The engine only
knows the dispatcher; physical side effects (restarts, cache flushes,
scaling) belong to handlers injected by the deployment.
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import httpx

from .errors import UnsupportedStepTypeError
from .events import RecoveryEventBus, RecoveryEventType
from .models import RecoveryExecution, RecoveryStep, RecoveryStepType, StructuredError

logger = logging.getLogger(__name__)


@dataclass
class ActionResult:
    """Outcome of a single handler call."""

    success: bool
    output: Optional[str] = None
    error: Optional[str] = None


@dataclass
class StepContext:
    """What a handler knows about the step it is running."""

    error: StructuredError
    execution: RecoveryExecution
    step: RecoveryStep
    attempt: int = 1


StepHandler = Callable[[Dict[str, Any], StepContext], Awaitable[ActionResult]]


class StepActionDispatcher:
    """Registry of action and rollback handlers keyed by step type."""

    def __init__(self) -> None:
        self._handlers: Dict[RecoveryStepType, StepHandler] = {}
        self._rollback_handlers: Dict[RecoveryStepType, StepHandler] = {}

    def register(self, step_type: Union[RecoveryStepType, str], handler: StepHandler) -> None:
        self._handlers[RecoveryStepType(step_type)] = handler

    def register_rollback(self, step_type: Union[RecoveryStepType, str], handler: StepHandler) -> None:
        self._rollback_handlers[RecoveryStepType(step_type)] = handler

    def unregister(self, step_type: Union[RecoveryStepType, str]) -> None:
        self._handlers.pop(RecoveryStepType(step_type), None)

    def has_handler(self, step_type: Union[RecoveryStepType, str]) -> bool:
        return RecoveryStepType(step_type) in self._handlers

    @property
    def supported_types(self) -> List[RecoveryStepType]:
        return list(self._handlers)

    async def dispatch(
        self,
        step: RecoveryStep,
        parameters: Dict[str, Any],
        context: StepContext,
    ) -> ActionResult:
        """
        Run the handler for ``step.type``.

        Raises:
            UnsupportedStepTypeError: no handler is registered for the type
        """
        handler = self._handlers.get(step.type)
        if handler is None:
            raise UnsupportedStepTypeError(step.type, step_id=step.id)
        return await handler(parameters, context)

    async def rollback(
        self,
        step: RecoveryStep,
        parameters: Dict[str, Any],
        context: StepContext,
    ) -> ActionResult:
        handler = self._rollback_handlers.get(step.type)
        if handler is None:
            return ActionResult(
                success=False,
                error=f"No rollback handler for step type: {step.type.value}",
            )
        return await handler(parameters, context)


# =============================================================================
# Built-in handlers
# =============================================================================


class NotificationAction:
    """Publishes a recoveryNotification event; delivery is up to subscribers."""

    def __init__(self, events: RecoveryEventBus):
        self.events = events

    async def __call__(self, parameters: Dict[str, Any], context: StepContext) -> ActionResult:
        channels = parameters.get("channels") or []
        if isinstance(channels, str):
            channels = [channels]

        await self.events.emit(
            RecoveryEventType.RECOVERY_NOTIFICATION,
            {
                "executionId": context.execution.id,
                "errorId": context.error.id,
                "channels": channels,
                "priority": parameters.get("priority"),
                "message": parameters.get("message", ""),
            },
        )
        return ActionResult(
            success=True,
            output=f"Notification sent to channels: {', '.join(channels)}",
        )


class ManualInterventionAction:
    """Asks a human to take over by emitting manualInterventionRequired."""

    def __init__(self, events: RecoveryEventBus):
        self.events = events

    async def __call__(self, parameters: Dict[str, Any], context: StepContext) -> ActionResult:
        logger.info(f"Manual intervention required for execution {context.execution.id}")
        await self.events.emit(
            RecoveryEventType.MANUAL_INTERVENTION_REQUIRED,
            {
                "executionId": context.execution.id,
                "errorId": context.error.id,
                "stepId": context.step.id,
                "parameters": parameters,
            },
        )
        return ActionResult(success=True, output="Manual intervention request sent")


class HttpHealthCheckAction:
    """
    GETs ``endpoint`` (or every entry of ``endpoints``) against a base URL.

    A check passes when every response status equals ``expectedStatus``
    (default 200).
    """

    timeout_s = 30.0

    def __init__(
        self,
        base_url: str,
        timeout_s: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        if timeout_s is not None:
            self.timeout_s = timeout_s
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout_s)
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __call__(self, parameters: Dict[str, Any], context: StepContext) -> ActionResult:
        endpoints = parameters.get("endpoints") or []
        if parameters.get("endpoint"):
            endpoints = [parameters["endpoint"], *endpoints]
        if not endpoints:
            return ActionResult(success=False, error="Health check has no endpoint")

        expected = int(parameters.get("expectedStatus", 200))
        client = await self._get_client()

        for endpoint in endpoints:
            url = endpoint if endpoint.startswith("http") else f"{self.base_url}{endpoint}"
            try:
                response = await client.get(url)
            except httpx.HTTPError as e:
                return ActionResult(success=False, error=f"Health check {endpoint} failed: {e}")

            if response.status_code != expected:
                return ActionResult(
                    success=False,
                    error=(
                        f"Health check {endpoint} returned {response.status_code}, "
                        f"expected {expected}"
                    ),
                )

        return ActionResult(success=True, output=f"Health check passed: {', '.join(endpoints)}")


def register_builtin_actions(
    dispatcher: StepActionDispatcher,
    events: RecoveryEventBus,
    health_check_base_url: str = "",
    health_check_timeout_s: Optional[float] = None,
) -> Optional[HttpHealthCheckAction]:
    """
    Register the handlers that need no infrastructure.

    Returns the health check handler when one was registered so the caller
    can close its client.
    """
    dispatcher.register(RecoveryStepType.SEND_NOTIFICATION, NotificationAction(events))
    dispatcher.register(RecoveryStepType.MANUAL_INTERVENTION, ManualInterventionAction(events))

    if not health_check_base_url:
        return None

    health_check = HttpHealthCheckAction(health_check_base_url, timeout_s=health_check_timeout_s)
    dispatcher.register(RecoveryStepType.HEALTH_CHECK, health_check)
    return health_check
