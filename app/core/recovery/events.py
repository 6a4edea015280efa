"""
Recovery Events

Typed observer interface for recovery lifecycle notifications.
"""

import inspect
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


class RecoveryEventType(str, Enum):
    """Events emitted by the recovery service."""

    RECOVERY_INITIATED = "recoveryInitiated"
    RECOVERY_COMPLETED = "recoveryCompleted"
    RECOVERY_CANCELLED = "recoveryCancelled"
    RECOVERY_NOTIFICATION = "recoveryNotification"
    MANUAL_INTERVENTION_REQUIRED = "manualInterventionRequired"
    SUGGESTIONS_GENERATED = "recoverySuggestionsGenerated"


EventPayload = Dict[str, Any]
EventCallback = Callable[[EventPayload], Union[None, Awaitable[None]]]


class RecoveryEventBus:
    """
    Routes recovery events to subscribed callbacks.

    Callbacks may be plain functions or coroutines. They run in subscription
    order; a failing callback is logged and the remaining ones still run.
    """

    def __init__(self) -> None:
        self._callbacks: Dict[RecoveryEventType, List[EventCallback]] = {}

    def subscribe(self, event_type: Union[RecoveryEventType, str], callback: EventCallback) -> None:
        """Register a callback for an event type."""
        event_type = RecoveryEventType(event_type)
        if event_type not in self._callbacks:
            self._callbacks[event_type] = []
        self._callbacks[event_type].append(callback)

    def unsubscribe(self, event_type: Union[RecoveryEventType, str], callback: EventCallback) -> None:
        """Unregister a callback."""
        event_type = RecoveryEventType(event_type)
        if event_type in self._callbacks:
            self._callbacks[event_type] = [
                cb for cb in self._callbacks[event_type] if cb != callback
            ]

    def clear(self) -> None:
        self._callbacks.clear()

    def subscriber_count(self, event_type: Optional[Union[RecoveryEventType, str]] = None) -> int:
        if event_type is None:
            return sum(len(cbs) for cbs in self._callbacks.values())
        return len(self._callbacks.get(RecoveryEventType(event_type), []))

    async def emit(self, event_type: Union[RecoveryEventType, str], payload: EventPayload) -> None:
        event_type = RecoveryEventType(event_type)
        callbacks = list(self._callbacks.get(event_type, []))
        if not callbacks:
            return

        for callback in callbacks:
            try:
                result = callback(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:  # noqa: BLE001
                logger.error(f"Callback error for {event_type.value}: {e}")
