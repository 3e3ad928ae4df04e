from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
import inspect
import logging

logger = logging.getLogger(__name__)

PROGRESS = "progress"
STATE = "state"
RETRY = "retry"
FALLBACK = "fallback"


@dataclass
class StateChange:
    """Lifecycle notification for one upload operation."""
    filename: str
    phase: str
    attempt: int = 0
    detail: Optional[str] = None


async def notify(callback: Optional[Callable], *args, **kwargs) -> None:
    """Invoke a sync or async callback."""
    if callback is None:
        return
    result = callback(*args, **kwargs)
    if inspect.isawaitable(result):
        await result


class EventEmitter:
    """Simple event emitter for upload events."""

    def __init__(self):
        self._listeners: Dict[str, List[Callable]] = {}

    def on(self, event_name: str, callback: Callable):
        """Subscribe to an event."""
        if event_name not in self._listeners:
            self._listeners[event_name] = []
        if callback not in self._listeners[event_name]:
            self._listeners[event_name].append(callback)

    def off(self, event_name: str, callback: Callable):
        """Unsubscribe from an event."""
        if event_name in self._listeners:
            if callback in self._listeners[event_name]:
                self._listeners[event_name].remove(callback)

    def has_listeners(self, event_name: str) -> bool:
        return bool(self._listeners.get(event_name))

    async def emit(self, event_name: str, *args: Any, **kwargs: Any):
        """Emit an event to all listeners. Listener errors are logged, not raised."""
        if event_name not in self._listeners:
            return

        for callback in self._listeners[event_name][:]:  # Copy list to avoid modification during iteration
            try:
                await notify(callback, *args, **kwargs)
            except Exception as e:
                logger.error(f"Error in event listener for {event_name}: {e}")
