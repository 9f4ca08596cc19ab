"""
Staking lifecycle events (Staked / Withdrawn / RewardPaid) and the asset
registry's Transfer events, delivered to in-process observers.
"""
from typing import Dict, List, Callable, Any
import logging

logger = logging.getLogger(__name__)


class EventBus:
    """
    Synchronous event bus.

    Events are delivered in the emitting thread, in subscription order.
    An exception in one listener is logged and does not reach the emitter,
    since the operation that emitted it has already committed.
    """

    def __init__(self):
        self.listeners: Dict[str, List[Callable]] = {}

    def subscribe(self, event_type: str, callback: Callable) -> Callable[[], None]:
        """Registers `callback(**payload)` and returns a function that removes it."""
        self.listeners.setdefault(event_type, []).append(callback)

        def unsubscribe():
            if callback in self.listeners.get(event_type, []):
                self.listeners[event_type].remove(callback)
        return unsubscribe

    def emit(self, event_type: str, **data: Any) -> None:
        # Snapshot, so listeners may unsubscribe while being notified
        listeners = list(self.listeners.get(event_type, []))
        logger.debug(f"{event_type} -> {len(listeners)} listener(s)")

        for callback in listeners:
            try:
                callback(**data)
            except Exception as e:
                logger.error(f"{event_type} listener {callback!r} failed: {e}", exc_info=True)


class EventRecorder:
    """Subscribes to a set of events and keeps them in emission order."""

    def __init__(self, bus: EventBus, event_types: List[str]):
        self.events: List[tuple] = []
        for event_type in event_types:
            bus.subscribe(event_type, self._make_listener(event_type))

    def _make_listener(self, event_type: str) -> Callable:
        def listener(**data):
            self.events.append((event_type, data))
        return listener

    def names(self) -> List[str]:
        return [name for name, _ in self.events]
