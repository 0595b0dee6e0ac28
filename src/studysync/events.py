"""Synchronous publish/subscribe channel for store and auth notifications.

Listeners run in subscription order, synchronously, on the publisher's call
stack. A failing listener is logged and does not prevent delivery to the
remaining listeners.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Generic, List, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Origin of a store mutation: user-facing CRUD vs. the sync core's own writes
LOCAL_ORIGIN = "local"
SYNC_ORIGIN = "sync"

STORE_CHANGED = "studysync-db-changed"


@dataclass(frozen=True)
class ChangeEvent:
    """Broadcast after every committed LocalStore mutation."""

    name: str = STORE_CHANGED
    origin: str = LOCAL_ORIGIN


class EventChannel(Generic[T]):
    """Observer list with defined, synchronous delivery order."""

    def __init__(self, name: str):
        self.name = name
        self._listeners: List[Callable[[T], None]] = []

    def subscribe(self, listener: Callable[[T], None]) -> Callable[[], None]:
        """Register a listener.

        Returns:
            Callable that removes the listener again
        """
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event: T):
        """Deliver an event to every listener registered at call time."""
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Listener on channel '{self.name}' failed: {e}")

    def __len__(self) -> int:
        return len(self._listeners)
