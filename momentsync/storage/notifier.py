"""
Change notifications for the local moment store.

The repository emits one MomentChange after every committed mutation.
Consumers (list screens, the API websocket, tests) subscribe explicitly
instead of polling the store.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)


class ChangeKind(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    ARCHIVED = "archived"
    RESTORED = "restored"
    DELETED = "deleted"


@dataclass(frozen=True)
class MomentChange:
    kind: ChangeKind
    client_id: str
    fields: tuple[str, ...] = ()


Subscriber = Callable[[MomentChange], None]


class ChangeNotifier:
    """Fan-out of MomentChange events to registered callbacks."""

    def __init__(self):
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback. Returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, change: MomentChange) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(change)
            except Exception:
                logger.exception("Change subscriber failed for %s", change)
