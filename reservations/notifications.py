import logging
from typing import Callable

from .models import ChangeEvent

logger = logging.getLogger(__name__)

Subscriber = Callable[[ChangeEvent], None]


class ChangeNotifier:
    """
    Fan-out of change events to in-process observers.

    One event is published per committed mutation; observers re-read the
    collections and ids named in `event.changes`.
    """

    def __init__(self):
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: ChangeEvent) -> None:
        logger.info("[event] %s %s", event.action, event.changes)
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                # The mutation is already committed; a broken observer must not mask that.
                logger.exception("Change subscriber failed for %s", event.action)
