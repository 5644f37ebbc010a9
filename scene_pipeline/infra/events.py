"""
In-process notification channel for job state changes.

Any local mutation broadcasts JOB_UPDATED (job id, or None for bulk
operations) so other actors can refresh without polling. The retry queue
reports the outcome of background remote writes with SYNC_SUCCESS and
SYNC_FAILED.
"""

import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

JOB_UPDATED = "job-updated"
SYNC_SUCCESS = "sync-success"
SYNC_FAILED = "sync-failed"

EventCallback = Callable[[str, Dict[str, Any]], None]


class JobEventBus:
    """
    Synchronous publish/subscribe bus.

    Callbacks run in emit order on the emitting actor. A failing callback is
    logged and does not stop delivery to the others.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[EventCallback]] = defaultdict(list)

    def subscribe(self, event: str, callback: EventCallback) -> Callable[[], None]:
        """
        Register a callback for an event name.

        Returns:
            A function that removes the subscription
        """
        self._subscribers[event].append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers[event]:
                self._subscribers[event].remove(callback)

        return unsubscribe

    def emit(self, event: str, **detail: Any) -> None:
        """Deliver an event to every subscriber."""
        for callback in list(self._subscribers.get(event, [])):
            try:
                callback(event, detail)
            except Exception as e:
                logger.error(f"[Events] Subscriber for {event} failed: {e}")

    def subscriber_count(self, event: str) -> int:
        """Number of callbacks registered for an event."""
        return len(self._subscribers.get(event, []))
