"""Per-session fan-out of graph snapshots and error notifications."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping

from .aggregator import GraphSnapshot
from .listeners import Subscriber

logger = logging.getLogger(__name__)

NETWORK_UPDATE_EVENT = "networkUpdate"
ERROR_EVENT = "error"


class BroadcastChannel:
    """Delivers messages to the subscribers registered for a session.

    Delivery is best effort: a subscriber that raises or refuses a message
    is logged and skipped, and never affects the publishing session.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Subscriber]] = {}
        self.delivered = 0
        self.dropped = 0

    # ------------------------------------------------------------------
    def subscribe(self, session_id: str, subscriber: Subscriber) -> None:
        subscribers = self._subscribers.setdefault(session_id, [])
        if subscriber not in subscribers:
            subscribers.append(subscriber)

    def unsubscribe(self, session_id: str, subscriber: Subscriber) -> None:
        subscribers = self._subscribers.get(session_id)
        if not subscribers:
            return
        if subscriber in subscribers:
            subscribers.remove(subscriber)
        if not subscribers:
            del self._subscribers[session_id]

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, ()))

    # ------------------------------------------------------------------
    def publish(self, session_id: str, snapshot: GraphSnapshot) -> int:
        """Send a snapshot to the session's subscribers; returns deliveries."""
        return self._deliver(session_id, NETWORK_UPDATE_EVENT, snapshot.to_dict())

    def publish_error(self, session_id: str, message: str) -> int:
        logger.error("Session %s: %s", session_id, message)
        return self._deliver(session_id, ERROR_EVENT, {"message": message})

    # ------------------------------------------------------------------
    def _deliver(self, session_id: str, event: str, payload: Mapping[str, Any]) -> int:
        delivered = 0
        # Copy: a subscriber may unsubscribe itself while being notified.
        for subscriber in list(self._subscribers.get(session_id, ())):
            try:
                accepted = subscriber.send(event, payload)
            except Exception:
                logger.exception("Failed to deliver %s to a subscriber of session %s", event, session_id)
                accepted = False
            if accepted:
                delivered += 1
            else:
                self.dropped += 1
        self.delivered += delivered
        return delivered


__all__ = ["BroadcastChannel", "ERROR_EVENT", "NETWORK_UPDATE_EVENT"]
