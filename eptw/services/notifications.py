"""Change-notification hook for permit transitions.

Handles:
- Subscribing listeners to permit events (by event type or all events)
- Publishing events after a transition has been committed

Delivery (email, SMS, webhooks) belongs to listeners owned by other
services. A failing listener is logged and never affects the transition
that produced the event.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from eptw.utils import utcnow

logger = logging.getLogger(__name__)

ALL_EVENTS = "*"


class PermitEventType:
    """Event type names. Transition events are ``permit.<trigger>``."""

    CREATED = "permit.create"
    SUBMITTED = "permit.submit"
    APPROVED = "permit.approve"
    REJECTED = "permit.reject"
    EXPIRED = "permit.expire"
    EXPIRY_WARNING = "permit.expiry_warning"

    @staticmethod
    def for_trigger(trigger: str) -> str:
        return f"permit.{trigger}"


@dataclass
class PermitEvent:
    event_type: str
    permit_id: UUID
    serial: str
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    actor_id: Optional[UUID] = None
    role: Optional[str] = None
    occurred_at: datetime = field(default_factory=utcnow)
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "permit_id": str(self.permit_id),
            "serial": self.serial,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor_id": str(self.actor_id) if self.actor_id else None,
            "role": self.role,
            "occurred_at": self.occurred_at.isoformat(),
            "data": self.data,
        }


Listener = Callable[[PermitEvent], None]


class NotificationDispatcher:
    """Fire-and-forget fan-out of permit events to registered listeners."""

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_type: str, listener: Listener) -> None:
        """
        Register a listener.

        Args:
            event_type: Event type to listen for, or ``"*"`` for every event
            listener: Callable receiving the PermitEvent
        """
        with self._lock:
            self._listeners.setdefault(event_type, []).append(listener)

    def unsubscribe(self, event_type: str, listener: Listener) -> None:
        with self._lock:
            listeners = self._listeners.get(event_type, [])
            if listener in listeners:
                listeners.remove(listener)

    def publish(self, event: PermitEvent) -> int:
        """
        Deliver an event to its listeners.

        Returns:
            Number of listeners that handled the event without raising
        """
        with self._lock:
            listeners = list(self._listeners.get(event.event_type, []))
            listeners += self._listeners.get(ALL_EVENTS, [])

        delivered = 0
        for listener in listeners:
            try:
                listener(event)
                delivered += 1
            except Exception:
                logger.exception(
                    f"Notification listener failed for {event.event_type} on permit {event.serial}"
                )
        return delivered


# Process-wide dispatcher used when a service is not given one
default_dispatcher = NotificationDispatcher()
