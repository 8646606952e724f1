"""Services around the EPTW core."""

from eptw.services.notifications import (
    NotificationDispatcher,
    PermitEvent,
    PermitEventType,
    default_dispatcher,
)

__all__ = [
    "NotificationDispatcher",
    "PermitEvent",
    "PermitEventType",
    "default_dispatcher",
]
