"""Permit lifecycle module for the EPTW core.

Implements the permit state machine. The persisted service and the expiry
monitor live in ``eptw.core.permit.service`` and ``eptw.core.permit.expiry``.
"""

from .states import PermitStatus, PermitType, PermitTrigger, VALID_TRANSITIONS, TERMINAL_STATES
from .machine import PermitStateMachine

__all__ = [
    "PermitStatus",
    "PermitType",
    "PermitTrigger",
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    "PermitStateMachine",
]
