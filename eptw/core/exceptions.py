"""Typed errors raised by the permit engine.

Every error carries ``guard``: a short identifier of the precondition that
failed, so callers can tell a human exactly why a transition was refused.
"""

from typing import Optional


class PermitError(Exception):
    """Base class for all permit engine errors."""

    default_guard = "permit"

    def __init__(self, message: str, guard: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.guard = guard or self.default_guard


class ConfigurationError(PermitError):
    """No usable approval chain exists for the permit; submission cannot proceed."""

    default_guard = "approval_chain"


class AuthorizationError(PermitError):
    """The actor lacks the role, permission or assignment the trigger requires."""

    default_guard = "authorization"


class StaleTransitionError(PermitError):
    """The guard no longer holds because the permit or entry was already processed."""

    default_guard = "state"


class ValidationError(PermitError):
    """Malformed input, rejected before any lock is taken."""

    default_guard = "input"


class PermitNotFoundError(PermitError):
    default_guard = "permit_exists"

    def __init__(self, permit_id):
        super().__init__(f"Permit {permit_id} not found")
        self.permit_id = permit_id
