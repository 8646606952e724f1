"""Permit lifecycle states and transitions.

State Machine Diagram:

    ┌──────────┐
    │  DRAFT   │ ← Initial state (created by requester)
    └────┬─────┘
         │ submit                          cancel
    ┌────▼──────────────┐──────────────────────────────┐
    │ PENDING_APPROVAL  │◄─┐ approve (others pending)  │
    └────┬──────────┬───┘──┘                           │
         │ approve  │ reject                     ┌─────▼─────┐
         │ (all)    └──────────►┌──────────┐     │ CANCELLED │
    ┌────▼─────┐                │ REJECTED │     └───────────┘
    │  ACTIVE  │◄───────────┐   └──────────┘
    └─┬──┬──┬──┘            │ approve/reject extension
      │  │  │ request_ext ┌─┴───────────────────┐
      │  │  └────────────►│ EXTENSION_REQUESTED │
      │  │ suspend        └─────────────────────┘
      │ ┌▼──────────┐ resume
      │ │ SUSPENDED ├────────► ACTIVE
      │ └─────┬─────┘
      │ close │ close
    ┌─▼───────▼┐
    │  CLOSED  │ (also reached by expire)
    └──────────┘

Terminal states: CLOSED, CANCELLED, REJECTED.
"""

from enum import Enum
from typing import Set, Dict, Optional, NamedTuple


class PermitStatus(str, Enum):
    """States in the permit lifecycle."""

    DRAFT = "Draft"
    PENDING_APPROVAL = "Pending_Approval"
    ACTIVE = "Active"
    EXTENSION_REQUESTED = "Extension_Requested"
    SUSPENDED = "Suspended"

    # Terminal states
    CLOSED = "Closed"
    CANCELLED = "Cancelled"
    REJECTED = "Rejected"

    @classmethod
    def from_legacy(cls, value: str) -> "PermitStatus":
        """Normalize a status string, including vocabulary from older dashboards."""
        key = value.strip().replace(" ", "_").lower()
        if key in LEGACY_STATUS_ALIASES:
            return LEGACY_STATUS_ALIASES[key]
        for status in cls:
            if status.value.lower() == key:
                return status
        raise ValueError(f"Unknown permit status: {value!r}")


class PermitType(str, Enum):
    """Kinds of hazardous work a permit can authorize. Fixed at creation."""

    GENERAL = "General"
    HEIGHT = "Height"
    ELECTRICAL = "Electrical"
    HOT_WORK = "Hot_Work"
    CONFINED_SPACE = "Confined_Space"


class PermitTrigger(str, Enum):
    """Actions that trigger state transitions."""

    SUBMIT = "submit"                        # DRAFT → PENDING_APPROVAL
    CANCEL = "cancel"                        # DRAFT/PENDING_APPROVAL → CANCELLED

    # Approval chain
    APPROVE = "approve"                      # PENDING_APPROVAL → PENDING_APPROVAL | ACTIVE
    REJECT = "reject"                        # PENDING_APPROVAL → REJECTED

    # Active lifecycle
    SUSPEND = "suspend"                      # ACTIVE → SUSPENDED
    RESUME = "resume"                        # SUSPENDED → ACTIVE
    REQUEST_EXTENSION = "request_extension"  # ACTIVE → EXTENSION_REQUESTED
    APPROVE_EXTENSION = "approve_extension"  # EXTENSION_REQUESTED → ACTIVE
    REJECT_EXTENSION = "reject_extension"    # EXTENSION_REQUESTED → ACTIVE
    CLOSE = "close"                          # ACTIVE/SUSPENDED → CLOSED
    EXPIRE = "expire"                        # ACTIVE → CLOSED (system)

    # Ledger-only trigger for the creation entry
    CREATE = "create"


class ApprovalDecision(str, Enum):
    """Decision recorded on a required approval entry."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ExtensionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ClosureReason(str, Enum):
    CLOSED = "closed"
    EXPIRED = "expired"


LEGACY_STATUS_ALIASES: Dict[str, PermitStatus] = {
    "initiated": PermitStatus.DRAFT,
    "pending": PermitStatus.PENDING_APPROVAL,
    "approved": PermitStatus.ACTIVE,
    "completed": PermitStatus.CLOSED,
    "extended": PermitStatus.ACTIVE,
}


class TransitionRule(NamedTuple):
    """Defines a valid state transition.

    ``to_states`` holds more than one state only for APPROVE, whose result
    depends on whether other approvals are still pending.

    ``owner_permission`` lets the permit's own requester perform the
    transition without holding ``requires_permission``. A rule with only an
    ``owner_permission`` is restricted to the requester.
    """
    from_state: PermitStatus
    to_states: tuple
    trigger: PermitTrigger
    requires_permission: Optional[str] = None
    owner_permission: Optional[str] = None
    requires_comment: bool = False
    system_only: bool = False


TRANSITION_RULES: list[TransitionRule] = [
    # Draft
    TransitionRule(PermitStatus.DRAFT, (PermitStatus.PENDING_APPROVAL,), PermitTrigger.SUBMIT,
                   "permits:submit", "own_permits:submit"),
    TransitionRule(PermitStatus.DRAFT, (PermitStatus.CANCELLED,), PermitTrigger.CANCEL,
                   "permits:cancel", "own_permits:cancel"),

    # Approval chain
    TransitionRule(PermitStatus.PENDING_APPROVAL,
                   (PermitStatus.PENDING_APPROVAL, PermitStatus.ACTIVE),
                   PermitTrigger.APPROVE, "approvals:approve"),
    TransitionRule(PermitStatus.PENDING_APPROVAL, (PermitStatus.REJECTED,), PermitTrigger.REJECT,
                   "approvals:reject"),
    TransitionRule(PermitStatus.PENDING_APPROVAL, (PermitStatus.CANCELLED,), PermitTrigger.CANCEL,
                   "permits:cancel", "own_permits:cancel"),

    # Active lifecycle
    TransitionRule(PermitStatus.ACTIVE, (PermitStatus.SUSPENDED,), PermitTrigger.SUSPEND,
                   "permits:suspend", requires_comment=True),
    TransitionRule(PermitStatus.ACTIVE, (PermitStatus.EXTENSION_REQUESTED,),
                   PermitTrigger.REQUEST_EXTENSION, owner_permission="own_permits:extend"),
    TransitionRule(PermitStatus.ACTIVE, (PermitStatus.CLOSED,), PermitTrigger.CLOSE,
                   "permits:close", "own_permits:close"),
    TransitionRule(PermitStatus.ACTIVE, (PermitStatus.CLOSED,), PermitTrigger.EXPIRE,
                   system_only=True),

    # Suspension
    TransitionRule(PermitStatus.SUSPENDED, (PermitStatus.ACTIVE,), PermitTrigger.RESUME,
                   "permits:resume"),
    TransitionRule(PermitStatus.SUSPENDED, (PermitStatus.CLOSED,), PermitTrigger.CLOSE,
                   "permits:close", "own_permits:close"),

    # Extension decisions
    TransitionRule(PermitStatus.EXTENSION_REQUESTED, (PermitStatus.ACTIVE,),
                   PermitTrigger.APPROVE_EXTENSION, "extensions:approve"),
    TransitionRule(PermitStatus.EXTENSION_REQUESTED, (PermitStatus.ACTIVE,),
                   PermitTrigger.REJECT_EXTENSION, "extensions:reject"),
]

# Build lookup tables for efficient access
VALID_TRANSITIONS: Dict[PermitStatus, Set[PermitTrigger]] = {}
TRANSITION_TARGETS: Dict[tuple[PermitStatus, PermitTrigger], TransitionRule] = {}

for rule in TRANSITION_RULES:
    VALID_TRANSITIONS.setdefault(rule.from_state, set()).add(rule.trigger)
    TRANSITION_TARGETS[(rule.from_state, rule.trigger)] = rule


# Terminal states (no outgoing transitions at all)
TERMINAL_STATES: Set[PermitStatus] = {
    PermitStatus.CLOSED,
    PermitStatus.CANCELLED,
    PermitStatus.REJECTED,
}


def _check_table_is_exhaustive() -> None:
    """Every status must either have outgoing transitions or be terminal, never both."""
    for status in PermitStatus:
        has_outgoing = status in VALID_TRANSITIONS
        if has_outgoing == (status in TERMINAL_STATES):
            raise RuntimeError(f"Transition table is inconsistent for status {status.value}")
    for rule in TRANSITION_RULES:
        for target in rule.to_states:
            if not isinstance(target, PermitStatus):
                raise RuntimeError(f"Rule {rule.trigger.value} targets a non-status value {target!r}")


_check_table_is_exhaustive()


def can_transition(from_state: PermitStatus, trigger: PermitTrigger) -> bool:
    """Check if a trigger is valid from the given state."""
    return trigger in VALID_TRANSITIONS.get(from_state, set())


def get_transition_rule(from_state: PermitStatus, trigger: PermitTrigger) -> Optional[TransitionRule]:
    """Get the transition rule for a state/trigger combination."""
    return TRANSITION_TARGETS.get((from_state, trigger))


def comment_required(trigger: PermitTrigger) -> bool:
    """Whether any rule for the trigger demands a non-blank comment."""
    return any(rule.requires_comment for rule in TRANSITION_RULES if rule.trigger == trigger)
