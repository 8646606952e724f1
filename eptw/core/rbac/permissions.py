"""Permissions for the EPTW core, written ``resource:action``.

``own_permits:*`` permissions apply only to permits the actor requested;
``permits:*`` permissions apply to any permit at the actor's sites. There is
no ``audit_log`` write or delete permission: the ledger is append-only.
"""

from enum import Enum
from typing import NamedTuple, FrozenSet


class Resource(str, Enum):
    """Resources that can be protected by permissions."""

    PERMITS = "permits"             # Any permit
    OWN_PERMITS = "own_permits"     # Permits the actor requested
    APPROVALS = "approvals"         # Required approval entries
    EXTENSIONS = "extensions"       # Extension requests
    AUDIT_LOG = "audit_log"         # Transition history
    APPROVAL_CHAINS = "approval_chains"  # Chain templates


class Action(str, Enum):
    """Actions that can be performed on resources."""

    CREATE = "create"
    READ = "read"
    LIST = "list"

    # Lifecycle actions
    SUBMIT = "submit"
    CANCEL = "cancel"
    APPROVE = "approve"
    REJECT = "reject"
    SUSPEND = "suspend"
    RESUME = "resume"
    EXTEND = "extend"
    CLOSE = "close"

    # Administrative
    OVERRIDE = "override"           # Act in place of the actor a guard names
    CONFIGURE = "configure"


class Permission(NamedTuple):
    """One ``resource:action`` pair."""
    resource: Resource
    action: Action

    def __str__(self) -> str:
        return f"{self.resource.value}:{self.action.value}"

    @classmethod
    def from_string(cls, perm_str: str) -> "Permission":
        """Parse ``resource:action``, e.g. ``own_permits:extend``."""
        resource, sep, action = perm_str.partition(":")
        if not sep or ":" in action:
            raise ValueError(f"Invalid permission format: {perm_str}")
        return cls(Resource(resource), Action(action))


# Which actions make sense on which resource
PERMISSION_MATRIX: dict[Resource, FrozenSet[Action]] = {
    Resource.PERMITS: frozenset([
        Action.CREATE, Action.READ, Action.LIST, Action.SUBMIT, Action.CANCEL,
        Action.SUSPEND, Action.RESUME, Action.CLOSE, Action.OVERRIDE,
    ]),
    Resource.OWN_PERMITS: frozenset([
        Action.READ, Action.SUBMIT, Action.CANCEL, Action.EXTEND, Action.CLOSE,
    ]),
    Resource.APPROVALS: frozenset([
        Action.READ, Action.LIST, Action.APPROVE, Action.REJECT,
    ]),
    Resource.EXTENSIONS: frozenset([
        Action.READ, Action.LIST, Action.APPROVE, Action.REJECT,
    ]),
    Resource.AUDIT_LOG: frozenset([
        Action.READ, Action.LIST,
    ]),
    Resource.APPROVAL_CHAINS: frozenset([
        Action.READ, Action.LIST, Action.CONFIGURE,
    ]),
}

# "resource:action" -> Permission, for every pair in the matrix
PERMISSION_DEFINITIONS: dict[str, Permission] = {
    str(Permission(resource, action)): Permission(resource, action)
    for resource, actions in PERMISSION_MATRIX.items()
    for action in actions
}

WILDCARD = "*"


def permission_matches(granted: str, required: str) -> bool:
    """True if a granted permission covers ``required``.

    ``resource:*`` covers every action on the resource and ``*:*`` covers
    everything.
    """
    if granted == required:
        return True
    g_resource, _, g_action = granted.partition(":")
    r_resource = required.partition(":")[0]
    if g_action != WILDCARD:
        return False
    return g_resource in (WILDCARD, r_resource)


def is_valid_permission(perm_str: str) -> bool:
    return perm_str in PERMISSION_DEFINITIONS


def get_permissions_for_resource(resource: Resource) -> list[str]:
    return sorted(
        key for key, perm in PERMISSION_DEFINITIONS.items() if perm.resource == resource
    )


def get_all_permissions() -> list[str]:
    return sorted(PERMISSION_DEFINITIONS)
