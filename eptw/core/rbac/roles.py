"""Role definitions for the EPTW core.

This is the single authoritative role → permission table. Callers never map
role names to capabilities on their own; they ask a PermissionChecker built
from these sets.

Roles:
1. Requester - Creates permits and manages their own
2. Area Manager - Approves permits for their area
3. Safety Officer - Approves, suspends and resumes permits
4. Site Leader - Approves permits and extensions, closes permits
5. Admin - Full access, may override actor-specific guards
"""

from enum import Enum
from typing import Dict, Iterable, List, Set

from .permissions import Resource, Action, Permission


class Role(str, Enum):
    REQUESTER = "Requester"
    AREA_MANAGER = "Approver_AreaManager"
    SAFETY_OFFICER = "Approver_Safety"
    SITE_LEADER = "Approver_SiteLeader"
    ADMIN = "Admin"


# Role names seen in older user records
ROLE_ALIASES: Dict[str, Role] = {
    "requester": Role.REQUESTER,
    "worker": Role.REQUESTER,
    "supervisor": Role.REQUESTER,
    "area manager": Role.AREA_MANAGER,
    "area_manager": Role.AREA_MANAGER,
    "approver_areamanager": Role.AREA_MANAGER,
    "safety officer": Role.SAFETY_OFFICER,
    "safety_officer": Role.SAFETY_OFFICER,
    "approver_safety": Role.SAFETY_OFFICER,
    "site leader": Role.SITE_LEADER,
    "site_leader": Role.SITE_LEADER,
    "approver_siteleader": Role.SITE_LEADER,
    "admin": Role.ADMIN,
}

APPROVER_ROLES: frozenset = frozenset({
    Role.AREA_MANAGER,
    Role.SAFETY_OFFICER,
    Role.SITE_LEADER,
})


def _build_permissions(*perms: tuple) -> List[str]:
    """Build permission strings from (Resource, Action) tuples."""
    return [str(Permission(r, a)) for r, a in perms]


# Admin: Full access to everything
ADMIN_PERMISSIONS = [
    "*:*"
]

REQUESTER_PERMISSIONS = _build_permissions(
    (Resource.PERMITS, Action.CREATE),
    (Resource.PERMITS, Action.LIST),

    (Resource.OWN_PERMITS, Action.READ),
    (Resource.OWN_PERMITS, Action.SUBMIT),
    (Resource.OWN_PERMITS, Action.CANCEL),
    (Resource.OWN_PERMITS, Action.EXTEND),
    (Resource.OWN_PERMITS, Action.CLOSE),

    (Resource.AUDIT_LOG, Action.READ),
)

# Shared by every approver role
_APPROVER_BASE = (
    (Resource.PERMITS, Action.READ),
    (Resource.PERMITS, Action.LIST),

    (Resource.APPROVALS, Action.READ),
    (Resource.APPROVALS, Action.LIST),
    (Resource.APPROVALS, Action.APPROVE),
    (Resource.APPROVALS, Action.REJECT),

    (Resource.EXTENSIONS, Action.READ),
    (Resource.EXTENSIONS, Action.LIST),
    (Resource.EXTENSIONS, Action.APPROVE),
    (Resource.EXTENSIONS, Action.REJECT),

    (Resource.AUDIT_LOG, Action.READ),
    (Resource.AUDIT_LOG, Action.LIST),
)

AREA_MANAGER_PERMISSIONS = _build_permissions(*_APPROVER_BASE)

SAFETY_OFFICER_PERMISSIONS = _build_permissions(
    *_APPROVER_BASE,
    (Resource.PERMITS, Action.SUSPEND),
    (Resource.PERMITS, Action.RESUME),
)

SITE_LEADER_PERMISSIONS = _build_permissions(
    *_APPROVER_BASE,
    (Resource.PERMITS, Action.CLOSE),
    (Resource.APPROVAL_CHAINS, Action.READ),
)


DEFAULT_ROLES: Dict[Role, dict] = {
    Role.REQUESTER: {
        "name": "Requester",
        "description": "Creates permits and manages the permits they requested",
        "permissions": REQUESTER_PERMISSIONS,
    },
    Role.AREA_MANAGER: {
        "name": "Area Manager",
        "description": "Approves or rejects permits for their area",
        "permissions": AREA_MANAGER_PERMISSIONS,
    },
    Role.SAFETY_OFFICER: {
        "name": "Safety Officer",
        "description": "Approves permits and may suspend or resume active work",
        "permissions": SAFETY_OFFICER_PERMISSIONS,
    },
    Role.SITE_LEADER: {
        "name": "Site Leader",
        "description": "Approves permits and extensions and may close permits",
        "permissions": SITE_LEADER_PERMISSIONS,
    },
    Role.ADMIN: {
        "name": "Admin",
        "description": "Full access, including overriding actor-specific guards",
        "permissions": ADMIN_PERMISSIONS,
    },
}


def normalize_role(role: str) -> Role:
    """Map a stored role name (canonical or legacy) to a Role."""
    try:
        return Role(role.strip())
    except ValueError:
        pass
    alias = ROLE_ALIASES.get(role.strip().lower())
    if alias is None:
        raise ValueError(f"Unknown role: {role!r}")
    return alias


def parse_roles(raw_roles: Iterable[str]) -> Set[Role]:
    """Normalize a list of role names, ignoring names this system does not know."""
    roles = set()
    for raw in raw_roles or []:
        try:
            roles.add(normalize_role(raw))
        except ValueError:
            continue
    return roles


def get_role_permissions(role: Role) -> List[str]:
    """Get permissions list for a role."""
    config = DEFAULT_ROLES.get(role)
    if not config:
        raise ValueError(f"Unknown role: {role}")
    return config["permissions"]


def permissions_for_roles(roles: Iterable[Role]) -> List[str]:
    """Union of the permissions of every given role."""
    merged: Set[str] = set()
    for role in roles:
        merged.update(get_role_permissions(role))
    return sorted(merged)
