"""Permission checking utilities for the EPTW core.

The state machine asks a PermissionChecker whether an actor may perform a
transition; nothing else maps roles to capabilities.
"""

from typing import Iterable, Optional, Union, List

from .permissions import Permission, Resource, Action, permission_matches
from .roles import Role, get_role_permissions, parse_roles, permissions_for_roles


class PermissionChecker:
    """Checks if a user has specific permissions based on their roles."""

    def __init__(self, user_permissions: Iterable[str], roles: Optional[Iterable[Role]] = None):
        """
        Initialize with the user's permissions list.

        Args:
            user_permissions: Permission strings granted by the user's roles
            roles: The roles the permissions were derived from
        """
        self.permissions = set(user_permissions)
        self.roles = set(roles or [])

    @classmethod
    def for_roles(cls, raw_roles: Iterable[str]) -> "PermissionChecker":
        """Build a checker from stored role names."""
        roles = parse_roles(raw_roles)
        return cls(permissions_for_roles(roles), roles)

    @classmethod
    def for_user(cls, user) -> "PermissionChecker":
        """Build a checker for a directory user. Inactive users get no permissions."""
        if user is None or not user.is_active:
            return cls([])
        return cls.for_roles(user.roles or [])

    def has_permission(self, permission: Union[str, Permission]) -> bool:
        """Check if user has a specific permission."""
        required = str(permission)
        return required in self.permissions or any(
            permission_matches(granted, required) for granted in self.permissions
        )

    def has_any_permission(self, permissions: List[Union[str, Permission]]) -> bool:
        """Check if user has any of the given permissions."""
        return any(self.has_permission(p) for p in permissions)

    def can_access_resource(self, resource: Resource, action: Action) -> bool:
        """Check if user can perform action on resource."""
        return self.has_permission(Permission(resource, action))

    def holds_role(self, role: Union[str, Role]) -> bool:
        """True only if the role was actually granted; wildcards do not imply roles."""
        try:
            return Role(role) in self.roles
        except ValueError:
            return False

    def role_granting(self, permission: Union[str, Permission]) -> Optional[str]:
        """The first held role, in Role order, whose own permissions include ``permission``."""
        for role in Role:
            if role in self.roles and PermissionChecker(get_role_permissions(role)).has_permission(permission):
                return role.value
        return None

    @property
    def can_override(self) -> bool:
        """Whether the user may act in place of the specific actor a guard names."""
        return self.can_access_resource(Resource.PERMITS, Action.OVERRIDE)
