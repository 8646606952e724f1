"""RBAC (Role-Based Access Control) module for the EPTW core.

This module defines the permission model, the authoritative role table, and
access control utilities.
"""

from .permissions import Permission, Resource, Action, PERMISSION_DEFINITIONS, is_valid_permission, permission_matches
from .roles import Role, DEFAULT_ROLES, APPROVER_ROLES, normalize_role, parse_roles, permissions_for_roles
from .checker import PermissionChecker

__all__ = [
    "Permission",
    "Resource",
    "Action",
    "PERMISSION_DEFINITIONS",
    "is_valid_permission",
    "permission_matches",
    "Role",
    "DEFAULT_ROLES",
    "APPROVER_ROLES",
    "normalize_role",
    "parse_roles",
    "permissions_for_roles",
    "PermissionChecker",
]
