"""Database models for the EPTW core."""

from eptw.db.models.directory import Site, User
from eptw.db.models.approval_chain import ApprovalChainTemplate
from eptw.db.models.permit import Permit, RequiredApproval, PermitExtension, SerialCounter
from eptw.db.models.audit import AuditEntry, ImmutableAuditEntryError

__all__ = [
    "Site",
    "User",
    "ApprovalChainTemplate",
    "Permit",
    "RequiredApproval",
    "PermitExtension",
    "SerialCounter",
    "AuditEntry",
    "ImmutableAuditEntryError",
]
