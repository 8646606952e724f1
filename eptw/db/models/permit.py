"""Permit database models.

Stores permits, their resolved approval chains, extension requests and the
per-year serial counters.
"""

import uuid
from sqlalchemy import (
    Column, String, DateTime, JSON, ForeignKey, Text, Integer, Boolean, Uuid,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from eptw.db.base import Base
from eptw.utils import utcnow


class Permit(Base):
    """
    A permit-to-work.

    Identity fields (serial, type, site, requester) never change after
    creation. ``status`` is a cached projection of the audit ledger and is
    only written by the permit service.
    """
    __tablename__ = "permits"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    serial = Column(String(32), unique=True, nullable=False, index=True)
    permit_type = Column(String(32), nullable=False)
    site_id = Column(Uuid, ForeignKey("sites.id"), nullable=False, index=True)
    requester_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)

    # Workflow state
    status = Column(String(32), nullable=False, default="Draft", index=True)
    version = Column(Integer, nullable=False, default=1)

    # Work details
    fields = Column(JSON, nullable=False, default=dict)
    risk_attributes = Column(JSON, nullable=False, default=dict)

    # Requested and authorized work windows
    requested_start = Column(DateTime, nullable=True)
    requested_end = Column(DateTime, nullable=True)
    valid_from = Column(DateTime, nullable=True)
    valid_to = Column(DateTime, nullable=True, index=True)

    # Suspension / closure
    suspended_by = Column(Uuid, ForeignKey("users.id"), nullable=True)
    suspension_reason = Column(Text, nullable=True)
    closure_reason = Column(String(32), nullable=True)
    expiry_warnings_sent = Column(JSON, nullable=False, default=list)

    # Timestamps
    submitted_at = Column(DateTime, nullable=True)
    activated_at = Column(DateTime, nullable=True)
    closed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    required_approvals = relationship(
        "RequiredApproval",
        back_populates="permit",
        order_by="RequiredApproval.sequence",
        cascade="all, delete-orphan",
    )
    extensions = relationship(
        "PermitExtension",
        back_populates="permit",
        order_by="PermitExtension.requested_at",
        cascade="all, delete-orphan",
    )
    site = relationship("Site", foreign_keys=[site_id])
    requester = relationship("User", foreign_keys=[requester_id])

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Permit {self.serial} [{self.status}]>"


class RequiredApproval(Base):
    """One role that must approve a permit, with its single decision."""
    __tablename__ = "permit_required_approvals"
    __table_args__ = (
        UniqueConstraint("permit_id", "role", name="uq_required_approval_role"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    permit_id = Column(Uuid, ForeignKey("permits.id", ondelete="CASCADE"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    role = Column(String(50), nullable=False)
    sequential = Column(Boolean, nullable=False, default=False)

    # pending | approved | rejected
    decision = Column(String(16), nullable=False, default="pending")
    actor_id = Column(Uuid, ForeignKey("users.id"), nullable=True)
    decided_at = Column(DateTime, nullable=True)
    comment = Column(Text, nullable=True)

    permit = relationship("Permit", back_populates="required_approvals")

    def __repr__(self) -> str:
        return f"<RequiredApproval {self.role} [{self.decision}]>"


class PermitExtension(Base):
    """A request to move a permit's authorized end time later."""
    __tablename__ = "permit_extensions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    permit_id = Column(Uuid, ForeignKey("permits.id", ondelete="CASCADE"), nullable=False, index=True)
    requested_by = Column(Uuid, ForeignKey("users.id"), nullable=False)
    requested_at = Column(DateTime, default=utcnow, nullable=False)
    original_valid_to = Column(DateTime, nullable=False)
    new_valid_to = Column(DateTime, nullable=False)
    reason = Column(Text, nullable=True)

    # pending | approved | rejected
    status = Column(String(16), nullable=False, default="pending")
    decided_by = Column(Uuid, ForeignKey("users.id"), nullable=True)
    decided_at = Column(DateTime, nullable=True)
    comment = Column(Text, nullable=True)

    permit = relationship("Permit", back_populates="extensions")

    def __repr__(self) -> str:
        return f"<PermitExtension {self.permit_id} -> {self.new_valid_to} [{self.status}]>"


class SerialCounter(Base):
    """Last serial number issued for a calendar year."""
    __tablename__ = "permit_serial_counters"

    year = Column(Integer, primary_key=True, autoincrement=False)
    last_value = Column(Integer, nullable=False, default=0)
