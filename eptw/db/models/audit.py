"""Audit ledger model for the EPTW core.

This table is APPEND-ONLY - ORM events reject UPDATE and DELETE of any
entry. The ledger is the source of truth for who did what and when; the
permit ``status`` column is a projection of its latest entry.
"""

import uuid
from sqlalchemy import Column, String, DateTime, JSON, ForeignKey, Text, Integer, Uuid, UniqueConstraint, event
from sqlalchemy.orm import relationship

from eptw.db.base import Base
from eptw.utils import utcnow


class ImmutableAuditEntryError(Exception):
    """Raised when code attempts to modify or delete an audit entry."""


class AuditEntry(Base):
    """
    Immutable record of a single permit status transition.

    ``sequence`` is a per-permit monotonically increasing counter that orders
    entries sharing the same timestamp.
    """
    __tablename__ = "audit_entries"
    __table_args__ = (
        UniqueConstraint("permit_id", "sequence", name="uq_audit_entry_sequence"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    permit_id = Column(Uuid, ForeignKey("permits.id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)

    # Transition details
    from_status = Column(String(32), nullable=True)  # None for the creation entry
    to_status = Column(String(32), nullable=False)
    trigger = Column(String(32), nullable=False)

    # Actor (None for system-triggered transitions)
    actor_id = Column(Uuid, ForeignKey("users.id"), nullable=True, index=True)
    role_at_action = Column(String(50), nullable=True)

    comment = Column(Text, nullable=True)
    extra_data = Column(JSON, nullable=False, default=dict)

    timestamp = Column(DateTime, default=utcnow, nullable=False, index=True)

    permit = relationship("Permit")

    def __repr__(self) -> str:
        return f"<AuditEntry {self.from_status} -> {self.to_status} ({self.trigger})>"


@event.listens_for(AuditEntry, "before_update")
def _reject_update(mapper, connection, target):
    raise ImmutableAuditEntryError(f"Audit entry {target.id} is immutable and cannot be updated")


@event.listens_for(AuditEntry, "before_delete")
def _reject_delete(mapper, connection, target):
    raise ImmutableAuditEntryError(f"Audit entry {target.id} is immutable and cannot be deleted")
