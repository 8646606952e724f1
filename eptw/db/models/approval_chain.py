"""Approval chain template model.

A template maps (site, permit type) to the ordered roles that must approve.
A NULL ``site_id`` is the wildcard template used when a site has none of its own.
"""

import uuid
from sqlalchemy import Column, String, DateTime, JSON, ForeignKey, Text, Uuid, UniqueConstraint

from eptw.db.base import Base
from eptw.utils import utcnow


class ApprovalChainTemplate(Base):
    __tablename__ = "approval_chain_templates"
    __table_args__ = (
        UniqueConstraint("site_id", "permit_type", name="uq_chain_site_type"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    site_id = Column(Uuid, ForeignKey("sites.id"), nullable=True, index=True)
    permit_type = Column(String(32), nullable=False, index=True)

    # [{"role": "Approver_Safety", "sequential": false, "when": {"high_risk": true}}, ...]
    steps = Column(JSON, nullable=False, default=list)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<ApprovalChainTemplate {self.site_id or '*'}/{self.permit_type}>"
