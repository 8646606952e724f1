"""Approval chain resolution.

Determines, for a permit's site, type and risk profile, the ordered roles
that must approve it. Resolution is pure: it reads templates and never
writes. The permit service calls it once, at submission, and persists the
result.
"""

import logging
from typing import Any, Dict, List, NamedTuple, Optional, Union
from uuid import UUID

from sqlalchemy.orm import Session

from eptw.core.directory import Directory
from eptw.core.exceptions import ConfigurationError, ValidationError
from eptw.core.permit.states import PermitType
from eptw.core.rbac.roles import Role
from eptw.db.models import ApprovalChainTemplate

from .templates import parse_step

logger = logging.getLogger(__name__)


class ResolvedStep(NamedTuple):
    """A required approver role. ``sequential`` gates it on every earlier step."""
    role: Role
    sequential: bool = False


class ApprovalChainResolver:
    """Resolves required approvals from the stored chain templates."""

    def __init__(self, db: Session, directory: Optional[Directory] = None):
        self.db = db
        self.directory = directory or Directory(db)

    def find_template(self, site_id: UUID, permit_type: PermitType) -> Optional[ApprovalChainTemplate]:
        """Site-specific template first, then the wildcard one."""
        specific = self.db.query(ApprovalChainTemplate).filter(
            ApprovalChainTemplate.site_id == site_id,
            ApprovalChainTemplate.permit_type == permit_type.value,
        ).first()
        if specific:
            return specific

        return self.db.query(ApprovalChainTemplate).filter(
            ApprovalChainTemplate.site_id.is_(None),
            ApprovalChainTemplate.permit_type == permit_type.value,
        ).first()

    def resolve(
        self,
        site_id: UUID,
        permit_type: Union[PermitType, str],
        risk_attributes: Optional[Dict[str, Any]] = None,
    ) -> List[ResolvedStep]:
        """
        Compute the required approvals for a permit.

        Args:
            site_id: Site the work happens at; must exist and be active
            permit_type: One of PermitType
            risk_attributes: Risk profile used by conditional steps

        Returns:
            Non-empty, deduplicated list of steps in escalation order

        Raises:
            ValidationError: If the site or permit type is invalid
            ConfigurationError: If no template applies or it resolves to no roles
        """
        site = self.directory.get_site(site_id)
        try:
            ptype = PermitType(permit_type)
        except ValueError as e:
            raise ValidationError(f"Unknown permit type: {permit_type}", guard="permit_type") from e

        template = self.find_template(site.id, ptype)
        if template is None:
            raise ConfigurationError(
                f"No approval chain is configured for {ptype.value} permits at site {site.code}. "
                f"Ask an administrator to add an approval chain template for this site and "
                f"permit type before submitting."
            )

        steps: List[ResolvedStep] = []
        seen = set()
        for raw in template.steps or []:
            step = parse_step(raw)
            if step.role in seen or not step.applies_to(risk_attributes):
                continue
            seen.add(step.role)
            steps.append(ResolvedStep(step.role, step.sequential))

        if not steps:
            raise ConfigurationError(
                f"Approval chain for {ptype.value} at site {site.code} resolved to no roles "
                f"for risk profile {risk_attributes or {}}. Fix the template conditions."
            )

        logger.debug(
            f"Resolved chain for {ptype.value} at {site.code}: "
            f"{[s.role.value for s in steps]}"
        )
        return steps
