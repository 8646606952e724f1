"""Approval chain template configuration.

Templates are declared in YAML and seeded into the ``approval_chain_templates``
table. The file has two sections::

    defaults:              # wildcard templates, used by every site
      Hot_Work:
        description: Hot work always needs a safety officer
        steps:
          - role: Approver_Safety
          - role: Approver_AreaManager
            when: {high_risk: true}
    sites:                 # site-specific overrides, keyed by site code
      SITE-A:
        Height:
          steps:
            - role: Approver_AreaManager
            - role: Approver_Safety

A step's ``when`` mapping lists risk attributes that must all match for the
step to apply. A list value matches any of its members.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from eptw.common.config import load_config
from eptw.core.exceptions import ConfigurationError
from eptw.core.permit.states import PermitType
from eptw.core.rbac.roles import Role, APPROVER_ROLES, normalize_role
from eptw.db.models import ApprovalChainTemplate, Site

logger = logging.getLogger(__name__)


@dataclass
class ChainStep:
    """One role in a chain template."""

    role: Role
    sequential: bool = False
    when: Dict[str, Any] = field(default_factory=dict)

    def applies_to(self, risk_attributes: Optional[Dict[str, Any]]) -> bool:
        risk = risk_attributes or {}
        for key, expected in self.when.items():
            actual = risk.get(key)
            if isinstance(expected, list):
                if actual not in expected:
                    return False
            elif actual != expected:
                return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"role": self.role.value, "sequential": self.sequential}
        if self.when:
            data["when"] = dict(self.when)
        return data


@dataclass
class ChainTemplate:
    """Steps for one (site, permit type) pair. ``site_code`` None is the wildcard."""

    permit_type: PermitType
    steps: List[ChainStep] = field(default_factory=list)
    site_code: Optional[str] = None
    description: Optional[str] = None


def parse_step(step_dict: Dict[str, Any]) -> ChainStep:
    """Parse a step mapping.

    Args:
        step_dict: Step configuration dictionary

    Returns:
        ChainStep instance

    Raises:
        ConfigurationError: If the role is missing, unknown or not an approver role
    """
    if not isinstance(step_dict, dict) or "role" not in step_dict:
        raise ConfigurationError(f"Approval chain step must be a mapping with a role: {step_dict!r}")
    try:
        role = normalize_role(str(step_dict["role"]))
    except ValueError as e:
        raise ConfigurationError(str(e)) from e
    if role not in APPROVER_ROLES:
        raise ConfigurationError(f"Role {role.value} cannot approve permits")

    when = step_dict.get("when") or {}
    if not isinstance(when, dict):
        raise ConfigurationError(f"'when' for role {role.value} must be a mapping")

    return ChainStep(role=role, sequential=bool(step_dict.get("sequential", False)), when=when)


def parse_template(
    permit_type: str, template_dict: Dict[str, Any], site_code: Optional[str] = None
) -> ChainTemplate:
    """Parse a template mapping for one permit type."""
    try:
        ptype = PermitType(permit_type)
    except ValueError as e:
        raise ConfigurationError(f"Unknown permit type in approval chains: {permit_type}") from e

    steps = [parse_step(s) for s in (template_dict or {}).get("steps", [])]
    if not steps:
        where = site_code or "*"
        raise ConfigurationError(f"Approval chain {where}/{ptype.value} declares no steps")

    return ChainTemplate(
        permit_type=ptype,
        steps=steps,
        site_code=site_code,
        description=(template_dict or {}).get("description"),
    )


def parse_chain_config(config_dict: Dict[str, Any]) -> List[ChainTemplate]:
    """Parse the full approval chain configuration."""
    templates = []
    for permit_type, template_dict in (config_dict.get("defaults") or {}).items():
        templates.append(parse_template(permit_type, template_dict))

    for site_code, site_templates in (config_dict.get("sites") or {}).items():
        for permit_type, template_dict in (site_templates or {}).items():
            templates.append(parse_template(permit_type, template_dict, site_code=str(site_code)))

    return templates


def load_chain_templates(config_path: str) -> List[ChainTemplate]:
    """Load and parse approval chain templates from a YAML file.

    Raises:
        FileNotFoundError: If config file doesn't exist
        ConfigurationError: If a template is invalid
    """
    return parse_chain_config(load_config(config_path))


def seed_approval_chains(
    db: Session, templates: List[ChainTemplate], *, replace: bool = False
) -> List[ApprovalChainTemplate]:
    """
    Store chain templates in the database.

    Seeding is idempotent: an existing (site, type) template is left as is
    unless ``replace`` is set. Permits already submitted keep the chain they
    were resolved with either way.

    Args:
        db: Database session
        templates: Parsed templates
        replace: Overwrite the steps of existing templates

    Returns:
        The stored template rows
    """
    stored = []
    for template in templates:
        site_id = None
        if template.site_code:
            site = db.query(Site).filter(Site.code == template.site_code).first()
            if site is None:
                logger.warning(
                    f"Skipping approval chain for unknown site {template.site_code} "
                    f"({template.permit_type.value})"
                )
                continue
            site_id = site.id

        query = db.query(ApprovalChainTemplate).filter(
            ApprovalChainTemplate.permit_type == template.permit_type.value
        )
        if site_id is None:
            query = query.filter(ApprovalChainTemplate.site_id.is_(None))
        else:
            query = query.filter(ApprovalChainTemplate.site_id == site_id)
        existing = query.first()

        steps = [s.to_dict() for s in template.steps]
        if existing:
            if replace:
                existing.steps = steps
                existing.description = template.description
            stored.append(existing)
            continue

        row = ApprovalChainTemplate(
            site_id=site_id,
            permit_type=template.permit_type.value,
            steps=steps,
            description=template.description,
        )
        db.add(row)
        stored.append(row)

    db.flush()
    logger.info(f"Seeded {len(stored)} approval chain templates")
    return stored
