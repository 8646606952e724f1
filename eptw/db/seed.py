"""Database seeding for the EPTW core.

Creates the tables and loads approval chain templates from configuration.
"""

import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from eptw.core.approval_chain import load_chain_templates, seed_approval_chains
from eptw.core.config import get_settings
from eptw.db.models import ApprovalChainTemplate, Site

logger = logging.getLogger(__name__)


def seed_from_config(
    db: Session,
    config_path: Optional[str] = None,
    *,
    replace: bool = False,
) -> List[ApprovalChainTemplate]:
    """
    Load approval chain templates from YAML and store them.

    Templates are idempotent - existing (site, type) templates are kept
    unless ``replace`` is set.

    Args:
        db: Database session
        config_path: YAML file; defaults to the configured approval_chains_path
        replace: Overwrite existing templates

    Returns:
        The stored templates
    """
    path = config_path or get_settings().approval_chains_path
    templates = load_chain_templates(path)
    stored = seed_approval_chains(db, templates, replace=replace)
    db.commit()
    return stored


def seed_site(db: Session, code: str, name: str, *, is_active: bool = True) -> Site:
    """Create a site if no site with ``code`` exists yet."""
    existing = db.query(Site).filter(Site.code == code).first()
    if existing:
        return existing

    site = Site(code=code, name=name, is_active=is_active)
    db.add(site)
    db.flush()
    return site


def main() -> None:
    from eptw.common.logger import configure_from_settings
    from eptw.db.session import SessionLocal, init_db

    configure_from_settings(get_settings())
    init_db()
    db = SessionLocal()
    try:
        stored = seed_from_config(db)
        logger.info(f"{len(stored)} approval chain templates in place")
    finally:
        db.close()


if __name__ == "__main__":
    main()
