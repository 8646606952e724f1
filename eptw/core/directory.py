"""Read-only lookups against the user and site directories."""

import logging
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from eptw.db.models import Site, User

from .exceptions import AuthorizationError, ValidationError

logger = logging.getLogger(__name__)


class Directory:
    """Resolves actor and site ids for a single transition evaluation."""

    def __init__(self, db: Session):
        self.db = db

    def find_user(self, user_id: Optional[UUID]) -> Optional[User]:
        if user_id is None:
            return None
        return self.db.get(User, user_id)

    def get_actor(self, user_id: Optional[UUID]) -> User:
        """Return an active user, or raise AuthorizationError naming why not."""
        user = self.find_user(user_id)
        if user is None:
            raise AuthorizationError(f"Unknown actor {user_id}", guard="actor_known")
        if not user.is_active:
            logger.info(f"Rejected action by inactive user {user.id}")
            raise AuthorizationError(f"User {user.email} is inactive", guard="actor_active")
        return user

    def get_site(self, site_id: Optional[UUID]) -> Site:
        """Return an active site, or raise ValidationError."""
        site = self.db.get(Site, site_id) if site_id is not None else None
        if site is None:
            raise ValidationError(f"Site {site_id} does not exist", guard="site_exists")
        if not site.is_active:
            raise ValidationError(f"Site {site.code} is not active", guard="site_active")
        return site

    @staticmethod
    def is_assigned_to_site(user: User, site_id: UUID) -> bool:
        """Users with no site assignments may act on every site."""
        assigned = user.site_ids or []
        if not assigned:
            return True
        return str(site_id) in {str(s) for s in assigned}
