"""User and site directory models.

These rows are maintained by the site/user administration collaborator; the
permit engine only reads them.
"""

import uuid
from sqlalchemy import Column, String, DateTime, JSON, Boolean, Uuid

from eptw.db.base import Base
from eptw.utils import utcnow


class Site(Base):
    __tablename__ = "sites"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    code = Column(String(32), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<Site {self.code}>"


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255))
    # Role names, e.g. ["Approver_Safety"]; a user may hold several
    roles = Column(JSON, nullable=False, default=list)
    # Sites an approver is assigned to; empty means every site
    site_ids = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<User {self.email}>"
