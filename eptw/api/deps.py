from typing import Generator
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from eptw.db.session import SessionLocal
from eptw.core.permit.service import PermitService


def get_db() -> Generator:
    """Database session dependency."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_actor_id(x_actor_id: str = Header(None)) -> UUID:
    """Acting user id, asserted by the upstream gateway in the X-Actor-Id header."""
    if not x_actor_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Actor-Id header is required",
        )
    try:
        return UUID(x_actor_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Actor-Id must be a UUID",
        )


def get_permit_service(db: Session = Depends(get_db)) -> PermitService:
    return PermitService(db)
