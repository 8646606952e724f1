"""Engine and session factory for the EPTW database."""

from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from eptw.core.config import get_settings
from eptw.db.base import Base


def build_engine(database_url: str, *, echo: bool = False) -> Engine:
    """Create an engine, allowing SQLite connections to be shared across worker threads."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(database_url, echo=echo, connect_args=connect_args, future=True)


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine: Optional[Engine] = None) -> None:
    """Create all tables that do not exist yet."""
    import eptw.db.models  # noqa: F401  registers mappers

    Base.metadata.create_all(bind=engine or _engine)


_settings = get_settings()
_engine = build_engine(_settings.database_url, echo=_settings.database_echo)
SessionLocal = build_session_factory(_engine)
