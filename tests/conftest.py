"""Pytest configuration and shared fixtures."""

import os

# Must be set before eptw.db.session builds its module-level engine
os.environ.setdefault("EPTW_DATABASE_URL", "sqlite://")
os.environ.setdefault("EPTW_LOG_TO_FILE", "false")


import pytest

from eptw.core.approval_chain import load_chain_templates, seed_approval_chains
from eptw.core.config import Settings
from eptw.core.permit.locks import PermitLocks
from eptw.core.permit.service import PermitService
from eptw.db.session import build_engine, build_session_factory, init_db
from eptw.services.notifications import NotificationDispatcher

from tests.factories import CHAIN_CONFIG_PATH, FrozenClock, create_site, create_user


@pytest.fixture
def database_url(tmp_path):
    """File-backed SQLite so several sessions and threads share one database."""
    return f"sqlite:///{tmp_path / 'eptw-test.db'}"


@pytest.fixture
def engine(database_url):
    engine = build_engine(database_url)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings(database_url):
    return Settings(
        database_url=database_url,
        expiry_grace_seconds=60,
        clock_skew_tolerance_seconds=300,
        expiry_warning_minutes="30,10",
        transition_max_retries=3,
    )


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def locks():
    return PermitLocks()


@pytest.fixture
def dispatcher():
    return NotificationDispatcher()


@pytest.fixture
def events(dispatcher):
    """Every event published through the test dispatcher."""
    received = []
    dispatcher.subscribe("*", received.append)
    return received


@pytest.fixture
def make_service(settings, clock, locks, dispatcher):
    """Build a PermitService for a given session, sharing locks, clock and dispatcher."""
    def _make(session, **overrides):
        kwargs = dict(notifier=dispatcher, locks=locks, clock=clock, settings=settings)
        kwargs.update(overrides)
        return PermitService(session, **kwargs)
    return _make


@pytest.fixture
def service(db_session, make_service):
    return make_service(db_session)


# ---------------------------------------------------------------------------
# Directory
#
# Directory rows are committed so that a service rolling back a refused
# transition does not take them with it.
# ---------------------------------------------------------------------------


def _committed(session, row):
    session.commit()
    return row


@pytest.fixture
def site(db_session):
    return _committed(db_session, create_site(db_session, code="SITE-A", name="Site A"))


@pytest.fixture
def other_site(db_session):
    return _committed(db_session, create_site(db_session, code="SITE-B", name="Site B"))


@pytest.fixture
def chains(db_session, site):
    """Approval chains from the shipped configuration file."""
    stored = seed_approval_chains(db_session, load_chain_templates(str(CHAIN_CONFIG_PATH)))
    return _committed(db_session, stored)


@pytest.fixture
def requester(db_session):
    return _committed(db_session, create_user(db_session, roles=["Requester"], name="Riley Requester"))


@pytest.fixture
def other_requester(db_session):
    return _committed(db_session, create_user(db_session, roles=["Requester"], name="Quinn Requester"))


def _approver(db_session, role, site, name):
    return _committed(db_session, create_user(db_session, roles=[role], site_ids=[site.id], name=name))


@pytest.fixture
def area_manager(db_session, site):
    return _approver(db_session, "Approver_AreaManager", site, "Avery Manager")


@pytest.fixture
def safety_officer(db_session, site):
    return _approver(db_session, "Approver_Safety", site, "Sam Safety")


@pytest.fixture
def second_safety_officer(db_session, site):
    return _approver(db_session, "Approver_Safety", site, "Jordan Safety")


@pytest.fixture
def site_leader(db_session, site):
    return _approver(db_session, "Approver_SiteLeader", site, "Morgan Leader")


@pytest.fixture
def admin(db_session):
    return _committed(db_session, create_user(db_session, roles=["Admin"], name="Alex Admin"))


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------


@pytest.fixture
def client(session_factory, make_service):
    """TestClient whose requests use the test database and service wiring."""
    from fastapi import Depends
    from fastapi.testclient import TestClient

    from eptw.api.deps import get_db, get_permit_service
    from eptw.api.main import app

    def override_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    def override_service(db=Depends(get_db)):
        return make_service(db)

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_permit_service] = override_service
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
