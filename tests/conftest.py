"""
Fixtures for the protocol review tests.

One app per session on in-memory SQLite. Every test runs inside an app
context and gets freshly created tables, so tests never see each other's
rows. HTTP tests share that context (and its session) with the client.
"""

import pytest

from app import create_app
from app.models import db as _db
from app.models.protocol import BoardMember
from app.services.protocol_lifecycle import Actor

PI_ID = 501
OFFICE_ID = 7


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def office():
    return Actor(id=OFFICE_ID, role="office")


@pytest.fixture()
def investigator():
    return Actor(id=PI_ID, role="investigator")


@pytest.fixture()
def reviewers():
    """Two active IRB board members; returns their ids."""
    a = BoardMember(display_name="Dr. Ada Reviewer", committee="irb", role="chair")
    b = BoardMember(display_name="Dr. Ben Reviewer", committee="irb")
    _db.session.add_all([a, b])
    _db.session.commit()
    return a.id, b.id
