"""
Shared pytest fixtures for the Reference Routing Engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_user: factory for directory users
    - users: a small directory (two labs, admins, superuser)
    - as_actor: request headers for acting as a user
"""

import itertools

import pytest

from reftrack import create_app
from reftrack.models import db as _db
from reftrack.models.identity import (
    ROLE_DELEGATED_ADMIN,
    ROLE_INTER_LAB_SENDER,
    ROLE_SUPERADMIN,
    ROLE_USER,
    User,
)


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
        yield _db.session
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Directory fixtures ───────────────────────────────────────────────────


@pytest.fixture()
def make_user():
    """Factory: make_user(full_name=..., lab_name=..., role=...) → committed User."""
    seq = itertools.count(1)

    def _make(**overrides):
        n = next(seq)
        fields = {
            "email": f"user{n}@labs.example.org",
            "full_name": f"User {n}",
            "lab_name": "LAB-A",
            "division": "Division 1",
            "designation": "Scientist",
            "role": ROLE_USER,
            "status": "active",
        }
        fields.update(overrides)
        user = User(**fields)
        _db.session.add(user)
        _db.session.commit()
        return user

    return _make


@pytest.fixture()
def users(make_user):
    """A small directory.

    LAB-A: alice, bob, erin (users), carol (delegated admin), ian (inter-lab sender)
    LAB-B: dave (user), frank (delegated admin)
    HQ:    sam (superadmin)
    """
    return {
        "alice": make_user(email="alice@labs.example.org", full_name="Alice Rao",
                           division="Chemistry"),
        "bob": make_user(email="bob@labs.example.org", full_name="Bob Iyer",
                         division="Physics"),
        "erin": make_user(email="erin@labs.example.org", full_name="Erin Das",
                          division="Chemistry"),
        "carol": make_user(email="carol@labs.example.org", full_name="Carol Sen",
                           division="Administration", role=ROLE_DELEGATED_ADMIN),
        "ian": make_user(email="ian@labs.example.org", full_name="Ian Paul",
                         division="Liaison", role=ROLE_INTER_LAB_SENDER),
        "dave": make_user(email="dave@labs.example.org", full_name="Dave Kumar",
                          lab_name="LAB-B", division="Biology"),
        "frank": make_user(email="frank@labs.example.org", full_name="Frank Roy",
                           lab_name="LAB-B", division="Administration", role=ROLE_DELEGATED_ADMIN),
        "sam": make_user(email="sam@labs.example.org", full_name="Sam Head",
                         lab_name="HQ", division="Directorate", role=ROLE_SUPERADMIN),
    }


@pytest.fixture()
def as_actor():
    """as_actor(user) → headers identifying the acting user."""
    def _headers(user):
        return {"X-Actor-Id": str(user.id)}
    return _headers
