from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from userapi.api import create_app
from userapi.auth import create_access_token
from userapi.config import Environment, Settings
from userapi.database import create_db_engine, create_session_factory, init_db
from userapi.guard import Verdict
from userapi.models.user import Role, User
from userapi.schemas import Identity


class AllowAllEngine:
    """Decision engine that never objects."""

    def evaluate(self, fingerprint, policy):
        return Verdict()


@pytest.fixture
def settings():
    return Settings(
        environment=Environment.DEVELOPMENT,
        database_url="sqlite://",
        jwt_secret="test-secret",
    )


@pytest.fixture
def engine():
    """Provide an isolated in-memory database for each test."""
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def seed_users(session_factory):
    session = session_factory()
    session.add_all(
        [
            User(id=1, email="grace@example.com", name="Grace Hopper", role=Role.USER),
            User(id=3, email="root@example.com", name="Root Admin", role=Role.ADMIN),
            User(id=7, email="ada@example.com", name="Ada L", role=Role.USER),
        ]
    )
    session.commit()
    session.close()


@pytest.fixture
def app(settings, engine, seed_users):
    return create_app(settings, engine=engine, decision_engine=AllowAllEngine())


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def make_token(settings):
    def _make(user_id, role="user", email=None, expires_in=None):
        identity = Identity(
            id=user_id, email=email or f"user{user_id}@example.com", role=role
        )
        return create_access_token(identity, settings, expires_in=expires_in)

    return _make


@pytest.fixture
def login(client, make_token):
    """Attach a token cookie for the given actor to the test client."""

    def _login(user_id, role="user"):
        client.cookies.set("token", make_token(user_id, role))
        return client

    return _login


@pytest.fixture
def expired_token(make_token):
    return make_token(7, expires_in=timedelta(seconds=-30))
