"""Shared fixtures: in-memory database, fixed clock, signed-in client."""

import os
import tempfile
from datetime import datetime, timedelta

import pytest
from flask import Flask

os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="wishlist-capture-test-"))

from app import app as flask_app, policy_scrape_limiter, submit_limiter  # noqa: E402
from database import db  # noqa: E402
from models import User  # noqa: E402


class FakeClock:
    """Deterministic stand-in for datetime.utcnow."""

    def __init__(self, start=datetime(2024, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def app():
    flask_app.config["TESTING"] = True
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        submit_limiter.reset()
        policy_scrape_limiter.reset()
        yield flask_app
        db.session.remove()


@pytest.fixture
def file_db_app(tmp_path):
    """A second app on an SQLite file, so threads get real separate connections."""
    file_app = Flask("file_db_app")
    file_app.config["SQLALCHEMY_DATABASE_URI"] = f"sqlite:///{tmp_path / 'capture.db'}"
    file_app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {"connect_args": {"timeout": 15, "check_same_thread": False}}
    db.init_app(file_app)
    with file_app.app_context():
        db.create_all()
    yield file_app
    with file_app.app_context():
        db.engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def user(app):
    """A persisted user with no capture token yet."""
    user = User(username="alex")
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def other_user(app):
    user = User(username="sam")
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def client(app, user):
    """Test client signed in as ``user`` through the primary session cookie."""
    client = app.test_client()
    with client.session_transaction() as session:
        session["user_id"] = user.id
    return client


@pytest.fixture
def anonymous_client(app):
    return app.test_client()
