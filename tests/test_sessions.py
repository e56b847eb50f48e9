"""Tests for the one-shot capture session store."""

import threading
from datetime import timedelta

import pytest

from capture.sessions import CONSUMED, EXPIRED, READY, CapturePayload, CaptureSessionStore, fit_to_bytes
from capture.tokens import TokenIssuer
from database import db
from errors import InvalidToken, SessionNotFound
from models import CaptureSession, User
from scraper.content_analyzer import ContentAnalyzer

PAGE = "<html><body><main>Returns accepted within 30 days, free return shipping.</main></body></html>"


@pytest.fixture
def issuer(app, clock):
    return TokenIssuer(db, clock=clock)


@pytest.fixture
def store(issuer, clock):
    return CaptureSessionStore(db, issuer, ttl=timedelta(minutes=10), clock=clock)


@pytest.fixture
def token(issuer, user):
    return issuer.issue(user.id).token


def deliver(store, token, content=PAGE, kind='return_policy'):
    payload = CapturePayload('https://store.example/returns', content, kind)
    result = ContentAnalyzer().analyze(content, kind, source_url=payload.source_url)
    return store.create(token, payload, result)


def test_retrieve_returns_payload_once(store, token):
    """A fresh session hands over its payload once, then reports not found."""
    session_id = deliver(store, token)

    retrieved = store.retrieve(session_id, token)
    assert retrieved.session_id == session_id
    assert retrieved.payload.source_url == 'https://store.example/returns'
    assert retrieved.result.data['return_window_days'] == 30

    with pytest.raises(SessionNotFound):
        store.retrieve(session_id, token)
    assert store.status_of(session_id) == CONSUMED


def test_session_ids_are_random_and_fixed_length(store, token):
    ids = {deliver(store, token) for _ in range(5)}

    assert len(ids) == 5
    assert all(len(session_id) == 32 for session_id in ids)


def test_new_session_is_ready(store, token):
    session_id = deliver(store, token)

    assert store.status_of(session_id) == READY


def test_other_users_token_cannot_retrieve(store, issuer, token, other_user):
    session_id = deliver(store, token)
    foreign = issuer.issue(other_user.id).token

    with pytest.raises(SessionNotFound):
        store.retrieve(session_id, foreign)
    # still claimable by its owner
    assert store.retrieve(session_id, token).session_id == session_id


def test_expired_session_is_not_found(store, token, clock):
    session_id = deliver(store, token)
    clock.advance(minutes=10)

    with pytest.raises(SessionNotFound):
        store.retrieve(session_id, token)


def test_unknown_session_is_not_found(store, token):
    with pytest.raises(SessionNotFound):
        store.retrieve('f' * 32, token)


def test_invalid_token_is_rejected_before_lookup(store, token, issuer, user):
    session_id = deliver(store, token)
    issuer.issue(user.id)

    with pytest.raises(InvalidToken):
        store.retrieve(session_id, token)


def test_create_requires_valid_token(store):
    with pytest.raises(InvalidToken):
        deliver(store, 'a' * 64)


def test_expire_stale_marks_and_clears(store, token, clock):
    old = deliver(store, token)
    clock.advance(minutes=11)
    fresh = deliver(store, token)

    assert store.expire_stale() == 1
    assert store.status_of(old) == EXPIRED
    assert store.status_of(fresh) == READY
    assert db.session.get(CaptureSession, old).content is None


def test_unknown_capture_kind_is_rejected():
    with pytest.raises(ValueError):
        CapturePayload('https://store.example', '<p>x</p>', 'recipe')


def test_racing_retrieves_hand_over_once(file_db_app):
    """Two pollers claiming the same session on separate connections: one gets it, one is told not found."""
    with file_db_app.app_context():
        user = User(username="alex")
        db.session.add(user)
        db.session.commit()
        issuer = TokenIssuer(db)
        token = issuer.issue(user.id).token
        session_id = deliver(CaptureSessionStore(db, issuer), token)

    barrier = threading.Barrier(2)
    outcomes = []

    def poll():
        with file_db_app.app_context():
            store = CaptureSessionStore(db, TokenIssuer(db))
            barrier.wait()
            try:
                outcomes.append(store.retrieve(session_id, token).payload.source_url)
            except SessionNotFound:
                outcomes.append(None)
            except Exception as e:
                outcomes.append(e)

    threads = [threading.Thread(target=poll) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes, key=lambda outcome: outcome is None) == ['https://store.example/returns', None]
    with file_db_app.app_context():
        assert CaptureSessionStore(db, TokenIssuer(db)).status_of(session_id) == CONSUMED


@pytest.mark.parametrize("text, limit, expected", [
    ('plain', 10, ('plain', False)),
    ('a—b', 5, ('a—b', False)),
    ('a—b', 3, ('a', True)),
    ('®›' * 4, 7, ('®›®', True)),
])
def test_fit_to_bytes_never_splits_a_character(text, limit, expected):
    fitted, truncated = fit_to_bytes(text, limit)

    assert (fitted, truncated) == expected
    assert len(fitted.encode('utf-8')) <= limit
