import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from errors import SessionNotFound
from models import CaptureSession
from scraper.results import CAPTURE_KINDS, ScrapeResult

logger = logging.getLogger(__name__)

PENDING = 'pending'
READY = 'ready'
CONSUMED = 'consumed'
EXPIRED = 'expired'


@dataclass
class CapturePayload:
    source_url: str
    content: str
    capture_kind: str
    fields: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.capture_kind not in CAPTURE_KINDS:
            raise ValueError(f"captureKind must be one of: {', '.join(CAPTURE_KINDS)}")


@dataclass
class RetrievedCapture:
    session_id: str
    payload: CapturePayload
    result: ScrapeResult
    created_at: datetime


class CaptureSessionStore:
    """
    Server-held mailbox between the injected agent and the application tab.

    The agent delivers with ``create``; the tab polls ``retrieve`` until it
    succeeds once. The ready -> consumed transition is a single conditional
    UPDATE, so two pollers racing on the same id cannot both win.
    """

    def __init__(self, db, token_issuer, ttl=timedelta(minutes=10), clock=datetime.utcnow):
        self.db = db
        self.token_issuer = token_issuer
        self.ttl = ttl
        self.clock = clock

    def create(self, token, payload, result):
        capture_token = self.token_issuer.resolve(token)
        now = self.clock()
        session = CaptureSession(
            id=secrets.token_hex(16),
            user_id=capture_token.user_id,
            token_generation=capture_token.generation,
            capture_kind=payload.capture_kind,
            source_url=payload.source_url,
            content=payload.content,
            fields=payload.fields or {},
            result=result.to_dict(),
            # the payload arrives with the session, so there is no pending phase
            status=READY,
            created_at=now,
            expires_at=now + self.ttl,
        )
        try:
            self.db.session.add(session)
            self.db.session.commit()
        except Exception:
            self.db.session.rollback()
            raise

        logger.info(f"Capture session {session.id[:8]}... ready for user {session.user_id} ({payload.capture_kind})")
        return session.id

    def retrieve(self, session_id, token):
        """
        Hand over a ready session exactly once.

        Any failure (unknown id, other user, consumed, expired) raises the
        same SessionNotFound so callers learn nothing about the session.
        """
        user_id = self.token_issuer.validate(token)
        if not isinstance(session_id, str) or not session_id:
            raise SessionNotFound()

        now = self.clock()
        claimed = self.db.session.execute(
            self.db.update(CaptureSession)
            .where(
                CaptureSession.id == session_id,
                CaptureSession.user_id == user_id,
                CaptureSession.status == READY,
                CaptureSession.expires_at > now,
            )
            .values(status=CONSUMED, consumed_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            self.db.session.rollback()
            raise SessionNotFound()
        self.db.session.commit()

        session = self.db.session.get(CaptureSession, session_id)
        logger.info(f"Capture session {session_id[:8]}... consumed by user {user_id}")
        return RetrievedCapture(
            session_id=session.id,
            payload=CapturePayload(
                source_url=session.source_url,
                content=session.content,
                capture_kind=session.capture_kind,
                fields=session.fields or {},
            ),
            result=ScrapeResult.from_dict(session.result),
            created_at=session.created_at,
        )

    def expire_stale(self):
        """Mark ready sessions past their TTL as expired. Returns how many changed."""
        expired = self.db.session.execute(
            self.db.update(CaptureSession)
            .where(CaptureSession.status == READY, CaptureSession.expires_at <= self.clock())
            .values(status=EXPIRED, content=None)
            .execution_options(synchronize_session=False)
        )
        self.db.session.commit()
        if expired.rowcount:
            logger.info(f"Expired {expired.rowcount} capture sessions")
        return expired.rowcount

    def status_of(self, session_id) -> Optional[str]:
        session = self.db.session.get(CaptureSession, session_id)
        return session.status if session else None


def fit_to_bytes(text, limit):
    """Cut ``text`` so its UTF-8 encoding is at most ``limit`` bytes, never splitting a character."""
    encoded = text.encode('utf-8')
    if len(encoded) <= limit:
        return text, False
    return encoded[:limit].decode('utf-8', errors='ignore'), True
