import logging
import re
import secrets
from datetime import datetime, timedelta

from sqlalchemy import func

from errors import InvalidToken
from models import CaptureToken, User

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r'^[0-9a-f]{64}$')


class TokenIssuer:
    """
    Mints and validates capture tokens for the injected agent.

    Revocation is generation based: issuing a token bumps the owner's
    generation and every token minted under an older generation stops
    validating. There is no per-token revoke.
    """

    def __init__(self, db, ttl=timedelta(days=90), clock=datetime.utcnow):
        self.db = db
        self.ttl = ttl
        self.clock = clock

    def issue(self, user_id):
        # The bump is a single UPDATE so concurrent issues each get their own generation
        bumped = self.db.session.execute(
            self.db.update(User)
            .where(User.id == user_id)
            .values(capture_generation=func.coalesce(User.capture_generation, 0) + 1)
            .execution_options(synchronize_session=False)
        )
        if bumped.rowcount != 1:
            self.db.session.rollback()
            raise ValueError(f"Unknown user: {user_id}")
        generation = self.db.session.execute(
            self.db.select(User.capture_generation).where(User.id == user_id)
        ).scalar_one()

        now = self.clock()
        token = CaptureToken(
            user_id=user_id,
            token=secrets.token_hex(32),
            generation=generation,
            issued_at=now,
            expires_at=now + self.ttl,
        )
        try:
            self.db.session.add(token)
            self.db.session.commit()
        except Exception:
            self.db.session.rollback()
            raise

        logger.info(f"Issued capture token {token.token[:8]}... for user {user_id} (generation {token.generation})")
        return token

    def validate(self, token_string):
        """Return the owning user id, or raise InvalidToken."""
        return self.resolve(token_string).user_id

    def resolve(self, token_string):
        if not isinstance(token_string, str) or not TOKEN_PATTERN.match(token_string):
            raise InvalidToken('Capture token is malformed')

        token = self.db.session.execute(
            self.db.select(CaptureToken).filter_by(token=token_string)
        ).scalar_one_or_none()
        if token is None:
            raise InvalidToken()

        user = self.db.session.get(User, token.user_id)
        if user is None or token.generation != user.capture_generation:
            logger.info(f"Rejected stale capture token {token_string[:8]}...")
            raise InvalidToken('Capture token was replaced by a newer one. Please regenerate it from your dashboard.')

        if self.clock() >= token.expires_at:
            logger.info(f"Rejected expired capture token {token_string[:8]}...")
            raise InvalidToken('Capture token expired. Please regenerate it from your dashboard.')

        return token
