"""
Session Tokens

HS256 bearer tokens minted by this backend. The secret, issuer and
algorithm are fixed per process; expiry is only waived by the refresh
flow.
"""

import time
from typing import Callable, Optional

import jwt

from brickai.core.exceptions import InvalidTokenError, SessionExpiredError
from brickai.core.logging import get_logger

logger = get_logger(__name__)

ALGORITHM = "HS256"


class SessionTokenService:
    """Issues and verifies session tokens."""

    def __init__(
        self,
        secret: str,
        issuer: str,
        ttl_seconds: int,
        clock: Optional[Callable[[], float]] = None
    ):
        self._secret = secret
        self.issuer = issuer
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.time

    def issue(self, subject: str) -> str:
        now = int(self._clock())
        claims = {
            "sub": subject,
            "iat": now,
            "exp": now + self.ttl_seconds,
            "iss": self.issuer,
        }
        return jwt.encode(claims, self._secret, algorithm=ALGORITHM)

    def verify(self, token: str, allow_expired: bool = False) -> str:
        """
        Verify a session token and return its subject.

        Args:
            token: Encoded session token
            allow_expired: Skip the expiry check (signature and issuer are
                always checked)

        Raises:
            SessionExpiredError: token is past its expiry and allow_expired is False
            InvalidTokenError: any other defect
        """
        if not token:
            raise InvalidTokenError("Missing session token")

        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                issuer=self.issuer,
                leeway=0,
                options={
                    "verify_exp": not allow_expired,
                    "require": ["sub", "exp", "iss"],
                },
            )
        except jwt.ExpiredSignatureError:
            raise SessionExpiredError("Session token has expired")
        except jwt.PyJWTError as e:
            logger.info("session_token_rejected", reason=type(e).__name__)
            raise InvalidTokenError("Invalid session token")

        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            raise InvalidTokenError("Session token has no subject")
        return subject
