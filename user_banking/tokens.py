"""
Claims Codec Module

Issues and verifies signed, time-bounded identity tokens (JWT). Verification
is a pure function of the token and the configured secret and issuer.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from .errors import TokenExpired, TokenInvalid
from .logging_config import get_logger
from .models import Role, User


REQUIRED_CLAIMS = ["sub", "email", "role", "iat", "exp", "iss"]


@dataclass(frozen=True)
class Identity:
    """Verified caller for the duration of one call"""
    subject_id: int
    email: str
    role: Role
    issuer: str
    issued_at: datetime
    expires_at: datetime

    def owns(self, user_id) -> bool:
        """True when ``user_id`` names the caller itself"""
        try:
            return int(user_id) == self.subject_id
        except (TypeError, ValueError):
            return False


class ClaimsCodec:
    """Encode users into signed tokens and decode tokens into identities"""

    def __init__(self, secret: str, issuer: str, duration: timedelta,
                 algorithm: str = "HS256", logger: Optional[logging.Logger] = None):
        if not secret:
            raise ValueError("Token signing secret must not be empty")
        self.secret = secret
        self.issuer = issuer
        self.duration = duration
        self.algorithm = algorithm
        self.logger = logger or get_logger("user_banking.tokens")

    def issue(self, user: User, issued_at: Optional[datetime] = None) -> str:
        """Sign a token for ``user`` valid for the configured duration"""
        issued_at = issued_at or datetime.now(timezone.utc)
        payload = {
            "sub": str(user.id),
            "email": user.email,
            "role": user.role.value,
            "iss": self.issuer,
            "iat": issued_at,
            "exp": issued_at + self.duration,
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def verify(self, token: str) -> Identity:
        """
        Decode and check a token.

        Raises:
            TokenExpired: If the token is past its expiry
            TokenInvalid: On bad signature, malformed structure, unexpected
                algorithm, wrong issuer or missing claims
        """
        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                issuer=self.issuer,
                options={"require": REQUIRED_CLAIMS},
                leeway=0,
            )
        except jwt.ExpiredSignatureError:
            raise TokenExpired()
        except jwt.InvalidTokenError as e:
            self.logger.warning("verify token failed: %s", e)
            raise TokenInvalid()

        try:
            return Identity(
                subject_id=int(payload["sub"]),
                email=payload["email"],
                role=Role(payload["role"]),
                issuer=payload["iss"],
                issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
                expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            )
        except (TypeError, ValueError) as e:
            self.logger.warning("invalid token claims: %s", e)
            raise TokenInvalid()
