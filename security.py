"""
Credential hashing and session tokens.

Session tokens are stateless: nothing is persisted and there is no revocation
list, so a leaked token stays usable until its natural expiry (7 days by
default). Operators who need earlier cut-off must rotate SECRET_KEY, which
invalidates every outstanding session at once.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext

from errors import InfrastructureError, Unauthorized
from schemas import Role

logger = logging.getLogger(__name__)


class CredentialHasher:
    """Salted bcrypt digests for stored passwords.

    The salt is random per call and embedded in the digest, so two hashes of the
    same password never match byte for byte; only `verify` can compare them.
    Library failures surface as InfrastructureError and must not be read as
    "wrong password".
    """

    def __init__(self, rounds: int = 12):
        self._context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=rounds)
        self._dummy_digest = self._context.hash("not-a-real-password")

    def hash(self, plaintext: str) -> str:
        try:
            return self._context.hash(plaintext)
        except Exception as e:
            logger.error("Password hashing failed: %s", e)
            raise InfrastructureError("Error while hashing password") from e

    def verify(self, plaintext: str, digest: Optional[str]) -> bool:
        if not digest:
            # Keep the cost of "no password on record" equal to a real check.
            self.verify_dummy(plaintext)
            return False
        try:
            return self._context.verify(plaintext, digest)
        except Exception as e:
            logger.error("Password verification failed: %s", e)
            raise InfrastructureError("Error while verifying password") from e

    def verify_dummy(self, plaintext: str) -> None:
        """Spend one verify so an unknown account costs as much as a known one."""
        try:
            self._context.verify(plaintext, self._dummy_digest)
        except Exception as e:
            raise InfrastructureError("Error while verifying password") from e


@dataclass(frozen=True)
class SessionClaims:
    principal_id: str
    role: int
    issued_at: datetime
    expires_at: datetime


class TokenIssuer:
    def __init__(self, secret: str, algorithm: str = "HS256", ttl: timedelta = timedelta(days=7)):
        if not secret:
            raise ValueError("A signing secret is required")
        self._secret = secret
        self._algorithm = algorithm
        self._ttl = ttl

    def issue(self, principal_id: str, role: int) -> str:
        issued_at = datetime.now(timezone.utc)
        claims = {
            "sub": str(principal_id),
            "role": int(role),
            "iat": int(issued_at.timestamp()),
            "exp": int((issued_at + self._ttl).timestamp()),
        }
        try:
            return jwt.encode(claims, self._secret, algorithm=self._algorithm)
        except JWTError as e:
            raise InfrastructureError("Error while signing session token") from e

    def verify(self, token: str) -> SessionClaims:
        try:
            payload = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except ExpiredSignatureError:
            raise Unauthorized("Session expired")
        except JWTError:
            raise Unauthorized()

        sub = payload.get("sub")
        role = payload.get("role")
        if not isinstance(sub, str) or not sub or role not in tuple(r.value for r in Role):
            raise Unauthorized()
        if not isinstance(payload.get("iat"), int) or not isinstance(payload.get("exp"), int):
            raise Unauthorized()
        return SessionClaims(
            principal_id=sub,
            role=role,
            issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )
