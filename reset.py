"""
Password reset tokens.

Per principal the store moves NoToken -> Pending(digest, expiry) -> NoToken.
Only the SHA-256 digest of the token is written; the raw value exists in the
outgoing email and nowhere else. Issuing a new token overwrites any pending
one, and redemption clears it in the same conditional update that sets the new
password, so a token can be spent at most once even under concurrent requests.
"""

import hashlib
import logging
import secrets
from typing import Optional, Tuple
from urllib.parse import urlencode

from fastapi.concurrency import run_in_threadpool
from pymongo.database import Database

from accounts import PRINCIPAL_KINDS, Principal, check_password_length
from config import Settings
from database import utcnow
from errors import AuthenticationFailed, DeliveryError, ValidationFailed
from mailer import ResetDelivery
from security import CredentialHasher

logger = logging.getLogger(__name__)

RESET_REQUESTED = "If the account exists, a password reset email has been sent."
RESET_INVALID = "Invalid or expired token"
TOKEN_BYTES = 32


def digest_token(raw_token: str) -> str:
    # The token is high-entropy and single-use; a plain digest is enough.
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


class ResetTokenStore:
    def __init__(self, db: Database, hasher: CredentialHasher, delivery: ResetDelivery, settings: Settings):
        self._db = db
        self._hasher = hasher
        self._delivery = delivery
        self._settings = settings

    def reset_url(self, raw_token: str, email: str, account_type: Optional[str] = None) -> str:
        params = {"token": raw_token, "email": email}
        if account_type:
            params["type"] = account_type
        return f"{self._settings.app_public_url}/reset?{urlencode(params)}"

    @staticmethod
    def _kinds(account_type: Optional[str]):
        # Without an explicit type the login order applies.
        if account_type is None:
            return PRINCIPAL_KINDS
        return tuple(k for k in PRINCIPAL_KINDS if k.kind == account_type)

    def _find(self, email: str, account_type: Optional[str] = None) -> Optional[Principal]:
        for kind in self._kinds(account_type):
            doc = self._db[kind.collection].find_one({"email": email}, {"_id": 1, "email": 1, "role": 1})
            if doc is not None:
                return kind.from_document(doc)
        return None

    def issue(self, email: str, account_type: Optional[str] = None) -> Optional[Tuple[Principal, str]]:
        """Store a fresh token digest for `email` and return the principal and its reset link.

        Returns None when no principal holds the email.
        """
        principal = self._find(email, account_type)
        if principal is None:
            logger.info("Password reset requested for unknown email")
            return None

        raw_token = secrets.token_hex(TOKEN_BYTES)
        self._db[principal.collection].update_one(
            {"_id": principal.document["_id"]},
            {
                "$set": {
                    "reset_token_hash": digest_token(raw_token),
                    "reset_token_expires_at": utcnow() + self._settings.reset_token_ttl,
                }
            },
        )
        logger.info("Issued password reset token for %s %s", principal.kind, principal.id)
        return principal, self.reset_url(raw_token, email, account_type)

    async def request(self, email: str, account_type: Optional[str] = None) -> None:
        """Issue a reset token for `email` and hand it to the delivery channel.

        Returns normally whether or not the account exists, and whether or not
        the email could be sent.
        """
        issued = await run_in_threadpool(self.issue, email, account_type)
        if issued is None:
            return

        principal, url = issued
        try:
            await self._delivery.send_reset_email(email, url)
        except DeliveryError as e:
            if self._settings.is_production:
                logger.warning("Reset email delivery failed for %s %s: %s", principal.kind, principal.id, e)
            else:
                logger.warning("Reset email delivery failed; fallback link: %s (%s)", url, e)

    def redeem(
        self,
        email: str,
        raw_token: str,
        new_password: str,
        confirm_password: str,
        account_type: Optional[str] = None,
    ) -> Principal:
        """Spend a reset token and set the new password.

        Wrong email, wrong token and expired token are indistinguishable to the
        caller.
        """
        check_password_length(new_password)
        # Both values come from the same request; a plain comparison is fine.
        if new_password != confirm_password:
            raise ValidationFailed("Passwords do not match")
        if not raw_token:
            raise AuthenticationFailed(RESET_INVALID)

        token_hash = digest_token(raw_token)
        password_hash = self._hasher.hash(new_password)
        now = utcnow()
        for kind in self._kinds(account_type):
            doc = self._db[kind.collection].find_one_and_update(
                {
                    "email": email,
                    "reset_token_hash": token_hash,
                    "reset_token_expires_at": {"$gt": now},
                },
                {
                    "$set": {"password_hash": password_hash, "updated_at": now},
                    "$unset": {"reset_token_hash": "", "reset_token_expires_at": ""},
                },
            )
            if doc is not None:
                logger.info("Password reset completed for %s %s", kind.kind, doc["_id"])
                return kind.from_document(doc)
        raise AuthenticationFailed(RESET_INVALID)
