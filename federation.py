"""
Federated sign-in.

The provider's redirect/callback dance stays in the HTTP layer and in
GoogleIdentityProvider; what reaches the bridge is an already verified
identity, which it turns into a local session token.

There is no provider-linkage table: the local account is re-derived from the
email on every login. An email whose account was not created by Google sign-in
is refused unless FEDERATED_ACCOUNT_LINKING=merge, in which case both sign-in
methods share one principal.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import urlencode

import httpx
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from accounts import UserPrincipal
from config import Settings
from database import utcnow
from errors import AuthenticationFailed
from schemas import Role, User as UserSchema
from security import TokenIssuer

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_SCOPE = "openid email profile"

LOGIN_FAILED = "Log in Failed"


@dataclass(frozen=True)
class ExternalIdentity:
    email: str
    display_name: Optional[str] = None
    photo_url: Optional[str] = None


class FederatedIdentityBridge:
    def __init__(self, db: Database, issuer: TokenIssuer, linking: str = "reject"):
        self._db = db
        self._issuer = issuer
        self._linking = linking

    def exchange_assertion_for_session(self, identity: ExternalIdentity) -> Tuple[str, UserPrincipal]:
        if not identity.email:
            raise AuthenticationFailed(LOGIN_FAILED)

        users = self._db["user"]
        doc = users.find_one({"email": identity.email})
        now = utcnow()
        if doc is None:
            doc = UserSchema(
                fullname=identity.display_name or identity.email,
                email=identity.email,
                role=Role.USER.value,
                auth_provider="google",
                photo=identity.photo_url,
                created_at=now,
                updated_at=now,
            ).model_dump()
            try:
                doc["_id"] = users.insert_one(doc).inserted_id
                logger.info("Created federated principal %s", doc["_id"])
            except DuplicateKeyError:
                # Lost a first-login race; the other request created it.
                doc = users.find_one({"email": identity.email})
        elif doc.get("auth_provider") != "google":
            if self._linking != "merge":
                logger.warning("Federated login refused: email belongs to password account %s", doc["_id"])
                raise AuthenticationFailed("An account with this email already exists. Sign in with your password.")
            logger.warning("Federated login merged into password account %s", doc["_id"])

        refreshed = {"updated_at": now}
        if identity.photo_url:
            refreshed["photo"] = identity.photo_url
        if doc.get("auth_provider") == "google" and identity.display_name:
            refreshed["fullname"] = identity.display_name
        users.update_one({"_id": doc["_id"]}, {"$set": refreshed})
        doc.update(refreshed)

        # Federated sessions always carry the end-user role.
        principal = UserPrincipal.from_document(doc).as_session(Role.USER.value)
        token = self._issuer.issue(principal.id, principal.role)
        return token, principal


class GoogleIdentityProvider:
    """Authorization-code flow against Google, resolved to an ExternalIdentity."""

    def __init__(self, settings: Settings, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._settings = settings
        self._timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        s = self._settings
        return bool(s.google_client_id and s.google_client_secret and s.google_callback_url)

    def authorization_url(self, state: str) -> str:
        if not self.configured:
            raise AuthenticationFailed(LOGIN_FAILED)
        params = {
            "client_id": self._settings.google_client_id,
            "redirect_uri": self._settings.google_callback_url,
            "response_type": "code",
            "scope": GOOGLE_SCOPE,
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def fetch_identity(self, code: str) -> ExternalIdentity:
        if not self.configured:
            raise AuthenticationFailed(LOGIN_FAILED)
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport, follow_redirects=False
            ) as client:
                token_response = await client.post(
                    GOOGLE_TOKEN_URL,
                    data={
                        "client_id": self._settings.google_client_id,
                        "client_secret": self._settings.google_client_secret,
                        "code": code,
                        "redirect_uri": self._settings.google_callback_url,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                access_token = token_response.json().get("access_token")
                if not access_token:
                    raise AuthenticationFailed(LOGIN_FAILED)

                userinfo_response = await client.get(
                    GOOGLE_USERINFO_URL,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Google code exchange failed: %s", e)
            raise AuthenticationFailed(LOGIN_FAILED) from e

        if not userinfo.get("email") or userinfo.get("verified_email") is False:
            raise AuthenticationFailed(LOGIN_FAILED)
        return ExternalIdentity(
            email=userinfo["email"],
            display_name=userinfo.get("name"),
            photo_url=userinfo.get("picture"),
        )
