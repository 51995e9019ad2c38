from typing import Dict, List, Tuple
from urllib.parse import parse_qs, urlencode, urlparse

import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from accounts import AccountLookup
from config import Settings
from errors import AuthenticationFailed, DeliveryError
from federation import ExternalIdentity
from ratelimit import limiter
from reset import ResetTokenStore
from security import CredentialHasher, TokenIssuer


class CapturingDelivery:
    """Stands in for the SMTP mailer and keeps every reset link it is given."""

    def __init__(self):
        self.sent: List[Tuple[str, str]] = []
        self.fail = False

    async def send_reset_email(self, to: str, url: str) -> None:
        if self.fail:
            raise DeliveryError("SMTP unavailable")
        self.sent.append((to, url))

    def last_token(self) -> str:
        _, url = self.sent[-1]
        return parse_qs(urlparse(url).query)["token"][0]


class FakeIdentityProvider:
    def __init__(self):
        self.identities: Dict[str, ExternalIdentity] = {}

    def authorization_url(self, state: str) -> str:
        return f"https://accounts.provider.test/auth?{urlencode({'state': state})}"

    async def fetch_identity(self, code: str) -> ExternalIdentity:
        try:
            return self.identities[code]
        except KeyError:
            raise AuthenticationFailed("Log in Failed")


@pytest.fixture(autouse=True)
def reset_rate_limits():
    limiter.reset()
    yield
    limiter.reset()


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        secret_key="test-secret-key",
        bcrypt_rounds=4,
        app_public_url="http://shop.test",
        client_url="http://client.test",
    )


@pytest.fixture()
def db():
    return mongomock.MongoClient()["marketplace_test"]


@pytest.fixture()
def hasher() -> CredentialHasher:
    return CredentialHasher(rounds=4)


@pytest.fixture()
def issuer(settings) -> TokenIssuer:
    return TokenIssuer(settings.secret_key, settings.jwt_algorithm, settings.session_ttl)


@pytest.fixture()
def delivery() -> CapturingDelivery:
    return CapturingDelivery()


@pytest.fixture()
def identity_provider() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture()
def accounts(db, hasher) -> AccountLookup:
    return AccountLookup(db, hasher)


@pytest.fixture()
def reset_store(db, hasher, delivery, settings) -> ResetTokenStore:
    return ResetTokenStore(db, hasher, delivery, settings)


@pytest.fixture()
def app(settings, db, delivery, identity_provider):
    return main.create_app(settings=settings, database=db, delivery=delivery, identity_provider=identity_provider)


@pytest.fixture()
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def user_payload() -> Dict[str, str]:
    return {
        "fullname": "Amaya Perera",
        "email": "a@x.com",
        "dob": "1995-04-12",
        "phone": "0771234567",
        "address": "12 Galle Road, Colombo",
        "shoppingPreference": "electronics",
        "password": "password123",
    }


@pytest.fixture()
def shop_payload() -> Dict[str, str]:
    return {
        "fullname": "Nimal Silva",
        "owner_email": "nimal@owner.com",
        "password": "shoppass99",
        "shopname": "Nimal Electronics",
        "email": "shop@x.com",
        "category": "electronics",
        "shoplocation": "Kandy",
    }


@pytest.fixture()
def admin_token(client, db, hasher) -> str:
    db["user"].insert_one(
        {
            "fullname": "Site Admin",
            "email": "admin@x.com",
            "password_hash": hasher.hash("adminpass1"),
            "role": 1,
            "auth_provider": "password",
        }
    )
    r = client.post("/login", json={"email": "admin@x.com", "password": "adminpass1"})
    assert r.status_code == 200
    return r.json()["token"]
