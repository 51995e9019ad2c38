import asyncio
import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from config import Settings
from errors import AuthenticationFailed
from federation import (
    GOOGLE_TOKEN_URL,
    GOOGLE_USERINFO_URL,
    ExternalIdentity,
    FederatedIdentityBridge,
    GoogleIdentityProvider,
)

GOOGLE_USER = ExternalIdentity(email="g@x.com", display_name="Gayan Jay", photo_url="https://img.example/g.png")


def test_first_sight_creates_end_user(db, issuer) -> None:
    bridge = FederatedIdentityBridge(db, issuer)
    token, principal = bridge.exchange_assertion_for_session(GOOGLE_USER)

    doc = db["user"].find_one({"email": "g@x.com"})
    assert doc["auth_provider"] == "google"
    assert doc["password_hash"] is None
    assert doc["fullname"] == "Gayan Jay"
    assert doc["photo"] == "https://img.example/g.png"
    claims = issuer.verify(token)
    assert claims.principal_id == principal.id
    assert claims.role == 0


def test_repeat_login_reuses_the_same_principal(db, issuer) -> None:
    bridge = FederatedIdentityBridge(db, issuer)
    _, first = bridge.exchange_assertion_for_session(GOOGLE_USER)
    _, second = bridge.exchange_assertion_for_session(
        ExternalIdentity(email="g@x.com", display_name="Gayan J.", photo_url=None)
    )
    assert first.id == second.id
    assert db["user"].count_documents({"email": "g@x.com"}) == 1
    assert db["user"].find_one({"email": "g@x.com"})["fullname"] == "Gayan J."


def test_collision_with_password_account_is_refused_by_default(db, issuer, accounts) -> None:
    accounts.register_user(
        {"fullname": "Gayan", "email": "g@x.com", "dob": "1990-01-01", "phone": "1", "address": "x", "password": "password123"}
    )
    bridge = FederatedIdentityBridge(db, issuer)
    with pytest.raises(AuthenticationFailed):
        bridge.exchange_assertion_for_session(GOOGLE_USER)


def test_collision_merges_when_linking_enabled(db, issuer, accounts) -> None:
    existing = accounts.register_user(
        {"fullname": "Gayan", "email": "g@x.com", "dob": "1990-01-01", "phone": "1", "address": "x", "password": "password123"}
    )
    bridge = FederatedIdentityBridge(db, issuer, linking="merge")
    _, principal = bridge.exchange_assertion_for_session(GOOGLE_USER)

    assert principal.id == existing.id
    assert principal.document["fullname"] == "Gayan"
    # Password sign-in keeps working on the shared principal.
    assert accounts.authenticate("g@x.com", "password123").id == existing.id


def test_assertion_without_email_is_refused(db, issuer) -> None:
    with pytest.raises(AuthenticationFailed):
        FederatedIdentityBridge(db, issuer).exchange_assertion_for_session(ExternalIdentity(email=""))


def test_google_account_keeps_signing_in_after_password_reset(db, issuer, reset_store, delivery) -> None:
    bridge = FederatedIdentityBridge(db, issuer)
    _, first = bridge.exchange_assertion_for_session(GOOGLE_USER)

    asyncio.run(reset_store.request("g@x.com"))
    reset_store.redeem("g@x.com", delivery.last_token(), "localPass2024!", "localPass2024!")
    assert db["user"].find_one({"email": "g@x.com"})["password_hash"]

    _, again = bridge.exchange_assertion_for_session(GOOGLE_USER)
    assert again.id == first.id


def test_merged_admin_signs_in_with_an_end_user_session(db, issuer, hasher) -> None:
    admin_id = db["user"].insert_one(
        {
            "fullname": "Site Admin",
            "email": "g@x.com",
            "password_hash": hasher.hash("adminpass1"),
            "role": 1,
            "auth_provider": "password",
        }
    ).inserted_id
    bridge = FederatedIdentityBridge(db, issuer, linking="merge")
    token, principal = bridge.exchange_assertion_for_session(GOOGLE_USER)

    assert principal.id == str(admin_id)
    assert principal.role == 0
    assert principal.document["role"] == 1
    assert issuer.verify(token).role == principal.role


def _start(client) -> str:
    r = client.get("/auth/google", follow_redirects=False)
    assert r.status_code == 302
    return parse_qs(urlparse(r.headers["location"]).query)["state"][0]


def test_callback_redirects_to_client_with_session(client, identity_provider, app) -> None:
    identity_provider.identities["good-code"] = GOOGLE_USER
    state = _start(client)

    r = client.get("/auth/google/callback", params={"code": "good-code", "state": state}, follow_redirects=False)

    assert r.status_code == 302
    location = urlparse(r.headers["location"])
    assert f"{location.scheme}://{location.netloc}{location.path}" == "http://client.test/login"
    query = parse_qs(location.query)
    user = json.loads(query["user"][0])
    assert user["email"] == "g@x.com"
    assert user["role"] == 0
    assert app.state.issuer.verify(query["token"][0]).principal_id == user["id"]


def test_callback_token_authenticates_me(client, identity_provider) -> None:
    identity_provider.identities["good-code"] = GOOGLE_USER
    state = _start(client)
    r = client.get("/auth/google/callback", params={"code": "good-code", "state": state}, follow_redirects=False)
    token = parse_qs(urlparse(r.headers["location"]).query)["token"][0]

    me = client.get("/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["user"]["email"] == "g@x.com"


def test_callback_with_bad_state_fails(client, identity_provider) -> None:
    identity_provider.identities["good-code"] = GOOGLE_USER
    _start(client)
    r = client.get("/auth/google/callback", params={"code": "good-code", "state": "forged"}, follow_redirects=False)
    assert r.status_code == 302
    assert r.headers["location"] == "/login/failed"


def test_denied_provider_login_ends_in_failure_json(client) -> None:
    state = _start(client)
    r = client.get("/auth/google/callback", params={"code": "unknown-code", "state": state})
    assert r.status_code == 401
    assert r.json() == {"error": True, "message": "Log in Failed"}


GOOGLE_SETTINGS = Settings(
    google_client_id="client-id",
    google_client_secret="client-secret",
    google_callback_url="http://api.test/auth/google/callback",
)


def _google(userinfo=None, token_status=200):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if str(request.url) == GOOGLE_TOKEN_URL:
            return httpx.Response(token_status, json={"access_token": "access-1"})
        if str(request.url) == GOOGLE_USERINFO_URL:
            assert request.headers["Authorization"] == "Bearer access-1"
            return httpx.Response(200, json=userinfo or {})
        return httpx.Response(404)

    provider = GoogleIdentityProvider(GOOGLE_SETTINGS, transport=httpx.MockTransport(handler))
    return provider, calls


def test_provider_resolves_verified_identity() -> None:
    provider, calls = _google(
        {"email": "g@x.com", "verified_email": True, "name": "Gayan Jay", "picture": "https://img.example/g.png"}
    )
    identity = asyncio.run(provider.fetch_identity("auth-code"))

    assert identity == GOOGLE_USER
    token_form = parse_qs(calls[0].content.decode())
    assert token_form["code"] == ["auth-code"]
    assert token_form["grant_type"] == ["authorization_code"]
    assert token_form["redirect_uri"] == ["http://api.test/auth/google/callback"]


def test_provider_rejects_userinfo_without_email() -> None:
    provider, _ = _google({"verified_email": True, "name": "No Mail"})
    with pytest.raises(AuthenticationFailed):
        asyncio.run(provider.fetch_identity("auth-code"))


def test_provider_rejects_unverified_email() -> None:
    provider, _ = _google({"email": "g@x.com", "verified_email": False})
    with pytest.raises(AuthenticationFailed):
        asyncio.run(provider.fetch_identity("auth-code"))


def test_provider_turns_http_errors_into_login_failure() -> None:
    provider, calls = _google({"email": "g@x.com"}, token_status=500)
    with pytest.raises(AuthenticationFailed) as exc:
        asyncio.run(provider.fetch_identity("auth-code"))
    assert str(exc.value) == "Log in Failed"
    assert len(calls) == 1


def test_unconfigured_provider_fails_without_network() -> None:
    provider = GoogleIdentityProvider(Settings())
    assert not provider.configured
    with pytest.raises(AuthenticationFailed):
        provider.authorization_url("state")
    with pytest.raises(AuthenticationFailed):
        asyncio.run(provider.fetch_identity("auth-code"))
