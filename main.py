import json
import logging
import secrets
from contextlib import asynccontextmanager
from typing import Any, Literal, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.security import OAuth2PasswordBearer
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pymongo.database import Database
from slowapi.errors import RateLimitExceeded

from accounts import AccountLookup, Principal
from config import Settings, configure_logging, load_settings
from database import connect, ensure_indexes
from errors import (
    AuthenticationFailed,
    Forbidden,
    InfrastructureError,
    NotFound,
    Unauthorized,
    register_exception_handlers,
)
from federation import FederatedIdentityBridge, GoogleIdentityProvider
from mailer import ResetDelivery, SmtpMailer
from ratelimit import LOGIN_LIMIT, RESET_LIMIT, limiter, rate_limit_exceeded_handler
from reset import RESET_REQUESTED, ResetTokenStore
from schemas import Role
from security import CredentialHasher, TokenIssuer

logger = logging.getLogger(__name__)

OAUTH_STATE_COOKIE = "oauth_state"

router = APIRouter()
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/login")


# Components live on app.state; these accessors let tests override them.

def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_accounts(request: Request) -> AccountLookup:
    return request.app.state.accounts


def get_issuer(request: Request) -> TokenIssuer:
    return request.app.state.issuer


def get_reset_store(request: Request) -> ResetTokenStore:
    return request.app.state.reset_store


def get_bridge(request: Request) -> FederatedIdentityBridge:
    return request.app.state.bridge


def get_identity_provider(request: Request):
    return request.app.state.identity_provider


def get_current_principal(
    token: str = Depends(oauth2_scheme),
    issuer: TokenIssuer = Depends(get_issuer),
    accounts: AccountLookup = Depends(get_accounts),
) -> Principal:
    claims = issuer.verify(token)
    try:
        principal = accounts.get(claims.principal_id, claims.role)
    except NotFound:
        raise Unauthorized()
    return principal.as_session(claims.role)


def require_role(*roles: Role):
    allowed = {int(r) for r in roles}

    def role_dep(current: Principal = Depends(get_current_principal)) -> Principal:
        if current.role not in allowed:
            raise Forbidden()
        return current
    return role_dep


# Request Models
class RegisterRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    fullname: str = Field(..., min_length=1, max_length=120)
    email: EmailStr
    dob: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1, max_length=400)
    shopping_preference: Optional[str] = Field(None, alias="shoppingPreference")
    password: str = Field(..., min_length=8)


class ShopRegisterRequest(BaseModel):
    fullname: str = Field(..., min_length=1, max_length=120)
    owner_email: Optional[EmailStr] = None
    owner_contact: Optional[str] = None
    password: str = Field(..., min_length=8)
    nic: Optional[str] = None
    businessregno: Optional[str] = None
    tax_id_no: Optional[str] = None
    shopname: str = Field(..., min_length=1, max_length=120)
    email: EmailStr
    businesstype: Optional[str] = None
    category: str = Field(..., min_length=1)
    description: Optional[str] = None
    operating_hrs_from: Optional[str] = None
    operating_hrs_to: Optional[str] = None
    shoplocation: Optional[str] = None
    shopcontact: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8)


AccountType = Literal["user", "shop"]


class ResetRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: EmailStr
    account_type: Optional[AccountType] = Field(None, alias="accountType")


class ResetPerformRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: EmailStr
    token: str
    new_password: str = Field(..., alias="newPassword")
    confirm_password: str = Field(..., alias="confirmPassword")
    account_type: Optional[AccountType] = Field(None, alias="accountType")


class UpdateUserRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    fullname: Optional[str] = Field(None, max_length=120)
    email: Optional[EmailStr] = None
    dob: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = Field(None, max_length=400)
    shopping_preference: Optional[str] = Field(None, alias="shoppingPreference")
    password: Optional[str] = None


class UpdateShopRequest(BaseModel):
    fullname: Optional[str] = Field(None, max_length=120)
    owner_email: Optional[EmailStr] = None
    owner_contact: Optional[str] = None
    password: Optional[str] = None
    nic: Optional[str] = None
    businessregno: Optional[str] = None
    tax_id_no: Optional[str] = None
    shopname: Optional[str] = Field(None, max_length=120)
    email: Optional[EmailStr] = None
    businesstype: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    operating_hrs_from: Optional[str] = None
    operating_hrs_to: Optional[str] = None
    shoplocation: Optional[str] = None
    shopcontact: Optional[str] = None


# Auth Routes
@router.get("/")
def root():
    return {"message": "Welcome to the Marketplace API"}


@router.post("/register", status_code=201)
def register(payload: RegisterRequest, accounts: AccountLookup = Depends(get_accounts)):
    user = accounts.register_user(payload.model_dump())
    return {"success": True, "message": "User registered successfully", "user": user.public()}


@router.post("/shops/register", status_code=201)
def register_shop(payload: ShopRegisterRequest, accounts: AccountLookup = Depends(get_accounts)):
    shop = accounts.register_shop(payload.model_dump())
    return {"success": True, "message": "Shop registered successfully", "shop": shop.public()}


@router.post("/login")
@limiter.limit(LOGIN_LIMIT)
def login(
    request: Request,
    payload: LoginRequest,
    accounts: AccountLookup = Depends(get_accounts),
    issuer: TokenIssuer = Depends(get_issuer),
):
    try:
        principal = accounts.authenticate(payload.email, payload.password)
        token = issuer.issue(principal.id, principal.role)
    except InfrastructureError as e:
        raise InfrastructureError("Error during login") from e
    message = "Shop owner login successful" if principal.role == Role.SHOP else "Login successful"
    return {
        "success": True,
        "message": message,
        "token": token,
        "role": principal.role,
        principal.kind: principal.public(),
    }


@router.post("/auth/reset/request")
@limiter.limit(RESET_LIMIT)
async def request_password_reset(
    request: Request,
    payload: ResetRequest,
    store: ResetTokenStore = Depends(get_reset_store),
):
    try:
        await store.request(payload.email, payload.account_type)
    except InfrastructureError as e:
        raise InfrastructureError("Error requesting reset") from e
    return {"success": True, "message": RESET_REQUESTED}


@router.post("/auth/reset/perform")
@limiter.limit(RESET_LIMIT)
def perform_password_reset(
    request: Request,
    payload: ResetPerformRequest,
    store: ResetTokenStore = Depends(get_reset_store),
):
    try:
        store.redeem(
            payload.email,
            payload.token,
            payload.new_password,
            payload.confirm_password,
            payload.account_type,
        )
    except InfrastructureError as e:
        raise InfrastructureError("Error performing reset") from e
    return {"success": True, "message": "Password reset successfully"}


# Federated login
def _login_failed() -> RedirectResponse:
    response = RedirectResponse("/login/failed", status_code=302)
    response.delete_cookie(OAUTH_STATE_COOKIE)
    return response


@router.get("/auth/google")
def google_login(provider=Depends(get_identity_provider)):
    state = secrets.token_urlsafe(24)
    try:
        url = provider.authorization_url(state)
    except AuthenticationFailed:
        return _login_failed()
    response = RedirectResponse(url, status_code=302)
    response.set_cookie(OAUTH_STATE_COOKIE, state, max_age=600, httponly=True, samesite="lax")
    return response


@router.get("/auth/google/callback")
async def google_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    provider=Depends(get_identity_provider),
    bridge: FederatedIdentityBridge = Depends(get_bridge),
    settings: Settings = Depends(get_settings),
):
    expected = request.cookies.get(OAUTH_STATE_COOKIE)
    if error or not code or not state or not expected or not secrets.compare_digest(state, expected):
        return _login_failed()
    try:
        identity = await provider.fetch_identity(code)
        token, principal = await run_in_threadpool(bridge.exchange_assertion_for_session, identity)
    except AuthenticationFailed:
        return _login_failed()

    user = {
        "id": principal.id,
        "email": principal.email,
        "fullname": principal.document.get("fullname"),
        "photo": principal.document.get("photo"),
        "role": principal.role,
    }
    query = urlencode({"token": token, "user": json.dumps(user)})
    response = RedirectResponse(f"{settings.client_url}/login?{query}", status_code=302)
    response.delete_cookie(OAUTH_STATE_COOKIE)
    return response


@router.get("/login/failed")
def login_failed():
    return JSONResponse(status_code=401, content={"error": True, "message": "Log in Failed"})


# Account Routes
@router.get("/me")
def me(current: Principal = Depends(get_current_principal)):
    return {"success": True, "role": current.role, current.kind: current.public()}


@router.put("/profile/user")
def update_user_profile(
    payload: UpdateUserRequest,
    current: Principal = Depends(require_role(Role.USER, Role.ADMIN)),
    accounts: AccountLookup = Depends(get_accounts),
):
    updated = accounts.update_profile(current, payload.model_dump())
    return {"success": True, "message": "Profile updated successfully", "user": updated.public()}


@router.delete("/profile/user")
def delete_user_profile(
    current: Principal = Depends(require_role(Role.USER, Role.ADMIN)),
    accounts: AccountLookup = Depends(get_accounts),
):
    accounts.delete(current)
    return {"success": True, "message": "User deleted successfully"}


@router.put("/profile/shop")
def update_shop_profile(
    payload: UpdateShopRequest,
    current: Principal = Depends(require_role(Role.SHOP)),
    accounts: AccountLookup = Depends(get_accounts),
):
    updated = accounts.update_profile(current, payload.model_dump())
    return {"success": True, "message": "Profile updated successfully", "shop": updated.public()}


@router.delete("/profile/shop")
def delete_shop_profile(
    current: Principal = Depends(require_role(Role.SHOP)),
    accounts: AccountLookup = Depends(get_accounts),
):
    accounts.delete(current)
    return {"success": True, "message": "Shop deleted successfully"}


# Listing and admin routes
@router.get("/shops")
def list_shops(
    name: Optional[str] = None,
    category: Optional[str] = None,
    sort_by: Optional[str] = Query("shopname"),
    order: Optional[str] = Query("asc"),
    accounts: AccountLookup = Depends(get_accounts),
):
    return {"success": True, "shops": accounts.list_shops(name=name, category=category, sort_by=sort_by, order=order)}


@router.get("/users")
def list_users(
    name: Optional[str] = None,
    email: Optional[str] = None,
    sort_by: Optional[str] = Query("fullname"),
    order: Optional[str] = Query("asc"),
    admin: Principal = Depends(require_role(Role.ADMIN)),
    accounts: AccountLookup = Depends(get_accounts),
):
    return {"success": True, "users": accounts.list_users(name=name, email=email, sort_by=sort_by, order=order)}


@router.get("/users/count")
def user_count(
    admin: Principal = Depends(require_role(Role.ADMIN)),
    accounts: AccountLookup = Depends(get_accounts),
):
    return {"success": True, "data": {"totalUsers": accounts.count_users()}}


@router.get("/shops/count")
def shop_count(
    admin: Principal = Depends(require_role(Role.ADMIN)),
    accounts: AccountLookup = Depends(get_accounts),
):
    return {"success": True, "data": {"totalShops": accounts.count_shops()}}


@router.get("/admin/test")
def admin_test(admin: Principal = Depends(require_role(Role.ADMIN))):
    return {"message": "Protected route"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    ensure_indexes(app.state.db)
    yield


def create_app(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    delivery: Optional[ResetDelivery] = None,
    identity_provider: Any = None,
) -> FastAPI:
    """Build the API with every component wired from `settings`.

    Anything passed in explicitly (database, mail delivery, identity provider)
    replaces the production default.
    """
    settings = settings or load_settings()
    configure_logging(settings)
    db = database if database is not None else connect(settings)

    hasher = CredentialHasher(rounds=settings.bcrypt_rounds)
    issuer = TokenIssuer(settings.secret_key, settings.jwt_algorithm, settings.session_ttl)

    app = FastAPI(title="Marketplace API", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.db = db
    app.state.issuer = issuer
    app.state.accounts = AccountLookup(db, hasher)
    app.state.reset_store = ResetTokenStore(db, hasher, delivery or SmtpMailer(settings), settings)
    app.state.bridge = FederatedIdentityBridge(db, issuer, settings.federated_account_linking)
    app.state.identity_provider = identity_provider or GoogleIdentityProvider(settings)

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    register_exception_handlers(app)
    app.include_router(router)
    logger.info("Marketplace API configured (%s mode)", settings.environment)
    return app


app = create_app()
