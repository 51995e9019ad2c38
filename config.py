"""
Runtime configuration.

Everything the service needs from the environment is read once here, at process
start, and handed to the components that need it. Nothing else in the codebase
calls os.getenv.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Mapping, Optional

logger = logging.getLogger(__name__)

DEV_SECRET_KEY = "dev-only-insecure-secret"
LINKING_MODES = ("reject", "merge")


@dataclass(frozen=True)
class Settings:
    secret_key: str = DEV_SECRET_KEY
    jwt_algorithm: str = "HS256"
    session_ttl: timedelta = timedelta(days=7)
    reset_token_ttl: timedelta = timedelta(minutes=30)
    bcrypt_rounds: int = 12

    database_url: str = "mongodb://localhost:27017"
    database_name: str = "marketplace"

    client_url: str = "http://localhost:3000"
    app_public_url: str = "http://localhost:5173"
    environment: str = "development"
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:3000"])

    mail_host: Optional[str] = None
    mail_port: int = 2525
    mail_user: Optional[str] = None
    mail_password: Optional[str] = None
    mail_from: Optional[str] = None
    mail_use_tls: bool = False

    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None
    google_callback_url: Optional[str] = None
    federated_account_linking: str = "reject"

    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


def _flag(value: Optional[str]) -> bool:
    return str(value or "").strip().lower() in ("1", "true", "yes", "on")


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if environ is None else environ
    environment = env.get("DEV_MODE", "development").strip().lower()

    secret = env.get("SECRET_KEY") or env.get("JWT_SECRET")
    if not secret:
        if environment == "production":
            raise RuntimeError("SECRET_KEY must be set in production")
        logger.warning("SECRET_KEY not set; using the development signing key")
        secret = DEV_SECRET_KEY

    linking = env.get("FEDERATED_ACCOUNT_LINKING", "reject").strip().lower()
    if linking not in LINKING_MODES:
        raise RuntimeError(f"FEDERATED_ACCOUNT_LINKING must be one of {LINKING_MODES}")

    origins = [o.strip() for o in env.get("CORS_ORIGINS", "http://localhost:3000").split(",") if o.strip()]

    return Settings(
        secret_key=secret,
        jwt_algorithm=env.get("JWT_ALGORITHM", "HS256"),
        bcrypt_rounds=int(env.get("BCRYPT_ROUNDS", "12")),
        database_url=env.get("DATABASE_URL", "mongodb://localhost:27017"),
        database_name=env.get("DATABASE_NAME", "marketplace"),
        client_url=env.get("CLIENT_URL", "http://localhost:3000").rstrip("/"),
        app_public_url=env.get("APP_PUBLIC_URL", "http://localhost:5173").rstrip("/"),
        environment=environment,
        cors_origins=origins,
        mail_host=env.get("MAIL_HOST") or None,
        mail_port=int(env.get("MAIL_PORT", "2525")),
        mail_user=env.get("MAIL_USER") or None,
        mail_password=env.get("MAIL_PASS") or None,
        mail_from=env.get("MAIL_FROM") or env.get("MAIL_USER") or None,
        mail_use_tls=_flag(env.get("MAIL_SECURE")),
        google_client_id=env.get("GOOGLE_CLIENT_ID") or None,
        google_client_secret=env.get("GOOGLE_CLIENT_SECRET") or None,
        google_callback_url=env.get("CALLBACK_URL") or None,
        federated_account_linking=linking,
        log_level=env.get("LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
