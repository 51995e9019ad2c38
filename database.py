from datetime import datetime, timezone

from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

from config import Settings

PRINCIPAL_COLLECTIONS = ("user", "shop")


def connect(settings: Settings) -> Database:
    # MongoClient connects lazily, so building the app never blocks on the server.
    client = MongoClient(settings.database_url)
    return client[settings.database_name]


def ensure_indexes(db: Database) -> None:
    """Email is unique within each principal collection, not across them."""
    for name in PRINCIPAL_COLLECTIONS:
        db[name].create_index([("email", ASCENDING)], unique=True)


def utcnow() -> datetime:
    # Naive UTC, matching what pymongo hands back for stored dates.
    return datetime.now(timezone.utc).replace(tzinfo=None)
