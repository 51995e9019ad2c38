"""
Principals and account lookup.

A principal is anything that can log in. End users (and admins) live in the
"user" collection, shop owners in "shop"; both share one email namespace and
are tried in that fixed order.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Any, ClassVar, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import utcnow
from errors import AuthenticationFailed, Conflict, NotFound, Unauthorized, ValidationFailed
from schemas import PRIVATE_FIELDS, Role, Shop as ShopSchema, User as UserSchema
from security import CredentialHasher

logger = logging.getLogger(__name__)

LOGIN_FAILED = "Invalid email or password"
MIN_PASSWORD_LENGTH = 8

USER_SORT_FIELDS = ("fullname", "email", "created_at")
SHOP_SORT_FIELDS = ("shopname", "category", "email", "created_at")


def to_obj_id(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise NotFound("Account not found")


def sanitize(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    d = {k: v for k, v in doc.items() if k not in PRIVATE_FIELDS}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def check_password_length(password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationFailed("Password must be at least 8 characters long")


@dataclass(frozen=True)
class Principal(ABC):
    id: str
    email: str
    role: int
    document: Dict[str, Any]

    kind: ClassVar[str] = ""
    collection: ClassVar[str] = ""

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Principal":
        return cls(id=str(doc["_id"]), email=doc["email"], role=cls.role_of(doc), document=doc)

    @staticmethod
    @abstractmethod
    def role_of(doc: Dict[str, Any]) -> int:
        """Session role carried by a principal stored as `doc`."""

    def as_session(self, role: int) -> "Principal":
        """This principal acting under the role a session token carries.

        An admin may hold an end-user session; any other mismatch means the
        stored role changed after the token was issued.
        """
        if role == self.role:
            return self
        if self.role == Role.ADMIN and role == Role.USER:
            return replace(self, role=role)
        raise Unauthorized()

    def public(self) -> Dict[str, Any]:
        return sanitize(self.document)


class UserPrincipal(Principal):
    kind = "user"
    collection = "user"

    @staticmethod
    def role_of(doc: Dict[str, Any]) -> int:
        return Role.ADMIN.value if doc.get("role") == Role.ADMIN else Role.USER.value


class ShopPrincipal(Principal):
    kind = "shop"
    collection = "shop"

    @staticmethod
    def role_of(doc: Dict[str, Any]) -> int:
        return Role.SHOP.value


# Lookup order for login and password reset. User before Shop is a contract.
PRINCIPAL_KINDS = (UserPrincipal, ShopPrincipal)


def principal_kind_for_role(role: int):
    return ShopPrincipal if role == Role.SHOP else UserPrincipal


class AccountLookup:
    def __init__(self, db: Database, hasher: CredentialHasher):
        self._db = db
        self._hasher = hasher

    def authenticate(self, email: str, password: str) -> Principal:
        """Return the first principal, User before Shop, whose email and password match.

        Every failure, whatever half of the check failed, raises the same
        AuthenticationFailed so callers cannot tell which accounts exist.
        """
        for kind in PRINCIPAL_KINDS:
            doc = self._db[kind.collection].find_one({"email": email})
            if doc is None:
                self._hasher.verify_dummy(password)
                continue
            if self._hasher.verify(password, doc.get("password_hash")):
                return kind.from_document(doc)
        raise AuthenticationFailed(LOGIN_FAILED)

    def find_by_email(self, email: str) -> Optional[Principal]:
        for kind in PRINCIPAL_KINDS:
            doc = self._db[kind.collection].find_one({"email": email})
            if doc is not None:
                return kind.from_document(doc)
        return None

    def get(self, principal_id: str, role: int) -> Principal:
        kind = principal_kind_for_role(role)
        doc = self._db[kind.collection].find_one({"_id": to_obj_id(principal_id)})
        if not doc:
            raise NotFound("Account not found")
        return kind.from_document(doc)

    def register_user(self, data: Dict[str, Any]) -> UserPrincipal:
        if self._db["user"].find_one({"email": data["email"]}):
            raise Conflict("Already registered. Please login.")
        password = data.pop("password")
        now = utcnow()
        user_doc = UserSchema(
            **data,
            password_hash=self._hasher.hash(password),
            role=Role.USER.value,
            created_at=now,
            updated_at=now,
        ).model_dump()
        return self._insert(UserPrincipal, user_doc)

    def register_shop(self, data: Dict[str, Any]) -> ShopPrincipal:
        if self._db["shop"].find_one({"email": data["email"]}):
            raise Conflict("Shop already registered. Please login.")
        password = data.pop("password")
        now = utcnow()
        shop_doc = ShopSchema(
            **data,
            password_hash=self._hasher.hash(password),
            created_at=now,
            updated_at=now,
        ).model_dump()
        return self._insert(ShopPrincipal, shop_doc)

    def _insert(self, kind, doc: Dict[str, Any]) -> Principal:
        try:
            res = self._db[kind.collection].insert_one(doc)
        except DuplicateKeyError:
            raise Conflict("Already registered. Please login.")
        doc["_id"] = res.inserted_id
        logger.info("Registered %s principal %s", kind.kind, res.inserted_id)
        return kind.from_document(doc)

    def update_profile(self, principal: Principal, changes: Dict[str, Any]) -> Principal:
        """Apply a partial profile update; absent or empty fields keep their value."""
        updates = {k: v for k, v in changes.items() if v not in (None, "")}
        password = updates.pop("password", None)
        if password is not None:
            check_password_length(password)
            updates["password_hash"] = self._hasher.hash(password)

        new_email = updates.get("email")
        if new_email and new_email != principal.email:
            taken = self._db[principal.collection].find_one(
                {"email": new_email, "_id": {"$ne": principal.document["_id"]}}
            )
            if taken:
                raise Conflict("Email already in use")

        updates["updated_at"] = utcnow()
        try:
            doc = self._db[principal.collection].find_one_and_update(
                {"_id": principal.document["_id"]},
                {"$set": updates},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            raise Conflict("Email already in use")
        if not doc:
            raise NotFound("Account not found")
        return type(principal).from_document(doc)

    def delete(self, principal: Principal) -> None:
        res = self._db[principal.collection].delete_one({"_id": principal.document["_id"]})
        if res.deleted_count == 0:
            raise NotFound("Account not found")
        logger.info("Deleted %s principal %s", principal.kind, principal.id)

    def list_users(
        self,
        name: Optional[str] = None,
        email: Optional[str] = None,
        sort_by: str = "fullname",
        order: str = "asc",
    ) -> List[Dict[str, Any]]:
        q: Dict[str, Any] = {}
        if name:
            q["fullname"] = {"$regex": re.escape(name), "$options": "i"}
        if email:
            q["email"] = {"$regex": re.escape(email), "$options": "i"}
        return self._list("user", q, sort_by if sort_by in USER_SORT_FIELDS else "fullname", order)

    def list_shops(
        self,
        name: Optional[str] = None,
        category: Optional[str] = None,
        sort_by: str = "shopname",
        order: str = "asc",
    ) -> List[Dict[str, Any]]:
        q: Dict[str, Any] = {}
        if name:
            q["shopname"] = {"$regex": re.escape(name), "$options": "i"}
        if category:
            q["category"] = category
        return self._list("shop", q, sort_by if sort_by in SHOP_SORT_FIELDS else "shopname", order)

    def _list(self, collection: str, q: Dict[str, Any], sort_by: str, order: str) -> List[Dict[str, Any]]:
        sort_dir = 1 if order == "asc" else -1
        return [sanitize(d) for d in self._db[collection].find(q).sort([(sort_by, sort_dir)])]

    def count_users(self) -> int:
        return self._db["user"].count_documents({})

    def count_shops(self) -> int:
        return self._db["shop"].count_documents({})
