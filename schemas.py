"""
Database Schemas for the Marketplace

MongoDB collections are defined below using Pydantic models. Each class name is
converted to lowercase for the collection name (User -> "user").

The two principal collections share one email namespace without a cross
constraint: the same address may exist once in "user" and once in "shop".
- user: end users and administrators (role 0 / 1)
- shop: shop owners and their storefronts (role 2)
"""

from datetime import datetime
from enum import IntEnum
from typing import Literal, Optional

from pydantic import BaseModel, EmailStr, Field


class Role(IntEnum):
    USER = 0
    ADMIN = 1
    SHOP = 2


# Never leave the server.
PRIVATE_FIELDS = ("password_hash", "reset_token_hash", "reset_token_expires_at")


class User(BaseModel):
    fullname: str = Field(..., min_length=1, max_length=120)
    email: EmailStr
    dob: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = Field(None, max_length=400)
    shopping_preference: Optional[str] = None
    password_hash: Optional[str] = Field(None, description="BCrypt hash; absent for federated accounts")
    role: Literal[0, 1] = Field(0)
    auth_provider: Literal["password", "google"] = "password"
    photo: Optional[str] = None
    reset_token_hash: Optional[str] = Field(None, description="SHA-256 of the outstanding reset token")
    reset_token_expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Shop(BaseModel):
    fullname: str = Field(..., min_length=1, max_length=120)
    owner_email: Optional[EmailStr] = None
    owner_contact: Optional[str] = None
    nic: Optional[str] = None
    businessregno: Optional[str] = None
    tax_id_no: Optional[str] = None
    shopname: str = Field(..., min_length=1, max_length=120)
    email: EmailStr
    businesstype: Optional[str] = None
    category: str
    description: Optional[str] = None
    operating_hrs_from: Optional[str] = None
    operating_hrs_to: Optional[str] = None
    shoplocation: Optional[str] = None
    shopcontact: Optional[str] = None
    password_hash: str = Field(..., description="BCrypt hash of password")
    role: Literal[2] = Field(2)
    reset_token_hash: Optional[str] = None
    reset_token_expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
