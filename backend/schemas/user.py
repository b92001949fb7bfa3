"""
backend/schemas/user.py

Defines the Pydantic schemas for user registration, reads and the
encryption/accounting settings a user controls.

Registration takes a raw 'password'; hashing happens behind the scenes
in create_user().
"""

import re
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional

from backend.schemas.transaction import AccountingMethod

HEX_RE = re.compile(r"^[0-9a-fA-F]+$")


class UserBase(BaseModel):
    """
    Shared user fields. 'username' is the primary unique identifier.
    """
    username: str = Field(..., min_length=1, max_length=255)


class UserCreate(UserBase):
    """
    For creating a new user. The user supplies a raw 'password'
    which will be hashed by the service layer before storing.
    """
    password: str = Field(..., min_length=1)


class UserRead(UserBase):
    """
    Returned to clients. Excludes the hashed password; the salt is
    included because the client derives its encryption key from it.
    """
    model_config = ConfigDict(from_attributes=True)

    id: int
    accounting_method: AccountingMethod
    encryption_salt: Optional[str] = None


class SaltUpdate(BaseModel):
    """Hex-encoded salt for PBKDF2 key derivation (16 bytes or more)."""
    salt: str = Field(..., min_length=32, max_length=64)

    @field_validator("salt")
    def validate_hex(cls, v: str) -> str:
        if not HEX_RE.match(v) or len(v) % 2:
            raise ValueError("Salt must be an even-length hex string.")
        return v.lower()


class AccountingMethodUpdate(BaseModel):
    method: AccountingMethod
