"""
backend/schemas/transaction.py

Pydantic v2 schemas for the transaction pipeline.

- TxType, AccountingMethod: closed enums for transaction types and lot methods
- EncryptedEnvelope: the outer request body (timestamp + ciphertext)
- TransactionPayload: the canonical decrypted transaction, validated after decryption
- TransactionRead, LotRead, AllocationRead: ORM output
- ProcessResult, BulkImportRequest, ReconcileRequest, BulkResult: operation surfaces
"""

from enum import Enum
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List
from datetime import datetime, timezone
from decimal import Decimal

# -------------------------------------------------
# ENUMS
# -------------------------------------------------

class TxType(str, Enum):
    BUY = "buy"
    SELL = "sell"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    INTEREST = "interest"


class AccountingMethod(str, Enum):
    """
    Lot selection methods. Only HIFO is implemented; FIFO/LIFO would be
    added here and in lot_selector's sort-key table together.
    """
    HIFO = "HIFO"

# -------------------------------------------------
# CUSTOM VALIDATORS
# -------------------------------------------------
# BTC up to 8 decimals (satoshis), USD up to 2.

def _decimal_places(value: Decimal) -> int:
    exponent = value.as_tuple().exponent
    return -exponent if isinstance(exponent, int) and exponent < 0 else 0


def validate_btc_decimal(value: Decimal) -> Decimal:
    """
    Enforces max 8 decimal places for BTC amounts and max 18 total digits.
    """
    if not value.is_finite():
        raise ValueError("BTC amount must be a finite number.")
    value = value.normalize() if _decimal_places(value) > 8 else value
    if _decimal_places(value) > 8:
        raise ValueError("BTC amount cannot exceed 8 decimal places.")
    if abs(value) >= Decimal("1e10"):
        raise ValueError("BTC amount cannot exceed 18 total digits.")
    return value


def validate_usd_decimal(value: Decimal) -> Decimal:
    """
    Enforces max 2 decimal places for USD amounts and max 18 total digits.
    """
    if not value.is_finite():
        raise ValueError("USD amount must be a finite number.")
    value = value.normalize() if _decimal_places(value) > 2 else value
    if _decimal_places(value) > 2:
        raise ValueError("USD amount cannot exceed 2 decimal places.")
    if abs(value) >= Decimal("1e16"):
        raise ValueError("USD amount cannot exceed 18 total digits.")
    return value


def force_utc(v: datetime | None) -> datetime | None:
    if v is None:
        return None
    if v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc)

# -------------------------------------------------
# REQUEST SCHEMAS
# -------------------------------------------------

class EncryptedEnvelope(BaseModel):
    """
    Outer shape of a transaction write: the event time in clear plus the
    client-side encrypted payload (base64 of iv + AES-GCM ciphertext).
    """
    timestamp: datetime
    encrypted_data: str = Field(..., min_length=1)

    @field_validator("timestamp")
    def force_utc_timestamp(cls, v: datetime) -> datetime:
        return force_utc(v)


class TransactionPayload(BaseModel):
    """
    Canonical plaintext transaction, validated after decryption.
    """
    model_config = ConfigDict(extra="ignore")

    type: TxType
    timestamp: datetime
    amount: Decimal = Field(..., gt=0, description="BTC quantity, up to 8 decimals.")
    price: Decimal = Field(..., ge=0, description="USD per BTC, up to 2 decimals.")
    fee: Optional[Decimal] = Field(default=None, ge=0)
    wallet: Optional[str] = None
    tags: Optional[List[str]] = None
    notes: Optional[str] = None

    @field_validator("timestamp")
    def force_utc_timestamp(cls, v: datetime) -> datetime:
        return force_utc(v)

    @field_validator("amount")
    def validate_amount(cls, v: Decimal) -> Decimal:
        return validate_btc_decimal(v)

    @field_validator("price", "fee")
    def validate_usd_fields(cls, v: Decimal | None) -> Decimal | None:
        if v is not None:
            return validate_usd_decimal(v)
        return v


class BulkImportRow(EncryptedEnvelope):
    """
    One row produced by a CSV import adapter: the envelope plus the
    plaintext columns the adapter already knows. The reconciler decrypts
    the payload afterwards and overwrites the plaintext columns with it.
    """
    type: TxType
    amount: Decimal = Field(..., gt=0)
    price: Decimal = Field(..., ge=0)
    fee: Optional[Decimal] = None
    wallet: Optional[str] = None
    tags: Optional[List[str]] = None
    notes: Optional[str] = None


class BulkImportRequest(BaseModel):
    rows: List[BulkImportRow] = Field(..., min_length=1)


class ReconcileRequest(BaseModel):
    tx_ids: List[int]

# -------------------------------------------------
# RESPONSE SCHEMAS
# -------------------------------------------------

class TransactionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    timestamp: datetime
    type: str
    amount: Decimal
    price: Decimal
    fee: Optional[Decimal] = None
    wallet: Optional[str] = None
    tags: Optional[List[str]] = None
    notes: Optional[str] = None
    encrypted_data: str
    lot_status: str
    lot_error: Optional[str] = None
    created_at: datetime


class LotRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tx_id: int
    opened_at: datetime
    original_amount: Decimal
    remaining_qty: Decimal
    cost_basis_usd: Decimal
    unit_cost_usd: Decimal
    closed_at: Optional[datetime] = None
    proceeds_usd: Optional[Decimal] = None
    gain_usd: Optional[Decimal] = None
    term: Optional[str] = None


class AllocationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tx_id: int
    lot_id: int
    qty: Decimal
    cost_usd: Decimal
    proceeds_usd: Decimal
    gain_usd: Decimal
    term: str


class ProcessResult(BaseModel):
    transaction_id: int
    lot_status: str


class BulkError(BaseModel):
    tx_id: int
    message: str


class BulkResult(BaseModel):
    processed: int = 0
    errors: List[BulkError] = Field(default_factory=list)


class BulkImportResponse(BaseModel):
    imported: int
    tx_ids: List[int]
    result: BulkResult


class ClearAllResponse(BaseModel):
    deleted_count: int
