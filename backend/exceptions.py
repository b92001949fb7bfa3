"""
backend/exceptions.py

Typed errors raised by the lot accounting services. Routers never see raw
SQLAlchemy or cryptography exceptions; main.py maps each class below to an
HTTP status:

  - BadRequestError     -> 400 (client-fixable, message is shown as-is)
  - NotFoundError       -> 404
  - DatabaseError       -> 503 (retryable, generic message to the client)
  - LotSelectionError   -> 500 (defect in lot data or selection logic)
  - ReportGenerationError -> 500
  - PriceUnavailableError -> 502
"""

from decimal import Decimal


class LedgerError(Exception):
    """Base class for every error raised by the ledger services."""


class BadRequestError(LedgerError):
    """Malformed envelope, failed decryption, invalid payload, rejected sale."""


class UnsupportedAccountingMethodError(BadRequestError):
    """Raised when a caller asks for an accounting method that isn't implemented."""

    def __init__(self, method):
        self.method = method
        super().__init__(f"Unsupported accounting method: {method}")


class NotFoundError(LedgerError):
    """Raised when a transaction or lot does not exist for the user."""


class DatabaseError(LedgerError):
    """Persistence failure. Safe for the caller to retry."""


class LotSelectionError(LedgerError):
    """Lot selection could not run on the given snapshot (inconsistent data)."""


class InsufficientLotsError(LotSelectionError):
    """Open lots do not cover the quantity being sold."""

    def __init__(self, needed: Decimal, requested: Decimal):
        self.needed = needed
        self.requested = requested
        super().__init__(
            f"Insufficient lots to sell {requested} BTC: need {needed} more BTC"
        )


class ReportGenerationError(LedgerError):
    """Historical replay failed; no partial report is produced."""


class PriceUnavailableError(LedgerError):
    """No price source answered and no cached price is available."""
