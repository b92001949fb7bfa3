"""
Domain constants shared by the lot accounting engine, the encryption layer
and the reporting code.
"""

from datetime import timedelta
from decimal import Decimal

# USD amounts are kept to cents.
USD_QUANT = Decimal("0.01")

# Quantities are exact Decimals, so a lot is "empty" exactly at zero.
BTC_DUST = Decimal("0")

# Holding period: strictly more than 365 days is long-term.
LONG_TERM_THRESHOLD = timedelta(days=365)

TERM_SHORT = "Short"
TERM_LONG = "Long"
TERM_MIXED = "Mixed"

ASSET_BTC = "BTC"

# Transaction lot-processing states
LOT_STATUS_PENDING = "pending"
LOT_STATUS_APPLIED = "applied"
LOT_STATUS_REJECTED = "rejected"
LOT_STATUS_SKIPPED = "skipped"

# Encryption (PBKDF2-HMAC-SHA256 -> AES-256-GCM)
KEY_LENGTH = 32
SALT_LENGTH = 16
IV_LENGTH = 12
PBKDF2_ITERATIONS = 100_000

# Optimistic-lock retries for a sell racing another sell of the same user
SELL_RETRY_ATTEMPTS = 3

# Header carrying the user's encryption passphrase on write requests
PASSPHRASE_HEADER = "X-Encryption-Passphrase"
