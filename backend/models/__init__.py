# backend/models/__init__.py

"""
Centralizes model imports so Base.metadata knows about every table
as soon as the package is imported.
"""

from backend.database import Base

from .user import User

from .transaction import Transaction, Lot, Allocation
