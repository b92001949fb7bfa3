"""
backend/models/user.py

Represents a user of the ledger. Each user owns their transactions (and,
through them, lots and allocations), the hex salt used to derive their
payload encryption key, and their preferred accounting method.
"""

from __future__ import annotations
from typing import List, Optional, TYPE_CHECKING
import bcrypt
from sqlalchemy import Integer, String
from sqlalchemy.orm import relationship, Mapped, mapped_column
from backend.database import Base

if TYPE_CHECKING:
    from backend.models.transaction import Transaction


class User(Base):
    """
    The main user table. Each user has:
      - An ID (PK)
      - A unique username
      - A bcrypt-hashed password
      - An encryption salt (hex), set once the client has generated its key
      - An accounting method (HIFO is the only one implemented)
    """

    __tablename__ = 'users'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    username: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)

    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)

    encryption_salt: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    accounting_method: Mapped[str] = mapped_column(String(16), nullable=False, default="HIFO")

    transactions: Mapped[List[Transaction]] = relationship(
        "Transaction",
        back_populates="user",
        cascade="all, delete-orphan",
        doc="All transactions recorded by this user."
    )

    def set_password(self, password: str) -> None:
        """
        Hash and store the user's password with bcrypt.
        bcrypt only looks at the first 72 bytes, so longer input is rejected.
        """
        encoded = password.encode("utf-8")
        if len(encoded) > 72:
            raise ValueError("Password cannot exceed 72 bytes.")
        self.password_hash = bcrypt.hashpw(encoded, bcrypt.gensalt()).decode("utf-8")

    def verify_password(self, password: str) -> bool:
        encoded = password.encode("utf-8")
        if len(encoded) > 72:
            return False
        return bcrypt.checkpw(encoded, self.password_hash.encode("utf-8"))

    def __repr__(self) -> str:
        return f"<User(id={self.id}, username={self.username})>"
