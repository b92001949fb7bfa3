"""
transaction.py

Ledger models for the lot accounting engine:
1) Transaction (immutable economic event, one per buy/sell/etc.)
2) Lot (inventory acquired by exactly one buy)
3) Allocation (one lot partially or fully consumed by one sell)

Deleting a Transaction cascades to the Lot it created and to the
Allocations it owns; Lot deletion cascades to Allocations drawn from it.
"""

from datetime import datetime, timezone
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Numeric,
    ForeignKey,
    JSON,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from backend.constants import LOT_STATUS_PENDING
from backend.database import Base, UTCDateTime


def _utcnow():
    return datetime.now(timezone.utc)


# ------------------------------------------------------------------------
# TRANSACTION
# ------------------------------------------------------------------------

class Transaction(Base):
    """
    One economic event as submitted by the client. Plaintext columns
    (type, amount, price, ...) are copies of the decrypted payload; the
    ciphertext itself is kept in encrypted_data for later display.

    lot_status makes the outcome of lot processing explicit:
      pending  -> stored, lot effects not applied yet
      applied  -> Lot (buy) or Allocations (sell) exist
      rejected -> lot logic refused it (e.g. insufficient lots), see lot_error
      skipped  -> type has no lot effects (deposit, withdrawal, interest)
    """

    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)

    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    timestamp = Column(
        UTCDateTime,
        nullable=False,
        index=True,
        doc="When the transaction actually occurred (user-facing)."
    )

    type = Column(String(16), nullable=False, doc="buy, sell, deposit, withdrawal, interest")

    amount = Column(Numeric(18, 8), nullable=False, doc="BTC quantity, always positive.")
    price = Column(Numeric(18, 2), nullable=False, doc="USD per BTC at event time.")
    fee = Column(Numeric(18, 2), nullable=True)
    wallet = Column(String, nullable=True)
    tags = Column(JSON, nullable=True)
    notes = Column(Text, nullable=True)

    encrypted_data = Column(Text, nullable=False, doc="Client ciphertext (base64 iv + AES-GCM).")

    lot_status = Column(String(16), nullable=False, default=LOT_STATUS_PENDING)
    lot_error = Column(Text, nullable=True)

    created_at = Column(UTCDateTime, default=_utcnow, nullable=False)

    # -------------------------------------------------------------------
    # RELATIONSHIPS
    # -------------------------------------------------------------------
    user = relationship("User", back_populates="transactions")

    lot = relationship(
        "Lot",
        back_populates="transaction",
        uselist=False,
        cascade="all, delete-orphan",
        doc="Lot opened by this buy, if any."
    )

    allocations = relationship(
        "Allocation",
        back_populates="transaction",
        cascade="all, delete-orphan",
        doc="Lot consumption recorded for this sell."
    )

    def __repr__(self):
        return (
            f"<Transaction(id={self.id}, type={self.type}, amount={self.amount}, "
            f"price={self.price}, timestamp={self.timestamp}, lot_status={self.lot_status})>"
        )


class Lot(Base):
    """
    A unit of acquired inventory created from exactly one buy.
    remaining_qty only ever decreases; cost_basis_usd and unit_cost_usd are
    fixed at creation. The closed_at/proceeds_usd/gain_usd/term columns are a
    summary stamped when the last of the lot is sold.

    'version' is an optimistic-lock counter: SQLAlchemy adds it to the WHERE
    clause of every UPDATE and raises StaleDataError if another writer won.
    """

    __tablename__ = "lots"

    id = Column(Integer, primary_key=True, index=True)

    tx_id = Column(
        Integer,
        ForeignKey("transactions.id"),
        nullable=False,
        unique=True,
        doc="The buy transaction that opened this lot."
    )

    opened_at = Column(UTCDateTime, nullable=False)

    original_amount = Column(Numeric(18, 8), nullable=False)
    remaining_qty = Column(Numeric(18, 8), nullable=False)
    cost_basis_usd = Column(Numeric(28, 10), nullable=False)
    unit_cost_usd = Column(Numeric(18, 2), nullable=False)

    closed_at = Column(UTCDateTime, nullable=True)
    proceeds_usd = Column(Numeric(18, 2), nullable=True)
    gain_usd = Column(Numeric(18, 2), nullable=True)
    term = Column(String(8), nullable=True)

    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    transaction = relationship("Transaction", back_populates="lot")

    allocations = relationship(
        "Allocation",
        back_populates="lot",
        cascade="all, delete-orphan",
        doc="Every sell that drew from this lot."
    )

    def __repr__(self):
        return (
            f"<Lot(id={self.id}, tx_id={self.tx_id}, original={self.original_amount}, "
            f"remaining={self.remaining_qty}, unit_cost={self.unit_cost_usd}, "
            f"closed_at={self.closed_at})>"
        )


class Allocation(Base):
    """
    Records how one sell consumed part of one lot. Created once per
    (sell, lot) pair and never modified afterwards.
    """

    __tablename__ = "allocations"
    __table_args__ = (UniqueConstraint("tx_id", "lot_id", name="uq_allocation_tx_lot"),)

    id = Column(Integer, primary_key=True)

    tx_id = Column(Integer, ForeignKey("transactions.id"), nullable=False, index=True)
    lot_id = Column(Integer, ForeignKey("lots.id"), nullable=False, index=True)

    qty = Column(Numeric(18, 8), nullable=False)
    cost_usd = Column(Numeric(18, 2), nullable=False)
    proceeds_usd = Column(Numeric(18, 2), nullable=False)
    gain_usd = Column(Numeric(18, 2), nullable=False)
    term = Column(String(8), nullable=False)

    lot = relationship("Lot", back_populates="allocations")
    transaction = relationship("Transaction", back_populates="allocations")

    def __repr__(self):
        return (
            f"<Allocation(id={self.id}, tx_id={self.tx_id}, lot_id={self.lot_id}, "
            f"qty={self.qty}, gain_usd={self.gain_usd}, term={self.term})>"
        )
