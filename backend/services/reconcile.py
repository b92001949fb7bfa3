"""
backend/services/reconcile.py

Bulk Reconciler: applies lot logic to transactions that are already stored
(CSV imports, rows left 'pending' after a database hiccup, or 'rejected'
sells that can now be covered).

Rows are processed strictly one after another, in the order given. A row
that fails is rolled back on its own and reported; the loop carries on.
"""

import logging
from typing import Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.constants import LOT_STATUS_APPLIED, LOT_STATUS_PENDING, LOT_STATUS_SKIPPED
from backend.exceptions import BadRequestError, DatabaseError, LedgerError, NotFoundError
from backend.models.transaction import Allocation, Lot, Transaction
from backend.models.user import User
from backend.schemas.transaction import (
    AccountingMethod,
    BulkError,
    BulkImportRow,
    BulkResult,
    TransactionPayload,
)
from backend.services.transaction import (
    apply_transaction_logic,
    decrypt_payload,
    get_encryption_key,
    mark_rejected,
    resolve_accounting_method,
)

logger = logging.getLogger(__name__)

_DONE_STATUSES = (LOT_STATUS_APPLIED, LOT_STATUS_SKIPPED)


def import_encrypted_rows(db: Session, user_id: int, rows: Iterable[BulkImportRow]) -> List[int]:
    """
    Insert already-encrypted rows in one DB transaction, all 'pending'.
    Returns the new ids in input order. Nothing is inserted on failure.
    """
    txs = [
        Transaction(
            user_id=user_id,
            timestamp=row.timestamp,
            type=row.type.value,
            amount=row.amount,
            price=row.price,
            fee=row.fee,
            wallet=row.wallet,
            tags=row.tags,
            notes=row.notes,
            encrypted_data=row.encrypted_data,
            lot_status=LOT_STATUS_PENDING,
        )
        for row in rows
    ]
    try:
        db.add_all(txs)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Bulk import of {len(txs)} rows failed for user {user_id}: {e}")
        raise DatabaseError("Database error during bulk import.") from e

    ids = [tx.id for tx in txs]
    logger.info(f"Imported {len(ids)} encrypted transactions for user {user_id}")
    return ids


def reconcile_many(
    db: Session,
    user_id: int,
    tx_ids: List[int],
    passphrase: Optional[str],
    salt: Optional[str],
    method: Optional[AccountingMethod] = None,
) -> BulkResult:
    """
    Decrypt each stored transaction, refresh its plaintext columns from the
    payload and apply buy/sell logic. Rows whose lot effects are already in
    place count as processed and are left untouched.
    """
    result = BulkResult()
    if not tx_ids:
        return result

    if not passphrase or not salt:
        message = "Encryption key setup incomplete."
        result.errors = [BulkError(tx_id=tx_id, message=message) for tx_id in tx_ids]
        return result

    try:
        key = get_encryption_key(passphrase, salt)
        if method is None:
            user = db.get(User, user_id)
            method = user.accounting_method if user else None
        method = resolve_accounting_method(method)
    except BadRequestError as e:
        result.errors = [BulkError(tx_id=tx_id, message=str(e)) for tx_id in tx_ids]
        return result

    for tx_id in tx_ids:
        try:
            _reconcile_one(db, user_id, tx_id, key, method)
            result.processed += 1
        except LedgerError as e:
            db.rollback()
            if isinstance(e, BadRequestError):
                mark_rejected(db, tx_id, str(e))
            logger.warning(f"Reconcile failed for transaction {tx_id}: {e}")
            result.errors.append(BulkError(tx_id=tx_id, message=str(e)))
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error while reconciling transaction {tx_id}: {e}")
            result.errors.append(BulkError(tx_id=tx_id, message="Database error."))

    logger.info(
        f"Reconciled {result.processed}/{len(tx_ids)} transactions for user {user_id} "
        f"({len(result.errors)} errors)"
    )
    return result


def _reconcile_one(db: Session, user_id: int, tx_id: int, key: bytes, method: AccountingMethod) -> None:
    tx = (
        db.query(Transaction)
        .filter(Transaction.id == tx_id, Transaction.user_id == user_id)
        .first()
    )
    if tx is None:
        # Not found and not owned look the same to the caller.
        raise NotFoundError("Transaction not found")

    if tx.lot_status in _DONE_STATUSES:
        logger.debug(f"Transaction {tx_id} already reconciled ({tx.lot_status}), skipping.")
        return

    if _has_lot_effects(db, tx_id):
        logger.warning(f"Transaction {tx_id} already has lot effects, marking {LOT_STATUS_APPLIED}.")
        tx.lot_status = LOT_STATUS_APPLIED
        tx.lot_error = None
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise DatabaseError(f"Failed to update transaction {tx_id}.") from e
        return

    payload = decrypt_payload(tx.encrypted_data, key)
    _refresh_plaintext(tx, payload)
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError(f"Failed to update transaction {tx_id}.") from e

    apply_transaction_logic(db, user_id, tx, payload, method)


def _refresh_plaintext(tx: Transaction, payload: TransactionPayload) -> None:
    """
    The ciphertext is the source of truth; imported plaintext columns may be
    stale. The stored timestamp is kept because ordering was fixed at import.
    """
    tx.type = payload.type.value
    tx.amount = payload.amount
    tx.price = payload.price
    tx.fee = payload.fee
    tx.wallet = payload.wallet
    tx.tags = payload.tags
    tx.notes = payload.notes


def _has_lot_effects(db: Session, tx_id: int) -> bool:
    """A Lot (buy) or any Allocation (sell) already written for this row."""
    if db.query(Lot.id).filter(Lot.tx_id == tx_id).first() is not None:
        return True
    return db.query(Allocation.id).filter(Allocation.tx_id == tx_id).first() is not None
