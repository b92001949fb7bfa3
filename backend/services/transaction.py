# FILE: backend/services/transaction.py

"""
backend/services/transaction.py

Transaction Processor: turns one encrypted client payload into a persisted
Transaction and its lot-accounting side effects.

Pipeline for process_transaction():
  1) Session must carry the encryption passphrase and salt.
  2) Validate the outer envelope (timestamp + ciphertext).
  3) Derive the key, decrypt, parse JSON, validate the payload.
  4) Persist the Transaction row (lot_status=pending) and commit.
  5) Apply lot logic: buy -> one Lot, sell -> HIFO selection + Allocations.
  6) Return the new id and its lot_status.

Implementation Notes:
 - The Transaction row is committed before lot logic runs, so a failed sale
   still leaves a visible record: lot_status says whether lot effects exist
   ('applied'), were refused ('rejected', with lot_error), or never ran
   ('pending', e.g. after a database failure; reconcile_many can retry it).
 - All Allocation writes and Lot updates for one sell happen in a single
   commit. Any failure rolls every one of them back.
 - Sells lock the user's open lots (SELECT ... FOR UPDATE where supported)
   and Lot.version guards every update; a concurrent sell that wins the race
   makes ours raise StaleDataError, and we re-read and re-select.
 - Buy and sell logic are idempotent per transaction id.
"""

import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from pydantic import ValidationError
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from backend.constants import (
    BTC_DUST,
    LOT_STATUS_APPLIED,
    LOT_STATUS_PENDING,
    LOT_STATUS_REJECTED,
    LOT_STATUS_SKIPPED,
    SELL_RETRY_ATTEMPTS,
)
from backend.exceptions import (
    BadRequestError,
    DatabaseError,
    InsufficientLotsError,
    LotSelectionError,
    UnsupportedAccountingMethodError,
)
from backend.models.transaction import Allocation, Lot, Transaction
from backend.schemas.transaction import (
    AccountingMethod,
    EncryptedEnvelope,
    ProcessResult,
    TransactionPayload,
    TxType,
)
from backend.services.encryption import DecryptionError, decrypt_string, derive_key
from backend.services.lot_selector import (
    AvailableLot,
    SaleResult,
    select_lots_for_sale,
)

logger = logging.getLogger(__name__)


@dataclass
class SessionContext:
    """
    What the processor needs to know about the caller. Built by the router
    from the login session, the user row and the passphrase header.
    """
    user_id: int
    passphrase: Optional[str] = None
    salt: Optional[str] = None
    accounting_method: AccountingMethod = AccountingMethod.HIFO


# ------------------------------------------------------------------------------
# Public Functions (retrieval)
# ------------------------------------------------------------------------------
def get_all_transactions(db: Session, user_id: int) -> List[Transaction]:
    """
    Return the user's Transactions, newest first.
    """
    return (
        db.query(Transaction)
        .filter(Transaction.user_id == user_id)
        .order_by(Transaction.timestamp.desc(), Transaction.id.desc())
        .all()
    )


def get_transaction_by_id(db: Session, user_id: int, transaction_id: int) -> Optional[Transaction]:
    """
    Retrieve a single Transaction owned by the user (None if not found).
    """
    return (
        db.query(Transaction)
        .filter(Transaction.id == transaction_id, Transaction.user_id == user_id)
        .first()
    )


def get_lots(db: Session, user_id: int, open_only: bool = False) -> List[Lot]:
    query = (
        db.query(Lot)
        .join(Transaction, Transaction.id == Lot.tx_id)
        .filter(Transaction.user_id == user_id)
    )
    if open_only:
        query = query.filter(Lot.remaining_qty > BTC_DUST)
    return query.order_by(Lot.opened_at.asc(), Lot.id.asc()).all()


def get_allocations_for_lot(db: Session, user_id: int, lot_id: int) -> Optional[List[Allocation]]:
    """
    Allocations drawn from one of the user's lots, oldest sell first.
    Returns None when the lot doesn't exist or belongs to someone else.
    """
    lot = (
        db.query(Lot)
        .join(Transaction, Transaction.id == Lot.tx_id)
        .filter(Lot.id == lot_id, Transaction.user_id == user_id)
        .first()
    )
    if lot is None:
        return None
    return (
        db.query(Allocation)
        .join(Transaction, Transaction.id == Allocation.tx_id)
        .filter(Allocation.lot_id == lot_id)
        .order_by(Transaction.timestamp.asc(), Allocation.id.asc())
        .all()
    )


# ------------------------------------------------------------------------------
# Validation helpers
# ------------------------------------------------------------------------------
def format_validation_error(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "body"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


def resolve_accounting_method(value) -> AccountingMethod:
    """
    Map a stored/requested method to the enum. None means the default (HIFO);
    anything else that isn't implemented fails loudly.
    """
    if value is None:
        return AccountingMethod.HIFO
    try:
        return AccountingMethod(value)
    except ValueError:
        raise UnsupportedAccountingMethodError(value)


def get_encryption_key(passphrase: Optional[str], salt: Optional[str]) -> bytes:
    if not passphrase or not salt:
        raise BadRequestError("Encryption key setup incomplete.")
    try:
        return derive_key(passphrase, salt)
    except ValueError as e:
        raise BadRequestError("Encryption salt is malformed.") from e


def decrypt_payload(encrypted_data: str, key: bytes) -> TransactionPayload:
    """
    Decrypt and validate one transaction payload. Every failure here is the
    client's data, so it surfaces as BadRequestError.
    """
    try:
        plaintext = decrypt_string(encrypted_data, key)
    except DecryptionError as e:
        logger.warning(f"Decryption failed: {e}")
        raise BadRequestError("Decryption failed. Invalid key or data?") from e

    try:
        raw = json.loads(plaintext)
    except json.JSONDecodeError as e:
        raise BadRequestError("Decrypted data is not valid JSON.") from e

    try:
        return TransactionPayload.model_validate(raw)
    except ValidationError as e:
        raise BadRequestError(
            f"Invalid transaction data after decryption: {format_validation_error(e)}"
        ) from e


# ------------------------------------------------------------------------------
# Processor
# ------------------------------------------------------------------------------
def process_transaction(db: Session, body, session: SessionContext) -> ProcessResult:
    """
    Process one encrypted transaction write end to end. See module docstring.

    Raises:
        BadRequestError: missing secrets, malformed envelope, decryption or
            validation failure, or a sale the open lots can't cover.
        DatabaseError: the Transaction row or lot effects could not be written.
        LotSelectionError: lot data is inconsistent (a defect, not client error).
    """
    # 1) Secrets
    key = get_encryption_key(session.passphrase, session.salt)
    method = resolve_accounting_method(session.accounting_method)

    # 2) Envelope
    try:
        envelope = body if isinstance(body, EncryptedEnvelope) else EncryptedEnvelope.model_validate(body)
    except ValidationError as e:
        raise BadRequestError(f"Invalid API data format: {format_validation_error(e)}") from e

    # 3) Decrypt + validate
    payload = decrypt_payload(envelope.encrypted_data, key)

    # 4) Persist the Transaction record
    tx = Transaction(
        user_id=session.user_id,
        timestamp=envelope.timestamp,
        type=payload.type.value,
        amount=payload.amount,
        price=payload.price,
        fee=payload.fee,
        wallet=payload.wallet,
        tags=payload.tags,
        notes=payload.notes,
        encrypted_data=envelope.encrypted_data,
        lot_status=LOT_STATUS_PENDING,
    )
    try:
        db.add(tx)
        db.commit()
        db.refresh(tx)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create Transaction record for user {session.user_id}: {e}")
        raise DatabaseError("Database error during transaction creation.") from e

    # 5) Lot logic
    try:
        status = apply_transaction_logic(db, session.user_id, tx, payload, method)
    except BadRequestError as e:
        mark_rejected(db, tx.id, str(e))
        raise
    except (LotSelectionError, DatabaseError) as e:
        logger.error(
            f"Transaction {tx.id} stored but lot processing failed "
            f"(left {LOT_STATUS_PENDING}): {e}"
        )
        raise

    # 6) Done
    logger.info(f"Processed transaction {tx.id} ({tx.type}), lot_status={status}")
    return ProcessResult(transaction_id=tx.id, lot_status=status)


def apply_transaction_logic(
    db: Session,
    user_id: int,
    tx: Transaction,
    payload: TransactionPayload,
    method: AccountingMethod = AccountingMethod.HIFO,
) -> str:
    """
    Apply the lot side effects of an already-persisted transaction and
    stamp its lot_status. Safe to call repeatedly for the same transaction.
    """
    if payload.type == TxType.BUY:
        create_lot_for_buy(db, tx, payload)
        return LOT_STATUS_APPLIED
    if payload.type == TxType.SELL:
        dispose_lots_for_sell(db, user_id, tx, payload, method)
        return LOT_STATUS_APPLIED

    _set_status(db, tx, LOT_STATUS_SKIPPED)
    return LOT_STATUS_SKIPPED


def create_lot_for_buy(db: Session, tx: Transaction, payload: TransactionPayload) -> Lot:
    """
    Open exactly one Lot for a buy. If the lot already exists (retry or
    re-invocation) it is returned unchanged.
    """
    try:
        existing = db.query(Lot).filter(Lot.tx_id == tx.id).first()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to look up Lot for transaction {tx.id}: {e}")
        raise DatabaseError(f"Failed to read lots for transaction {tx.id}.") from e
    if existing:
        logger.warning(f"Lot already exists for BUY transaction {tx.id}, skipping creation.")
        if tx.lot_status != LOT_STATUS_APPLIED:
            _set_status(db, tx, LOT_STATUS_APPLIED)
        return existing

    lot = Lot(
        tx_id=tx.id,
        opened_at=tx.timestamp,
        original_amount=payload.amount,
        remaining_qty=payload.amount,
        cost_basis_usd=payload.amount * payload.price,
        unit_cost_usd=payload.price,
    )
    try:
        db.add(lot)
        tx.lot_status = LOT_STATUS_APPLIED
        tx.lot_error = None
        db.commit()
        db.refresh(lot)
    except IntegrityError as e:
        # Another request created it between our check and insert.
        db.rollback()
        try:
            existing = db.query(Lot).filter(Lot.tx_id == tx.id).first()
        except SQLAlchemyError:
            db.rollback()
            existing = None
        if existing is None:
            logger.error(f"Failed to create Lot for transaction {tx.id}: {e}")
            raise DatabaseError(f"Failed to create lot for transaction {tx.id}.") from e
        _set_status(db, tx, LOT_STATUS_APPLIED)
        return existing
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create Lot for transaction {tx.id}: {e}")
        raise DatabaseError(f"Failed to create lot for transaction {tx.id}.") from e

    logger.info(f"Created Lot {lot.id} for BUY transaction {tx.id}: {lot.original_amount} BTC @ {lot.unit_cost_usd}")
    return lot


def dispose_lots_for_sell(
    db: Session,
    user_id: int,
    tx: Transaction,
    payload: TransactionPayload,
    method: AccountingMethod = AccountingMethod.HIFO,
) -> Optional[SaleResult]:
    """
    Select lots for a sell and persist the Allocations and Lot updates in
    one commit. Returns None when the sell was already processed.
    """
    try:
        already_applied = _has_allocations(db, tx.id)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to look up Allocations for tx {tx.id}: {e}")
        raise DatabaseError(f"Failed to read allocations for transaction {tx.id}.") from e
    if already_applied:
        logger.warning(f"Allocations already exist for SELL transaction {tx.id}, skipping processing.")
        if tx.lot_status != LOT_STATUS_APPLIED:
            _set_status(db, tx, LOT_STATUS_APPLIED)
        return None

    for attempt in range(1, SELL_RETRY_ATTEMPTS + 1):
        try:
            lots = _load_open_lots_for_update(db, user_id)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to load open lots for SELL transaction {tx.id}: {e}")
            raise DatabaseError(f"Failed to load open lots for transaction {tx.id}.") from e
        snapshot = [
            AvailableLot(
                id=lot.id,
                acquired_at=lot.opened_at,
                original_amount=lot.original_amount,
                remaining=lot.remaining_qty,
                unit_cost=lot.unit_cost_usd,
            )
            for lot in lots
        ]

        try:
            sale_result = select_lots_for_sale(
                snapshot,
                payload.amount,
                payload.price,
                tx.timestamp,
                method,
            )
        except InsufficientLotsError as e:
            db.rollback()
            logger.warning(f"Rejected SELL transaction {tx.id}: {e}")
            raise BadRequestError(
                f"Insufficient lots: need {_fmt_btc(e.needed)} more BTC "
                f"to sell {_fmt_btc(e.requested)} BTC."
            ) from e
        except LotSelectionError as e:
            db.rollback()
            logger.error(f"Lot selection failed for SELL transaction {tx.id}: {e}")
            raise

        try:
            _write_sale(db, tx, sale_result, {lot.id: lot for lot in lots})
            db.commit()
        except StaleDataError as e:
            db.rollback()
            logger.warning(
                f"Concurrent update on lots while applying SELL {tx.id} "
                f"(attempt {attempt}/{SELL_RETRY_ATTEMPTS}): {e}"
            )
            continue
        except IntegrityError as e:
            db.rollback()
            try:
                applied_elsewhere = _has_allocations(db, tx.id)
            except SQLAlchemyError:
                db.rollback()
                applied_elsewhere = False
            if applied_elsewhere:
                logger.warning(f"SELL transaction {tx.id} was applied concurrently, skipping.")
                _set_status(db, tx, LOT_STATUS_APPLIED)
                return None
            logger.error(f"Failed to save Allocations for tx {tx.id}: {e}")
            raise DatabaseError(f"Database update failed during allocation for tx {tx.id}.") from e
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to save Allocations/update Lots for tx {tx.id}: {e}")
            raise DatabaseError(f"Database update failed during allocation for tx {tx.id}.") from e

        logger.info(
            f"Created {len(sale_result.selected_lots)} Allocations for SELL transaction {tx.id}: "
            f"gain={sale_result.total_realized_gain}"
        )
        return sale_result

    raise DatabaseError(
        f"Lots kept changing while applying sell {tx.id}; gave up after {SELL_RETRY_ATTEMPTS} attempts."
    )


def _write_sale(db: Session, tx: Transaction, sale_result: SaleResult, lots_by_id: dict) -> None:
    """
    Stage one Allocation per consumed lot and update the lots. Lots that
    reach zero get the closing summary: proceeds and gain over the lot's
    whole life, and the term of the sale that closed it.
    """
    for sel in sale_result.selected_lots:
        lot = lots_by_id.get(sel.lot_id)
        if lot is None:
            raise LotSelectionError(f"Selected lot {sel.lot_id} is not in the loaded snapshot.")

        db.add(Allocation(
            tx_id=tx.id,
            lot_id=lot.id,
            qty=sel.qty,
            cost_usd=sel.cost_basis,
            proceeds_usd=sel.proceeds,
            gain_usd=sel.gain,
            term=sel.term,
        ))

        lot.remaining_qty = sel.remaining_after
        if sel.closes_lot:
            prior_proceeds, prior_gain = (
                db.query(
                    func.coalesce(func.sum(Allocation.proceeds_usd), 0),
                    func.coalesce(func.sum(Allocation.gain_usd), 0),
                )
                .filter(Allocation.lot_id == lot.id, Allocation.tx_id != tx.id)
                .one()
            )
            lot.closed_at = tx.timestamp
            lot.proceeds_usd = Decimal(str(prior_proceeds)) + sel.proceeds
            lot.gain_usd = Decimal(str(prior_gain)) + sel.gain
            lot.term = sel.term

    tx.lot_status = LOT_STATUS_APPLIED
    tx.lot_error = None
    db.flush()


def _load_open_lots_for_update(db: Session, user_id: int) -> List[Lot]:
    """
    The user's open lots, oldest first, row-locked for the rest of the
    DB transaction on backends that support it (no-op on SQLite).
    """
    return (
        db.query(Lot)
        .join(Transaction, Transaction.id == Lot.tx_id)
        .filter(Transaction.user_id == user_id, Lot.remaining_qty > BTC_DUST)
        .order_by(Lot.opened_at.asc(), Lot.id.asc())
        .with_for_update(of=Lot)
        .populate_existing()
        .all()
    )


def _fmt_btc(value: Decimal) -> str:
    return f"{value.normalize():f}"


def _has_allocations(db: Session, tx_id: int) -> bool:
    return db.query(Allocation.id).filter(Allocation.tx_id == tx_id).first() is not None


def _set_status(db: Session, tx: Transaction, status: str, error: Optional[str] = None) -> None:
    try:
        tx.lot_status = status
        tx.lot_error = error
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to update lot_status of transaction {tx.id} to {status}: {e}")
        raise DatabaseError(f"Failed to update transaction {tx.id}.") from e


def mark_rejected(db: Session, tx_id: int, message: str) -> None:
    """
    Record that lot logic refused this transaction. Best effort: the caller
    is already propagating the original error.
    """
    try:
        tx = db.get(Transaction, tx_id)
        if tx is None:
            return
        _set_status(db, tx, LOT_STATUS_REJECTED, message)
    except SQLAlchemyError:
        db.rollback()
        logger.error(f"Could not load transaction {tx_id} to mark it rejected.")
    except DatabaseError:
        logger.error(f"Could not mark transaction {tx_id} as rejected.")


# ------------------------------------------------------------------------------
# Administrative
# ------------------------------------------------------------------------------
def clear_all(db: Session, user_id: int) -> int:
    """
    Delete every Allocation, Lot and Transaction of the user in one DB
    transaction. Returns how many transactions were deleted.
    """
    user_tx_ids = select(Transaction.id).where(Transaction.user_id == user_id)
    user_lot_ids = select(Lot.id).where(Lot.tx_id.in_(user_tx_ids))
    try:
        db.query(Allocation).filter(
            or_(Allocation.tx_id.in_(user_tx_ids), Allocation.lot_id.in_(user_lot_ids))
        ).delete(synchronize_session=False)
        db.query(Lot).filter(Lot.tx_id.in_(user_tx_ids)).delete(synchronize_session=False)
        deleted = (
            db.query(Transaction)
            .filter(Transaction.user_id == user_id)
            .delete(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error clearing all transactions for user {user_id}: {e}")
        raise DatabaseError("Failed to clear all transactions.") from e

    db.expire_all()
    logger.info(f"Cleared {deleted} transactions and related data for user {user_id}")
    return deleted
