"""
backend/routers/transaction.py

Router for Transaction endpoints. Bodies are encrypted envelopes; the
passphrase travels in the X-Encryption-Passphrase header and the salt is
read from the user row. All lot accounting is delegated to the services:

 - POST   /                -> process one encrypted transaction
 - GET    /                -> list the user's transactions (newest first)
 - GET    /{id}            -> one transaction
 - POST   /bulk            -> import encrypted rows, then reconcile them
 - POST   /reconcile       -> (re)apply lot logic to stored transactions
 - DELETE /clear_all       -> delete the user's transactions, lots, allocations

Service errors (BadRequestError, DatabaseError, ...) are turned into HTTP
responses by the exception handlers registered in main.py.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from backend.database import get_db
from backend.models.user import User
from backend.routers.deps import get_current_user, get_passphrase, get_session_context
from backend.schemas.transaction import (
    BulkImportRequest,
    BulkImportResponse,
    BulkResult,
    ClearAllResponse,
    EncryptedEnvelope,
    ProcessResult,
    ReconcileRequest,
    TransactionRead,
)
from backend.services import transaction as tx_service
from backend.services.reconcile import import_encrypted_rows, reconcile_many
from backend.services.transaction import SessionContext

router = APIRouter(tags=["transactions"])


@router.post("/", response_model=ProcessResult)
def create_transaction(
    body: EncryptedEnvelope,
    session: SessionContext = Depends(get_session_context),
    db: Session = Depends(get_db),
):
    """
    Store one encrypted transaction and apply its lot effects.
    A sell the open lots can't cover is stored as 'rejected' and answered with 400.
    """
    return tx_service.process_transaction(db, body, session)


@router.get("/", response_model=List[TransactionRead])
def list_transactions(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return tx_service.get_all_transactions(db, user.id)


@router.post("/bulk", response_model=BulkImportResponse)
def bulk_import(
    body: BulkImportRequest,
    user: User = Depends(get_current_user),
    passphrase: Optional[str] = Depends(get_passphrase),
    db: Session = Depends(get_db),
):
    """
    Insert all rows in one DB transaction, then reconcile them one by one.
    Rows that fail reconciliation stay stored; see result.errors.
    """
    tx_ids = import_encrypted_rows(db, user.id, body.rows)
    result = reconcile_many(db, user.id, tx_ids, passphrase, user.encryption_salt)
    return BulkImportResponse(imported=len(tx_ids), tx_ids=tx_ids, result=result)


@router.post("/reconcile", response_model=BulkResult)
def reconcile_transactions(
    body: ReconcileRequest,
    user: User = Depends(get_current_user),
    passphrase: Optional[str] = Depends(get_passphrase),
    db: Session = Depends(get_db),
):
    return reconcile_many(db, user.id, body.tx_ids, passphrase, user.encryption_salt)


@router.delete("/clear_all", response_model=ClearAllResponse)
def clear_all_transactions(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """
    Delete every Transaction of the user, cascading to their Lots and Allocations.
    """
    deleted_count = tx_service.clear_all(db, user.id)
    return ClearAllResponse(deleted_count=deleted_count)


@router.get("/{transaction_id}", response_model=TransactionRead)
def get_transaction(
    transaction_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    tx = tx_service.get_transaction_by_id(db, user.id, transaction_id)
    if not tx:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return tx
