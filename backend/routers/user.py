# FILE: backend/routers/user.py

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from backend.database import get_db
from backend.models.user import User
from backend.routers.deps import get_current_user
from backend.schemas.user import AccountingMethodUpdate, SaltUpdate, UserCreate, UserRead
from backend.services.user import create_user, set_accounting_method, set_encryption_salt

# main.py sets the "/api/users" prefix
router = APIRouter(tags=["users"])


@router.post("/register", response_model=UserRead)
def register_user(user: UserCreate, db: Session = Depends(get_db)):
    """
    Register a new user: POST /api/users/register

    The password is hashed with bcrypt and a random encryption salt is
    generated; the client derives its payload key from that salt and its
    passphrase. Duplicate usernames get 400.
    """
    return create_user(user, db)


@router.get("/me", response_model=UserRead)
def read_current_user(user: User = Depends(get_current_user)):
    return user


@router.post("/salt", response_model=UserRead)
def update_salt(
    body: SaltUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Replace the encryption salt: POST /api/users/salt

    Transactions encrypted under the previous salt can't be reconciled
    afterwards, so clients should only do this before importing data.
    """
    return set_encryption_salt(user, body.salt, db)


@router.patch("/me/accounting-method", response_model=UserRead)
def update_accounting_method(
    body: AccountingMethodUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return set_accounting_method(user, body.method, db)
