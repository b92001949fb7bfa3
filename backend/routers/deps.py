"""
backend/routers/deps.py

Shared FastAPI dependencies: the logged-in user (session cookie) and the
SessionContext the Transaction Processor needs.
"""

from decimal import Decimal
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from backend.constants import PASSPHRASE_HEADER
from backend.database import get_db
from backend.models.user import User
from backend.services.bitcoin import get_current_price
from backend.services.transaction import SessionContext


def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
    """
    Looks up 'user_id' in request.session. Missing or stale sessions get 401.
    """
    user_id = request.session.get("user_id")
    if not user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    user = db.get(User, user_id)
    if user is None:
        request.session.clear()
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user


def get_passphrase(
    passphrase: Optional[str] = Header(default=None, alias=PASSPHRASE_HEADER),
) -> Optional[str]:
    return passphrase or None


def get_session_context(
    user: User = Depends(get_current_user),
    passphrase: Optional[str] = Depends(get_passphrase),
) -> SessionContext:
    return SessionContext(
        user_id=user.id,
        passphrase=passphrase,
        salt=user.encryption_salt,
        accounting_method=user.accounting_method,
    )


async def resolve_current_price(request: Request, current_price: Optional[Decimal]) -> Decimal:
    """
    Use the caller's price when given, else the app's cached spot price.
    """
    if current_price is not None:
        return current_price
    return await get_current_price(request.app.state.price_cache)
