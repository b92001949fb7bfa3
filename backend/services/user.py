"""
backend/services/user.py

User-level operations: registration, lookup, and the two settings the lot
engine reads from the user row (encryption salt, accounting method).
No lot or transaction logic lives here.
"""

import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from backend.exceptions import BadRequestError, DatabaseError
from backend.models.user import User
from backend.schemas.transaction import AccountingMethod
from backend.schemas.user import UserCreate
from backend.services.encryption import generate_salt

logger = logging.getLogger(__name__)


def get_user_by_username(username: str, db: Session) -> User | None:
    """
    Return a User by username, or None if not found.
    """
    return db.query(User).filter(User.username == username).first()


def create_user(user_data: UserCreate, db: Session) -> User:
    """
    Create a new User with a bcrypt password hash and a fresh encryption
    salt. Raises BadRequestError if the username is taken.
    """
    if get_user_by_username(user_data.username, db):
        raise BadRequestError("Username already registered")

    new_user = User(
        username=user_data.username,
        encryption_salt=generate_salt(),
        accounting_method=AccountingMethod.HIFO.value,
    )
    try:
        new_user.set_password(user_data.password)
    except ValueError as e:
        raise BadRequestError(str(e)) from e

    try:
        db.add(new_user)
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise BadRequestError("Username already registered") from e
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create user {user_data.username}: {e}")
        raise DatabaseError("Unable to create user") from e

    db.refresh(new_user)
    logger.info(f"Registered user {new_user.id} ({new_user.username})")
    return new_user


def _save(user: User, db: Session, what: str) -> User:
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to update {what} of user {user.id}: {e}")
        raise DatabaseError(f"Unable to update {what}") from e
    db.refresh(user)
    return user


def set_encryption_salt(user: User, salt: str, db: Session) -> User:
    """
    Replace the user's key-derivation salt. Payloads encrypted under the old
    salt can no longer be decrypted by the server afterwards.
    """
    user.encryption_salt = salt
    return _save(user, db, "encryption salt")


def set_accounting_method(user: User, method: AccountingMethod, db: Session) -> User:
    user.accounting_method = AccountingMethod(method).value
    return _save(user, db, "accounting method")
