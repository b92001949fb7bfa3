"""
Shared pytest fixtures for the Sats Ledger test suite.

Every test gets its own temporary SQLite database, so tests never touch the
production database and never see each other's rows. The FastAPI app is
pointed at the same database through a get_db override.
"""

import json
import os
import tempfile

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from backend.database import Base, get_db
from backend.main import app
from backend.models.user import User
from backend.services.bitcoin import PriceCache
from backend.services.encryption import derive_key, encrypt_string, generate_salt
from backend.services.transaction import SessionContext

LOGIN_CREDS = {"username": "satoshi", "password": "password"}
PASSPHRASE = "correct horse battery staple"


@pytest.fixture
def test_engine():
    """Create a temporary SQLite database for one test."""
    tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False)
    tmp.close()
    engine = create_engine(
        f"sqlite:///{tmp.name}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()
    os.unlink(tmp.name)


@pytest.fixture
def session_factory(test_engine):
    return sessionmaker(bind=test_engine, autocommit=False, autoflush=False)


@pytest.fixture
def test_db(session_factory):
    """Direct SQLAlchemy session for tests that call services."""
    db = session_factory()
    yield db
    db.close()


@pytest.fixture
def user(test_db):
    """Seeded user with a known password and a fresh encryption salt."""
    u = User(username=LOGIN_CREDS["username"], encryption_salt=generate_salt())
    u.set_password(LOGIN_CREDS["password"])
    test_db.add(u)
    test_db.commit()
    test_db.refresh(u)
    return u


@pytest.fixture
def key(user):
    return derive_key(PASSPHRASE, user.encryption_salt)


@pytest.fixture
def session_ctx(user):
    return SessionContext(user_id=user.id, passphrase=PASSPHRASE, salt=user.encryption_salt)


def make_payload(tx_type, timestamp, amount, price, **extra):
    payload = {
        "type": tx_type,
        "timestamp": timestamp.isoformat(),
        "amount": str(amount),
        "price": str(price),
    }
    payload.update(extra)
    return payload


@pytest.fixture
def envelope(key):
    """
    Build an encrypted envelope the way a client would:
        envelope("buy", datetime(...), "1", "20000")
    """
    def _build(tx_type, timestamp, amount, price, **extra):
        payload = make_payload(tx_type, timestamp, amount, price, **extra)
        return {
            "timestamp": timestamp.isoformat(),
            "encrypted_data": encrypt_string(json.dumps(payload), key),
        }
    return _build


@pytest.fixture
def client(session_factory):
    """Unauthenticated TestClient using the per-test database."""
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.state.price_cache = PriceCache(ttl_seconds=60)
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_client(client, user):
    """TestClient logged in as the seeded user, sending the passphrase header."""
    r = client.post("/api/login", json=LOGIN_CREDS)
    assert r.status_code == 200, f"TestClient login failed: {r.status_code} {r.text}"
    client.headers.update({"X-Encryption-Passphrase": PASSPHRASE})
    return client
