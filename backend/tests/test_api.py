"""
HTTP tests through FastAPI's TestClient: auth, the transaction endpoints,
lots, portfolio, reports and price, plus the error-to-status mapping.
"""

import json
from datetime import datetime, timezone
from decimal import Decimal

from backend.main import app
from backend.services.encryption import encrypt_string


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def D(value):
    return Decimal(str(value))


def post_tx(client, envelope, *args):
    return client.post("/api/transactions/", json=envelope(*args))


# ---------------------------------------------------------------------------
# Users and sessions
# ---------------------------------------------------------------------------
def test_register_login_and_me(client):
    r = client.post("/api/users/register", json={"username": "alice", "password": "pw"})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["accounting_method"] == "HIFO"
    assert len(body["encryption_salt"]) == 32
    assert "password_hash" not in body

    assert client.get("/api/users/me").status_code == 401
    assert client.post("/api/login", json={"username": "alice", "password": "nope"}).status_code == 401
    assert client.post("/api/login", json={"username": "alice", "password": "pw"}).status_code == 200

    me = client.get("/api/users/me").json()
    assert me["username"] == "alice"

    client.post("/api/logout")
    assert client.get("/api/users/me").status_code == 401


def test_duplicate_username(client, user):
    r = client.post("/api/users/register", json={"username": user.username, "password": "pw"})
    assert r.status_code == 400
    assert r.json()["detail"] == "Username already registered"


def test_salt_and_accounting_method_settings(auth_client):
    r = auth_client.post("/api/users/salt", json={"salt": "AB" * 16})
    assert r.status_code == 200
    assert r.json()["encryption_salt"] == "ab" * 16

    assert auth_client.post("/api/users/salt", json={"salt": "zz" * 16}).status_code == 422

    r = auth_client.patch("/api/users/me/accounting-method", json={"method": "HIFO"})
    assert r.status_code == 200
    r = auth_client.patch("/api/users/me/accounting-method", json={"method": "FIFO"})
    assert r.status_code == 422


def test_endpoints_require_login(client):
    assert client.get("/api/transactions/").status_code == 401
    assert client.get("/api/lots").status_code == 401
    assert client.get("/api/reports/tax/2024?current_price=1").status_code == 401


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------
def test_create_list_and_get_transactions(auth_client, envelope):
    r = post_tx(auth_client, envelope, "buy", utc(2023, 1, 1), "1", "20000")
    assert r.status_code == 200, r.text
    assert r.json()["lot_status"] == "applied"
    tx_id = r.json()["transaction_id"]

    listed = auth_client.get("/api/transactions/").json()
    assert [t["id"] for t in listed] == [tx_id]
    assert listed[0]["type"] == "buy"

    one = auth_client.get(f"/api/transactions/{tx_id}")
    assert one.status_code == 200
    assert D(one.json()["price"]) == Decimal("20000")
    assert auth_client.get("/api/transactions/999999").status_code == 404


def test_missing_passphrase_header_is_400(auth_client, envelope):
    r = auth_client.post(
        "/api/transactions/",
        json=envelope("buy", utc(2023, 1, 1), "1", "1"),
        headers={"X-Encryption-Passphrase": ""},
    )
    assert r.status_code == 400
    assert r.json()["detail"] == "Encryption key setup incomplete."


def test_undecryptable_payload_is_400(auth_client):
    body = {"timestamp": "2023-01-01T00:00:00Z", "encrypted_data": encrypt_string("{}", b"\x00" * 32)}
    r = auth_client.post("/api/transactions/", json=body)
    assert r.status_code == 400
    assert "Decryption failed" in r.json()["detail"]


def test_insufficient_lots_is_400_and_recorded(auth_client, envelope):
    post_tx(auth_client, envelope, "buy", utc(2023, 1, 1), "1", "100")
    r = post_tx(auth_client, envelope, "sell", utc(2023, 2, 1), "1.5", "200")
    assert r.status_code == 400
    assert "need 0.5 more BTC" in r.json()["detail"]

    sells = [t for t in auth_client.get("/api/transactions/").json() if t["type"] == "sell"]
    assert sells[0]["lot_status"] == "rejected"


def test_database_errors_become_503(auth_client, envelope, monkeypatch):
    from backend.exceptions import DatabaseError
    from backend.services import transaction as tx_service

    def broken(*args, **kwargs):
        raise DatabaseError("connection reset")

    monkeypatch.setattr(tx_service, "get_all_transactions", broken)
    r = auth_client.get("/api/transactions/")
    assert r.status_code == 503
    assert "connection reset" not in r.json()["detail"]


def test_bulk_import_and_reconcile(auth_client, key):
    def row(tx_type, ts, amount, price):
        payload = {"type": tx_type, "timestamp": ts, "amount": amount, "price": price}
        return {
            "timestamp": ts,
            "encrypted_data": encrypt_string(json.dumps(payload), key),
            "type": tx_type,
            "amount": amount,
            "price": price,
        }

    r = auth_client.post("/api/transactions/bulk", json={"rows": [
        row("buy", "2023-01-01T00:00:00Z", "1", "100"),
        row("sell", "2023-02-01T00:00:00Z", "2", "200"),
    ]})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["imported"] == 2
    assert body["result"]["processed"] == 1
    assert body["result"]["errors"][0]["tx_id"] == body["tx_ids"][1]

    again = auth_client.post("/api/transactions/reconcile", json={"tx_ids": body["tx_ids"]})
    assert again.status_code == 200
    assert again.json()["processed"] == 1
    assert len(again.json()["errors"]) == 1


def test_clear_all(auth_client, envelope):
    post_tx(auth_client, envelope, "buy", utc(2023, 1, 1), "1", "100")
    post_tx(auth_client, envelope, "sell", utc(2023, 2, 1), "0.5", "200")

    r = auth_client.delete("/api/transactions/clear_all")
    assert r.status_code == 200
    assert r.json() == {"deleted_count": 2}
    assert auth_client.get("/api/transactions/").json() == []
    assert auth_client.get("/api/lots").json() == []


# ---------------------------------------------------------------------------
# Lots, portfolio, reports, price
# ---------------------------------------------------------------------------
def test_lots_allocations_and_portfolio(auth_client, envelope):
    post_tx(auth_client, envelope, "buy", utc(2023, 1, 1), "1", "20000")
    post_tx(auth_client, envelope, "buy", utc(2023, 6, 1), "1", "50000")
    post_tx(auth_client, envelope, "sell", utc(2024, 2, 1), "1.2", "60000")

    lots = auth_client.get("/api/lots").json()
    assert len(lots) == 2
    open_lots = auth_client.get("/api/lots", params={"open_only": True}).json()
    assert len(open_lots) == 1
    assert D(open_lots[0]["remaining_qty"]) == Decimal("0.8")

    closed = next(l for l in lots if D(l["remaining_qty"]) == 0)
    allocations = auth_client.get(f"/api/lots/{closed['id']}/allocations").json()
    assert len(allocations) == 1
    assert D(allocations[0]["gain_usd"]) == Decimal("10000")
    assert auth_client.get("/api/lots/999999/allocations").status_code == 404

    summary = auth_client.get("/api/portfolio/summary", params={"current_price": "30000"}).json()
    assert D(summary["total_btc"]) == Decimal("0.8")
    assert D(summary["cost_basis"]) == Decimal("16000")
    assert D(summary["current_value"]) == Decimal("24000")
    assert D(summary["unrealized_pnl"]) == Decimal("8000")
    assert D(summary["percentage_return"]) == Decimal("50")


def test_tax_report_endpoint(auth_client, envelope):
    post_tx(auth_client, envelope, "buy", utc(2023, 1, 1), "1", "20000")
    post_tx(auth_client, envelope, "buy", utc(2023, 6, 1), "1", "50000")
    post_tx(auth_client, envelope, "sell", utc(2024, 2, 1), "1.2", "60000")

    r = auth_client.get("/api/reports/tax/2024", params={"current_price": "60000", "method": "HIFO"})
    assert r.status_code == 200, r.text
    report = r.json()
    assert D(report["realized_gain_st"]) == Decimal("10000")
    assert D(report["realized_gain_lt"]) == Decimal("8000")
    assert D(report["total_realized_gain"]) == Decimal("18000")
    assert report["details"][0]["term"] == "Mixed"

    assert auth_client.get("/api/reports/tax/2024", params={"current_price": "-1"}).status_code == 400
    assert auth_client.get("/api/reports/tax/2024", params={"method": "FIFO", "current_price": "1"}).status_code == 422


def test_tax_report_failure_is_generic_500(auth_client, test_db, user):
    from backend.models.transaction import Transaction

    # A pending sell that no lot can cover breaks the history replay.
    sell = Transaction(
        user_id=user.id,
        timestamp=utc(2024, 2, 1),
        type="sell",
        amount=Decimal("2"),
        price=Decimal("60000"),
        encrypted_data="opaque",
        lot_status="pending",
    )
    test_db.add(sell)
    test_db.commit()

    r = auth_client.get("/api/reports/tax/2024", params={"current_price": "60000"})
    assert r.status_code == 500
    assert r.json()["detail"] == "Tax report generation failed."
    assert str(sell.id) not in r.json()["detail"]


def test_tax_report_uses_cached_price_when_none_given(auth_client, envelope):
    post_tx(auth_client, envelope, "buy", utc(2023, 1, 1), "1", "20000")
    app.state.price_cache.set(Decimal("25000"))

    report = auth_client.get("/api/reports/tax/2023").json()
    assert D(report["current_price"]) == Decimal("25000")
    assert D(report["total_unrealized_gain"]) == Decimal("5000")


def test_bitcoin_price_endpoint(client, monkeypatch):
    from backend.services import bitcoin

    async def all_down(*args, **kwargs):
        raise bitcoin.PriceUnavailableError("All price sources failed.")

    monkeypatch.setattr(bitcoin, "fetch_spot_price", all_down)
    r = client.get("/api/bitcoin/price")
    assert r.status_code == 502
    assert r.json()["detail"] == "All price sources failed."

    app.state.price_cache.set(Decimal("65000"))
    r = client.get("/api/bitcoin/price")
    assert r.status_code == 200
    assert D(r.json()["USD"]) == Decimal("65000")
