"""
Tax Report Generator tests. Transactions are inserted directly: the report
replays history and never reads the persisted lots.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from backend.exceptions import BadRequestError, ReportGenerationError
from backend.models.transaction import Transaction
from backend.services.tax_report import generate_tax_report


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def add_tx(db, user, tx_type, ts, amount, price, status="applied"):
    tx = Transaction(
        user_id=user.id,
        timestamp=ts,
        type=tx_type,
        amount=Decimal(amount),
        price=Decimal(price),
        encrypted_data="opaque",
        lot_status=status,
    )
    db.add(tx)
    db.commit()
    return tx.id


@pytest.fixture
def example_history(test_db, user):
    return {
        "cheap": add_tx(test_db, user, "buy", utc(2023, 1, 1), "1", "20000"),
        "dear": add_tx(test_db, user, "buy", utc(2023, 6, 1), "1", "50000"),
        "sell": add_tx(test_db, user, "sell", utc(2024, 2, 1), "1.2", "60000"),
    }


def test_end_to_end_example(test_db, user, example_history):
    report = generate_tax_report(test_db, user.id, 2024, Decimal("60000"))

    assert report.realized_gain_st == Decimal("10000")
    assert report.realized_gain_lt == Decimal("8000")
    assert report.total_realized_gain == Decimal("18000")

    (sale,) = report.details
    assert sale.sale_tx_id == example_history["sell"]
    assert sale.asset == "BTC"
    assert sale.amount_sold == Decimal("1.2")
    assert sale.proceeds == Decimal("72000")
    assert sale.cost_basis == Decimal("54000")
    assert sale.term == "Mixed"
    assert [c.lot_tx_id for c in sale.contributing_lots] == [example_history["dear"], example_history["cheap"]]
    assert [c.term for c in sale.contributing_lots] == ["Short", "Long"]

    (open_lot,) = report.open_lots
    assert open_lot.lot_tx_id == example_history["cheap"]
    assert open_lot.remaining == Decimal("0.8")
    assert open_lot.unit_cost == Decimal("20000")
    assert report.total_unrealized_gain == Decimal("32000")


def test_year_without_sales_still_values_open_lots(test_db, user, example_history):
    report = generate_tax_report(test_db, user.id, 2023, Decimal("10000"))

    assert report.details == []
    assert report.total_realized_gain == Decimal("0")
    assert len(report.open_lots) == 2
    # (10000 - 20000) * 1 + (10000 - 50000) * 1
    assert report.total_unrealized_gain == Decimal("-50000")


def test_prior_year_sales_consume_lots_but_are_not_reported(test_db, user):
    add_tx(test_db, user, "buy", utc(2022, 1, 1), "1", "100")
    add_tx(test_db, user, "buy", utc(2022, 2, 1), "1", "300")
    add_tx(test_db, user, "sell", utc(2022, 6, 1), "1", "400")
    sell_2023 = add_tx(test_db, user, "sell", utc(2023, 3, 1), "0.5", "400")

    report = generate_tax_report(test_db, user.id, 2023, Decimal("400"))

    (sale,) = report.details
    assert sale.sale_tx_id == sell_2023
    # the 300 lot went in 2022, so 2023 draws from the 100 lot, held > 1 year
    assert sale.cost_basis == Decimal("50")
    assert sale.gain == Decimal("150")
    assert sale.term == "Long"
    assert report.realized_gain_lt == Decimal("150")
    assert report.realized_gain_st == Decimal("0")


def test_later_transactions_are_ignored(test_db, user, example_history):
    add_tx(test_db, user, "sell", utc(2025, 1, 1), "0.8", "90000")
    report = generate_tax_report(test_db, user.id, 2024, Decimal("60000"))
    assert report.open_lots[0].remaining == Decimal("0.8")


def test_report_is_reproducible(test_db, user, example_history):
    a = generate_tax_report(test_db, user.id, 2024, Decimal("61234.56"))
    b = generate_tax_report(test_db, user.id, 2024, Decimal("61234.56"))
    assert a == b


def test_rejected_transactions_are_not_replayed(test_db, user, example_history):
    add_tx(test_db, user, "sell", utc(2024, 3, 1), "100", "1", status="rejected")
    report = generate_tax_report(test_db, user.id, 2024, Decimal("60000"))
    assert len(report.details) == 1


def test_uncoverable_sale_fails_the_whole_report(test_db, user, example_history):
    add_tx(test_db, user, "sell", utc(2024, 3, 1), "5", "60000", status="pending")
    with pytest.raises(ReportGenerationError):
        generate_tax_report(test_db, user.id, 2024, Decimal("60000"))


def test_negative_price_rejected(test_db, user):
    with pytest.raises(BadRequestError):
        generate_tax_report(test_db, user.id, 2024, Decimal("-1"))


def test_other_users_history_is_invisible(test_db, user, example_history):
    from backend.models.user import User

    other = User(username="hal", encryption_salt="00" * 16)
    other.set_password("pw")
    test_db.add(other)
    test_db.commit()

    report = generate_tax_report(test_db, other.id, 2024, Decimal("60000"))
    assert report.details == []
    assert report.open_lots == []
