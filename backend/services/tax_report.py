"""
backend/services/tax_report.py

Tax Report Generator. Rebuilds lot inventory from scratch by replaying the
user's buys and sells in time order, then reports the gains realized in one
calendar year and the unrealized gain of what's still held.

The replay ignores the persisted Lot/Allocation tables on purpose: a report
must be reproducible from the transaction history alone, and sales in
earlier years have to consume lots before the report year is reached.

Steps:
  1) Load transactions with timestamp < Jan 1 of year+1 (UTC), by time then id.
  2) Buy  -> simulated lot keyed by the buy's transaction id.
     Sell -> lot selector on a snapshot of the simulated lots; apply the
     consumption and drop depleted lots.
  3) Sells dated inside the year go into the totals and the details.
  4) Whatever is left open is valued at current_price.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_DOWN
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.constants import (
    ASSET_BTC,
    BTC_DUST,
    LOT_STATUS_REJECTED,
    TERM_LONG,
    USD_QUANT,
)
from backend.exceptions import (
    BadRequestError,
    DatabaseError,
    LotSelectionError,
    ReportGenerationError,
)
from backend.models.transaction import Transaction
from backend.schemas.tax import ContributingLot, OpenLotSummary, SaleDetail, TaxReport
from backend.schemas.transaction import AccountingMethod, TxType
from backend.services.lot_selector import AvailableLot, SaleResult, select_lots_for_sale
from backend.services.transaction import resolve_accounting_method

logger = logging.getLogger(__name__)


@dataclass
class _ReplayLot:
    id: int
    acquired_at: datetime
    original_amount: Decimal
    remaining: Decimal
    unit_cost: Decimal

    def snapshot(self) -> AvailableLot:
        return AvailableLot(
            id=self.id,
            acquired_at=self.acquired_at,
            original_amount=self.original_amount,
            remaining=self.remaining,
            unit_cost=self.unit_cost,
        )


def _year_bounds(year: int):
    start = datetime(year, 1, 1, tzinfo=timezone.utc)
    end = datetime(year + 1, 1, 1, tzinfo=timezone.utc)
    return start, end


def _load_history(db: Session, user_id: int, end: datetime) -> List[Transaction]:
    """
    Buys and sells up to (not including) end. Rejected rows never touched
    inventory, so they are left out of the replay too.
    """
    try:
        return (
            db.query(Transaction)
            .filter(
                Transaction.user_id == user_id,
                Transaction.timestamp < end,
                Transaction.type.in_([TxType.BUY.value, TxType.SELL.value]),
                Transaction.lot_status != LOT_STATUS_REJECTED,
            )
            .order_by(Transaction.timestamp.asc(), Transaction.id.asc())
            .all()
        )
    except SQLAlchemyError as e:
        logger.error(f"Failed to load transactions for tax report of user {user_id}: {e}")
        raise DatabaseError("Database error while loading transactions.") from e


def _sale_detail(tx: Transaction, sale: SaleResult) -> SaleDetail:
    return SaleDetail(
        sale_tx_id=tx.id,
        sale_date=tx.timestamp,
        asset=ASSET_BTC,
        amount_sold=tx.amount,
        proceeds=sale.total_proceeds,
        cost_basis=sale.total_cost_basis,
        gain=sale.total_realized_gain,
        term=sale.term,
        contributing_lots=[
            ContributingLot(
                lot_tx_id=sel.lot_id,
                lot_opened_at=sel.acquired_at,
                qty_used=sel.qty,
                cost_basis_per_unit=sel.unit_cost,
                cost_basis=sel.cost_basis,
                proceeds=sel.proceeds,
                gain=sel.gain,
                term=sel.term,
            )
            for sel in sale.selected_lots
        ],
    )


def generate_tax_report(
    db: Session,
    user_id: int,
    year: int,
    current_price: Decimal,
    method: Optional[AccountingMethod] = AccountingMethod.HIFO,
) -> TaxReport:
    """
    Build the report for one calendar year.

    Raises:
        BadRequestError: negative current_price or unsupported method.
        ReportGenerationError: a historical sale could not be matched to lots;
            no partial report is returned.
        DatabaseError: the history could not be read.
    """
    current_price = Decimal(str(current_price))
    if current_price < 0:
        raise BadRequestError("Current price cannot be negative.")
    method = resolve_accounting_method(method)

    start, end = _year_bounds(year)
    history = _load_history(db, user_id, end)

    lots: Dict[int, _ReplayLot] = {}
    report = TaxReport(year=year, method=method, current_price=current_price)

    for tx in history:
        if tx.type == TxType.BUY.value:
            lots[tx.id] = _ReplayLot(
                id=tx.id,
                acquired_at=tx.timestamp,
                original_amount=tx.amount,
                remaining=tx.amount,
                unit_cost=tx.price,
            )
            continue

        # insertion order == acquisition order, which the selector uses for ties
        snapshot = [lot.snapshot() for lot in lots.values()]
        try:
            sale = select_lots_for_sale(snapshot, tx.amount, tx.price, tx.timestamp, method)
        except LotSelectionError as e:
            logger.error(f"Tax report replay failed at sale {tx.id} for user {user_id}: {e}")
            raise ReportGenerationError(f"Failed to process sale {tx.id} during replay: {e}") from e

        for sel in sale.selected_lots:
            lot = lots[sel.lot_id]
            lot.remaining = sel.remaining_after
            if lot.remaining <= BTC_DUST:
                del lots[sel.lot_id]

        if start <= tx.timestamp < end:
            report.details.append(_sale_detail(tx, sale))
            for sel in sale.selected_lots:
                if sel.term == TERM_LONG:
                    report.realized_gain_lt += sel.gain
                else:
                    report.realized_gain_st += sel.gain

    report.total_realized_gain = report.realized_gain_st + report.realized_gain_lt

    for lot in lots.values():
        unrealized = ((current_price - lot.unit_cost) * lot.remaining).quantize(
            USD_QUANT, rounding=ROUND_HALF_DOWN
        )
        report.open_lots.append(OpenLotSummary(
            lot_tx_id=lot.id,
            acquired_at=lot.acquired_at,
            remaining=lot.remaining,
            unit_cost=lot.unit_cost,
            unrealized_gain=unrealized,
        ))
        report.total_unrealized_gain += unrealized

    logger.info(
        f"Tax report {year} for user {user_id}: {len(report.details)} sales, "
        f"realized={report.total_realized_gain}, unrealized={report.total_unrealized_gain}"
    )
    return report
