"""
backend/services/lot_selector.py

Pure lot selection for a single sale. Given a snapshot of open lots, decide
which lots a sale consumes, in what order, and what each slice costs,
earns and gains. No database access and no mutation of the snapshot: the
Transaction Processor persists the result, the Tax Report Generator replays
it in memory.

HIFO (highest unit cost first) is the only method. Lots with equal unit cost
keep their input order, so callers control tie-breaks by how they order
the snapshot (the processor passes lots oldest-first).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_DOWN
from typing import Callable, Dict, List, Sequence

from backend.constants import (
    BTC_DUST,
    LONG_TERM_THRESHOLD,
    TERM_LONG,
    TERM_MIXED,
    TERM_SHORT,
    USD_QUANT,
)
from backend.exceptions import (
    InsufficientLotsError,
    LotSelectionError,
    UnsupportedAccountingMethodError,
)
from backend.schemas.transaction import AccountingMethod

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AvailableLot:
    """Snapshot of one open lot as seen by the selector."""
    id: int
    acquired_at: datetime
    original_amount: Decimal
    remaining: Decimal
    unit_cost: Decimal


@dataclass(frozen=True)
class SelectedLot:
    """How much of one lot a sale consumed and what that slice is worth."""
    lot_id: int
    qty: Decimal
    cost_basis: Decimal
    proceeds: Decimal
    gain: Decimal
    is_long_term: bool
    acquired_at: datetime
    unit_cost: Decimal
    remaining_after: Decimal

    @property
    def term(self) -> str:
        return TERM_LONG if self.is_long_term else TERM_SHORT

    @property
    def closes_lot(self) -> bool:
        return self.remaining_after <= BTC_DUST


@dataclass
class SaleResult:
    selected_lots: List[SelectedLot] = field(default_factory=list)
    total_cost_basis: Decimal = Decimal("0")
    total_proceeds: Decimal = Decimal("0")
    total_realized_gain: Decimal = Decimal("0")
    is_all_long_term: bool = False

    @property
    def term(self) -> str:
        """'Mixed' exactly when the sale drew from both short- and long-term lots."""
        terms = {sel.term for sel in self.selected_lots}
        if len(terms) > 1:
            return TERM_MIXED
        return terms.pop() if terms else TERM_SHORT


def _usd(value: Decimal) -> Decimal:
    return value.quantize(USD_QUANT, rounding=ROUND_HALF_DOWN)


# Primary sort key per method; the lot's input position is always the secondary key.
_SORT_KEYS: Dict[AccountingMethod, Callable[[AvailableLot], object]] = {
    AccountingMethod.HIFO: lambda lot: -lot.unit_cost,
}


def order_lots(open_lots: Sequence[AvailableLot], method: AccountingMethod) -> List[AvailableLot]:
    """Return the lots in the order the given method consumes them."""
    try:
        primary = _SORT_KEYS[AccountingMethod(method)]
    except (KeyError, ValueError):
        raise UnsupportedAccountingMethodError(method)
    indexed = sorted(enumerate(open_lots), key=lambda pair: (primary(pair[1]), pair[0]))
    return [lot for _, lot in indexed]


def _check_snapshot(open_lots: Sequence[AvailableLot]) -> None:
    seen = set()
    for lot in open_lots:
        if lot.id in seen:
            raise LotSelectionError(f"Lot {lot.id} appears twice in the snapshot.")
        seen.add(lot.id)
        if lot.remaining < 0 or lot.remaining > lot.original_amount:
            raise LotSelectionError(
                f"Lot {lot.id} has remaining {lot.remaining} outside [0, {lot.original_amount}]."
            )
        if lot.unit_cost < 0:
            raise LotSelectionError(f"Lot {lot.id} has negative unit cost {lot.unit_cost}.")


def select_lots_for_sale(
    open_lots: Sequence[AvailableLot],
    sale_amount: Decimal,
    sale_price: Decimal,
    sale_timestamp: datetime,
    method: AccountingMethod = AccountingMethod.HIFO,
) -> SaleResult:
    """
    Greedily consume lots in method order until the sale is filled.

    Raises:
        InsufficientLotsError: the lots cannot cover sale_amount; carries the unmet quantity.
        LotSelectionError: the inputs or the snapshot are inconsistent.
        UnsupportedAccountingMethodError: method has no implementation.
    """
    if sale_amount <= 0:
        raise LotSelectionError(f"Sale amount must be positive, got {sale_amount}.")
    if sale_price < 0:
        raise LotSelectionError(f"Sale price cannot be negative, got {sale_price}.")
    _check_snapshot(open_lots)

    remaining_to_sell = sale_amount
    selected: List[SelectedLot] = []

    for lot in order_lots(open_lots, method):
        if remaining_to_sell <= BTC_DUST:
            break
        qty = min(lot.remaining, remaining_to_sell)
        if qty <= BTC_DUST:
            continue

        try:
            held_for = sale_timestamp - lot.acquired_at
        except TypeError as e:
            raise LotSelectionError(
                f"Cannot compare sale time with acquisition time of lot {lot.id}: {e}"
            ) from e

        cost_basis = _usd(qty * lot.unit_cost)
        proceeds = _usd(qty * sale_price)
        selected.append(SelectedLot(
            lot_id=lot.id,
            qty=qty,
            cost_basis=cost_basis,
            proceeds=proceeds,
            gain=proceeds - cost_basis,
            is_long_term=held_for > LONG_TERM_THRESHOLD,
            acquired_at=lot.acquired_at,
            unit_cost=lot.unit_cost,
            remaining_after=lot.remaining - qty,
        ))
        remaining_to_sell -= qty

    if remaining_to_sell > BTC_DUST:
        logger.debug(f"Selection short by {remaining_to_sell} BTC for sale of {sale_amount}")
        raise InsufficientLotsError(needed=remaining_to_sell, requested=sale_amount)

    return SaleResult(
        selected_lots=selected,
        total_cost_basis=sum((s.cost_basis for s in selected), Decimal("0")),
        total_proceeds=sum((s.proceeds for s in selected), Decimal("0")),
        total_realized_gain=sum((s.gain for s in selected), Decimal("0")),
        is_all_long_term=all(s.is_long_term for s in selected),
    )
