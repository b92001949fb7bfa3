"""
backend/schemas/tax.py

Pydantic models for the year-scoped tax report produced by
backend/services/tax_report.py, plus the portfolio summary.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Literal

from pydantic import BaseModel, Field

from backend.schemas.transaction import AccountingMethod


class ContributingLot(BaseModel):
    """One lot's share of a sale, kept for audit."""
    lot_tx_id: int
    lot_opened_at: datetime
    qty_used: Decimal
    cost_basis_per_unit: Decimal
    cost_basis: Decimal
    proceeds: Decimal
    gain: Decimal
    term: Literal["Short", "Long"]


class SaleDetail(BaseModel):
    sale_tx_id: int
    sale_date: datetime
    asset: str = "BTC"
    amount_sold: Decimal
    proceeds: Decimal
    cost_basis: Decimal
    gain: Decimal
    term: Literal["Short", "Long", "Mixed"]
    contributing_lots: List[ContributingLot] = Field(default_factory=list)


class OpenLotSummary(BaseModel):
    """A lot still holding BTC at the end of the replay."""
    lot_tx_id: int
    acquired_at: datetime
    remaining: Decimal
    unit_cost: Decimal
    unrealized_gain: Decimal


class TaxReport(BaseModel):
    year: int
    method: AccountingMethod
    current_price: Decimal
    total_realized_gain: Decimal = Decimal("0")
    realized_gain_st: Decimal = Decimal("0")
    realized_gain_lt: Decimal = Decimal("0")
    total_unrealized_gain: Decimal = Decimal("0")
    details: List[SaleDetail] = Field(default_factory=list)
    open_lots: List[OpenLotSummary] = Field(default_factory=list)


class PortfolioSummary(BaseModel):
    total_btc: Decimal
    cost_basis: Decimal
    current_value: Decimal
    unrealized_pnl: Decimal
    percentage_return: Decimal
