"""
backend/services/portfolio.py

Point-in-time portfolio summary over the persisted open lots.
Unlike the tax report this reads the Lot table as maintained by the
Transaction Processor; it does not replay history.
"""

from decimal import Decimal, ROUND_HALF_DOWN

from sqlalchemy.orm import Session

from backend.constants import USD_QUANT
from backend.exceptions import BadRequestError
from backend.schemas.tax import PortfolioSummary
from backend.services.transaction import get_lots


def get_portfolio_summary(db: Session, user_id: int, current_price: Decimal) -> PortfolioSummary:
    current_price = Decimal(str(current_price))
    if current_price < 0:
        raise BadRequestError("Current price cannot be negative.")

    total_btc = Decimal("0")
    cost_basis = Decimal("0")
    for lot in get_lots(db, user_id, open_only=True):
        total_btc += lot.remaining_qty
        cost_basis += lot.remaining_qty * lot.unit_cost_usd

    cost_basis = cost_basis.quantize(USD_QUANT, rounding=ROUND_HALF_DOWN)
    current_value = (total_btc * current_price).quantize(USD_QUANT, rounding=ROUND_HALF_DOWN)
    unrealized = current_value - cost_basis

    # percentage is 0 for an empty or zero-cost portfolio
    if cost_basis > 0:
        pct = (unrealized / cost_basis * 100).quantize(USD_QUANT, rounding=ROUND_HALF_DOWN)
    else:
        pct = Decimal("0")

    return PortfolioSummary(
        total_btc=total_btc,
        cost_basis=cost_basis,
        current_value=current_value,
        unrealized_pnl=unrealized,
        percentage_return=pct,
    )
