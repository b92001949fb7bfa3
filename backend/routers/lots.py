"""
backend/routers/lots.py

Read-only views of the persisted lot inventory:
  - GET /lots                         -> all lots (open_only=true for open ones)
  - GET /lots/{lot_id}/allocations    -> the sells that drew from one lot
  - GET /portfolio/summary            -> holdings valued at a price

main.py mounts this router under "/api".
"""

from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from backend.database import get_db
from backend.models.user import User
from backend.routers.deps import get_current_user, resolve_current_price
from backend.schemas.tax import PortfolioSummary
from backend.schemas.transaction import AllocationRead, LotRead
from backend.services.portfolio import get_portfolio_summary
from backend.services.transaction import get_allocations_for_lot, get_lots

router = APIRouter(tags=["lots"])


@router.get("/lots", response_model=List[LotRead])
def list_lots(
    open_only: bool = False,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return get_lots(db, user.id, open_only=open_only)


@router.get("/lots/{lot_id}/allocations", response_model=List[AllocationRead])
def list_lot_allocations(
    lot_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    allocations = get_allocations_for_lot(db, user.id, lot_id)
    if allocations is None:
        raise HTTPException(status_code=404, detail="Lot not found")
    return allocations


@router.get("/portfolio/summary", response_model=PortfolioSummary)
async def portfolio_summary(
    request: Request,
    current_price: Optional[Decimal] = Query(None, description="USD per BTC; live price when omitted"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    price = await resolve_current_price(request, current_price)
    return await run_in_threadpool(get_portfolio_summary, db, user.id, price)
