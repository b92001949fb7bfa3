# FILE: backend/routers/reports.py

from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from backend.database import get_db
from backend.models.user import User
from backend.routers.deps import get_current_user, resolve_current_price
from backend.schemas.tax import TaxReport
from backend.schemas.transaction import AccountingMethod
from backend.services.tax_report import generate_tax_report

reports_router = APIRouter()


@reports_router.get("/tax/{year}", response_model=TaxReport)
async def get_tax_report(
    request: Request,
    year: int = Path(..., ge=2009, le=9998),
    method: Optional[AccountingMethod] = Query(None, description="Defaults to the user's method"),
    current_price: Optional[Decimal] = Query(
        None, description="USD per BTC for unrealized gains; the live price is used when omitted"
    ),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Realized gains for the calendar year (short/long-term, per-sale detail)
    plus unrealized gain of the lots still open, from a full history replay.
    """
    price = await resolve_current_price(request, current_price)
    return await run_in_threadpool(
        generate_tax_report,
        db,
        user.id,
        year,
        price,
        method or user.accounting_method,
    )
