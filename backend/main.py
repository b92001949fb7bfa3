#!/usr/bin/env python
"""
backend/main.py

Sets up the FastAPI application for Sats Ledger, a Bitcoin tax-lot
accounting service.

Key Roles:
 - Loads environment variables & configures session-based authentication
 - Adds CORS middleware for frontend integration
 - Maps ledger errors (backend/exceptions.py) to HTTP responses
 - Owns the BTC price cache (app.state.price_cache)
 - Includes 'transaction', 'user', 'lots', 'reports' and 'bitcoin' routers
"""

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session
from starlette.middleware.sessions import SessionMiddleware

from backend.database import create_tables, get_db
from backend.exceptions import (
    BadRequestError,
    DatabaseError,
    LotSelectionError,
    NotFoundError,
    PriceUnavailableError,
    ReportGenerationError,
)
from backend.routers import bitcoin, lots, reports, transaction, user
from backend.services.bitcoin import PriceCache
from backend.services.user import get_user_by_username

# Load environment variables from a .env file at the project root
load_dotenv()

logger = logging.getLogger(__name__)

# ---------------------------------------------------------
# Configuration
# ---------------------------------------------------------
SECRET_KEY = os.getenv("SECRET_KEY", "default_secret_key")  # Fallback if not set

# Default CORS origins if none specified (dev environment)
default_origins = (
    "http://127.0.0.1:3000,"
    "http://localhost:3000,"
    "http://127.0.0.1:5173,"
    "http://localhost:5173"
)
raw_origins = os.getenv("CORS_ALLOW_ORIGINS", default_origins)
ALLOWED_ORIGINS = [origin.strip() for origin in raw_origins.split(",")]

PRICE_CACHE_TTL_SECONDS = float(os.getenv("PRICE_CACHE_TTL_SECONDS", "60"))


# ---------------------------------------------------------
# Database: Create Tables at Startup
# ---------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Ensures tables are created (if not already) when FastAPI starts.
    This won't delete or overwrite existing data; it's idempotent.
    """
    create_tables()
    yield


# ---------------------------------------------------------
# Initialize the FastAPI application
# ---------------------------------------------------------
app = FastAPI(
    title="Sats Ledger API",
    description=(
        "Encrypted Bitcoin transaction ledger with HIFO tax-lot accounting "
        "and yearly capital gains reports. Session-based auth."
    ),
    version="1.0",
    lifespan=lifespan,
    redirect_slashes=True,
)

app.state.price_cache = PriceCache(ttl_seconds=PRICE_CACHE_TTL_SECONDS)

# ---------------------------------------------------------
# Add Session Middleware
# ---------------------------------------------------------
app.add_middleware(
    SessionMiddleware,
    secret_key=SECRET_KEY,
    session_cookie="sats_session_id",
    https_only=False  # Set to True in production if you serve over HTTPS
)

# ---------------------------------------------------------
# CORS Middleware
# ---------------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------
# Error mapping
# ---------------------------------------------------------
@app.exception_handler(BadRequestError)
async def bad_request_handler(request: Request, exc: BadRequestError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(DatabaseError)
async def database_error_handler(request: Request, exc: DatabaseError):
    logger.error(f"Database error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=503,
        content={"detail": "A database error occurred. Please try again."},
    )


@app.exception_handler(LotSelectionError)
async def lot_selection_error_handler(request: Request, exc: LotSelectionError):
    logger.error(f"Lot selection error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"detail": "Lot selection failed."})


@app.exception_handler(ReportGenerationError)
async def report_error_handler(request: Request, exc: ReportGenerationError):
    logger.error(f"Report generation failed on {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"detail": "Tax report generation failed."})


@app.exception_handler(PriceUnavailableError)
async def price_unavailable_handler(request: Request, exc: PriceUnavailableError):
    return JSONResponse(status_code=502, content={"detail": str(exc)})

# ---------------------------------------------------------
# Routers (Transaction, User, Lots/Portfolio, Reports, Bitcoin)
# ---------------------------------------------------------
app.include_router(transaction.router, prefix="/api/transactions", tags=["transactions"])
app.include_router(user.router, prefix="/api/users", tags=["users"])
app.include_router(lots.router, prefix="/api", tags=["lots"])
app.include_router(reports.reports_router, prefix="/api/reports", tags=["reports"])
app.include_router(bitcoin.router, prefix="/api/bitcoin", tags=["Bitcoin"])

# ---------------------------------------------------------
# LoginRequest Pydantic Model
# ---------------------------------------------------------
class LoginRequest(BaseModel):
    """
    Schema for login JSON:
      { "username": "someName", "password": "somePass" }
    """
    username: str
    password: str

# ---------------------------------------------------------
# Login / Logout Endpoints
# ---------------------------------------------------------
@app.post("/api/login")
def login(login_req: LoginRequest, request: Request, db: Session = Depends(get_db)):
    """
    Session-based login:
      1) Look up the user in the DB, check the bcrypt hash
      2) If valid, store user.id in the session cookie
    """
    user_obj = get_user_by_username(login_req.username, db)
    # For security, don't reveal which part is invalid
    if not user_obj or not user_obj.verify_password(login_req.password):
        raise HTTPException(status_code=401, detail="Invalid username or password.")

    request.session["user_id"] = user_obj.id
    return {"detail": f"Logged in as {user_obj.username}"}


@app.post("/api/logout")
def logout(request: Request):
    """
    Clear the session to log out the user.
    """
    request.session.clear()
    return {"detail": "Logged out successfully"}

# ---------------------------------------------------------
# Root Route
# ---------------------------------------------------------
@app.get("/")
def read_root():
    """
    Basic root path to confirm the API is running.
    """
    return {"message": "Welcome to Sats Ledger - HIFO lot accounting ready!"}
