#!/usr/bin/env python
"""
backend/main.py

Sets up the FastAPI application for SatLedger, a Bitcoin cost basis and
invoicing backend.

Key Roles:
 - Loads settings (.env) and configures logging via backend.config
 - Adds CORS middleware for frontend integration
 - Creates tables and runs the invoice watcher for the app's lifetime
 - Includes the portfolio, transaction, tax, invoice and price routers
 - Renders database errors as 500 {"detail": ...}
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from backend.config import settings
from backend.database import create_tables
from backend.routers import invoice, portfolio, prices, tax, transaction
from backend.services.invoice_watcher import InvoiceWatcher

logger = logging.getLogger(__name__)


# ---------------------------------------------------------
# Lifespan: tables + background invoice watcher
# ---------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Ensures tables exist (idempotent) and, unless disabled with
    INVOICE_WATCHER_ENABLED=false, runs the invoice watcher until shutdown.
    """
    create_tables()
    watcher = None
    if settings.invoice_watcher_enabled:
        watcher = InvoiceWatcher()
        watcher.start()
    else:
        logger.info("Invoice watcher disabled")
    try:
        yield
    finally:
        if watcher is not None:
            await watcher.stop()


# ---------------------------------------------------------
# Initialize the FastAPI application
# ---------------------------------------------------------
app = FastAPI(
    title="SatLedger API",
    description=(
        "Bitcoin portfolio ledger with FIFO/LIFO/HIFO cost basis, "
        "yearly tax reports and on-chain invoice payment detection."
    ),
    version="1.0",
    lifespan=lifespan,
)

# ---------------------------------------------------------
# CORS Middleware
# ---------------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SQLAlchemyError)
async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error(f"Database error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"detail": "Database error"})


# ---------------------------------------------------------
# Routers
# ---------------------------------------------------------
app.include_router(portfolio.router, prefix="/api/portfolios")
app.include_router(transaction.router, prefix="/api/portfolios")
app.include_router(tax.router, prefix="/api/portfolios")
app.include_router(invoice.router, prefix="/api/portfolios")
app.include_router(invoice.public_router, prefix="/api/invoices")
app.include_router(prices.router, prefix="/api/prices")


@app.get("/api/health")
def health():
    """Liveness probe."""
    return {"status": "ok"}


# ---------------------------------------------------------
# Local run: python -m backend.main
# ---------------------------------------------------------
if __name__ == "__main__":
    import os
    import uvicorn

    uvicorn.run(
        "backend.main:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
    )
