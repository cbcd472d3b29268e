"""
backend/routers/invoice.py

Invoice / payment link endpoints.

router (mounted under "/api/portfolios"):
  CRUD, send, cancel and an on-demand payment check. The check surfaces
  chain API failures as 502.

public_router (mounted under "/api/invoices"):
  GET /pay/{share_token} is what a payer's page polls. It triggers a
  payment check for 'sent' invoices but never fails because of one; any
  error is logged and the current state returned.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.database import get_db
from backend.errors import ExternalServiceError, StorageError
from backend.schemas.invoice import (
    InvoiceCreate,
    InvoiceRead,
    InvoiceStatus,
    InvoiceType,
    InvoiceUpdate,
    PaymentCheckRead,
    PublicInvoiceRead,
)
from backend.services import invoice as invoice_service
from backend.services.chain import ChainQueryClient, get_chain_client
from backend.services.invoice_watcher import check_invoice_payment
from backend.services.portfolio import get_portfolio_or_404
from backend.services.prices import PriceOracle, get_price_oracle
from backend.services.transaction import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE

logger = logging.getLogger(__name__)

router = APIRouter(tags=["invoices"])
public_router = APIRouter(tags=["public"])


@router.get("/{portfolio_id}/invoices", response_model=List[InvoiceRead])
def list_invoices(
    portfolio_id: int,
    record_type: Optional[InvoiceType] = None,
    status: Optional[InvoiceStatus] = None,
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    get_portfolio_or_404(db, portfolio_id)
    return invoice_service.list_invoices(db, portfolio_id, record_type, status, limit, offset)


@router.post("/{portfolio_id}/invoices", response_model=InvoiceRead, status_code=201)
async def create_invoice(
    portfolio_id: int,
    data: InvoiceCreate,
    db: Session = Depends(get_db),
    oracle: PriceOracle = Depends(get_price_oracle),
):
    """
    Create a draft. If btc_price_at_creation isn't given, the current price
    is looked up; when no source answers the invoice is created without one.
    """
    get_portfolio_or_404(db, portfolio_id)
    btc_price = None
    if data.btc_price_at_creation is None:
        try:
            btc_price = await oracle.get_current_price()
        except ExternalServiceError as e:
            logger.warning(f"Creating invoice without BTC price: {e}")
    return invoice_service.create_invoice(db, portfolio_id, data, btc_price)


@router.get("/{portfolio_id}/invoices/{invoice_id}", response_model=InvoiceRead)
def get_invoice(portfolio_id: int, invoice_id: int, db: Session = Depends(get_db)):
    return invoice_service.get_invoice_or_404(db, portfolio_id, invoice_id)


@router.put("/{portfolio_id}/invoices/{invoice_id}", response_model=InvoiceRead)
def update_invoice(
    portfolio_id: int,
    invoice_id: int,
    data: InvoiceUpdate,
    db: Session = Depends(get_db),
):
    return invoice_service.update_invoice(db, portfolio_id, invoice_id, data)


@router.delete("/{portfolio_id}/invoices/{invoice_id}", status_code=204)
def delete_invoice(portfolio_id: int, invoice_id: int, db: Session = Depends(get_db)):
    invoice_service.delete_invoice(db, portfolio_id, invoice_id)
    return Response(status_code=204)


@router.post("/{portfolio_id}/invoices/{invoice_id}/send", response_model=InvoiceRead)
def send_invoice(portfolio_id: int, invoice_id: int, db: Session = Depends(get_db)):
    return invoice_service.send_invoice(db, portfolio_id, invoice_id)


@router.post("/{portfolio_id}/invoices/{invoice_id}/cancel", response_model=InvoiceRead)
def cancel_invoice(portfolio_id: int, invoice_id: int, db: Session = Depends(get_db)):
    return invoice_service.cancel_invoice(db, portfolio_id, invoice_id)


@router.post("/{portfolio_id}/invoices/{invoice_id}/check-payment", response_model=PaymentCheckRead)
async def check_payment(
    portfolio_id: int,
    invoice_id: int,
    db: Session = Depends(get_db),
    chain: ChainQueryClient = Depends(get_chain_client),
):
    invoice = invoice_service.get_invoice_or_404(db, portfolio_id, invoice_id)
    paid = await check_invoice_payment(chain, db, invoice)
    return {"paid": paid, "invoice": invoice}


@public_router.get("/pay/{share_token}", response_model=PublicInvoiceRead)
async def get_public_invoice(
    share_token: str,
    db: Session = Depends(get_db),
    chain: ChainQueryClient = Depends(get_chain_client),
):
    invoice = invoice_service.get_invoice_by_share_token(db, share_token)
    if invoice.status == InvoiceStatus.SENT.value:
        try:
            await check_invoice_payment(chain, db, invoice)
        except (ExternalServiceError, StorageError, SQLAlchemyError) as e:
            db.rollback()
            logger.warning(f"Public payment check failed for invoice id={invoice.id}: {e}")
    return invoice
