"""
backend/services/invoice.py

Invoice / payment link management.

Status transitions handled here are the user-driven ones:
  draft -> sent        (send_invoice, stamps issued_at)
  any   -> cancelled   (cancel_invoice)
The transition to 'paid' belongs to services/invoice_watcher.py and the
transition to 'expired' to its periodic sweep; neither is reachable through
update_invoice.
"""

import logging
import secrets
from typing import List, Optional

from sqlalchemy.orm import Query, Session

from backend.database import utcnow
from backend.errors import BadRequestError, NotFoundError
from backend.models.invoice import Invoice
from backend.models.transaction import Transaction
from backend.schemas.invoice import InvoiceCreate, InvoiceStatus, InvoiceType, InvoiceUpdate
from backend.services.transaction import clamp_limit

logger = logging.getLogger(__name__)

# Fields that fix what the payer must send; frozen once the invoice is issued
PAYMENT_FIELDS = ("amount_sat", "btc_address")


def new_share_token() -> str:
    return secrets.token_urlsafe(24)


# ------------------------------------------------------------------------------
# Queries
# ------------------------------------------------------------------------------
def build_invoice_query(
    db: Session,
    portfolio_id: int,
    record_type: Optional[InvoiceType] = None,
    status: Optional[InvoiceStatus] = None,
) -> Query:
    query = db.query(Invoice).filter(Invoice.portfolio_id == portfolio_id)
    if record_type is not None:
        query = query.filter(Invoice.record_type == InvoiceType(record_type).value)
    if status is not None:
        query = query.filter(Invoice.status == InvoiceStatus(status).value)
    return query.order_by(Invoice.created_at.desc(), Invoice.id.desc())


def list_invoices(
    db: Session,
    portfolio_id: int,
    record_type: Optional[InvoiceType] = None,
    status: Optional[InvoiceStatus] = None,
    limit: Optional[int] = None,
    offset: int = 0,
) -> List[Invoice]:
    query = build_invoice_query(db, portfolio_id, record_type, status)
    return query.offset(max(offset, 0)).limit(clamp_limit(limit)).all()


def get_invoice_or_404(db: Session, portfolio_id: int, invoice_id: int) -> Invoice:
    invoice = (
        db.query(Invoice)
        .filter(Invoice.portfolio_id == portfolio_id, Invoice.id == invoice_id)
        .first()
    )
    if not invoice:
        raise NotFoundError(f"Invoice {invoice_id} not found")
    return invoice


def get_invoice_by_share_token(db: Session, share_token: str) -> Invoice:
    invoice = db.query(Invoice).filter(Invoice.share_token == share_token).first()
    if not invoice:
        raise NotFoundError("Invoice not found")
    return invoice


# ------------------------------------------------------------------------------
# Writes
# ------------------------------------------------------------------------------
def create_invoice(
    db: Session,
    portfolio_id: int,
    data: InvoiceCreate,
    btc_price: Optional[float] = None,
) -> Invoice:
    """
    Create a draft invoice. `btc_price` fills btc_price_at_creation when the
    caller didn't supply one; it becomes the cost basis of the received lot.
    """
    fields = data.model_dump()
    fields["record_type"] = InvoiceType(data.record_type).value
    if fields.get("btc_price_at_creation") is None:
        fields["btc_price_at_creation"] = btc_price
    if fields.get("amount_fiat") is None and fields["btc_price_at_creation"]:
        fields["amount_fiat"] = round(
            data.amount_sat / 100_000_000 * fields["btc_price_at_creation"], 2
        )

    invoice = Invoice(
        portfolio_id=portfolio_id,
        status=InvoiceStatus.DRAFT.value,
        share_token=new_share_token(),
        **fields,
    )
    db.add(invoice)
    db.commit()
    db.refresh(invoice)
    logger.info(f"Created {invoice.record_type} id={invoice.id} for {invoice.amount_sat} sat")
    return invoice


def update_invoice(db: Session, portfolio_id: int, invoice_id: int, data: InvoiceUpdate) -> Invoice:
    invoice = get_invoice_or_404(db, portfolio_id, invoice_id)
    changes = data.model_dump(exclude_unset=True)

    if invoice.status == InvoiceStatus.CANCELLED.value:
        raise BadRequestError("Cancelled invoices cannot be edited")
    if invoice.status != InvoiceStatus.DRAFT.value:
        locked = [f for f in PAYMENT_FIELDS if f in changes]
        if locked:
            raise BadRequestError(
                f"Cannot change {', '.join(locked)} after the invoice has been sent"
            )

    # A null payment field means "leave unchanged"; other NOT NULL columns reject it
    changes = {k: v for k, v in changes.items() if v is not None or k not in PAYMENT_FIELDS}
    for key, value in changes.items():
        if value is None and not Invoice.__table__.c[key].nullable:
            raise BadRequestError(f"{key} cannot be null")

    for key, value in changes.items():
        setattr(invoice, key, value)
    invoice.updated_at = utcnow()
    db.commit()
    db.refresh(invoice)
    return invoice


def send_invoice(db: Session, portfolio_id: int, invoice_id: int) -> Invoice:
    invoice = get_invoice_or_404(db, portfolio_id, invoice_id)
    if invoice.status != InvoiceStatus.DRAFT.value:
        raise BadRequestError(f"Only draft invoices can be sent (status is {invoice.status})")
    now = utcnow()
    if invoice.expires_at is not None and invoice.expires_at <= now:
        raise BadRequestError("Invoice expiry is already in the past")
    invoice.status = InvoiceStatus.SENT.value
    invoice.issued_at = now
    invoice.updated_at = now
    db.commit()
    db.refresh(invoice)
    logger.info(f"Invoice id={invoice.id} sent")
    return invoice


def cancel_invoice(db: Session, portfolio_id: int, invoice_id: int) -> Invoice:
    invoice = get_invoice_or_404(db, portfolio_id, invoice_id)
    if invoice.status != InvoiceStatus.CANCELLED.value:
        invoice.status = InvoiceStatus.CANCELLED.value
        invoice.updated_at = utcnow()
        db.commit()
        db.refresh(invoice)
        logger.info(f"Invoice id={invoice.id} cancelled")
    return invoice


def delete_invoice(db: Session, portfolio_id: int, invoice_id: int) -> None:
    invoice = get_invoice_or_404(db, portfolio_id, invoice_id)
    # Ledger rows written by this invoice's payments stay; only the link goes
    db.query(Transaction).filter(Transaction.invoice_id == invoice.id).update(
        {Transaction.invoice_id: None}, synchronize_session=False
    )
    db.delete(invoice)
    db.commit()
    logger.info(f"Deleted invoice id={invoice_id}")
