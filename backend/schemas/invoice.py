"""
backend/schemas/invoice.py

Schemas for invoices / payment links.

- InvoiceStatus: draft, sent, paid, expired, cancelled
- InvoiceType: invoice or payment_link
- InvoiceCreate / InvoiceUpdate: input (status is never client-settable)
- InvoiceRead: full owner view
- PublicInvoiceRead: what a payer sees via the share token
"""

from enum import Enum
from pydantic import BaseModel, Field, field_validator
from typing import Optional
from datetime import datetime

from backend.schemas.transaction import force_utc


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class InvoiceType(str, Enum):
    INVOICE = "invoice"
    PAYMENT_LINK = "payment_link"


class InvoiceBase(BaseModel):
    invoice_number: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    description: Optional[str] = None
    amount_fiat: Optional[float] = Field(default=None, ge=0)
    fiat_currency: str = "USD"
    btc_price_at_creation: Optional[float] = Field(default=None, ge=0)
    due_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @field_validator("due_at", "expires_at")
    def force_utc_timestamp(cls, v: datetime | None) -> datetime | None:
        return force_utc(v)


class InvoiceCreate(InvoiceBase):
    record_type: InvoiceType = InvoiceType.INVOICE
    reusable: bool = False
    amount_sat: int = Field(..., gt=0)
    btc_address: str = Field(..., min_length=14, max_length=100)


class InvoiceUpdate(BaseModel):
    """
    Partial update. Amount and address may only change while the invoice
    is still a draft (enforced in services/invoice.py).
    """
    invoice_number: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    description: Optional[str] = None
    amount_sat: Optional[int] = Field(default=None, gt=0)
    amount_fiat: Optional[float] = Field(default=None, ge=0)
    fiat_currency: Optional[str] = None
    btc_address: Optional[str] = Field(default=None, min_length=14, max_length=100)
    reusable: Optional[bool] = None
    due_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @field_validator("due_at", "expires_at")
    def force_utc_timestamp(cls, v: datetime | None) -> datetime | None:
        return force_utc(v)


class InvoiceRead(InvoiceBase):
    id: int
    portfolio_id: int
    record_type: InvoiceType
    reusable: bool
    amount_sat: int
    btc_address: str
    status: InvoiceStatus
    share_token: str
    issued_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    paid_txid: Optional[str] = None
    paid_amount_sat: Optional[int] = None
    last_checked_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class PublicInvoiceRead(BaseModel):
    invoice_number: Optional[str] = None
    customer_name: Optional[str] = None
    description: Optional[str] = None
    record_type: InvoiceType
    amount_sat: int
    amount_fiat: Optional[float] = None
    fiat_currency: str
    btc_address: str
    status: InvoiceStatus
    due_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    paid_txid: Optional[str] = None

    class Config:
        from_attributes = True


class PaymentCheckRead(BaseModel):
    paid: bool
    invoice: InvoiceRead
