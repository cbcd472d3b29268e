"""
backend/schemas/transaction.py

Pydantic v2 schemas for ledger transactions.

- TxType: ledger event types (buy/sell/receive/send/transfer)
- TxSource: where the row came from (manual/chain/invoice)
- TransactionCreate: input; amount_sat must be positive
- TransactionRead: output, includes 'id', 'created_at', 'updated_at'
"""

from enum import Enum
from pydantic import BaseModel, Field, field_validator
from typing import Optional
from datetime import datetime, timezone

# -------------------------------------------------
# ENUMS
# -------------------------------------------------

class TxType(str, Enum):
    BUY = "buy"
    SELL = "sell"
    RECEIVE = "receive"
    SEND = "send"
    TRANSFER = "transfer"


class TxSource(str, Enum):
    MANUAL = "manual"
    CHAIN = "chain"
    INVOICE = "invoice"


def force_utc(v: Optional[datetime]) -> Optional[datetime]:
    """Ensures timestamps are UTC for consistent ordering."""
    if v is None:
        return None
    if v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc)

# -------------------------------------------------
# TRANSACTION SCHEMAS
# -------------------------------------------------

class TransactionBase(BaseModel):
    tx_type: TxType
    amount_sat: int = Field(..., gt=0, description="Amount in satoshis (1 BTC = 100,000,000 sat).")
    fee_sat: int = Field(default=0, ge=0)
    price_usd: Optional[float] = Field(
        default=None,
        ge=0,
        description="USD price of one whole BTC at the time of the event."
    )
    txid: Optional[str] = None
    notes: Optional[str] = None


class TransactionCreate(TransactionBase):
    """
    Schema for creating a ledger row. If transacted_at is omitted the
    current time is used.
    """
    transacted_at: Optional[datetime] = None

    @field_validator("transacted_at")
    def force_utc_timestamp(cls, v: datetime | None) -> datetime | None:
        return force_utc(v)


class TransactionRead(TransactionBase):
    id: int
    portfolio_id: int
    source: TxSource
    invoice_id: Optional[int] = None
    transacted_at: datetime
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True  # Enables ORM-to-Pydantic conversion
