"""
backend/models/invoice.py

Invoices and payment links. Both carry a receiving address and a satoshi
amount; the invoice watcher marks them paid once a qualifying on-chain
payment to that address is seen.

Status lifecycle:
  draft -> sent -> paid
  sent  -> expired   (expires_at passed)
  any   -> cancelled (terminal)
A reusable invoice (typically a payment link) keeps detecting new payments
after it is paid.
"""

from sqlalchemy import (
    Column,
    Integer,
    BigInteger,
    String,
    Float,
    Boolean,
    Text,
    ForeignKey,
)
from sqlalchemy.orm import relationship

from backend.database import Base, UTCDateTime, utcnow


class Invoice(Base):
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, index=True)
    portfolio_id = Column(
        Integer,
        ForeignKey("portfolios.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # "invoice" or "payment_link"
    record_type = Column(String, nullable=False, default="invoice")
    reusable = Column(Boolean, nullable=False, default=False)

    invoice_number = Column(String, nullable=True)
    customer_name = Column(String, nullable=True)
    customer_email = Column(String, nullable=True)
    description = Column(Text, nullable=True)

    amount_sat = Column(BigInteger, nullable=False)
    amount_fiat = Column(Float, nullable=True)
    fiat_currency = Column(String, nullable=False, default="USD")
    btc_price_at_creation = Column(Float, nullable=True)

    btc_address = Column(String, nullable=False, index=True)

    # "draft", "sent", "paid", "expired", "cancelled"
    status = Column(String, nullable=False, default="draft", index=True)
    share_token = Column(String, nullable=False, unique=True, index=True)

    issued_at = Column(UTCDateTime, nullable=True)
    due_at = Column(UTCDateTime, nullable=True)
    expires_at = Column(UTCDateTime, nullable=True)

    # Written only by the conditional payment update
    paid_at = Column(UTCDateTime, nullable=True)
    paid_txid = Column(String, nullable=True)
    paid_amount_sat = Column(BigInteger, nullable=True)

    # Round-robin cursor for the background watcher
    last_checked_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    portfolio = relationship("Portfolio", back_populates="invoices")

    def __repr__(self):
        return (
            f"<Invoice(id={self.id}, status={self.status}, "
            f"amount_sat={self.amount_sat}, address={self.btc_address})>"
        )
