"""
transaction.py

The append-only Bitcoin ledger. Each Transaction row is one economic event
for a portfolio:

  buy / receive   -> acquisitions (create a lot at price_usd)
  sell / send     -> disposals (consume lots per FIFO/LIFO/HIFO)
  transfer        -> moves between own wallets, never taxable

Lots and disposals are NOT persisted; services/costbasis.py replays the
whole ledger on every calculation. The integer primary key doubles as the
ledger sequence used to order rows sharing a timestamp.
"""

from sqlalchemy import (
    Column,
    Integer,
    BigInteger,
    String,
    Float,
    ForeignKey,
    Index,
)
from sqlalchemy.orm import relationship

from backend.database import Base, UTCDateTime, utcnow


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        Index("ix_transactions_portfolio_time", "portfolio_id", "transacted_at"),
    )

    # Primary key, also the ledger sequence
    id = Column(Integer, primary_key=True, index=True)

    portfolio_id = Column(
        Integer,
        ForeignKey("portfolios.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # "buy", "sell", "receive", "send", "transfer"
    tx_type = Column(String, nullable=False, doc="Ledger event type.")

    amount_sat = Column(BigInteger, nullable=False, doc="Positive amount in satoshis.")
    fee_sat = Column(BigInteger, nullable=False, default=0)

    # USD per whole BTC at the time of the event; NULL means unknown (treated as 0)
    price_usd = Column(Float, nullable=True)

    txid = Column(String, nullable=True, index=True, doc="On-chain txid when known.")

    # "manual", "chain", "invoice"
    source = Column(String, nullable=False, default="manual")
    invoice_id = Column(
        Integer,
        ForeignKey("invoices.id", ondelete="SET NULL"),
        nullable=True,
        doc="Set when the row was written by an invoice payment."
    )

    notes = Column(String, nullable=True)

    transacted_at = Column(
        UTCDateTime,
        default=utcnow,
        nullable=False,
        doc="When the event actually occurred (user-facing)."
    )

    # Audit fields
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    portfolio = relationship("Portfolio", back_populates="transactions")

    def __repr__(self):
        return (
            f"<Transaction(id={self.id}, type={self.tx_type}, "
            f"amount_sat={self.amount_sat}, transacted_at={self.transacted_at})>"
        )
