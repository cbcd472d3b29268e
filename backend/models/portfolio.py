"""
backend/models/portfolio.py

A Portfolio groups one ledger of Bitcoin transactions and the invoices that
pay into it. Cost basis is always computed per portfolio.

Portfolio => One-to-many => Transaction
Portfolio => One-to-many => Invoice
"""

from sqlalchemy import Column, Integer, String, Text
from sqlalchemy.orm import relationship

from backend.database import Base, UTCDateTime, utcnow


class Portfolio(Base):
    __tablename__ = "portfolios"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # ---------------------------------------------------------------------
    # Relationships
    # ---------------------------------------------------------------------
    transactions = relationship(
        "Transaction",
        back_populates="portfolio",
        cascade="all, delete-orphan",
        doc="Ledger rows belonging to this portfolio."
    )
    invoices = relationship(
        "Invoice",
        back_populates="portfolio",
        cascade="all, delete-orphan",
        doc="Invoices and payment links issued from this portfolio."
    )

    def __repr__(self):
        return f"<Portfolio(id={self.id}, name={self.name})>"
