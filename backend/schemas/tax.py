"""
backend/schemas/tax.py

Response schema for the yearly tax report (JSON form of services/tax.py's
TaxReport). Money values are Decimals rounded to cents.
"""

from decimal import Decimal
from typing import List

from pydantic import BaseModel


class TaxDispositionRead(BaseModel):
    description: str
    date_acquired: str
    date_sold: str
    proceeds: Decimal
    cost_basis: Decimal
    gain_or_loss: Decimal
    holding_period: str
    holding_days: int


class TaxReportRead(BaseModel):
    year: int
    method: str
    short_term_gains: Decimal
    long_term_gains: Decimal
    total_gains: Decimal
    total_proceeds: Decimal
    total_cost_basis: Decimal
    disposition_count: int
    dispositions: List[TaxDispositionRead]
