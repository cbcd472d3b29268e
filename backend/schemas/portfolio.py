"""
backend/schemas/portfolio.py

Schemas for portfolios and the read-only calculation payloads served for
them (cost basis and portfolio summary).
"""

from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime


class PortfolioCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None


class PortfolioUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None


class PortfolioRead(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class LotRead(BaseModel):
    amount_sat: int
    unit_price_usd: float
    acquired_at: Optional[str] = None


class DisposalRead(BaseModel):
    disposed_at: Optional[str] = None
    disposed_sat: int
    sale_price_usd: float
    cost_basis_usd: float
    proceeds_usd: float
    gain_usd: float
    holding_days: int
    is_long_term: bool


class CostBasisRead(BaseModel):
    method: str
    tax_year: Optional[int] = None
    disposals: List[DisposalRead]
    total_realized_gain_usd: float
    total_short_term_gain_usd: float
    total_long_term_gain_usd: float
    total_disposed_sat: int
    unmatched_sat: int
    remaining_balance_sat: int
    remaining_cost_basis_usd: float
    remaining_lots: List[LotRead]


class PortfolioSummaryRead(BaseModel):
    method: str
    current_price_usd: Optional[float] = None
    total_balance_sat: int
    total_cost_basis_usd: float
    current_value_usd: Optional[float] = None
    unrealized_gain_usd: Optional[float] = None
    realized_gain_usd: float
    total_received_sat: int
    total_sent_sat: int
    transaction_count: int
