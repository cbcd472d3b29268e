"""
backend/routers/portfolio.py

Portfolio CRUD plus the two read-only calculations served per portfolio:
  - GET /{portfolio_id}/cost-basis : full lot engine output
  - GET /{portfolio_id}/summary    : holdings valued at the current price

main.py mounts this router under "/api/portfolios".
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from backend.database import get_db
from backend.errors import ExternalServiceError
from backend.schemas.portfolio import (
    CostBasisRead,
    PortfolioCreate,
    PortfolioRead,
    PortfolioSummaryRead,
    PortfolioUpdate,
)
from backend.services import portfolio as portfolio_service
from backend.services.costbasis import (
    calculate_portfolio_cost_basis,
    parse_method,
    portfolio_summary,
)
from backend.services.prices import PriceOracle, get_price_oracle
from backend.services.tax import validate_tax_year

logger = logging.getLogger(__name__)

router = APIRouter(tags=["portfolios"])


@router.get("", response_model=List[PortfolioRead])
def list_portfolios(db: Session = Depends(get_db)):
    return portfolio_service.list_portfolios(db)


@router.post("", response_model=PortfolioRead, status_code=201)
def create_portfolio(data: PortfolioCreate, db: Session = Depends(get_db)):
    return portfolio_service.create_portfolio(db, data)


@router.get("/{portfolio_id}", response_model=PortfolioRead)
def get_portfolio(portfolio_id: int, db: Session = Depends(get_db)):
    return portfolio_service.get_portfolio_or_404(db, portfolio_id)


@router.put("/{portfolio_id}", response_model=PortfolioRead)
def update_portfolio(portfolio_id: int, data: PortfolioUpdate, db: Session = Depends(get_db)):
    return portfolio_service.update_portfolio(db, portfolio_id, data)


@router.delete("/{portfolio_id}", status_code=204)
def delete_portfolio(portfolio_id: int, db: Session = Depends(get_db)):
    """Deletes the portfolio together with its ledger and invoices."""
    portfolio_service.delete_portfolio(db, portfolio_id)
    return Response(status_code=204)


@router.get("/{portfolio_id}/cost-basis", response_model=CostBasisRead)
def get_cost_basis(
    portfolio_id: int,
    method: Optional[str] = Query(None, description="fifo, lifo or hifo (default fifo)"),
    year: Optional[int] = Query(None, description="Only report disposals in this tax year"),
    db: Session = Depends(get_db),
):
    """
    Replays the ledger under the chosen method. With `year`, only that
    year's disposals are listed and totalled; open lots are unaffected.
    """
    portfolio_service.get_portfolio_or_404(db, portfolio_id)
    tax_year = validate_tax_year(year) if year is not None else None
    result = calculate_portfolio_cost_basis(db, portfolio_id, parse_method(method), tax_year)
    return result.to_dict()


@router.get("/{portfolio_id}/summary", response_model=PortfolioSummaryRead)
async def get_summary(
    portfolio_id: int,
    method: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    oracle: PriceOracle = Depends(get_price_oracle),
):
    """
    Balance, remaining cost basis and unrealized gain. If no price source
    answers, the price, current value and unrealized gain are null.
    """
    portfolio_service.get_portfolio_or_404(db, portfolio_id)
    cb_method = parse_method(method)
    try:
        price = await oracle.get_current_price()
    except ExternalServiceError as e:
        logger.warning(f"Summary for portfolio {portfolio_id} without price: {e}")
        price = None
    return portfolio_summary(db, portfolio_id, price, cb_method)
