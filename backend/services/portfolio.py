"""
backend/services/portfolio.py

CRUD helpers for portfolios. Deleting a portfolio removes its ledger and
invoices through the ORM cascade.
"""

import logging
from typing import List

from sqlalchemy.orm import Session

from backend.errors import BadRequestError, NotFoundError
from backend.models.portfolio import Portfolio
from backend.schemas.portfolio import PortfolioCreate, PortfolioUpdate

logger = logging.getLogger(__name__)


def list_portfolios(db: Session) -> List[Portfolio]:
    return db.query(Portfolio).order_by(Portfolio.id.asc()).all()


def get_portfolio_or_404(db: Session, portfolio_id: int) -> Portfolio:
    portfolio = db.query(Portfolio).filter(Portfolio.id == portfolio_id).first()
    if not portfolio:
        raise NotFoundError(f"Portfolio {portfolio_id} not found")
    return portfolio


def create_portfolio(db: Session, data: PortfolioCreate) -> Portfolio:
    portfolio = Portfolio(name=data.name, description=data.description)
    db.add(portfolio)
    db.commit()
    db.refresh(portfolio)
    logger.info(f"Created portfolio id={portfolio.id} name={portfolio.name!r}")
    return portfolio


def update_portfolio(db: Session, portfolio_id: int, data: PortfolioUpdate) -> Portfolio:
    portfolio = get_portfolio_or_404(db, portfolio_id)
    changes = data.model_dump(exclude_unset=True)
    for key, value in changes.items():
        if value is None and not Portfolio.__table__.c[key].nullable:
            raise BadRequestError(f"{key} cannot be null")
    for key, value in changes.items():
        setattr(portfolio, key, value)
    db.commit()
    db.refresh(portfolio)
    return portfolio


def delete_portfolio(db: Session, portfolio_id: int) -> None:
    portfolio = get_portfolio_or_404(db, portfolio_id)
    db.delete(portfolio)
    db.commit()
    logger.info(f"Deleted portfolio id={portfolio_id}")
