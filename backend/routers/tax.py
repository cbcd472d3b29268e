"""
backend/routers/tax.py

Yearly capital gains report for a portfolio, as JSON or as a Form 8949
style CSV download.

main.py mounts this router under "/api/portfolios".
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from backend.database import get_db
from backend.schemas.tax import TaxReportRead
from backend.services.costbasis import parse_method
from backend.services.portfolio import get_portfolio_or_404
from backend.services.tax import generate_form_8949_csv, generate_portfolio_tax_report

router = APIRouter(tags=["tax"])


@router.get("/{portfolio_id}/tax/report", response_model=TaxReportRead)
def get_tax_report(
    portfolio_id: int,
    year: int = Query(..., description="Tax year, e.g. 2024"),
    method: Optional[str] = Query(None, description="fifo, lifo or hifo (default fifo)"),
    db: Session = Depends(get_db),
):
    get_portfolio_or_404(db, portfolio_id)
    report = generate_portfolio_tax_report(db, portfolio_id, year, parse_method(method))
    return report.to_dict()


@router.get("/{portfolio_id}/tax/csv")
def get_tax_csv(
    portfolio_id: int,
    year: int = Query(...),
    method: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    """
    Returns the disposal schedule as text/csv with a TOTALS row.
    """
    get_portfolio_or_404(db, portfolio_id)
    cb_method = parse_method(method)
    report = generate_portfolio_tax_report(db, portfolio_id, year, cb_method)
    filename = f"form_8949_{report.year}_{cb_method.value}.csv"
    return Response(
        content=generate_form_8949_csv(report),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
