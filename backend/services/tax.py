# FILE: backend/services/tax.py

"""
backend/services/tax.py

Yearly capital gains report built on the cost basis engine, plus its
Form 8949 style CSV export.

Each disposal record becomes one TaxDisposition (one 8949 line). Money is
rounded to cents with ROUND_HALF_UP on the absolute value, and all report
totals are sums of the rounded lines so the CSV TOTALS row always agrees
with the rows above it.
"""

import csv
import io
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from backend.errors import BadRequestError
from backend.services.costbasis import (
    SATS_PER_BTC,
    CostBasisMethod,
    DisposalRecord,
    LedgerEntry,
    calculate_cost_basis,
    load_ledger_entries,
    parse_method,
)

logger = logging.getLogger(__name__)

CURRENCY_PLACES = Decimal("0.01")
MIN_TAX_YEAR = 1970
MAX_TAX_YEAR = 9999

CSV_HEADER = [
    "Description",
    "Date Acquired",
    "Date Sold",
    "Proceeds",
    "Cost Basis",
    "Gain/Loss",
    "Term",
]


def round_currency(amount) -> Decimal:
    """Round to cents, half away from zero (ROUND_HALF_UP works on magnitude)."""
    return Decimal(str(amount)).quantize(CURRENCY_PLACES, rounding=ROUND_HALF_UP)


def validate_tax_year(year: int) -> int:
    if year is None or not (MIN_TAX_YEAR <= int(year) <= MAX_TAX_YEAR):
        raise BadRequestError(f"Tax year must be between {MIN_TAX_YEAR} and {MAX_TAX_YEAR}.")
    return int(year)


##############################################################################
# 1) DISPOSITION ROW
##############################################################################
class TaxDisposition:
    """
    One line of the disposal schedule (Form 8949 columns a, b, c, d, e, h).
    Lots are not individually identified, so 'date acquired' is "Various".
    """
    def __init__(
        self,
        description: str,
        date_acquired: str,
        date_sold: str,
        proceeds,
        cost_basis,
        gain_or_loss,
        holding_period: str,
        holding_days: int = 0,
    ):
        self.description = description
        self.date_acquired = date_acquired
        self.date_sold = date_sold
        self.proceeds = round_currency(proceeds)
        self.cost_basis = round_currency(cost_basis)
        self.gain_or_loss = round_currency(gain_or_loss)
        self.holding_period = holding_period
        self.holding_days = holding_days

    @classmethod
    def from_disposal(cls, record: DisposalRecord) -> "TaxDisposition":
        disposed_on = record.disposed_on
        if disposed_on is not None:
            date_sold = disposed_on.isoformat()
        else:
            date_sold = str(record.disposed_at or "")[:10]
        return cls(
            description=f"{record.disposed_sat / SATS_PER_BTC:.8f} BTC",
            date_acquired="Various",
            date_sold=date_sold,
            proceeds=record.proceeds_usd,
            cost_basis=record.cost_basis_usd,
            gain_or_loss=record.gain_usd,
            holding_period="Long-term" if record.is_long_term else "Short-term",
            holding_days=record.holding_days,
        )

    @property
    def is_long_term(self) -> bool:
        return self.holding_period == "Long-term"

    def to_dict(self) -> Dict:
        return {
            "description": self.description,
            "date_acquired": self.date_acquired,
            "date_sold": self.date_sold,
            "proceeds": self.proceeds,
            "cost_basis": self.cost_basis,
            "gain_or_loss": self.gain_or_loss,
            "holding_period": self.holding_period,
            "holding_days": self.holding_days,
        }


##############################################################################
# 2) REPORT
##############################################################################
class TaxReport:
    def __init__(self, year: int, method: CostBasisMethod, dispositions: List[TaxDisposition]):
        self.year = year
        self.method = method
        self.dispositions = dispositions

        zero = Decimal("0.00")
        self.short_term_gains = sum(
            (d.gain_or_loss for d in dispositions if not d.is_long_term), zero
        )
        self.long_term_gains = sum(
            (d.gain_or_loss for d in dispositions if d.is_long_term), zero
        )
        self.total_gains = self.short_term_gains + self.long_term_gains
        self.total_proceeds = sum((d.proceeds for d in dispositions), zero)
        self.total_cost_basis = sum((d.cost_basis for d in dispositions), zero)

    @property
    def disposition_count(self) -> int:
        return len(self.dispositions)

    def to_dict(self) -> Dict:
        return {
            "year": self.year,
            "method": self.method.value,
            "short_term_gains": self.short_term_gains,
            "long_term_gains": self.long_term_gains,
            "total_gains": self.total_gains,
            "total_proceeds": self.total_proceeds,
            "total_cost_basis": self.total_cost_basis,
            "disposition_count": self.disposition_count,
            "dispositions": [d.to_dict() for d in self.dispositions],
        }


def generate_tax_report(
    entries: Iterable[LedgerEntry],
    year: int,
    method: Optional[CostBasisMethod] = CostBasisMethod.FIFO,
) -> TaxReport:
    """
    Run the engine over the full ledger with a `year` filter and build the
    schedule from the disposals dated in that year.
    """
    year = validate_tax_year(year)
    method = parse_method(method)
    result = calculate_cost_basis(entries, method, tax_year=year)
    dispositions = [TaxDisposition.from_disposal(r) for r in result.disposals]
    report = TaxReport(year, method, dispositions)
    logger.info(
        f"Tax report {year} ({method.value}): {report.disposition_count} dispositions, "
        f"total gains {report.total_gains}"
    )
    return report


def generate_portfolio_tax_report(
    db: Session,
    portfolio_id: int,
    year: int,
    method: Optional[CostBasisMethod] = CostBasisMethod.FIFO,
) -> TaxReport:
    return generate_tax_report(load_ledger_entries(db, portfolio_id), year, method)


##############################################################################
# 3) CSV EXPORT
##############################################################################
def _money(value: Decimal) -> str:
    return f"{value:.2f}"


def generate_form_8949_csv(report: TaxReport) -> str:
    """
    Header, one row per disposition, then a TOTALS row with blank dates and
    term. Money columns always carry exactly two decimals.
    """
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for d in report.dispositions:
        writer.writerow([
            d.description,
            d.date_acquired,
            d.date_sold,
            _money(d.proceeds),
            _money(d.cost_basis),
            _money(d.gain_or_loss),
            d.holding_period,
        ])
    writer.writerow([
        "TOTALS",
        "",
        "",
        _money(report.total_proceeds),
        _money(report.total_cost_basis),
        _money(report.total_gains),
        "",
    ])
    return buf.getvalue()
