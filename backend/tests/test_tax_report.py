"""
Tax report and Form 8949 CSV tests.
"""

import csv
import io
from decimal import Decimal

import pytest

from backend.errors import BadRequestError
from backend.services.costbasis import SATS_PER_BTC, CostBasisMethod, LedgerEntry
from backend.services.tax import (
    CSV_HEADER,
    generate_form_8949_csv,
    generate_tax_report,
    round_currency,
)

BTC = SATS_PER_BTC

LEDGER = [
    LedgerEntry("buy", BTC, 100.0, "2022-01-01T00:00:00Z"),
    LedgerEntry("buy", BTC, 200.0, "2024-02-01T00:00:00Z"),
    LedgerEntry("buy", BTC, 300.0, "2024-03-01T00:00:00Z"),
    LedgerEntry("sell", BTC // 4, 150.0, "2023-12-31T23:00:00Z"),
    LedgerEntry("sell", BTC + BTC // 4, 400.0, "2024-04-01T10:30:00Z"),
]


def _rows(text):
    return list(csv.reader(io.StringIO(text)))


def test_report_only_includes_disposals_in_year():
    report = generate_tax_report(LEDGER, 2024, CostBasisMethod.FIFO)

    # 2023 sale took 0.25 of the first lot, so 2024 starts from its remaining 0.75
    assert report.disposition_count == 2
    first, second = report.dispositions
    assert first.description == "0.75000000 BTC"
    assert first.cost_basis == Decimal("75.00")
    assert first.proceeds == Decimal("300.00")
    assert first.holding_period == "Long-term"
    assert second.description == "0.50000000 BTC"
    assert second.cost_basis == Decimal("100.00")
    assert second.holding_period == "Short-term"


def test_report_totals():
    report = generate_tax_report(LEDGER, 2024)

    assert report.long_term_gains == Decimal("225.00")
    assert report.short_term_gains == Decimal("100.00")
    assert report.total_gains == Decimal("325.00")
    assert report.total_proceeds == Decimal("500.00")
    assert report.total_cost_basis == Decimal("175.00")


def test_disposition_columns():
    report = generate_tax_report(LEDGER, 2024)
    row = report.dispositions[0].to_dict()

    assert row["date_acquired"] == "Various"
    assert row["date_sold"] == "2024-04-01"
    assert row["gain_or_loss"] == Decimal("225.00")


def test_previous_year_report():
    report = generate_tax_report(LEDGER, 2023)

    assert report.disposition_count == 1
    assert report.dispositions[0].date_sold == "2023-12-31"
    assert report.total_gains == Decimal("12.50")


def test_method_changes_the_report():
    fifo = generate_tax_report(LEDGER, 2024, CostBasisMethod.FIFO)
    hifo = generate_tax_report(LEDGER, 2024, CostBasisMethod.HIFO)

    assert hifo.method is CostBasisMethod.HIFO
    assert hifo.total_cost_basis > fifo.total_cost_basis


@pytest.mark.parametrize("value, expected", [
    (2.675, "2.68"),
    (-1.005, "-1.01"),
    (0.004, "0.00"),
    (Decimal("10.125"), "10.13"),
])
def test_round_currency_half_away_from_zero(value, expected):
    assert round_currency(value) == Decimal(expected)


def test_invalid_year_is_rejected():
    with pytest.raises(BadRequestError):
        generate_tax_report(LEDGER, 1900)


def test_csv_layout():
    report = generate_tax_report(LEDGER, 2024)
    rows = _rows(generate_form_8949_csv(report))

    assert rows[0] == CSV_HEADER
    assert rows[1] == [
        "0.75000000 BTC", "Various", "2024-04-01", "300.00", "75.00", "225.00", "Long-term",
    ]
    assert rows[2] == [
        "0.50000000 BTC", "Various", "2024-04-01", "200.00", "100.00", "100.00", "Short-term",
    ]
    assert rows[-1] == ["TOTALS", "", "", "500.00", "175.00", "325.00", ""]


def test_csv_totals_match_rows():
    entries = [LedgerEntry("buy", 333_333, 41_234.57, "2024-01-01")]
    entries += [LedgerEntry("sell", 11_111, 45_678.91 + i, f"2024-03-{i + 1:02d}") for i in range(20)]
    rows = _rows(generate_form_8949_csv(generate_tax_report(entries, 2024)))

    body, totals = rows[1:-1], rows[-1]
    assert len(body) == 20
    for col in (3, 4, 5):
        assert sum(Decimal(r[col]) for r in body) == Decimal(totals[col])
        assert all(len(r[col].split(".")[1]) == 2 for r in body + [totals])


def test_csv_for_empty_year():
    rows = _rows(generate_form_8949_csv(generate_tax_report(LEDGER, 2021)))

    assert rows == [CSV_HEADER, ["TOTALS", "", "", "0.00", "0.00", "0.00", ""]]
