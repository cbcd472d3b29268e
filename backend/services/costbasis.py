"""
backend/services/costbasis.py

Lot-based cost basis engine for SatLedger.

The engine replays a portfolio's ledger from the beginning on every call:

 - buy / receive create a Lot (amount in sat, fixed USD unit price)
 - sell / send consume lots in the order chosen by the method
     FIFO: oldest acquisition first
     LIFO: newest acquisition first
     HIFO: highest unit price first (ties by acquisition order)
 - transfer is a no-op

Each (partial) lot consumed produces one DisposalRecord. Nothing here is
persisted; lots live only for the duration of one calculation.

Implementation Notes:
 - Amounts are integer satoshis throughout, so the conservation
   remaining + disposed == acquired holds exactly.
 - A disposal larger than the open lots is truncated to what is available;
   the shortfall is returned as unmatched_sat and logged.
 - A missing price counts as 0.0 on either leg.
 - Unparseable or missing timestamps give a zero-day holding period and
   never match a tax-year filter.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Union

from sqlalchemy.orm import Session

from backend.errors import BadRequestError
from backend.models.transaction import Transaction

logger = logging.getLogger(__name__)

SATS_PER_BTC = 100_000_000
LONG_TERM_DAYS = 365

ACQUISITION_TYPES = ("buy", "receive")
DISPOSAL_TYPES = ("sell", "send")

Timestamp = Union[datetime, str, None]


class CostBasisMethod(str, Enum):
    FIFO = "fifo"
    LIFO = "lifo"
    HIFO = "hifo"


def parse_method(value: Optional[str]) -> CostBasisMethod:
    """Map 'fifo' / 'lifo' / 'hifo' (any case) to a method; None means FIFO."""
    if value is None or value == "":
        return CostBasisMethod.FIFO
    if isinstance(value, CostBasisMethod):
        return value
    try:
        return CostBasisMethod(value.strip().lower())
    except ValueError:
        raise BadRequestError(f"Unknown cost basis method '{value}'. Use fifo, lifo or hifo.")


# ------------------------------------------------------------------------------
# Data types
# ------------------------------------------------------------------------------
@dataclass(frozen=True)
class LedgerEntry:
    """One immutable ledger event as the engine sees it."""
    tx_type: str
    amount_sat: int
    price_usd: Optional[float] = None
    timestamp: Timestamp = None


@dataclass
class Lot:
    amount_sat: int
    unit_price_usd: float
    acquired_at: Timestamp = None

    @property
    def cost_basis_usd(self) -> float:
        return self.amount_sat / SATS_PER_BTC * self.unit_price_usd

    def to_dict(self) -> dict:
        return {
            "amount_sat": self.amount_sat,
            "unit_price_usd": self.unit_price_usd,
            "acquired_at": format_timestamp(self.acquired_at),
        }


@dataclass
class DisposalRecord:
    disposed_at: Timestamp
    disposed_sat: int
    sale_price_usd: float
    cost_basis_usd: float
    proceeds_usd: float
    gain_usd: float
    holding_days: int
    is_long_term: bool

    @property
    def disposed_on(self) -> Optional[date]:
        return parse_date(self.disposed_at)

    def to_dict(self) -> dict:
        return {
            "disposed_at": format_timestamp(self.disposed_at),
            "disposed_sat": self.disposed_sat,
            "sale_price_usd": self.sale_price_usd,
            "cost_basis_usd": self.cost_basis_usd,
            "proceeds_usd": self.proceeds_usd,
            "gain_usd": self.gain_usd,
            "holding_days": self.holding_days,
            "is_long_term": self.is_long_term,
        }


@dataclass
class CostBasisResult:
    method: CostBasisMethod
    tax_year: Optional[int] = None
    disposals: List[DisposalRecord] = field(default_factory=list)
    total_realized_gain_usd: float = 0.0
    total_short_term_gain_usd: float = 0.0
    total_long_term_gain_usd: float = 0.0
    # Every satoshi consumed from lots, including disposals outside tax_year
    total_disposed_sat: int = 0
    unmatched_sat: int = 0
    remaining_lots: List[Lot] = field(default_factory=list)

    @property
    def remaining_balance_sat(self) -> int:
        return sum(lot.amount_sat for lot in self.remaining_lots)

    @property
    def remaining_cost_basis_usd(self) -> float:
        return sum(lot.cost_basis_usd for lot in self.remaining_lots)

    def to_dict(self) -> dict:
        return {
            "method": self.method.value,
            "tax_year": self.tax_year,
            "disposals": [d.to_dict() for d in self.disposals],
            "total_realized_gain_usd": self.total_realized_gain_usd,
            "total_short_term_gain_usd": self.total_short_term_gain_usd,
            "total_long_term_gain_usd": self.total_long_term_gain_usd,
            "total_disposed_sat": self.total_disposed_sat,
            "unmatched_sat": self.unmatched_sat,
            "remaining_balance_sat": self.remaining_balance_sat,
            "remaining_cost_basis_usd": self.remaining_cost_basis_usd,
            "remaining_lots": [lot.to_dict() for lot in self.remaining_lots],
        }


# ------------------------------------------------------------------------------
# Date helpers
# ------------------------------------------------------------------------------
def parse_date(value: Timestamp) -> Optional[date]:
    """
    Calendar date (UTC) of a timestamp. Accepts datetimes and ISO-8601
    strings (date-only strings too). Returns None when it can't be read.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        try:
            return date.fromisoformat(text[:10])
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.date()


def format_timestamp(value: Timestamp) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def days_between(start: Timestamp, end: Timestamp) -> int:
    """Whole calendar days from start to end; 0 if either side is unreadable."""
    start_date = parse_date(start)
    end_date = parse_date(end)
    if start_date is None or end_date is None:
        return 0
    return (end_date - start_date).days


# ------------------------------------------------------------------------------
# Lot selection
# ------------------------------------------------------------------------------
def consumption_order(lots: Sequence[Lot], method: CostBasisMethod) -> List[int]:
    """
    Indexes into `lots` (kept in acquisition order) in the order a disposal
    should consume them. Pure; never reorders `lots` itself.
    """
    indexes = range(len(lots))
    if method is CostBasisMethod.LIFO:
        return list(reversed(indexes))
    if method is CostBasisMethod.HIFO:
        # sorted() is stable, so equal prices keep acquisition order
        return sorted(indexes, key=lambda i: -lots[i].unit_price_usd)
    return list(indexes)


def _consume(
    lots: List[Lot],
    entry: LedgerEntry,
    method: CostBasisMethod,
) -> tuple:
    """
    Deplete lots for one disposal. Returns (records, unmatched_sat) and drops
    emptied lots from `lots` in place.
    """
    sale_price = entry.price_usd if entry.price_usd is not None else 0.0
    remaining = entry.amount_sat
    records: List[DisposalRecord] = []

    for idx in consumption_order(lots, method):
        if remaining <= 0:
            break
        lot = lots[idx]
        take = min(remaining, lot.amount_sat)
        if take <= 0:
            continue
        btc = take / SATS_PER_BTC
        cost_basis = btc * lot.unit_price_usd
        proceeds = btc * sale_price
        holding_days = days_between(lot.acquired_at, entry.timestamp)
        records.append(DisposalRecord(
            disposed_at=entry.timestamp,
            disposed_sat=take,
            sale_price_usd=sale_price,
            cost_basis_usd=cost_basis,
            proceeds_usd=proceeds,
            gain_usd=proceeds - cost_basis,
            holding_days=holding_days,
            is_long_term=holding_days > LONG_TERM_DAYS,
        ))
        lot.amount_sat -= take
        remaining -= take

    lots[:] = [lot for lot in lots if lot.amount_sat > 0]
    return records, remaining


# ------------------------------------------------------------------------------
# Public entry points
# ------------------------------------------------------------------------------
def calculate_cost_basis(
    entries: Iterable[LedgerEntry],
    method: CostBasisMethod = CostBasisMethod.FIFO,
    tax_year: Optional[int] = None,
) -> CostBasisResult:
    """
    Replay `entries` (already in ledger order) and return disposals, gain
    totals and the lots still open.

    `tax_year` only filters which disposals are reported; every disposal
    still depletes lots so later years see the correct basis.
    """
    method = parse_method(method)
    lots: List[Lot] = []
    result = CostBasisResult(method=method, tax_year=tax_year)

    for entry in entries:
        if entry.amount_sat <= 0:
            continue

        if entry.tx_type in ACQUISITION_TYPES:
            lots.append(Lot(
                amount_sat=entry.amount_sat,
                unit_price_usd=entry.price_usd if entry.price_usd is not None else 0.0,
                acquired_at=entry.timestamp,
            ))
            continue

        if entry.tx_type not in DISPOSAL_TYPES:
            continue

        records, unmatched = _consume(lots, entry, method)
        if unmatched:
            logger.warning(
                f"Disposal of {entry.amount_sat} sat at {format_timestamp(entry.timestamp)} "
                f"exceeds open lots by {unmatched} sat; truncating."
            )
            result.unmatched_sat += unmatched

        for record in records:
            result.total_disposed_sat += record.disposed_sat
            if tax_year is not None:
                disposed_on = record.disposed_on
                if disposed_on is None or disposed_on.year != tax_year:
                    continue
            result.disposals.append(record)
            result.total_realized_gain_usd += record.gain_usd
            if record.is_long_term:
                result.total_long_term_gain_usd += record.gain_usd
            else:
                result.total_short_term_gain_usd += record.gain_usd

    result.remaining_lots = lots
    logger.debug(
        f"{method.value}: {len(result.disposals)} disposals, "
        f"{len(lots)} open lots, {result.remaining_balance_sat} sat remaining"
    )
    return result


def entry_from_transaction(tx: Transaction) -> LedgerEntry:
    return LedgerEntry(
        tx_type=tx.tx_type,
        amount_sat=tx.amount_sat,
        price_usd=tx.price_usd,
        timestamp=tx.transacted_at,
    )


def load_ledger_entries(db: Session, portfolio_id: int) -> List[LedgerEntry]:
    """Ledger snapshot for a portfolio in (transacted_at, id) order."""
    rows = (
        db.query(Transaction)
        .filter(Transaction.portfolio_id == portfolio_id)
        .order_by(Transaction.transacted_at.asc(), Transaction.id.asc())
        .all()
    )
    return [entry_from_transaction(tx) for tx in rows]


def calculate_portfolio_cost_basis(
    db: Session,
    portfolio_id: int,
    method: CostBasisMethod = CostBasisMethod.FIFO,
    tax_year: Optional[int] = None,
) -> CostBasisResult:
    return calculate_cost_basis(load_ledger_entries(db, portfolio_id), method, tax_year)


def portfolio_summary(
    db: Session,
    portfolio_id: int,
    current_price_usd: Optional[float],
    method: CostBasisMethod = CostBasisMethod.FIFO,
) -> dict:
    """
    Holdings overview: balance, remaining basis, market value and
    unrealized / realized gain at `current_price_usd`.

    With no price (None), current_value_usd and unrealized_gain_usd are None.
    """
    entries = load_ledger_entries(db, portfolio_id)
    result = calculate_cost_basis(entries, method)

    total_received = sum(e.amount_sat for e in entries if e.tx_type in ACQUISITION_TYPES)
    total_sent = sum(e.amount_sat for e in entries if e.tx_type in DISPOSAL_TYPES)
    balance_sat = total_received - total_sent

    cost_basis = result.remaining_cost_basis_usd
    current_value = unrealized = None
    if current_price_usd is not None:
        current_value = balance_sat / SATS_PER_BTC * current_price_usd
        unrealized = current_value - cost_basis

    return {
        "method": result.method.value,
        "current_price_usd": current_price_usd,
        "total_balance_sat": balance_sat,
        "total_cost_basis_usd": cost_basis,
        "current_value_usd": current_value,
        "unrealized_gain_usd": unrealized,
        "realized_gain_usd": result.total_realized_gain_usd,
        "total_received_sat": total_received,
        "total_sent_sat": total_sent,
        "transaction_count": len(entries),
    }
