# FILE: backend/services/transaction.py

"""
backend/services/transaction.py

Ledger CRUD for SatLedger.

The ledger is append-only from the engine's point of view: rows are never
edited in place, only created or deleted, and every cost basis figure is
recomputed from the full ledger on read (the "scorched earth" approach,
fine for a personal-sized dataset).

Filtered listing goes through build_transaction_query(), which composes
typed SQLAlchemy predicates for each optional filter.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Query, Session

from backend.database import utcnow
from backend.errors import ExternalServiceError, NotFoundError
from backend.models.transaction import Transaction
from backend.schemas.transaction import TransactionCreate, TxSource, TxType

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200


def clamp_limit(limit: Optional[int]) -> int:
    if limit is None or limit <= 0:
        return DEFAULT_PAGE_SIZE
    return min(limit, MAX_PAGE_SIZE)


# ------------------------------------------------------------------------------
# Queries
# ------------------------------------------------------------------------------
def build_transaction_query(
    db: Session,
    portfolio_id: int,
    tx_type: Optional[TxType] = None,
    source: Optional[TxSource] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Query:
    """
    Portfolio ledger query with optional filters, newest first.
    `start` is inclusive, `end` exclusive.
    """
    query = db.query(Transaction).filter(Transaction.portfolio_id == portfolio_id)
    if tx_type is not None:
        query = query.filter(Transaction.tx_type == TxType(tx_type).value)
    if source is not None:
        query = query.filter(Transaction.source == TxSource(source).value)
    if start is not None:
        query = query.filter(Transaction.transacted_at >= start)
    if end is not None:
        query = query.filter(Transaction.transacted_at < end)
    return query.order_by(Transaction.transacted_at.desc(), Transaction.id.desc())


def list_transactions(
    db: Session,
    portfolio_id: int,
    tx_type: Optional[TxType] = None,
    source: Optional[TxSource] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: Optional[int] = None,
    offset: int = 0,
) -> List[Transaction]:
    query = build_transaction_query(db, portfolio_id, tx_type, source, start, end)
    return query.offset(max(offset, 0)).limit(clamp_limit(limit)).all()


def get_transaction_or_404(db: Session, portfolio_id: int, transaction_id: int) -> Transaction:
    tx = (
        db.query(Transaction)
        .filter(Transaction.portfolio_id == portfolio_id, Transaction.id == transaction_id)
        .first()
    )
    if not tx:
        raise NotFoundError(f"Transaction {transaction_id} not found")
    return tx


def find_by_txid(db: Session, portfolio_id: int, txid: str) -> Optional[Transaction]:
    return (
        db.query(Transaction)
        .filter(Transaction.portfolio_id == portfolio_id, Transaction.txid == txid)
        .first()
    )


# ------------------------------------------------------------------------------
# Writes
# ------------------------------------------------------------------------------
async def lookup_price_usd(oracle, when: Optional[datetime]) -> Optional[float]:
    """
    BTC/USD price for a row created without one: the daily price for a
    past date, the current price for today or no date. None if no source
    answers, which the engine then treats as 0.0.
    """
    try:
        if when is None or when.date() >= utcnow().date():
            return await oracle.get_current_price()
        return await oracle.get_historical_price(when.date())
    except ExternalServiceError as e:
        logger.warning(f"No BTC price for ledger row at {when or 'now'}: {e}")
        return None


def create_transaction_record(
    db: Session,
    portfolio_id: int,
    data: TransactionCreate,
    source: TxSource = TxSource.MANUAL,
) -> Transaction:
    """
    Append one ledger row. A missing transacted_at defaults to now (UTC).
    """
    new_tx = Transaction(
        portfolio_id=portfolio_id,
        tx_type=TxType(data.tx_type).value,
        amount_sat=data.amount_sat,
        fee_sat=data.fee_sat,
        price_usd=data.price_usd,
        txid=data.txid,
        notes=data.notes,
        source=TxSource(source).value,
        transacted_at=data.transacted_at or utcnow(),
    )
    db.add(new_tx)
    db.commit()
    db.refresh(new_tx)
    logger.info(
        f"Ledger +{new_tx.tx_type} id={new_tx.id} portfolio={portfolio_id} "
        f"amount_sat={new_tx.amount_sat}"
    )
    return new_tx


def delete_transaction_record(db: Session, portfolio_id: int, transaction_id: int) -> None:
    tx = get_transaction_or_404(db, portfolio_id, transaction_id)
    db.delete(tx)
    db.commit()
    logger.info(f"Ledger -{tx.tx_type} id={transaction_id} portfolio={portfolio_id}")
