"""
backend/routers/transaction.py

Router for the per-portfolio ledger. Rows are created and deleted, never
edited; cost basis is recomputed from the ledger on every read, so a
backdated insert or a delete is reflected immediately.

main.py mounts this router under "/api/portfolios".
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from backend.database import get_db
from backend.schemas.transaction import TransactionCreate, TransactionRead, TxSource, TxType
from backend.services import transaction as tx_service
from backend.services.portfolio import get_portfolio_or_404
from backend.services.prices import PriceOracle, get_price_oracle

router = APIRouter(tags=["transactions"])


@router.get("/{portfolio_id}/transactions", response_model=List[TransactionRead])
def list_transactions(
    portfolio_id: int,
    tx_type: Optional[TxType] = None,
    source: Optional[TxSource] = None,
    start: Optional[datetime] = Query(None, description="Inclusive lower bound (UTC)"),
    end: Optional[datetime] = Query(None, description="Exclusive upper bound (UTC)"),
    limit: int = Query(tx_service.DEFAULT_PAGE_SIZE, ge=1, le=tx_service.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    """
    List ledger rows newest first. Every filter is optional and they
    combine with AND.
    """
    get_portfolio_or_404(db, portfolio_id)
    return tx_service.list_transactions(
        db, portfolio_id, tx_type, source, start, end, limit, offset
    )


@router.post("/{portfolio_id}/transactions", response_model=TransactionRead, status_code=201)
async def create_transaction(
    portfolio_id: int,
    tx: TransactionCreate,
    db: Session = Depends(get_db),
    oracle: PriceOracle = Depends(get_price_oracle),
):
    """
    Append a ledger row. Without price_usd, the row is priced from the
    oracle at transacted_at (transfers are left unpriced).
    """
    get_portfolio_or_404(db, portfolio_id)
    if tx.price_usd is None and tx.tx_type != TxType.TRANSFER:
        price = await tx_service.lookup_price_usd(oracle, tx.transacted_at)
        tx = tx.model_copy(update={"price_usd": price})
    return tx_service.create_transaction_record(db, portfolio_id, tx)


@router.get("/{portfolio_id}/transactions/{transaction_id}", response_model=TransactionRead)
def get_transaction(portfolio_id: int, transaction_id: int, db: Session = Depends(get_db)):
    return tx_service.get_transaction_or_404(db, portfolio_id, transaction_id)


@router.delete("/{portfolio_id}/transactions/{transaction_id}", status_code=204)
def delete_transaction(portfolio_id: int, transaction_id: int, db: Session = Depends(get_db)):
    tx_service.delete_transaction_record(db, portfolio_id, transaction_id)
    return Response(status_code=204)
