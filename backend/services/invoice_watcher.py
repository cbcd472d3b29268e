"""
backend/services/invoice_watcher.py

Payment detection for invoices.

check_invoice_payment() asks the chain API for transactions touching the
invoice address and, when one pays at least amount_sat to that address,
marks the invoice paid with a conditional UPDATE. The WHERE clause is the
only serialization between the background watcher and on-demand checks:
whichever caller's UPDATE matches first wins, the other matches zero rows.
The same commit appends a 'receive' row to the portfolio ledger so the
payment becomes a lot at btc_price_at_creation.

InvoiceWatcher runs the periodic loop:
  1) expire 'sent' invoices whose expires_at has passed
  2) pick up to batch_size 'sent' invoices, least recently checked first
  3) check them one at a time with a fixed delay in between
A chain failure only skips that invoice; a database failure ends the cycle.

Session work runs in the threadpool (run_in_threadpool) so a SQLite write
lock held by a request never stalls the event loop.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.config import settings
from backend.database import SessionLocal, utcnow
from backend.errors import ExternalServiceError, StorageError
from backend.models.invoice import Invoice
from backend.models.transaction import Transaction
from backend.schemas.invoice import InvoiceStatus
from backend.schemas.transaction import TxSource, TxType
from backend.services.chain import ChainQueryClient, EsploraTx
from backend.services.transaction import find_by_txid

logger = logging.getLogger(__name__)

PAID = InvoiceStatus.PAID.value
SENT = InvoiceStatus.SENT.value
CANCELLED = InvoiceStatus.CANCELLED.value
EXPIRED = InvoiceStatus.EXPIRED.value


# ------------------------------------------------------------------------------
# Single invoice check
# ------------------------------------------------------------------------------
def find_qualifying_payment(txs: List[EsploraTx], address: str, amount_sat: int) -> Optional[EsploraTx]:
    """First transaction (in API order) paying at least amount_sat to address."""
    for tx in txs:
        if tx.amount_to(address) >= amount_sat:
            return tx
    return None


def _payment_time(tx: EsploraTx, fallback: datetime) -> datetime:
    if tx.status.confirmed and tx.status.block_time:
        return datetime.fromtimestamp(tx.status.block_time, tz=timezone.utc)
    return fallback


def _mark_paid(db: Session, invoice: Invoice, tx: EsploraTx, now: datetime) -> bool:
    """
    Conditional paid transition plus ledger write, in one commit.
    Returns True when the UPDATE matched the row.
    """
    invoice_id = invoice.id
    portfolio_id = invoice.portfolio_id
    price = invoice.btc_price_at_creation
    amount = tx.amount_to(invoice.btc_address)

    criteria = [Invoice.id == invoice_id, Invoice.status != CANCELLED]
    if invoice.reusable:
        criteria.append(or_(
            Invoice.status != PAID,
            Invoice.paid_txid.is_(None),
            Invoice.paid_txid != tx.txid,
        ))
    else:
        criteria.append(Invoice.status != PAID)

    try:
        updated = db.query(Invoice).filter(*criteria).update(
            {
                Invoice.status: PAID,
                Invoice.paid_at: now,
                Invoice.paid_txid: tx.txid,
                Invoice.paid_amount_sat: amount,
                Invoice.last_checked_at: now,
                Invoice.updated_at: now,
            },
            synchronize_session=False,
        )
        if updated == 1 and not find_by_txid(db, portfolio_id, tx.txid):
            db.add(Transaction(
                portfolio_id=portfolio_id,
                tx_type=TxType.RECEIVE.value,
                amount_sat=amount,
                price_usd=price,
                txid=tx.txid,
                source=TxSource.INVOICE.value,
                invoice_id=invoice_id,
                transacted_at=_payment_time(tx, now),
            ))
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to record payment {tx.txid} for invoice id={invoice_id}: {e}")
        raise StorageError(f"Failed to record payment for invoice {invoice_id}")

    if updated == 1:
        logger.info(f"Invoice id={invoice_id} paid by {tx.txid} ({amount} sat)")
    db.refresh(invoice)
    return updated == 1


def _touch_checked(db: Session, invoice_id: int, now: datetime) -> None:
    try:
        db.query(Invoice).filter(Invoice.id == invoice_id).update(
            {Invoice.last_checked_at: now}, synchronize_session=False
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StorageError(f"Failed to update invoice {invoice_id}: {e}")


async def check_invoice_payment(chain_client: ChainQueryClient, db: Session, invoice: Invoice) -> bool:
    """
    Look for a payment to the invoice address and record it.

    Returns True when the invoice was transitioned to paid by this call
    (non-reusable), or when a qualifying payment exists (reusable). Raises
    ExternalServiceError if the chain API can't be read.
    """
    if invoice.status == PAID and not invoice.reusable:
        return False
    if invoice.status == CANCELLED:
        return False

    address = invoice.btc_address
    txs = await chain_client.get_address_transactions(address)
    match = find_qualifying_payment(txs, address, invoice.amount_sat)
    now = utcnow()

    if match is None:
        await run_in_threadpool(_touch_checked, db, invoice.id, now)
        logger.debug(f"Invoice id={invoice.id}: no qualifying payment among {len(txs)} txs")
        return False

    applied = await run_in_threadpool(_mark_paid, db, invoice, match, now)
    if invoice.reusable:
        return True
    return applied


# ------------------------------------------------------------------------------
# Batch helpers
# ------------------------------------------------------------------------------
def expire_overdue_invoices(db: Session, now: Optional[datetime] = None) -> int:
    """Move 'sent' invoices with expires_at < now to 'expired'. Returns count."""
    now = now or utcnow()
    count = (
        db.query(Invoice)
        .filter(
            Invoice.status == SENT,
            Invoice.expires_at.isnot(None),
            Invoice.expires_at < now,
        )
        .update({Invoice.status: EXPIRED, Invoice.updated_at: now}, synchronize_session=False)
    )
    db.commit()
    if count:
        logger.info(f"Expired {count} overdue invoice(s)")
    return count


def fetch_pending_invoices(db: Session, limit: int) -> List[Invoice]:
    """'sent' invoices, never-checked first, then least recently checked."""
    return (
        db.query(Invoice)
        .filter(Invoice.status == SENT)
        .order_by(
            Invoice.last_checked_at.isnot(None),
            Invoice.last_checked_at.asc(),
            Invoice.id.asc(),
        )
        .limit(limit)
        .all()
    )


def _stamp_checked(db: Session, invoices: List[Invoice], now: datetime) -> None:
    ids = [inv.id for inv in invoices]
    if not ids:
        return
    db.query(Invoice).filter(Invoice.id.in_(ids)).update(
        {Invoice.last_checked_at: now}, synchronize_session=False
    )
    db.commit()


def _claim_batch(db: Session, batch_size: int) -> List[Invoice]:
    """Expiry sweep, then fetch and stamp the next batch of 'sent' invoices."""
    try:
        expire_overdue_invoices(db)
        pending = fetch_pending_invoices(db, batch_size)
        _stamp_checked(db, pending, utcnow())
    except SQLAlchemyError:
        db.rollback()
        raise
    return pending


# ------------------------------------------------------------------------------
# Background loop
# ------------------------------------------------------------------------------
class InvoiceWatcher:
    def __init__(
        self,
        chain_client: Optional[ChainQueryClient] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        interval: Optional[float] = None,
        batch_size: Optional[int] = None,
        delay: Optional[float] = None,
    ):
        self.chain_client = chain_client or ChainQueryClient()
        self.session_factory = session_factory
        self.interval = settings.invoice_check_interval_seconds if interval is None else interval
        self.batch_size = settings.invoice_check_batch_size if batch_size is None else batch_size
        self.delay = settings.invoice_check_delay_seconds if delay is None else delay
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    @staticmethod
    async def _wait(stop_event: Optional[asyncio.Event], seconds: float) -> bool:
        """Sleep up to `seconds`; True if stop_event was set meanwhile."""
        if stop_event is None:
            await asyncio.sleep(seconds)
            return False
        if stop_event.is_set():
            return True
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def run_cycle(self, stop_event: Optional[asyncio.Event] = None) -> int:
        """One sweep. Returns the number of invoices found paid."""
        db = self.session_factory()
        try:
            try:
                pending = await run_in_threadpool(_claim_batch, db, self.batch_size)
            except SQLAlchemyError as e:
                logger.error(f"Invoice watcher: database error, skipping cycle: {e}")
                return 0

            logger.debug(f"Invoice watcher: checking {len(pending)} invoice(s)")
            paid = 0
            for i, invoice in enumerate(pending):
                if i > 0 and await self._wait(stop_event, self.delay):
                    break
                if stop_event is not None and stop_event.is_set():
                    break
                try:
                    if await check_invoice_payment(self.chain_client, db, invoice):
                        paid += 1
                except ExternalServiceError as e:
                    logger.warning(f"Invoice watcher: check failed for invoice id={invoice.id}: {e}")
                except (StorageError, SQLAlchemyError) as e:
                    db.rollback()
                    logger.error(f"Invoice watcher: database error, ending cycle: {e}")
                    break
            return paid
        finally:
            db.close()

    async def run(self, stop_event: asyncio.Event) -> None:
        """Loop until stop_event is set. Cycles never raise out of here."""
        logger.info(
            f"Invoice watcher started (interval={self.interval}s, "
            f"batch={self.batch_size}, delay={self.delay}s)"
        )
        while not stop_event.is_set():
            if await self._wait(stop_event, self.interval):
                break
            try:
                await self.run_cycle(stop_event)
            except Exception:
                logger.exception("Invoice watcher cycle failed")
        logger.info("Invoice watcher stopped")

    def start(self) -> asyncio.Task:
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self.run(self._stop_event))
        return self._task

    async def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
