"""
Payment detection and the background watcher loop, driven with an
in-memory chain client.
"""

import asyncio
import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from backend.errors import ExternalServiceError
from backend.models import Invoice, Transaction
from backend.services.invoice_watcher import (
    InvoiceWatcher,
    check_invoice_payment,
    expire_overdue_invoices,
    fetch_pending_invoices,
)


def run(coro):
    return asyncio.run(coro)


def ledger_rows(db, portfolio_id):
    return (
        db.query(Transaction)
        .filter(Transaction.portfolio_id == portfolio_id)
        .order_by(Transaction.id)
        .all()
    )


# ---------------------------------------------------------------------------
# check_invoice_payment
# ---------------------------------------------------------------------------
def test_payment_marks_invoice_paid_and_writes_ledger(test_db, make_invoice, fake_chain):
    invoice = make_invoice(amount_sat=50_000, btc_price_at_creation=60_000.0)
    fake_chain.pay(invoice.btc_address, "aa" * 32, 50_000, block_time=1_717_200_000)

    assert run(check_invoice_payment(fake_chain, test_db, invoice)) is True

    assert invoice.status == "paid"
    assert invoice.paid_txid == "aa" * 32
    assert invoice.paid_amount_sat == 50_000
    assert invoice.paid_at is not None

    [row] = ledger_rows(test_db, invoice.portfolio_id)
    assert row.tx_type == "receive"
    assert row.source == "invoice"
    assert row.amount_sat == 50_000
    assert row.price_usd == 60_000.0
    assert row.txid == "aa" * 32
    assert row.invoice_id == invoice.id
    assert row.transacted_at == datetime.fromtimestamp(1_717_200_000, tz=timezone.utc)


def test_second_check_is_a_noop(test_db, make_invoice, fake_chain):
    invoice = make_invoice()
    fake_chain.pay(invoice.btc_address, "bb" * 32, 60_000)
    assert run(check_invoice_payment(fake_chain, test_db, invoice)) is True
    paid_at = invoice.paid_at
    calls = len(fake_chain.calls)

    assert run(check_invoice_payment(fake_chain, test_db, invoice)) is False

    assert len(fake_chain.calls) == calls
    assert invoice.paid_at == paid_at
    assert len(ledger_rows(test_db, invoice.portfolio_id)) == 1


def test_underpayment_leaves_invoice_open(test_db, make_invoice, fake_chain):
    invoice = make_invoice(amount_sat=50_000)
    fake_chain.pay(invoice.btc_address, "cc" * 32, 49_999)

    assert run(check_invoice_payment(fake_chain, test_db, invoice)) is False

    assert invoice.status == "sent"
    assert invoice.last_checked_at is not None
    assert ledger_rows(test_db, invoice.portfolio_id) == []


def test_outputs_to_the_address_are_summed(test_db, make_invoice, fake_chain):
    invoice = make_invoice(amount_sat=50_000)
    addr = invoice.btc_address
    fake_chain.add_payment(addr, "dd" * 32, [(addr, 30_000), ("bc1qsomeoneelse", 90_000), (addr, 20_000)])

    assert run(check_invoice_payment(fake_chain, test_db, invoice)) is True
    assert invoice.paid_amount_sat == 50_000


def test_first_qualifying_transaction_wins(test_db, make_invoice, fake_chain):
    invoice = make_invoice(amount_sat=50_000)
    addr = invoice.btc_address
    # pay() prepends, so API order ends up: small, second, first
    fake_chain.pay(addr, "first", 70_000)
    fake_chain.pay(addr, "second", 55_000)
    fake_chain.pay(addr, "small", 10_000)

    run(check_invoice_payment(fake_chain, test_db, invoice))
    assert invoice.paid_txid == "second"


def test_reusable_invoice_records_each_new_payment(test_db, make_invoice, fake_chain):
    invoice = make_invoice(record_type="payment_link", reusable=True, amount_sat=10_000)
    addr = invoice.btc_address

    fake_chain.pay(addr, "tx1", 10_000)
    assert run(check_invoice_payment(fake_chain, test_db, invoice)) is True
    assert invoice.paid_txid == "tx1"

    fake_chain.pay(addr, "tx2", 25_000)
    assert run(check_invoice_payment(fake_chain, test_db, invoice)) is True
    assert invoice.status == "paid"
    assert invoice.paid_txid == "tx2"
    assert invoice.paid_amount_sat == 25_000

    # Same newest payment again: still True, nothing new written
    assert run(check_invoice_payment(fake_chain, test_db, invoice)) is True
    rows = ledger_rows(test_db, invoice.portfolio_id)
    assert [r.txid for r in rows] == ["tx1", "tx2"]


def test_cancelled_invoice_is_never_paid(test_db, make_invoice, fake_chain):
    invoice = make_invoice(status="cancelled")
    fake_chain.pay(invoice.btc_address, "ee" * 32, 50_000)

    assert run(check_invoice_payment(fake_chain, test_db, invoice)) is False
    assert invoice.status == "cancelled"
    assert fake_chain.calls == []


def test_cancel_between_fetch_and_update_wins(test_db, session_factory, make_invoice, fake_chain):
    invoice = make_invoice()
    fake_chain.pay(invoice.btc_address, "ff" * 32, 50_000)
    other = session_factory()
    stale = other.get(Invoice, invoice.id)
    assert stale.status == "sent"

    invoice.status = "cancelled"
    test_db.commit()

    assert run(check_invoice_payment(fake_chain, other, stale)) is False
    assert stale.status == "cancelled"
    other.close()


def test_concurrent_checks_pay_once(test_db, session_factory, make_invoice, fake_chain):
    invoice = make_invoice()
    fake_chain.pay(invoice.btc_address, "ab" * 32, 50_000)
    other = session_factory()
    stale = other.get(Invoice, invoice.id)

    assert run(check_invoice_payment(fake_chain, test_db, invoice)) is True
    # `stale` still says 'sent'; the conditional update must match nothing
    assert run(check_invoice_payment(fake_chain, other, stale)) is False
    assert stale.status == "paid"
    assert len(ledger_rows(test_db, invoice.portfolio_id)) == 1
    other.close()


def test_existing_ledger_txid_is_not_duplicated(test_db, make_invoice, fake_chain, portfolio):
    invoice = make_invoice()
    test_db.add(Transaction(
        portfolio_id=portfolio.id, tx_type="receive", amount_sat=50_000, txid="imported", source="chain",
    ))
    test_db.commit()
    fake_chain.pay(invoice.btc_address, "imported", 50_000)

    assert run(check_invoice_payment(fake_chain, test_db, invoice)) is True
    assert len(ledger_rows(test_db, portfolio.id)) == 1


def test_chain_error_propagates(test_db, make_invoice, fake_chain):
    invoice = make_invoice()
    fake_chain.errors[invoice.btc_address] = ExternalServiceError("down")

    with pytest.raises(ExternalServiceError):
        run(check_invoice_payment(fake_chain, test_db, invoice))
    assert invoice.status == "sent"


# ---------------------------------------------------------------------------
# Expiry and batching
# ---------------------------------------------------------------------------
def test_expire_only_touches_overdue_sent_invoices(test_db, make_invoice):
    now = datetime.now(timezone.utc)
    past, future = now - timedelta(hours=1), now + timedelta(hours=1)
    overdue = make_invoice(expires_at=past)
    open_ = make_invoice(expires_at=future)
    no_expiry = make_invoice(expires_at=None)
    draft = make_invoice(status="draft", expires_at=past)
    paid = make_invoice(status="paid", expires_at=past)

    assert expire_overdue_invoices(test_db, now) == 1

    test_db.expire_all()
    assert overdue.status == "expired"
    assert [i.status for i in (open_, no_expiry, draft, paid)] == ["sent", "sent", "draft", "paid"]


def test_pending_invoices_are_round_robin(test_db, make_invoice):
    now = datetime.now(timezone.utc)
    recent = make_invoice(last_checked_at=now)
    older = make_invoice(last_checked_at=now - timedelta(minutes=5))
    never = make_invoice()
    make_invoice(status="draft")

    pending = fetch_pending_invoices(test_db, limit=10)
    assert [i.id for i in pending] == [never.id, older.id, recent.id]
    assert [i.id for i in fetch_pending_invoices(test_db, limit=2)] == [never.id, older.id]


# ---------------------------------------------------------------------------
# InvoiceWatcher
# ---------------------------------------------------------------------------
def test_cycle_skips_failing_invoice(test_db, session_factory, make_invoice, fake_chain):
    failing = make_invoice()
    paying = make_invoice()
    quiet = make_invoice()
    fake_chain.errors[failing.btc_address] = ExternalServiceError("timeout")
    fake_chain.pay(paying.btc_address, "cd" * 32, 50_000)

    watcher = InvoiceWatcher(fake_chain, session_factory, interval=0, batch_size=10, delay=0)
    assert run(watcher.run_cycle()) == 1

    test_db.expire_all()
    assert failing.status == "sent"
    assert paying.status == "paid"
    assert quiet.status == "sent"
    assert sorted(fake_chain.calls) == sorted(i.btc_address for i in (failing, paying, quiet))


def test_cycle_respects_batch_size(session_factory, make_invoice, fake_chain):
    for _ in range(4):
        make_invoice()
    watcher = InvoiceWatcher(fake_chain, session_factory, interval=0, batch_size=3, delay=0)

    run(watcher.run_cycle())
    assert len(fake_chain.calls) == 3
    run(watcher.run_cycle())
    # the one left out last time goes first now
    assert len(set(fake_chain.calls)) == 4


def test_cycle_expires_before_checking(test_db, session_factory, make_invoice, fake_chain):
    overdue = make_invoice(expires_at=datetime.now(timezone.utc) - timedelta(days=1))
    watcher = InvoiceWatcher(fake_chain, session_factory, interval=0, delay=0)

    run(watcher.run_cycle())

    test_db.expire_all()
    assert overdue.status == "expired"
    assert fake_chain.calls == []


def test_cycle_survives_database_failure(tmp_path, fake_chain):
    # No tables in this database: every query fails
    broken = sessionmaker(bind=create_engine(
        f"sqlite:///{tmp_path / 'empty.db'}", connect_args={"check_same_thread": False}
    ))
    watcher = InvoiceWatcher(fake_chain, broken, interval=0, delay=0)

    assert run(watcher.run_cycle()) == 0


def test_cycle_writes_run_off_the_event_loop_thread(test_engine, session_factory, make_invoice, fake_chain):
    invoice = make_invoice()
    fake_chain.pay(invoice.btc_address, "fa" * 32, 50_000)
    writers = []

    def record(conn, cursor, statement, parameters, context, executemany):
        if statement.lstrip().upper().startswith(("UPDATE", "INSERT")):
            writers.append(threading.get_ident())

    event.listen(test_engine, "before_cursor_execute", record)
    try:
        watcher = InvoiceWatcher(fake_chain, session_factory, interval=0, delay=0)
        assert run(watcher.run_cycle()) == 1
    finally:
        event.remove(test_engine, "before_cursor_execute", record)

    # expiry sweep, batch stamp, paid transition and ledger insert
    assert len(writers) >= 4
    assert threading.get_ident() not in writers


def test_cycle_stops_when_event_is_set(session_factory, make_invoice, fake_chain):
    make_invoice()
    make_invoice()
    watcher = InvoiceWatcher(fake_chain, session_factory, interval=0, delay=0)

    async def scenario():
        stop = asyncio.Event()
        stop.set()
        return await watcher.run_cycle(stop)

    assert run(scenario()) == 0
    assert fake_chain.calls == []


def test_run_loop_checks_until_stopped(test_db, session_factory, make_invoice, fake_chain):
    invoice = make_invoice()
    fake_chain.pay(invoice.btc_address, "ef" * 32, 50_000)
    watcher = InvoiceWatcher(fake_chain, session_factory, interval=0.01, delay=0)

    async def scenario():
        stop = asyncio.Event()
        task = asyncio.create_task(watcher.run(stop))
        await asyncio.sleep(0.2)
        stop.set()
        await asyncio.wait_for(task, timeout=2)

    run(scenario())

    test_db.expire_all()
    assert invoice.status == "paid"


def test_run_loop_survives_unexpected_errors(session_factory, make_invoice, fake_chain):
    invoice = make_invoice()
    fake_chain.errors[invoice.btc_address] = RuntimeError("bug")
    watcher = InvoiceWatcher(fake_chain, session_factory, interval=0.01, delay=0)

    async def scenario():
        stop = asyncio.Event()
        task = asyncio.create_task(watcher.run(stop))
        await asyncio.sleep(0.2)
        stop.set()
        await asyncio.wait_for(task, timeout=2)

    run(scenario())
    assert len(fake_chain.calls) >= 2


def test_start_and_stop(session_factory, fake_chain):
    watcher = InvoiceWatcher(fake_chain, session_factory, interval=30, delay=0)

    async def scenario():
        task = watcher.start()
        await asyncio.sleep(0)
        await asyncio.wait_for(watcher.stop(), timeout=2)
        return task

    assert run(scenario()).done()
