"""
Shared pytest fixtures for the SatLedger test suite.

Every test gets its own temporary SQLite database. The FastAPI TestClient
runs with get_db, the chain client and the price oracle overridden, and
without the lifespan, so the background invoice watcher never starts.
"""

import os
import tempfile

# Must be set before backend.config / backend.database are imported
_TMP_DIR = tempfile.mkdtemp(prefix="satledger-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(_TMP_DIR, 'default.db')}")
os.environ["INVOICE_WATCHER_ENABLED"] = "false"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient

from backend.database import Base, get_db
from backend.errors import ExternalServiceError
from backend.main import app
from backend.models import Invoice, Portfolio, Transaction  # noqa: F401
from backend.services.chain import EsploraTx, get_chain_client
from backend.services.prices import get_price_oracle


# ---------------------------------------------------------------------------
# Fakes for the external services
# ---------------------------------------------------------------------------
class FakeChainClient:
    """In-memory stand-in for ChainQueryClient (newest transaction first)."""

    def __init__(self):
        self.txs = {}
        self.errors = {}
        self.calls = []

    def add_payment(self, address, txid, outputs, confirmed=True, block_time=None):
        """outputs: list of (address, value) pairs."""
        tx = EsploraTx.model_validate({
            "txid": txid,
            "status": {"confirmed": confirmed, "block_time": block_time},
            "vout": [{"scriptpubkey_address": a, "value": v} for a, v in outputs],
        })
        self.txs.setdefault(address, []).insert(0, tx)
        return tx

    def pay(self, address, txid, value, **kwargs):
        return self.add_payment(address, txid, [(address, value)], **kwargs)

    async def get_address_transactions(self, address):
        self.calls.append(address)
        if address in self.errors:
            raise self.errors[address]
        return list(self.txs.get(address, []))


class FakePriceOracle:
    """Fixed current price; `history` maps dates to daily prices."""

    def __init__(self, price=50000.0):
        self.price = price
        self.history = {}
        self.history_calls = []

    async def get_current_price(self):
        if self.price is None:
            raise ExternalServiceError("price unavailable")
        return self.price

    async def get_historical_price(self, day):
        self.history_calls.append(day)
        if day not in self.history:
            raise ExternalServiceError(f"no price for {day}")
        return self.history[day]


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def test_engine(tmp_path):
    """A fresh temporary SQLite database per test."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return sessionmaker(bind=test_engine, autocommit=False, autoflush=False)


@pytest.fixture
def test_db(session_factory):
    """Direct SQLAlchemy session for tests that need DB access."""
    db = session_factory()
    yield db
    db.close()


@pytest.fixture
def fake_chain():
    return FakeChainClient()


@pytest.fixture
def fake_prices():
    return FakePriceOracle()


@pytest.fixture
def client(session_factory, fake_chain, fake_prices):
    """TestClient bound to the per-test database and fake external services."""

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_chain_client] = lambda: fake_chain
    app.dependency_overrides[get_price_oracle] = lambda: fake_prices
    yield TestClient(app)
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Row builders
# ---------------------------------------------------------------------------
@pytest.fixture
def portfolio(test_db):
    p = Portfolio(name="Main")
    test_db.add(p)
    test_db.commit()
    test_db.refresh(p)
    return p


@pytest.fixture
def make_invoice(test_db, portfolio):
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        fields = dict(
            portfolio_id=portfolio.id,
            record_type="invoice",
            reusable=False,
            amount_sat=50_000,
            btc_address=f"bc1qtestaddress{counter['n']:04d}",
            status="sent",
            share_token=f"token-{counter['n']}",
            btc_price_at_creation=60_000.0,
        )
        fields.update(overrides)
        invoice = Invoice(**fields)
        test_db.add(invoice)
        test_db.commit()
        test_db.refresh(invoice)
        return invoice

    return _make
