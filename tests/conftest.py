import os
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

# Add project path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "web_portal")))

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from onboarding.addresses import pool
from onboarding.channels import service as channels
from onboarding.clients import ProvisionedAddress
from onboarding.core.errors import CollaboratorError, ProvisioningError
from onboarding.core.settings import settings
from onboarding.db import Base, SessionLocal
from onboarding.pricing.price_feed import PriceQuote

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
ADMIN_TOKEN = "test-admin-token"

PRICES = {
    "BTC": Decimal("50000"),
    "ETH": Decimal("2500"),
    "BNB": Decimal("500"),
    "MATIC": Decimal("0.50"),
    "SOL": Decimal("100"),
    "DASH": Decimal("25"),
}

_DIGITS_B58 = "123456789A"
_DIGITS_BECH32 = "023456789a"


def make_address(crypto_type: str, index: int) -> str:
    """Deterministic address that passes the asset's format check."""
    if crypto_type in ("ETH", "BNB", "MATIC"):
        return "0x" + f"{index:040x}"
    if crypto_type == "BTC":
        return "bc1q" + "".join(_DIGITS_BECH32[int(d)] for d in f"{index:038d}")
    if crypto_type == "SOL":
        return "So" + "".join(_DIGITS_B58[int(d)] for d in f"{index:042d}")
    if crypto_type == "DASH":
        return "X" + "".join(_DIGITS_B58[int(d)] for d in f"{index:033d}")
    raise AssertionError(crypto_type)


def public_keys(seed: str = "a") -> dict:
    return {role: "STM" + (role[0] + seed) * 25 for role in ("owner", "active", "posting", "memo")}


class FakeProvisioner:
    def __init__(self):
        self.calls = []
        self.fail = False
        self.fixed_address = None

    def provision(self, crypto_type, index):
        self.calls.append((crypto_type, index))
        if self.fail:
            raise ProvisioningError("address service down")
        address = self.fixed_address or make_address(crypto_type, index)
        return ProvisionedAddress(address=address, public_key=f"pub-{index}", derivation_index=index)


class FakeSweeper:
    def __init__(self):
        self.calls = []
        self.error = None

    def sweep(self, plan, timeout):
        self.calls.append((plan, timeout))
        if self.error is not None:
            raise self.error
        return f"sweep-{len(self.calls)}"


class FakePrices:
    def __init__(self, prices=None):
        self.prices = dict(prices or PRICES)

    def quote(self, symbol):
        if symbol not in self.prices:
            raise CollaboratorError(f"no price for {symbol}", code="price_feed")
        return PriceQuote(symbol=symbol, usd=self.prices[symbol], ts=0.0, source="test")


@pytest.fixture(autouse=True)
def engine_settings(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_TOKEN", ADMIN_TOKEN)
    monkeypatch.setattr(settings, "ADMIN_TOKEN_HASH", "")
    monkeypatch.setattr(settings, "ACCOUNT_PRICE_USD", Decimal("50.00"))
    # flat pricing by default; pricing tests switch the network fee parts back on
    monkeypatch.setattr(settings, "NETWORK_FEE_SURCHARGE", Decimal("0"))
    monkeypatch.setattr(settings, "CHARGE_TRANSFER_FEE", False)
    monkeypatch.setattr(settings, "CHANNEL_TTL_MINUTES", 24 * 60)
    monkeypatch.setattr(settings, "ADDRESS_COOLDOWN_MINUTES", 7 * 24 * 60)
    monkeypatch.setattr(settings, "PLAN_TTL_MINUTES", 15)
    monkeypatch.setattr(settings, "ALLOW_TERMINAL_DELETE", True)
    monkeypatch.setattr(settings, "OPERATOR_ACCOUNT", "onboarder")
    monkeypatch.setattr(settings, "SCHEDULER_ENABLED", False)
    monkeypatch.setattr(settings, "MONITOR_FEED_URL", "")


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture
def db(engine):
    session = SessionLocal(bind=engine)
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def provisioner():
    return FakeProvisioner()


@pytest.fixture
def sweeper():
    return FakeSweeper()


@pytest.fixture
def prices():
    return FakePrices()


@pytest.fixture
def new_channel(db, provisioner, prices):
    """Factory: create a pending channel at T0 (or ``now``)."""

    def _make(username="alice", crypto_type="BTC", keys=True, now=T0, **kw):
        return channels.create_channel(
            db,
            username=username,
            crypto_type=crypto_type,
            public_keys=public_keys() if keys else None,
            provisioner=provisioner,
            price_feed=prices,
            now=now,
            **kw,
        )

    return _make


@pytest.fixture
def confirmed_channel(db, new_channel):
    """Factory: create a channel and settle a full deposit on it."""

    def _make(username="alice", crypto_type="BTC", keys=True, tx_hash=None, now=T0):
        ch = new_channel(username=username, crypto_type=crypto_type, keys=keys, now=now)
        return channels.submit_deposit(
            db,
            ch["channel_id"],
            tx_hash=tx_hash or f"tx-{username}",
            amount=ch["amount_crypto"],
            confirmations=10,
            now=now + timedelta(minutes=10),
        )

    return _make


@pytest.fixture
def funded_address(db, new_channel):
    """Factory: an address of a failed channel that still holds ``balance``."""

    def _make(username, crypto_type="ETH", balance="0.5", now=T0):
        ch = new_channel(username=username, crypto_type=crypto_type, keys=False, now=now)
        channels.fail(db, ch["channel_id"], "abandoned", now=now + timedelta(minutes=5))
        pool.observe_balance(db, ch["payment_address"], Decimal(balance), now=now + timedelta(minutes=6))
        return ch["payment_address"]

    return _make
