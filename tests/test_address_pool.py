from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from conftest import T0
from onboarding.addresses import pool
from onboarding.channels import service as channels
from onboarding.core.errors import ConflictError, NotFound, ProvisioningError
from onboarding.database.models import CryptoAddress, PaymentChannel

COOLDOWN = timedelta(days=7)


def _addr(db, address):
    return db.execute(
        select(CryptoAddress).where(CryptoAddress.address == address).execution_options(populate_existing=True)
    ).scalar_one()


def test_new_addresses_use_increasing_indexes(db, new_channel, provisioner):
    a = new_channel(username="one")
    b = new_channel(username="two")
    assert a["payment_address"] != b["payment_address"]
    assert provisioner.calls == [("BTC", 0), ("BTC", 1)]
    assert _addr(db, b["payment_address"]).derivation_index == 1


def test_failed_channel_address_reusable_only_after_cooldown(db, new_channel):
    ch = new_channel(username="dave")
    failed_at = T0 + timedelta(minutes=30)
    channels.fail(db, ch["channel_id"], "x", now=failed_at)

    addr = _addr(db, ch["payment_address"])
    assert addr.reusable_after == failed_at + COOLDOWN
    assert not pool.is_reusable(addr, now=failed_at + timedelta(seconds=1))
    assert not pool.is_reusable(addr, now=failed_at + COOLDOWN - timedelta(seconds=1))
    assert pool.is_reusable(addr, now=failed_at + COOLDOWN)


def test_allocate_prefers_reusable_address(db, new_channel, provisioner):
    first = new_channel(username="erin")
    channels.fail(db, first["channel_id"], "x", now=T0)

    early = new_channel(username="frank", now=T0 + timedelta(days=1))
    assert early["payment_address"] != first["payment_address"]

    later = new_channel(username="grace", now=T0 + COOLDOWN + timedelta(minutes=1))
    assert later["payment_address"] == first["payment_address"]
    assert len(provisioner.calls) == 2

    addr = _addr(db, first["payment_address"])
    assert addr.channel_id == later["channel_id"]
    assert addr.reusable_after is None


def test_address_with_balance_is_never_reusable(db, new_channel, provisioner):
    ch = new_channel(username="heidi")
    channels.submit_deposit(db, ch["channel_id"], tx_hash="tx-small", amount="0.0001", confirmations=6, now=T0)
    channels.fail(db, ch["channel_id"], "underpaid", now=T0 + timedelta(minutes=1))

    addr = _addr(db, ch["payment_address"])
    assert addr.balance == Decimal("0.0001")
    assert addr.reusable_after is None

    other = new_channel(username="ivan", now=T0 + COOLDOWN * 2)
    assert other["payment_address"] != ch["payment_address"]
    with pytest.raises(ConflictError) as e:
        pool.mark_reusable(db, ch["payment_address"])
    assert e.value.code == "balance_not_zero"


def test_swept_address_becomes_reusable_after_cooldown(db, new_channel):
    ch = new_channel(username="judy")
    channels.fail(db, ch["channel_id"], "x", now=T0)
    pool.observe_balance(db, ch["payment_address"], Decimal("0.2"), now=T0 + timedelta(hours=1))
    assert _addr(db, ch["payment_address"]).reusable_after is None

    pool.observe_balance(db, ch["payment_address"], Decimal("0"), now=T0 + timedelta(hours=2))
    assert _addr(db, ch["payment_address"]).reusable_after == T0 + COOLDOWN


def test_mark_reusable_requires_terminal_channel(db, new_channel):
    ch = new_channel(username="kim")
    with pytest.raises(ConflictError):
        pool.mark_reusable(db, ch["payment_address"])
    with pytest.raises(NotFound):
        pool.mark_reusable(db, "bc1qnotthere")

    channels.fail(db, ch["channel_id"], "x", now=T0)
    addr = pool.mark_reusable(db, ch["payment_address"])
    assert addr.reusable_after == T0 + COOLDOWN


def test_allocation_fails_closed(db, new_channel, provisioner):
    provisioner.fail = True
    with pytest.raises(ProvisioningError):
        new_channel(username="leo")
    db.rollback()
    assert db.execute(select(func.count(PaymentChannel.id))).scalar_one() == 0


def test_duplicate_provisioned_address_is_rejected(db, new_channel, provisioner):
    first = new_channel(username="mia")
    provisioner.fixed_address = first["payment_address"]
    with pytest.raises(ProvisioningError):
        new_channel(username="ned")


def test_address_stats_and_listing(db, new_channel):
    a = new_channel(username="olga")
    new_channel(username="pete")
    new_channel(username="quinn", crypto_type="ETH")
    channels.fail(db, a["channel_id"], "x", now=T0 - COOLDOWN)

    stats = {s["crypto_type"]: s for s in pool.address_stats(db, now=T0 + timedelta(minutes=1))}
    assert stats["BTC"]["total_addresses"] == 2
    assert stats["BTC"]["reusable_addresses"] == 1
    assert stats["BTC"]["in_use_addresses"] == 1
    assert stats["ETH"]["total_addresses"] == 1
    assert stats["ETH"]["with_balance"] == 0

    listed = pool.list_addresses(db, crypto_type="BTC", limit=1)
    assert listed["pagination"]["total"] == 2
    assert listed["pagination"]["has_more"] is True
    assert len(listed["addresses"]) == 1
