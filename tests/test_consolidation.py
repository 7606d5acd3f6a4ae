from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from conftest import T0, make_address
from onboarding.addresses import pool
from onboarding.consolidation import service as consolidation
from onboarding.core.errors import (
    CollaboratorError,
    ConflictError,
    NotFound,
    PlanExpiredError,
    StaleSnapshotError,
    ValidationError,
)
from onboarding.database.models import ConsolidationPlan, CryptoAddress

DEST_ETH = "0x" + "d" * 40
DEST_BTC = "bc1q" + "z" * 38
LATER = T0 + timedelta(hours=1)


def _plan(db, tx_id):
    return db.get(ConsolidationPlan, tx_id, populate_existing=True)


def _balance(db, address):
    return db.execute(
        select(CryptoAddress.balance).where(CryptoAddress.address == address)
    ).scalar_one()


def test_info_lists_only_settled_funded_addresses(db, new_channel, funded_address):
    funded = funded_address("eve", crypto_type="BTC", balance="0.002")
    live = new_channel(username="frank", crypto_type="BTC")
    pool.observe_balance(db, live["payment_address"], Decimal("0.001"))

    info = consolidation.get_info(db, "btc")
    assert info["crypto_type"] == "BTC"
    assert [a["address"] for a in info["addresses"]] == [funded]
    assert info["address_count"] == 1
    assert Decimal(info["total_balance"]) == Decimal("0.002")
    # 10 + 148 + 34 bytes at 1/5/10 sat/byte
    assert {k: Decimal(v) for k, v in info["fee_estimate"].items()} == {
        "low": Decimal("0.00000192"),
        "medium": Decimal("0.00000960"),
        "high": Decimal("0.00001920"),
    }
    assert Decimal(info["net_amount"]["medium"]) == Decimal("0.002") - Decimal("0.0000096")
    assert info["instructions"]["method"] == "UTXO_CONSOLIDATION"
    assert info["active_plan"] is None


def test_prepare_is_single_flight_per_asset(db, funded_address):
    funded_address("anna", crypto_type="ETH", balance="0.5")
    funded_address("bert", crypto_type="BTC", balance="0.01")

    plan = consolidation.prepare(db, crypto_type="ETH", destination=DEST_ETH, priority="medium", now=LATER)
    assert plan["status"] == consolidation.PLANNED
    assert len(plan["tx_id"]) == 64
    assert plan["address_count"] == 1
    assert plan["expires_at"] == (LATER + timedelta(minutes=15)).isoformat()

    with pytest.raises(ConflictError) as e:
        consolidation.prepare(db, crypto_type="ETH", destination=DEST_ETH, now=LATER + timedelta(minutes=1))
    assert e.value.code == "plan_in_progress"

    other = consolidation.prepare(db, crypto_type="BTC", destination=DEST_BTC, now=LATER)
    assert other["status"] == consolidation.PLANNED
    assert consolidation.get_info(db, "ETH")["active_plan"] == plan["tx_id"]


def test_prepare_validates_request(db, funded_address):
    with pytest.raises(ValidationError) as e:
        consolidation.prepare(db, crypto_type="ETH", destination=DEST_ETH)
    assert e.value.code == "nothing_to_consolidate"

    addr = funded_address("carl", crypto_type="ETH", balance="0.5")
    with pytest.raises(ValidationError):
        consolidation.prepare(db, crypto_type="ETH", destination="not-an-address")
    with pytest.raises(ValidationError):
        consolidation.prepare(db, crypto_type="ETH", destination=DEST_ETH, priority="urgent")
    with pytest.raises(ValidationError):
        consolidation.prepare(db, crypto_type="ETH", destination=addr)


def test_prepare_rejects_uneconomical_sweep(db, funded_address):
    # 26000 gas at 100 gwei is 0.0026 ETH
    funded_address("dora", crypto_type="ETH", balance="0.001")
    with pytest.raises(ValidationError) as e:
        consolidation.prepare(db, crypto_type="ETH", destination=DEST_ETH, priority="high")
    assert e.value.code == "uneconomical"


def test_execute_is_idempotent(db, funded_address, sweeper):
    a = funded_address("gina", crypto_type="ETH", balance="0.5")
    b = funded_address("hank", crypto_type="ETH", balance="0.25")
    plan = consolidation.prepare(db, crypto_type="ETH", destination=DEST_ETH, now=LATER)

    first = consolidation.execute(db, plan["tx_id"], sweeper=sweeper, timeout=5, now=LATER + timedelta(minutes=1))
    second = consolidation.execute(db, plan["tx_id"], sweeper=sweeper, timeout=5, now=LATER + timedelta(minutes=2))
    assert first == second
    assert first["blockchain_tx_hash"] == "sweep-1"
    assert Decimal(first["total_amount"]) == Decimal("0.75")
    assert first["addresses_consolidated"] == 2
    assert first["explorer_url"] == "https://etherscan.io/tx/sweep-1"
    assert len(sweeper.calls) == 1

    payload, timeout = sweeper.calls[0]
    assert timeout == 5
    assert payload["destination_address"] == DEST_ETH
    assert {i["address"] for i in payload["inputs"]} == {a, b}

    stored = _plan(db, plan["tx_id"])
    assert stored.status == consolidation.EXECUTED
    assert stored.active_asset is None
    assert _balance(db, a) == 0 and _balance(db, b) == 0
    swept = db.execute(select(CryptoAddress).where(CryptoAddress.address == a)).scalar_one()
    assert swept.reusable_after is not None


def test_stale_snapshot_aborts_and_keeps_plan(db, funded_address, sweeper):
    a = funded_address("ivy", crypto_type="ETH", balance="0.5")
    funded_address("jack", crypto_type="ETH", balance="0.3")
    p1 = consolidation.prepare(db, crypto_type="ETH", destination=DEST_ETH, priority="medium", now=LATER)

    pool.observe_balance(db, a, Decimal("0.7"))
    with pytest.raises(StaleSnapshotError) as e:
        consolidation.execute(db, p1["tx_id"], sweeper=sweeper, now=LATER + timedelta(minutes=1))
    assert e.value.http_code == 409
    assert a in e.value.message
    assert sweeper.calls == []

    stored = _plan(db, p1["tx_id"])
    assert stored.status == consolidation.PLANNED
    assert stored.executing_until is None
    assert _balance(db, a) == Decimal("0.7")

    p2 = consolidation.prepare(db, crypto_type="ETH", destination=DEST_ETH, now=LATER + timedelta(minutes=2))
    assert p2["tx_id"] != p1["tx_id"]
    assert Decimal(p2["total_balance"]) == Decimal("1.0")
    assert _plan(db, p1["tx_id"]).status == consolidation.EXPIRED


def test_sweeper_failure_leaves_plan_retryable(db, funded_address, sweeper):
    a = funded_address("kate", crypto_type="ETH", balance="0.5")
    plan = consolidation.prepare(db, crypto_type="ETH", destination=DEST_ETH, now=LATER)

    sweeper.error = CollaboratorError("keychain timed out", code="collaborator_timeout")
    with pytest.raises(CollaboratorError):
        consolidation.execute(db, plan["tx_id"], sweeper=sweeper, timeout=1, now=LATER + timedelta(minutes=1))
    stored = _plan(db, plan["tx_id"])
    assert stored.status == consolidation.PLANNED
    assert stored.executing_until is None
    assert stored.last_error == "keychain timed out"
    assert _balance(db, a) == Decimal("0.5")

    sweeper.error = None
    result = consolidation.execute(db, plan["tx_id"], sweeper=sweeper, now=LATER + timedelta(minutes=2))
    assert result["blockchain_tx_hash"] == "sweep-2"


def test_leased_plan_rejects_second_execute(db, funded_address, sweeper):
    funded_address("liam", crypto_type="ETH", balance="0.5")
    plan = consolidation.prepare(db, crypto_type="ETH", destination=DEST_ETH, now=LATER)
    stored = _plan(db, plan["tx_id"])
    stored.executing_until = LATER + timedelta(minutes=5)
    db.commit()

    with pytest.raises(ConflictError) as e:
        consolidation.execute(db, plan["tx_id"], sweeper=sweeper, now=LATER + timedelta(minutes=1))
    assert e.value.code == "plan_executing"
    assert sweeper.calls == []


def test_expired_plan_cannot_execute(db, funded_address, sweeper):
    funded_address("mona", crypto_type="ETH", balance="0.5")
    plan = consolidation.prepare(db, crypto_type="ETH", destination=DEST_ETH, now=LATER)

    with pytest.raises(PlanExpiredError) as e:
        consolidation.execute(db, plan["tx_id"], sweeper=sweeper, now=LATER + timedelta(minutes=16))
    assert e.value.http_code == 410
    assert _plan(db, plan["tx_id"]).status == consolidation.EXPIRED
    with pytest.raises(PlanExpiredError):
        consolidation.execute(db, plan["tx_id"], sweeper=sweeper, now=LATER + timedelta(minutes=17))
    assert sweeper.calls == []


def test_expire_plans_frees_the_asset(db, funded_address):
    funded_address("nora", crypto_type="ETH", balance="0.5")
    consolidation.prepare(db, crypto_type="ETH", destination=DEST_ETH, now=LATER)
    assert consolidation.expire_plans(db, now=LATER + timedelta(minutes=5)) == 0
    assert consolidation.expire_plans(db, now=LATER + timedelta(minutes=15)) == 1
    plan = consolidation.prepare(db, crypto_type="ETH", destination=DEST_ETH, now=LATER + timedelta(minutes=16))
    assert plan["status"] == consolidation.PLANNED


def test_get_plan(db, funded_address, sweeper):
    with pytest.raises(NotFound):
        consolidation.get_plan(db, "f" * 64)
    funded_address("otto", crypto_type="SOL", balance="1.5")
    plan = consolidation.prepare(db, crypto_type="SOL", destination=make_address("SOL", 999), now=LATER)
    got = consolidation.get_plan(db, plan["tx_id"])
    assert got["fee_estimate"]["low"] == got["fee_estimate"]["high"]
    assert got["instructions"]["method"] == "BATCH_TRANSFER"
    assert "result" not in got

    consolidation.execute(db, plan["tx_id"], sweeper=sweeper, now=LATER + timedelta(minutes=1))
    assert consolidation.get_plan(db, plan["tx_id"])["result"]["blockchain_tx_hash"] == "sweep-1"
