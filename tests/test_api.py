from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from conftest import ADMIN_TOKEN, FakePrices, FakeProvisioner, FakeSweeper, public_keys
from onboarding.database.models import ConsolidationPlan
from onboarding.db import SessionLocal, get_db
from onboarding.deps import get_prices, get_provisioner, get_sweeper
from onboarding.main import app

AUTH = {"Authorization": f"Bearer {ADMIN_TOKEN}"}
BASE = "/api/onboarding/admin"
DEST_ETH = "0x" + "e" * 40


@pytest.fixture
def sweeper():
    return FakeSweeper()


@pytest.fixture
def client(engine, sweeper):
    def _get_db():
        db = SessionLocal(bind=engine)
        try:
            yield db
        finally:
            db.close()

    provisioner = FakeProvisioner()
    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_provisioner] = lambda: provisioner
    app.dependency_overrides[get_sweeper] = lambda: sweeper
    app.dependency_overrides[get_prices] = lambda: FakePrices()
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _create(client, username="alice", crypto_type="BTC", keys=True):
    body = {"username": username, "crypto_type": crypto_type}
    if keys:
        body["public_keys"] = public_keys()
    r = client.post(f"{BASE}/channels", json=body, headers=AUTH)
    assert r.status_code == 201, r.text
    return r.json()["channel"]


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["ok"] is True


def test_admin_routes_need_token(client):
    assert client.get(f"{BASE}/channels").status_code == 401
    r = client.get(f"{BASE}/channels", headers={"Authorization": "Bearer wrong"})
    assert r.status_code == 401
    assert client.get(f"{BASE}/channels", headers=AUTH).status_code == 200


def test_admin_routes_closed_when_unconfigured(client, monkeypatch):
    from onboarding.core.settings import settings

    monkeypatch.setattr(settings, "ADMIN_TOKEN", "")
    r = client.get(f"{BASE}/act-status", headers=AUTH)
    assert r.status_code == 503
    assert r.json()["detail"] == "admin_not_configured"


def test_channel_lifecycle(client):
    client.post(f"{BASE}/resources/sync", json={"act_balance": 1, "hive_balance": "10"}, headers=AUTH)
    ch = _create(client)
    assert ch["status"] == "pending"
    assert Decimal(ch["amount_crypto"]) == Decimal("0.001")
    got = r_ok(client.get(f"{BASE}/channels/{ch['channel_id']}", headers=AUTH))["channel"]
    assert got["username"] == "alice"
    assert got["confirmations_required"] == 2
    assert got["is_expired"] is False
    assert 24 * 60 - 1 <= got["time_left_minutes"] <= 24 * 60

    r = client.post(
        f"{BASE}/channels/{ch['channel_id']}/deposit",
        json={"tx_hash": "tx-a", "amount": ch["amount_crypto"], "confirmations": 2},
        headers=AUTH,
    )
    assert r_ok(r)["channel"]["status"] == "confirmed"

    r = client.post(f"{BASE}/channels/{ch['channel_id']}/resolve", headers=AUTH)
    plan = r_ok(r)
    assert plan["creation_method"] == "ACT"
    assert plan["operations"][0][0] == "create_claimed_account"

    r = client.post(
        f"{BASE}/channels/{ch['channel_id']}/complete", json={"tx_id": "hive-tx", "method": "ACT"}, headers=AUTH
    )
    assert r_ok(r)["channel"]["status"] == "completed"

    status = r_ok(client.get(f"{BASE}/act-status", headers=AUTH))
    assert status["act_balance"] == 0
    assert status["pending_creations"] == 0


def r_ok(r):
    assert r.status_code == 200, r.text
    return r.json()


def test_error_mapping(client):
    r = client.get(f"{BASE}/channels/CH_missing", headers=AUTH)
    assert r.status_code == 404
    assert r.json() == {"ok": False, "error": "not_found", "detail": "channel CH_missing not found"}

    r = client.post(f"{BASE}/channels", json={"username": "x", "crypto_type": "BTC"}, headers=AUTH)
    assert r.status_code == 400

    _create(client, username="bob")
    r = client.post(f"{BASE}/channels", json={"username": "bob", "crypto_type": "ETH"}, headers=AUTH)
    assert r.status_code == 409
    assert r.json()["error"] == "username_taken"


def test_resolve_without_resources_is_422(client):
    ch = _create(client)
    client.post(
        f"{BASE}/channels/{ch['channel_id']}/deposit",
        json={"tx_hash": "tx-a", "amount": ch["amount_crypto"], "confirmations": 6},
        headers=AUTH,
    )
    r = client.post(f"{BASE}/channels/{ch['channel_id']}/resolve", headers=AUTH)
    assert r.status_code == 422
    assert r.json()["error"] == "insufficient_resources"
    got = r_ok(client.get(f"{BASE}/channels/{ch['channel_id']}", headers=AUTH))["channel"]
    assert got["status"] == "failed"


def test_cancel_and_delete(client):
    ch = _create(client)
    r = client.post(f"{BASE}/channels/{ch['channel_id']}/cancel", headers=AUTH)
    assert r_ok(r)["status"] == "cancelled"
    r = client.delete(f"{BASE}/channels/{ch['channel_id']}", headers=AUTH)
    assert r_ok(r)["deleted"] is True
    assert client.get(f"{BASE}/channels/{ch['channel_id']}", headers=AUTH).status_code == 404

    stats = r_ok(client.get(f"{BASE}/address-stats", headers=AUTH))["stats"]
    assert stats[0]["in_use_addresses"] == 0


def _funded_eth(client, username="erin", balance="0.5"):
    ch = _create(client, username=username, crypto_type="ETH", keys=False)
    client.post(f"{BASE}/channels/{ch['channel_id']}/fail", json={"reason": "abandoned"}, headers=AUTH)
    r = client.post(f"{BASE}/crypto-addresses/{ch['payment_address']}/balance", json={"balance": balance}, headers=AUTH)
    assert r.status_code == 200, r.text
    return ch["payment_address"]


def test_consolidation_flow(client, sweeper):
    addr = _funded_eth(client)
    info = r_ok(client.get(f"{BASE}/consolidation-info/ETH", headers=AUTH))
    assert [a["address"] for a in info["addresses"]] == [addr]

    r = client.post(
        f"{BASE}/consolidation/prepare",
        json={"crypto_type": "ETH", "destination_address": DEST_ETH, "priority": "low"},
        headers=AUTH,
    )
    assert r.status_code == 201, r.text
    tx_id = r.json()["plan"]["tx_id"]

    again = client.post(
        f"{BASE}/consolidation/prepare", json={"crypto_type": "ETH", "destination_address": DEST_ETH}, headers=AUTH
    )
    assert again.status_code == 409

    r = client.post(f"{BASE}/consolidation/{tx_id}/execute", json={"timeout_seconds": 3}, headers=AUTH)
    result = r_ok(r)["result"]
    assert result["blockchain_tx_hash"] == "sweep-1"
    assert sweeper.calls[0][1] == 3

    r = client.post(f"{BASE}/consolidation/{tx_id}/execute", headers=AUTH)
    assert r_ok(r)["result"] == result
    assert len(sweeper.calls) == 1
    assert r_ok(client.get(f"{BASE}/consolidation/{tx_id}", headers=AUTH))["plan"]["status"] == "executed"


def test_expired_plan_is_410(client, engine):
    _funded_eth(client)
    r = client.post(
        f"{BASE}/consolidation/prepare", json={"crypto_type": "ETH", "destination_address": DEST_ETH}, headers=AUTH
    )
    tx_id = r.json()["plan"]["tx_id"]

    db = SessionLocal(bind=engine)
    try:
        plan = db.get(ConsolidationPlan, tx_id)
        plan.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
        db.commit()
    finally:
        db.close()

    r = client.post(f"{BASE}/consolidation/{tx_id}/execute", headers=AUTH)
    assert r.status_code == 410
    assert r.json()["error"] == "plan_expired"


def test_resources_endpoints(client):
    r = client.put(f"{BASE}/rc-costs/claim_account", json={"rc_needed": 100}, headers=AUTH)
    assert r_ok(r)["costs"]["claim_account"] == 100
    assert client.put(f"{BASE}/rc-costs/vote", json={"rc_needed": 1}, headers=AUTH).status_code == 400

    r = client.post(f"{BASE}/claim-act", headers=AUTH)
    assert r.status_code == 422
    client.post(f"{BASE}/resources/sync", json={"rc_current": 250, "rc_max": 1000}, headers=AUTH)
    claimed = r_ok(client.post(f"{BASE}/claim-act", headers=AUTH))
    assert claimed["act_balance"] == 1
    assert claimed["rc_current"] == 150

    status = r_ok(client.get(f"{BASE}/act-status", headers=AUTH))
    assert status["rc_percentage"] == 15.0
    assert status["can_claim_act"] is True
    assert r_ok(client.get(f"{BASE}/resources/history", headers=AUTH))["points"] == []


def test_monitor_push_and_status(client):
    ch = _create(client)
    event = {
        "address": ch["payment_address"],
        "cryptoType": "BTC",
        "txHash": "tx-pushed",
        "amount": ch["amount_crypto"],
        "confirmations": 2,
    }
    r = client.post(f"{BASE}/monitor/events", json=event, headers=AUTH)
    assert r_ok(r)["result"]["status"] == "confirmed"

    r = client.post(f"{BASE}/monitor/events", json={"address": "nope"}, headers=AUTH)
    assert r.status_code == 400

    batch = [event, {**event, "address": "bc1qunknown"}]
    out = r_ok(client.post(f"{BASE}/monitor/events", json=batch, headers=AUTH))
    assert out["ok"] is False
    assert [x["ok"] for x in out["results"]] == [True, False]

    status = r_ok(client.get(f"{BASE}/blockchain-monitor-status", headers=AUTH))
    btc = next(n for n in status["networks"] if n["crypto_type"] == "BTC")
    assert btc["events_total"] == 2
    assert btc["errors_total"] == 1
    assert btc["healthy"] is True


def test_lifespan_runs_scheduler_when_enabled(client, monkeypatch):
    from onboarding.core.settings import settings

    monkeypatch.setattr(settings, "SCHEDULER_ENABLED", True)
    with patch("onboarding.jobs.scheduler.EngineScheduler") as sched_cls:
        with TestClient(app) as c:
            assert c.get("/health").status_code == 200
            sched_cls.return_value.start.assert_called_once()
        sched_cls.return_value.stop.assert_called_once()


def test_ready_checks_database(client):
    r = client.get("/ready")
    assert r.status_code == 200
    assert r.json()["db"] is True


def test_pricing_endpoint(client, monkeypatch):
    from onboarding.core.settings import settings

    monkeypatch.setattr(settings, "NETWORK_FEE_SURCHARGE", Decimal("0.20"))
    monkeypatch.setattr(settings, "CHARGE_TRANSFER_FEE", True)
    out = r_ok(client.get(f"{BASE}/pricing", headers=AUTH))
    assert out["unavailable"] == {}
    btc = out["crypto_rates"]["BTC"]
    assert Decimal(btc["final_cost_usd"]) == Decimal("50.2")
    assert Decimal(btc["total_amount"]) == Decimal("0.001024")
    assert out["transfer_costs"]["BTC"]["avg_fee_crypto"] == "0.00002"

    ch = _create(client, username="paula")
    assert Decimal(ch["amount_crypto"]) == Decimal(btc["total_amount"])
    assert Decimal(ch["amount_usd"]) == Decimal("50.2")
