from __future__ import annotations

import hashlib
import json
import logging
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from onboarding.addresses import pool
from onboarding.assets import PRIORITIES, AssetCapability, explorer_url, get_asset
from onboarding.channels import status as st
from onboarding.clients import Sweeper
from onboarding.core.errors import (
    CollaboratorError,
    ConflictError,
    NotFound,
    PlanExpiredError,
    StaleSnapshotError,
    ValidationError,
)
from onboarding.core.settings import settings
from onboarding.database.models import ConsolidationPlan, CryptoAddress, PaymentChannel

logger = logging.getLogger(__name__)

PLANNED = "planned"
EXECUTED = "executed"
EXPIRED = "expired"

STALE_MARK = "stale_snapshot"
# lease kept beyond the sweeper timeout
LEASE_MARGIN = timedelta(seconds=30)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _sweepable(db: Session, asset: AssetCapability) -> list[CryptoAddress]:
    """Funded addresses that no live channel still depends on."""
    return list(
        db.execute(
            select(CryptoAddress)
            .outerjoin(PaymentChannel, PaymentChannel.channel_id == CryptoAddress.channel_id)
            .where(
                CryptoAddress.crypto_type == asset.symbol,
                CryptoAddress.balance > 0,
                or_(
                    CryptoAddress.channel_id.is_(None),
                    PaymentChannel.id.is_(None),
                    PaymentChannel.status.in_(st.TERMINAL),
                ),
            )
            .order_by(CryptoAddress.address)
            .execution_options(populate_existing=True)
        ).scalars().all()
    )


def _estimate(asset: AssetCapability, total: Decimal, count: int) -> tuple[dict[str, str], dict[str, str]]:
    fees = asset.estimate_fee(count)
    fee_out = {tier: str(fees[tier]) for tier in PRIORITIES}
    net_out = {tier: str(total - fees[tier]) for tier in PRIORITIES}
    return fee_out, net_out


def get_info(db: Session, crypto_type: str) -> dict[str, Any]:
    """Read-only view of what a consolidation would sweep right now."""
    asset = get_asset(crypto_type)
    addrs = _sweepable(db, asset)
    total = sum((Decimal(a.balance) for a in addrs), Decimal("0"))
    fee, net = _estimate(asset, total, len(addrs))
    active = db.execute(
        select(ConsolidationPlan.tx_id).where(ConsolidationPlan.active_asset == asset.symbol)
    ).scalar_one_or_none()
    return {
        "ok": True,
        "crypto_type": asset.symbol,
        "addresses": [
            {"address": a.address, "balance": str(a.balance), "channel_id": a.channel_id} for a in addrs
        ],
        "address_count": len(addrs),
        "total_balance": str(total),
        "fee_estimate": fee,
        "net_amount": net,
        "instructions": asset.instructions(),
        "active_plan": active,
    }


def plan_to_dict(plan: ConsolidationPlan) -> dict[str, Any]:
    out = {
        "tx_id": plan.tx_id,
        "crypto_type": plan.crypto_type,
        "status": plan.status,
        "destination_address": plan.destination_address,
        "priority": plan.priority,
        "address_count": plan.address_count,
        "total_balance": str(plan.total_balance),
        "fee_estimate": plan.fee_estimate,
        "net_amount": plan.net_amount,
        "addresses": plan.snapshot,
        "created_at": plan.created_at.isoformat() if plan.created_at else None,
        "expires_at": plan.expires_at.isoformat() if plan.expires_at else None,
        "last_error": plan.last_error,
        "instructions": get_asset(plan.crypto_type).instructions(),
    }
    if plan.status == EXECUTED:
        out["result"] = result_to_dict(plan)
    return out


def result_to_dict(plan: ConsolidationPlan) -> dict[str, Any]:
    return {
        "tx_id": plan.tx_id,
        "blockchain_tx_hash": plan.blockchain_tx_hash,
        "total_amount": str(plan.total_amount),
        "addresses_consolidated": plan.addresses_consolidated,
        "completed_at": plan.completed_at.isoformat() if plan.completed_at else None,
        "explorer_url": explorer_url(plan.crypto_type, plan.blockchain_tx_hash),
    }


def get_plan(db: Session, tx_id: str) -> dict[str, Any]:
    plan = db.get(ConsolidationPlan, tx_id, populate_existing=True)
    if plan is None:
        raise NotFound(f"consolidation plan {tx_id} not found")
    return plan_to_dict(plan)


def expire_plans(db: Session, now: Optional[datetime] = None, *, crypto_type: Optional[str] = None) -> int:
    """Expire overdue planned plans; with ``crypto_type`` also retire plans marked stale."""
    now = now or _utcnow()
    due = ConsolidationPlan.expires_at <= now
    if crypto_type:
        due = or_(due, ConsolidationPlan.last_error.like(f"{STALE_MARK}%"))
    q = update(ConsolidationPlan).where(
        ConsolidationPlan.status == PLANNED,
        due,
        or_(ConsolidationPlan.executing_until.is_(None), ConsolidationPlan.executing_until < now),
    )
    if crypto_type:
        q = q.where(ConsolidationPlan.crypto_type == crypto_type)
    res = db.execute(
        q.values(status=EXPIRED, active_asset=None).execution_options(synchronize_session=False)
    )
    db.commit()
    if res.rowcount:
        logger.info("Expired %d consolidation plan(s)", res.rowcount)
    return res.rowcount


def _make_tx_id(symbol: str, destination: str, priority: str, snapshot: list[dict[str, str]], now: datetime) -> str:
    base = json.dumps(
        {"c": symbol, "d": destination, "p": priority, "s": snapshot, "t": now.isoformat(), "n": os.urandom(8).hex()},
        sort_keys=True,
    )
    return hashlib.sha256(base.encode("utf-8")).hexdigest()


def prepare(
    db: Session,
    *,
    crypto_type: str,
    destination: str,
    priority: str = "medium",
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Snapshot the sweepable set into a time-bounded plan; one planned plan per asset."""
    asset = get_asset(crypto_type)
    now = now or _utcnow()
    priority = (priority or "medium").strip().lower()
    if priority not in PRIORITIES:
        raise ValidationError(f"priority must be one of {', '.join(PRIORITIES)}", code="invalid_priority")
    destination = (destination or "").strip()
    if not asset.is_valid_address(destination):
        raise ValidationError(f"invalid {asset.symbol} destination address", code="invalid_address")

    expire_plans(db, now, crypto_type=asset.symbol)

    addrs = _sweepable(db, asset)
    if not addrs:
        raise ValidationError(f"no {asset.symbol} addresses hold a balance", code="nothing_to_consolidate")
    if any(a.address == destination for a in addrs):
        raise ValidationError("destination is one of the swept addresses", code="invalid_address")

    snapshot = [{"address": a.address, "balance": str(a.balance)} for a in addrs]
    total = sum((Decimal(a.balance) for a in addrs), Decimal("0"))
    fee, net = _estimate(asset, total, len(addrs))
    if Decimal(net[priority]) <= 0:
        raise ValidationError(
            f"{priority} fee {fee[priority]} {asset.symbol} exceeds the swept total {total}", code="uneconomical"
        )

    plan = ConsolidationPlan(
        tx_id=_make_tx_id(asset.symbol, destination, priority, snapshot, now),
        crypto_type=asset.symbol,
        active_asset=asset.symbol,
        destination_address=destination,
        priority=priority,
        address_count=len(addrs),
        total_balance=total,
        fee_estimate=fee,
        net_amount=net,
        snapshot=snapshot,
        status=PLANNED,
        created_at=now,
        expires_at=now + timedelta(minutes=settings.PLAN_TTL_MINUTES),
    )
    db.add(plan)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        active = db.execute(
            select(ConsolidationPlan.tx_id).where(ConsolidationPlan.active_asset == asset.symbol)
        ).scalar_one_or_none()
        raise ConflictError(
            f"{asset.symbol} already has planned consolidation {active}", code="plan_in_progress"
        ) from e
    logger.info(
        "Consolidation plan %s: %d %s address(es), %s to %s at %s priority",
        plan.tx_id, len(addrs), asset.symbol, total, destination, priority,
    )
    return plan_to_dict(plan)


def _stale_entries(db: Session, plan: ConsolidationPlan) -> list[str]:
    asset = get_asset(plan.crypto_type)
    current = {a.address: Decimal(a.balance) for a in _sweepable(db, asset)}
    changed = []
    for entry in plan.snapshot:
        if current.get(entry["address"]) != Decimal(entry["balance"]):
            changed.append(entry["address"])
    return changed


def _release_lease(db: Session, tx_id: str, lease: datetime, error: str) -> None:
    db.execute(
        update(ConsolidationPlan)
        .where(ConsolidationPlan.tx_id == tx_id, ConsolidationPlan.executing_until == lease)
        .values(executing_until=None, last_error=error[:1000])
        .execution_options(synchronize_session=False)
    )
    db.commit()


def execute(
    db: Session,
    tx_id: str,
    *,
    sweeper: Sweeper,
    timeout: Optional[float] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Sweep a planned consolidation. Idempotent on ``tx_id``.

    Balances are re-checked against the snapshot first. Any failure leaves the
    plan ``planned`` with nothing swept.
    """
    now = now or _utcnow()
    timeout = settings.HTTP_TIMEOUT_SECONDS if timeout is None else float(timeout)
    plan = db.get(ConsolidationPlan, tx_id, populate_existing=True)
    if plan is None:
        raise NotFound(f"consolidation plan {tx_id} not found")
    if plan.status == EXECUTED:
        return result_to_dict(plan)
    if plan.status == EXPIRED:
        raise PlanExpiredError(f"plan {tx_id} expired; prepare a new one")
    if plan.expires_at <= now:
        expire_plans(db, now)
        db.refresh(plan)
        if plan.status == EXPIRED:
            raise PlanExpiredError(f"plan {tx_id} expired at {plan.expires_at.isoformat()}")

    lease = now + timedelta(seconds=timeout) + LEASE_MARGIN
    res = db.execute(
        update(ConsolidationPlan)
        .where(
            ConsolidationPlan.tx_id == tx_id,
            ConsolidationPlan.status == PLANNED,
            or_(ConsolidationPlan.executing_until.is_(None), ConsolidationPlan.executing_until < now),
        )
        .values(executing_until=lease)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if res.rowcount != 1:
        db.refresh(plan)
        if plan.status == EXECUTED:
            return result_to_dict(plan)
        raise ConflictError(f"plan {tx_id} is being executed", code="plan_executing")

    changed = _stale_entries(db, plan)
    if changed:
        _release_lease(db, tx_id, lease, f"{STALE_MARK}: {', '.join(changed)}")
        logger.warning("Plan %s is stale, balances changed at %s", tx_id, changed)
        raise StaleSnapshotError(f"balances changed since prepare at: {', '.join(changed)}")

    asset = get_asset(plan.crypto_type)
    payload = {
        "tx_id": plan.tx_id,
        "crypto_type": plan.crypto_type,
        "destination_address": plan.destination_address,
        "priority": plan.priority,
        "fee": plan.fee_estimate[plan.priority],
        "inputs": plan.snapshot,
        "instructions": asset.instructions(),
    }
    try:
        tx_hash = sweeper.sweep(payload, timeout)
    except CollaboratorError as e:
        _release_lease(db, tx_id, lease, e.message)
        logger.warning("Sweep for plan %s failed: %s", tx_id, e.message)
        raise

    done = now
    total = Decimal(plan.total_balance)
    res = db.execute(
        update(ConsolidationPlan)
        .where(ConsolidationPlan.tx_id == tx_id, ConsolidationPlan.status == PLANNED)
        .values(
            status=EXECUTED,
            active_asset=None,
            executing_until=None,
            blockchain_tx_hash=tx_hash,
            total_amount=total,
            addresses_consolidated=plan.address_count,
            completed_at=done,
            last_error=None,
        )
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        # expiry cannot touch a leased plan, so this is a broken invariant
        db.rollback()
        raise ConflictError(f"plan {tx_id} left planned during execute", code="plan_state_lost")

    for entry in plan.snapshot:
        db.execute(
            update(CryptoAddress)
            .where(CryptoAddress.address == entry["address"])
            .values(balance=CryptoAddress.balance - Decimal(entry["balance"]), balance_updated_at=done)
            .execution_options(synchronize_session=False)
        )
    swept = db.execute(
        select(CryptoAddress)
        .where(CryptoAddress.address.in_([e["address"] for e in plan.snapshot]))
        .execution_options(populate_existing=True)
    ).scalars().all()
    for addr in swept:
        pool.settle(db, addr, now=done)
    db.commit()
    db.refresh(plan)
    logger.info(
        "Plan %s executed: %s %s from %d address(es) in %s",
        tx_id, total, plan.crypto_type, plan.address_count, tx_hash,
    )
    return result_to_dict(plan)
