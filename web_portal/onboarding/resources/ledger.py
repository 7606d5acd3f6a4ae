from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from onboarding.channels import status as st
from onboarding.core.errors import ResourceExhaustedError, ValidationError
from onboarding.core.settings import settings
from onboarding.database.models import (
    OperatorResources,
    PaymentChannel,
    RcCost,
    ResourceSnapshot,
)

logger = logging.getLogger(__name__)

CLAIM_ACCOUNT = "claim_account"
CREATE_CLAIMED_ACCOUNT = "create_claimed_account"
CREATE_ACCOUNT = "create_account"
OPERATIONS = (CLAIM_ACCOUNT, CREATE_CLAIMED_ACCOUNT, CREATE_ACCOUNT)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _account(account: Optional[str]) -> str:
    return (account or settings.OPERATOR_ACCOUNT).strip()


def parse_hive_amount(value: str) -> Decimal:
    """'3.000 HIVE' -> Decimal('3.000')."""
    try:
        amount, _, symbol = (value or "").strip().partition(" ")
        if symbol.strip() not in ("HIVE", "TESTS"):
            raise ValueError(symbol)
        return Decimal(amount)
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"bad HIVE amount {value!r}", code="invalid_amount") from e


def ensure_operator(db: Session, account: Optional[str] = None) -> OperatorResources:
    """Return the single ledger row for ``account``, creating an empty one."""
    account = _account(account)
    row = db.get(OperatorResources, account)
    if row is not None:
        return row
    row = OperatorResources(
        account=account, act_balance=0, rc_current=0, rc_max=0, hive_balance=Decimal("0"), updated_at=_utcnow()
    )
    try:
        with db.begin_nested():
            db.add(row)
    except IntegrityError:
        row = db.get(OperatorResources, account, populate_existing=True)
    return row


def rc_costs(db: Session) -> dict[str, int]:
    costs = {
        CLAIM_ACCOUNT: settings.RC_COST_CLAIM_ACCOUNT,
        CREATE_CLAIMED_ACCOUNT: settings.RC_COST_CREATE_CLAIMED_ACCOUNT,
        CREATE_ACCOUNT: settings.RC_COST_CREATE_ACCOUNT,
    }
    for row in db.execute(select(RcCost)).scalars().all():
        costs[row.operation] = int(row.rc_needed)
    return costs


def set_rc_cost(db: Session, operation: str, rc_needed: int) -> dict[str, int]:
    if operation not in OPERATIONS:
        raise ValidationError(f"unknown operation {operation!r}", code="invalid_operation")
    if int(rc_needed) < 0:
        raise ValidationError("rc_needed must be >= 0", code="invalid_operation")
    row = db.get(RcCost, operation)
    if row is None:
        db.add(RcCost(operation=operation, rc_needed=int(rc_needed), updated_at=_utcnow()))
    else:
        row.rc_needed = int(rc_needed)
    db.commit()
    return rc_costs(db)


def consume_act(db: Session, account: Optional[str] = None) -> bool:
    """Atomic check-and-decrement of one ACT. Does not commit."""
    account = _account(account)
    ensure_operator(db, account)
    res = db.execute(
        update(OperatorResources)
        .where(OperatorResources.account == account, OperatorResources.act_balance > 0)
        .values(act_balance=OperatorResources.act_balance - 1, updated_at=_utcnow())
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


def consume_hive(db: Session, fee: Decimal, account: Optional[str] = None) -> bool:
    """Atomic check-and-decrement of the liquid HIVE creation fee. Does not commit."""
    account = _account(account)
    ensure_operator(db, account)
    res = db.execute(
        update(OperatorResources)
        .where(OperatorResources.account == account, OperatorResources.hive_balance >= fee)
        .values(hive_balance=OperatorResources.hive_balance - fee, updated_at=_utcnow())
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


def claim_act(db: Session, account: Optional[str] = None, now: Optional[datetime] = None) -> dict[str, Any]:
    """Spend the claim_account RC cost for one more ACT."""
    account = _account(account)
    now = now or _utcnow()
    ensure_operator(db, account)
    cost = rc_costs(db)[CLAIM_ACCOUNT]
    res = db.execute(
        update(OperatorResources)
        .where(OperatorResources.account == account, OperatorResources.rc_current >= cost)
        .values(
            rc_current=OperatorResources.rc_current - cost,
            act_balance=OperatorResources.act_balance + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        db.rollback()
        row = ensure_operator(db, account)
        raise ResourceExhaustedError(
            f"{account} has {row.rc_current} RC, claim_account needs {cost}", code="insufficient_rc"
        )
    db.commit()
    row = db.get(OperatorResources, account, populate_existing=True)
    logger.info("Claimed ACT for %s: act_balance=%s rc_current=%s", account, row.act_balance, row.rc_current)
    return {
        "ok": True,
        "operation": [CLAIM_ACCOUNT, {"creator": account, "fee": "0.000 HIVE", "extensions": []}],
        "rc_spent": cost,
        "act_balance": row.act_balance,
        "rc_current": row.rc_current,
    }


def sync_resources(
    db: Session,
    *,
    account: Optional[str] = None,
    act_balance: Optional[int] = None,
    rc_current: Optional[int] = None,
    rc_max: Optional[int] = None,
    hive_balance: Optional[Decimal] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Overwrite ledger values with balances observed on chain."""
    row = ensure_operator(db, account)
    if act_balance is not None:
        if int(act_balance) < 0:
            raise ValidationError("act_balance must be >= 0", code="invalid_resources")
        row.act_balance = int(act_balance)
    if rc_current is not None:
        row.rc_current = int(rc_current)
    if rc_max is not None:
        row.rc_max = int(rc_max)
    if hive_balance is not None:
        row.hive_balance = Decimal(hive_balance)
    row.updated_at = now or _utcnow()
    db.commit()
    logger.info(
        "Resources synced for %s: act=%s rc=%s/%s hive=%s",
        row.account, row.act_balance, row.rc_current, row.rc_max, row.hive_balance,
    )
    return status(db, row.account)


def pending_creations(db: Session) -> int:
    return db.execute(
        select(func.count(PaymentChannel.id)).where(
            PaymentChannel.status == st.CONFIRMED,
            PaymentChannel.public_keys.is_not(None),
            PaymentChannel.creation_method.is_(None),
        )
    ).scalar_one()


def status(db: Session, account: Optional[str] = None) -> dict[str, Any]:
    row = ensure_operator(db, account)
    db.commit()
    costs = rc_costs(db)
    rc_pct = round(row.rc_current * 100.0 / row.rc_max, 2) if row.rc_max else 0.0
    return {
        "ok": True,
        "account": row.account,
        "act_balance": row.act_balance,
        "rc_current": row.rc_current,
        "rc_max": row.rc_max,
        "rc_percentage": rc_pct,
        "hive_balance": f"{Decimal(row.hive_balance):.3f}",
        "can_claim_act": row.rc_current >= costs[CLAIM_ACCOUNT],
        "pending_creations": pending_creations(db),
        "rc_costs": costs,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


def record_snapshot(db: Session, account: Optional[str] = None, now: Optional[datetime] = None) -> ResourceSnapshot:
    row = ensure_operator(db, account)
    snap = ResourceSnapshot(
        account=row.account,
        act_balance=row.act_balance,
        rc_current=row.rc_current,
        rc_max=row.rc_max,
        hive_balance=row.hive_balance,
        recorded_at=now or _utcnow(),
    )
    db.add(snap)
    db.commit()
    return snap


def history(
    db: Session, *, hours: int = 24, account: Optional[str] = None, now: Optional[datetime] = None
) -> dict[str, Any]:
    account = _account(account)
    since = (now or _utcnow()) - timedelta(hours=int(hours))
    rows = db.execute(
        select(ResourceSnapshot)
        .where(ResourceSnapshot.account == account, ResourceSnapshot.recorded_at >= since)
        .order_by(ResourceSnapshot.recorded_at.asc())
    ).scalars().all()
    return {
        "account": account,
        "hours": int(hours),
        "points": [
            {
                "recorded_at": r.recorded_at.isoformat(),
                "act_balance": r.act_balance,
                "rc_current": r.rc_current,
                "rc_max": r.rc_max,
                "hive_balance": f"{Decimal(r.hive_balance):.3f}",
            }
            for r in rows
        ],
    }
