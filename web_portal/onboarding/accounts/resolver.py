from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from onboarding.channels import service as channels
from onboarding.channels import status as st
from onboarding.core.errors import ConflictError, EngineError, ResourceExhaustedError, ValidationError
from onboarding.core.settings import settings
from onboarding.database.models import PaymentChannel
from onboarding.resources import ledger

logger = logging.getLogger(__name__)

ACT = "ACT"
DELEGATION = "delegation"
METHODS = (ACT, DELEGATION)
NO_FEE = "0.000 HIVE"
INSUFFICIENT_RESOURCES = "insufficient_resources"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_method(method: str) -> str:
    m = (method or "").strip()
    if m.upper() == ACT:
        return ACT
    if m.lower() == DELEGATION:
        return DELEGATION
    raise ValidationError(f"unknown creation method {method!r}", code="invalid_method")


def _authority(key: str) -> dict[str, Any]:
    return {"weight_threshold": 1, "account_auths": [], "key_auths": [[key, 1]]}


def build_operations(ch: PaymentChannel, method: str) -> list[list[Any]]:
    """HIVE operations the keychain signs to create ``ch.username``."""
    keys = ch.public_keys or {}
    creator = settings.OPERATOR_ACCOUNT
    body = {
        "creator": creator,
        "new_account_name": ch.username,
        "owner": _authority(keys["owner"]),
        "active": _authority(keys["active"]),
        "posting": _authority(keys["posting"]),
        "memo_key": keys["memo"],
        "json_metadata": "",
    }
    if method == ACT:
        return [["create_claimed_account", {**body, "extensions": []}]]
    return [
        ["account_create", {"fee": ch.creation_fee or settings.ACCOUNT_CREATION_FEE, **body}],
        [
            "delegate_vesting_shares",
            {"delegator": creator, "delegatee": ch.username, "vesting_shares": settings.DELEGATION_VESTS},
        ],
    ]


def _descriptor(db: Session, ch: PaymentChannel) -> dict[str, Any]:
    op = ledger.CREATE_CLAIMED_ACCOUNT if ch.creation_method == ACT else ledger.CREATE_ACCOUNT
    return {
        "ok": True,
        "channel_id": ch.channel_id,
        "username": ch.username,
        "creation_method": ch.creation_method,
        "act_used": ch.act_used,
        "creation_fee": ch.creation_fee,
        "rc_needed": ledger.rc_costs(db)[op],
        "operations": build_operations(ch, ch.creation_method),
    }


def resolve(db: Session, channel_id: str, now: Optional[datetime] = None) -> dict[str, Any]:
    """Pick ACT or delegation for a confirmed channel and return what to sign.

    The resource decrement and the recorded method commit together, so one
    ACT can never fund two channels. Repeated calls return the recorded
    decision without touching the ledger.
    """
    now = now or _utcnow()
    ch = channels.get_channel(db, channel_id, for_update=True)
    if ch.creation_method:
        return _descriptor(db, ch)
    if ch.status != st.CONFIRMED:
        raise ConflictError(f"channel {channel_id} is {ch.status}, not confirmed", code="not_confirmed")
    if not ch.public_keys:
        raise ValidationError(f"channel {channel_id} carries no public keys", code="missing_public_keys")

    if ledger.consume_act(db):
        method, act_used, fee = ACT, 1, NO_FEE
    elif ledger.consume_hive(db, ledger.parse_hive_amount(settings.ACCOUNT_CREATION_FEE)):
        method, act_used, fee = DELEGATION, 0, settings.ACCOUNT_CREATION_FEE
    else:
        db.rollback()
        ch = channels.get_channel(db, channel_id, for_update=True)
        if ch.status == st.CONFIRMED and ch.creation_method is None:
            channels.transition(db, ch, st.FAILED, now=now, failure_reason=INSUFFICIENT_RESOURCES)
            db.commit()
        logger.warning("Channel %s failed: no ACT and no HIVE for %s", channel_id, settings.OPERATOR_ACCOUNT)
        raise ResourceExhaustedError(
            f"{settings.OPERATOR_ACCOUNT} has no ACT and cannot pay {settings.ACCOUNT_CREATION_FEE}"
        )

    res = db.execute(
        update(PaymentChannel)
        .where(
            PaymentChannel.channel_id == channel_id,
            PaymentChannel.status == st.CONFIRMED,
            PaymentChannel.creation_method.is_(None),
        )
        .values(creation_method=method, act_used=act_used, creation_fee=fee, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        # another resolver recorded first; give the resource back by rolling back
        db.rollback()
        ch = channels.get_channel(db, channel_id)
        if ch.creation_method:
            return _descriptor(db, ch)
        raise ConflictError(f"channel {channel_id} changed concurrently; retry", code="concurrent_update")

    db.commit()
    db.refresh(ch)
    logger.info("Channel %s resolved via %s (act_used=%s fee=%s)", channel_id, method, act_used, fee)
    return _descriptor(db, ch)


def complete(
    db: Session, channel_id: str, *, tx_id: str, method: str, now: Optional[datetime] = None
) -> dict[str, Any]:
    """Record the broadcast creation transaction and close the channel."""
    tx_id = (tx_id or "").strip()
    if not tx_id:
        raise ValidationError("tx_id is required", code="invalid_tx_id")
    method = normalize_method(method)
    now = now or _utcnow()

    ch = channels.get_channel(db, channel_id, for_update=True)
    if ch.status == st.COMPLETED:
        if ch.creation_tx_id == tx_id:
            return channels.channel_to_dict(ch)
        raise ConflictError(f"channel {channel_id} already completed by {ch.creation_tx_id}", code="already_completed")
    if ch.status != st.CONFIRMED:
        raise ConflictError(f"channel {channel_id} is {ch.status}, not confirmed", code="not_confirmed")
    if ch.creation_method is None:
        raise ConflictError(f"channel {channel_id} has not been resolved", code="not_resolved")
    if ch.creation_method != method:
        raise ConflictError(
            f"channel {channel_id} was resolved via {ch.creation_method}, not {method}", code="method_mismatch"
        )

    if not channels.transition(db, ch, st.COMPLETED, now=now, completed_at=now, creation_tx_id=tx_id):
        db.rollback()
        ch = channels.get_channel(db, channel_id)
        if ch.status == st.COMPLETED and ch.creation_tx_id == tx_id:
            return channels.channel_to_dict(ch)
        raise ConflictError(f"channel {channel_id} changed concurrently; retry", code="concurrent_update")
    db.commit()
    logger.info("Account %s created for channel %s in tx %s", ch.username, channel_id, tx_id)
    return channels.channel_to_dict(ch)


def process_pending(db: Session, *, limit: int = 50, now: Optional[datetime] = None) -> dict[str, Any]:
    """Resolve every confirmed channel with keys and no recorded method."""
    ids = db.execute(
        select(PaymentChannel.channel_id)
        .where(
            PaymentChannel.status == st.CONFIRMED,
            PaymentChannel.public_keys.is_not(None),
            PaymentChannel.creation_method.is_(None),
        )
        .order_by(PaymentChannel.confirmed_at.asc())
        .limit(limit)
    ).scalars().all()

    resolved: list[dict[str, Any]] = []
    failed: list[dict[str, Any]] = []
    for channel_id in ids:
        try:
            resolved.append(resolve(db, channel_id, now=now))
        except ResourceExhaustedError as e:
            failed.append({"channel_id": channel_id, "error": e.code, "detail": e.message})
        except EngineError as e:
            db.rollback()
            logger.warning("Skipping channel %s: %s", channel_id, e.message)
            failed.append({"channel_id": channel_id, "error": e.code, "detail": e.message})
    if ids:
        logger.info("Processed %d pending account(s): %d resolved, %d failed", len(ids), len(resolved), len(failed))
    return {
        "ok": True,
        "processed": len(ids),
        "act": sum(1 for r in resolved if r["creation_method"] == ACT),
        "delegation": sum(1 for r in resolved if r["creation_method"] == DELEGATION),
        "resolved": resolved,
        "failed": failed,
    }
