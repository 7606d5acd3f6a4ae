from __future__ import annotations

import logging
import os
import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from sqlalchemy import and_, exists, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from onboarding.addresses import pool
from onboarding.assets import explorer_url, get_asset
from onboarding.channels import status as st
from onboarding.clients import AddressProvisioner
from onboarding.core.errors import ConflictError, NotFound, ValidationError
from onboarding.core.settings import settings
from onboarding.database.models import PaymentChannel, PaymentDetection
from onboarding.pricing.price_feed import PriceFeed, get_price_feed
from onboarding.pricing.rates import price_asset

logger = logging.getLogger(__name__)

KEY_ROLES = ("owner", "active", "posting", "memo")
_USERNAME_RE = re.compile(r"[a-z][a-z0-9-]*[a-z0-9](\.[a-z][a-z0-9-]*[a-z0-9])*")
# monitor clocks may run slightly ahead of ours
DETECTION_GRACE = timedelta(minutes=1)

# detection notes
NOTE_BELOW_MINIMUM = "below_minimum"
NOTE_UNDERPAID = "underpaid"
NOTE_PREDATES = "predates_channel"
NOTE_DOUBLE_PAYMENT = "potential_double_payment"
NOTE_CHANNEL_CLOSED = "channel_closed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _make_channel_id() -> str:
    return "CH_" + os.urandom(16).hex()


def validate_username(username: str) -> str:
    u = (username or "").strip().lower()
    if not 3 <= len(u) <= 16:
        raise ValidationError("username must be 3-16 characters", code="invalid_username")
    if not _USERNAME_RE.fullmatch(u):
        raise ValidationError(f"invalid HIVE username: {username!r}", code="invalid_username")
    return u


def validate_public_keys(keys: Optional[dict[str, Any]]) -> Optional[dict[str, str]]:
    if keys is None:
        return None
    if not isinstance(keys, dict):
        raise ValidationError("public_keys must be an object", code="invalid_public_keys")
    out: dict[str, str] = {}
    for role in KEY_ROLES:
        raw = keys.get(role)
        if not raw or not isinstance(raw, str):
            raise ValidationError(f"missing {role} public key", code="invalid_public_keys")
        k = raw.strip()
        if not (k.startswith("STM") or k.startswith("TST")):
            raise ValidationError(f"{role} key must start with STM or TST", code="invalid_public_keys")
        if not 50 <= len(k) <= 60:
            raise ValidationError(f"{role} key must be 50-60 characters", code="invalid_public_keys")
        out[role] = k
    return out


def make_memo(username: str, channel_id: str) -> str:
    return f"HIVE Account: {username} | CH: {channel_id}"


def _is_expired(ch: PaymentChannel, now: datetime) -> bool:
    if ch.status == st.EXPIRED:
        return True
    return ch.status == st.PENDING and ch.expires_at is not None and ch.expires_at <= now


def _minutes_left(ch: PaymentChannel, now: datetime) -> int:
    if ch.status != st.PENDING or ch.expires_at is None:
        return 0
    return max(0, int((ch.expires_at - now).total_seconds() // 60))


def channel_to_dict(ch: PaymentChannel, now: Optional[datetime] = None) -> dict[str, Any]:
    now = now or _utcnow()
    return {
        "channel_id": ch.channel_id,
        "username": ch.username,
        "crypto_type": ch.crypto_type,
        "payment_address": ch.payment_address,
        "memo": ch.memo,
        "amount_crypto": str(ch.amount_crypto),
        "amount_usd": str(ch.amount_usd),
        "status": ch.status,
        "public_keys": ch.public_keys,
        "tx_hash": ch.tx_hash,
        "explorer_url": explorer_url(ch.crypto_type, ch.tx_hash),
        "confirmations": ch.confirmations,
        "confirmations_required": get_asset(ch.crypto_type).confirmations_required,
        "created_at": ch.created_at.isoformat() if ch.created_at else None,
        "expires_at": ch.expires_at.isoformat() if ch.expires_at else None,
        "is_expired": _is_expired(ch, now),
        "time_left_minutes": _minutes_left(ch, now),
        "confirmed_at": ch.confirmed_at.isoformat() if ch.confirmed_at else None,
        "completed_at": ch.completed_at.isoformat() if ch.completed_at else None,
        "processing_time_seconds": ch.processing_time_seconds,
        "creation_method": ch.creation_method,
        "act_used": ch.act_used,
        "creation_fee": ch.creation_fee,
        "creation_tx_id": ch.creation_tx_id,
        "failure_reason": ch.failure_reason,
    }


def get_channel(db: Session, channel_id: str, *, for_update: bool = False) -> PaymentChannel:
    q = select(PaymentChannel).where(PaymentChannel.channel_id == channel_id)
    if for_update:
        q = q.with_for_update()
    ch = db.execute(q.execution_options(populate_existing=True)).scalar_one_or_none()
    if ch is None:
        raise NotFound(f"channel {channel_id} not found")
    return ch


def create_channel(
    db: Session,
    *,
    username: str,
    crypto_type: str,
    provisioner: AddressProvisioner,
    public_keys: Optional[dict[str, Any]] = None,
    memo: Optional[str] = None,
    price_feed: Optional[PriceFeed] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    username = validate_username(username)
    asset = get_asset(crypto_type)
    keys = validate_public_keys(public_keys)
    now = now or _utcnow()

    taken = db.execute(
        select(PaymentChannel.channel_id).where(
            PaymentChannel.username == username,
            PaymentChannel.status.in_(st.ACTIVE),
        )
    ).first()
    if taken is not None:
        raise ConflictError(f"username {username} already has channel {taken[0]}", code="username_taken")

    # priced once here; later quotes never touch the stored amounts
    price = price_asset(asset, (price_feed or get_price_feed()).quote(asset.symbol))
    amount_usd = price.final_cost_usd
    amount_crypto = price.total_amount

    channel_id = _make_channel_id()
    if memo:
        memo = memo.strip()
    elif asset.supports_memo:
        memo = make_memo(username, channel_id)

    addr = pool.allocate(db, crypto_type=asset.symbol, channel_id=channel_id, provisioner=provisioner, now=now)
    ch = PaymentChannel(
        channel_id=channel_id,
        username=username,
        crypto_type=asset.symbol,
        payment_address=addr.address,
        memo=memo or None,
        amount_crypto=amount_crypto,
        amount_usd=amount_usd,
        status=st.PENDING,
        public_keys=keys,
        confirmations=0,
        created_at=now,
        expires_at=now + timedelta(minutes=settings.CHANNEL_TTL_MINUTES),
        updated_at=now,
    )
    db.add(ch)
    db.commit()
    logger.info(
        "Channel %s created for %s: %s %s ($%s) to %s",
        channel_id, username, amount_crypto, asset.symbol, amount_usd, addr.address,
    )
    out = channel_to_dict(ch, now)
    out["price"] = price.to_dict()
    return out


def list_channels(
    db: Session,
    *,
    status: Optional[str] = None,
    crypto_type: Optional[str] = None,
    days: Optional[int] = None,
    limit: int = 50,
    offset: int = 0,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    filters = []
    if status:
        if status not in st.ALL:
            raise ValidationError(f"unknown status {status!r}", code="invalid_status")
        filters.append(PaymentChannel.status == status)
    if crypto_type:
        filters.append(PaymentChannel.crypto_type == get_asset(crypto_type).symbol)
    if days:
        filters.append(PaymentChannel.created_at >= (now or _utcnow()) - timedelta(days=int(days)))

    rows = db.execute(
        select(PaymentChannel)
        .where(*filters)
        .order_by(PaymentChannel.created_at.desc(), PaymentChannel.id.desc())
        .limit(limit)
        .offset(offset)
    ).scalars().all()
    total = db.execute(select(func.count(PaymentChannel.id)).where(*filters)).scalar_one()
    return {
        "channels": [channel_to_dict(c, now) for c in rows],
        "total": total,
        "pagination": {"limit": limit, "offset": offset, "has_more": offset + len(rows) < total},
    }


def transition(db: Session, ch: PaymentChannel, target: str, *, now: Optional[datetime] = None, **values: Any) -> bool:
    """Conditionally move ``ch`` to ``target``; False when another writer moved it first.

    Does not commit. Terminal targets hand the address back to the pool.
    """
    if not st.can_transition(ch.status, target):
        raise ConflictError(f"channel {ch.channel_id} cannot go from {ch.status} to {target}", code="invalid_transition")
    now = now or _utcnow()
    if st.is_terminal(target):
        values.setdefault("terminal_at", now)
    res = db.execute(
        update(PaymentChannel)
        .where(PaymentChannel.channel_id == ch.channel_id, PaymentChannel.status == ch.status)
        .values(status=target, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    previous = ch.status
    db.refresh(ch)
    if res.rowcount != 1:
        logger.info("Channel %s left %s before %s could apply", ch.channel_id, previous, target)
        return False
    logger.info("Channel %s %s -> %s", ch.channel_id, previous, target)
    if st.is_terminal(target):
        pool.release(db, ch, now=now)
    return True


def _parse_amount(amount: Any) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"invalid amount {amount!r}", code="invalid_amount") from e
    if value < 0:
        raise ValidationError("amount must be >= 0", code="invalid_amount")
    return value


def _judge(ch: PaymentChannel, amount: Decimal, detected_at: datetime) -> Optional[str]:
    """Reason a new deposit cannot satisfy the channel, or None when it can."""
    asset = get_asset(ch.crypto_type)
    if ch.status in (st.CONFIRMED, st.COMPLETED) and ch.tx_hash:
        return NOTE_DOUBLE_PAYMENT
    if st.is_terminal(ch.status):
        return NOTE_CHANNEL_CLOSED
    if ch.status == st.PENDING and ch.tx_hash:
        # an earlier accepted tx is still collecting confirmations
        return NOTE_DOUBLE_PAYMENT
    if amount < asset.min_amount:
        return NOTE_BELOW_MINIMUM
    if amount < Decimal(ch.amount_crypto) * (Decimal(1) - Decimal(settings.AMOUNT_TOLERANCE)):
        return NOTE_UNDERPAID
    if detected_at < ch.created_at - DETECTION_GRACE:
        return NOTE_PREDATES
    return None


def _record_detection(
    db: Session,
    ch: PaymentChannel,
    *,
    tx_hash: str,
    amount: Decimal,
    confirmations: int,
    detected_at: datetime,
    now: datetime,
) -> tuple[PaymentDetection, bool]:
    """Return the detection row for (channel, tx) and whether this call created it."""
    existing = db.execute(
        select(PaymentDetection).where(
            PaymentDetection.channel_id == ch.channel_id,
            PaymentDetection.tx_hash == tx_hash,
        )
    ).scalar_one_or_none()
    if existing is not None:
        return existing, False

    note = _judge(ch, amount, detected_at)
    det = PaymentDetection(
        channel_id=ch.channel_id,
        crypto_type=ch.crypto_type,
        address=ch.payment_address,
        tx_hash=tx_hash,
        amount=amount,
        confirmations=confirmations,
        accepted=note is None,
        note=note,
        detected_at=detected_at,
        processed_at=now,
    )
    try:
        with db.begin_nested():
            db.add(det)
    except IntegrityError:
        # a concurrent delivery of the same event won the insert
        existing = db.execute(
            select(PaymentDetection).where(
                PaymentDetection.channel_id == ch.channel_id,
                PaymentDetection.tx_hash == tx_hash,
            )
        ).scalar_one()
        return existing, False

    if note == NOTE_DOUBLE_PAYMENT:
        logger.warning(
            "Potential double payment on channel %s: new tx %s, recorded tx %s",
            ch.channel_id, tx_hash, ch.tx_hash,
        )
    elif note:
        logger.info("Deposit %s on channel %s ignored: %s", tx_hash, ch.channel_id, note)
    pool.credit(db, ch.payment_address, amount, now=now)
    return det, True


def submit_deposit(
    db: Session,
    channel_id: str,
    *,
    tx_hash: str,
    amount: Any,
    confirmations: int,
    detected_at: Optional[datetime] = None,
    final: Optional[bool] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Apply a monitor report to a channel.

    Safe under redelivery and reordering: the detection row is keyed by
    (channel_id, tx_hash), confirmations only ever grow, and the
    pending -> confirmed move is a conditional update.
    """
    tx_hash = (tx_hash or "").strip()
    if not tx_hash:
        raise ValidationError("tx_hash is required", code="invalid_tx_hash")
    if confirmations is None or int(confirmations) < 0:
        raise ValidationError("confirmations must be >= 0", code="invalid_confirmations")
    confirmations = int(confirmations)
    amount = _parse_amount(amount)
    now = now or _utcnow()
    detected_at = detected_at or now
    if detected_at.tzinfo is None:
        detected_at = detected_at.replace(tzinfo=timezone.utc)

    ch = get_channel(db, channel_id, for_update=True)
    asset = get_asset(ch.crypto_type)
    det, _created = _record_detection(
        db, ch, tx_hash=tx_hash, amount=amount, confirmations=confirmations, detected_at=detected_at, now=now,
    )
    if confirmations > det.confirmations:
        det.confirmations = confirmations
        det.processed_at = now

    if det.accepted:
        settled = bool(final) or det.confirmations >= asset.confirmations_required
        if ch.status == st.PENDING and settled:
            transition(
                db, ch, st.CONFIRMED, now=now,
                tx_hash=tx_hash, confirmations=det.confirmations, confirmed_at=now,
            )
        elif ch.status == st.PENDING:
            db.execute(
                update(PaymentChannel)
                .where(
                    PaymentChannel.channel_id == ch.channel_id,
                    PaymentChannel.status == st.PENDING,
                    # the first accepted tx is recorded at any depth
                    or_(
                        PaymentChannel.tx_hash.is_(None),
                        and_(
                            PaymentChannel.tx_hash == tx_hash,
                            PaymentChannel.confirmations < det.confirmations,
                        ),
                    ),
                )
                .values(tx_hash=tx_hash, confirmations=det.confirmations, updated_at=now)
                .execution_options(synchronize_session=False)
            )
        elif ch.tx_hash == tx_hash:
            db.execute(
                update(PaymentChannel)
                .where(
                    PaymentChannel.channel_id == ch.channel_id,
                    PaymentChannel.confirmations < det.confirmations,
                )
                .values(confirmations=det.confirmations)
                .execution_options(synchronize_session=False)
            )

    db.commit()
    db.refresh(ch)
    out = channel_to_dict(ch, now)
    out["detection"] = detection_to_dict(det)
    return out


def detection_to_dict(det: PaymentDetection) -> dict[str, Any]:
    return {
        "channel_id": det.channel_id,
        "crypto_type": det.crypto_type,
        "address": det.address,
        "tx_hash": det.tx_hash,
        "amount": str(det.amount),
        "confirmations": det.confirmations,
        "accepted": det.accepted,
        "note": det.note,
        "detected_at": det.detected_at.isoformat() if det.detected_at else None,
        "explorer_url": explorer_url(det.crypto_type, det.tx_hash),
    }


def expire_sweep(db: Session, now: Optional[datetime] = None) -> int:
    """Expire pending channels past their TTL with no detected deposit."""
    now = now or _utcnow()
    due = db.execute(
        select(PaymentChannel)
        .where(
            PaymentChannel.status == st.PENDING,
            PaymentChannel.expires_at <= now,
            PaymentChannel.tx_hash.is_(None),
            ~exists().where(
                PaymentDetection.channel_id == PaymentChannel.channel_id,
                PaymentDetection.accepted.is_(True),
            ),
        )
        .order_by(PaymentChannel.expires_at.asc())
    ).scalars().all()
    expired = 0
    for ch in due:
        if transition(db, ch, st.EXPIRED, now=now, failure_reason="no deposit before expiry"):
            expired += 1
    db.commit()
    if expired:
        logger.info("Expired %d pending channel(s)", expired)
    return expired


def fail(db: Session, channel_id: str, reason: str, now: Optional[datetime] = None) -> dict[str, Any]:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("a failure reason is required", code="missing_reason")
    ch = get_channel(db, channel_id, for_update=True)
    if ch.status == st.FAILED:
        return channel_to_dict(ch)
    if not transition(db, ch, st.FAILED, now=now, failure_reason=reason):
        db.rollback()
        raise ConflictError(f"channel {channel_id} changed concurrently; retry", code="concurrent_update")
    db.commit()
    logger.warning("Channel %s failed: %s", channel_id, reason)
    return channel_to_dict(ch)


def cancel(db: Session, channel_id: str, *, purge: bool = True, now: Optional[datetime] = None) -> dict[str, Any]:
    """Admin cancellation.

    Non-terminal channels become ``cancelled``. With ``purge`` the record is
    then deleted; terminal channels may only be purged when
    ALLOW_TERMINAL_DELETE is on. Bound addresses return to the pool either way.
    """
    now = now or _utcnow()
    ch = get_channel(db, channel_id, for_update=True)
    previous = ch.status

    if st.is_terminal(ch.status):
        if not purge:
            if ch.status == st.CANCELLED:
                return {"ok": True, "channel_id": channel_id, "status": ch.status, "deleted": False}
            raise ConflictError(f"channel {channel_id} is already {ch.status}", code="invalid_transition")
        if not settings.ALLOW_TERMINAL_DELETE:
            raise ConflictError(f"deleting {ch.status} channels is disabled", code="delete_not_allowed")
    else:
        res = db.execute(
            update(PaymentChannel)
            .where(PaymentChannel.channel_id == channel_id, PaymentChannel.status == previous)
            .values(status=st.CANCELLED, terminal_at=now, updated_at=now, failure_reason="cancelled by operator")
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            db.rollback()
            raise ConflictError(f"channel {channel_id} changed concurrently; retry", code="concurrent_update")
        db.refresh(ch)
        pool.release(db, ch, now=now)

    if purge:
        pool.unbind(db, ch, now=now)
        db.delete(ch)
    db.commit()
    logger.info("Channel %s cancelled by operator (was %s, deleted=%s)", channel_id, previous, purge)
    return {
        "ok": True,
        "channel_id": channel_id,
        "previous_status": previous,
        "status": previous if st.is_terminal(previous) else st.CANCELLED,
        "deleted": purge,
    }
