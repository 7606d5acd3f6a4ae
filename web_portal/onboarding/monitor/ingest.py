from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from onboarding.addresses import pool
from onboarding.assets import ASSETS, get_asset
from onboarding.channels import service as channels
from onboarding.channels import status as st
from onboarding.clients import DepositFeed
from onboarding.core.errors import EngineError, ValidationError
from onboarding.core.settings import settings
from onboarding.database.models import (
    CryptoAddress,
    MonitorCursor,
    MonitorHeartbeat,
    PaymentChannel,
    PaymentDetection,
)

logger = logging.getLogger(__name__)

NOTE_UNBOUND = "unbound_address"
FEED_NAME = "deposits"
# heartbeats older than this many poll intervals count as stale
HEALTHY_INTERVALS = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _pick(raw: dict, *names: str) -> Any:
    for n in names:
        if raw.get(n) is not None:
            return raw[n]
    return None


def _parse_time(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError as e:
            raise ValidationError(f"bad detectedAt {value!r}", code="invalid_event") from e
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


_TRUE = ("true", "1", "yes")
_FALSE = ("false", "0", "no")


def _parse_flag(value: Any) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        v = value.strip().lower()
        if v in _TRUE:
            return True
        if v in _FALSE:
            return False
    raise ValidationError(f"bad final flag {value!r}", code="invalid_event")


@dataclass
class DepositEvent:
    """One report from a chain watcher. Delivery is at-least-once, in any order."""

    address: str
    crypto_type: str
    tx_hash: str
    amount: Decimal
    confirmations: int
    detected_at: Optional[datetime] = None
    final: Optional[bool] = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "DepositEvent":
        if not isinstance(raw, dict):
            raise ValidationError("event must be an object", code="invalid_event")
        address = str(_pick(raw, "address") or "").strip()
        crypto_type = str(_pick(raw, "crypto_type", "cryptoType") or "").strip().upper()
        tx_hash = str(_pick(raw, "tx_hash", "txHash") or "").strip()
        if not address or not crypto_type or not tx_hash:
            raise ValidationError("event needs address, cryptoType and txHash", code="invalid_event")
        try:
            amount = Decimal(str(_pick(raw, "amount") or "0"))
            confirmations = int(_pick(raw, "confirmations") or 0)
        except (InvalidOperation, ValueError) as e:
            raise ValidationError(f"bad amount or confirmations in event {tx_hash}", code="invalid_event") from e
        final = _parse_flag(_pick(raw, "final", "settled"))
        return cls(
            address=address,
            crypto_type=crypto_type,
            tx_hash=tx_hash,
            amount=amount,
            confirmations=confirmations,
            detected_at=_parse_time(_pick(raw, "detected_at", "detectedAt")),
            final=final,
        )

    def is_final(self) -> bool:
        if self.final is not None:
            return self.final
        return self.confirmations >= get_asset(self.crypto_type).confirmations_required


def _heartbeat(db: Session, crypto_type: str) -> MonitorHeartbeat:
    hb = db.get(MonitorHeartbeat, crypto_type)
    if hb is not None:
        return hb
    hb = MonitorHeartbeat(crypto_type=crypto_type, events_total=0, errors_total=0)
    try:
        with db.begin_nested():
            db.add(hb)
    except IntegrityError:
        hb = db.get(MonitorHeartbeat, crypto_type, populate_existing=True)
    return hb


def _beat(db: Session, crypto_type: str, now: datetime, error: Optional[str] = None) -> None:
    hb = _heartbeat(db, crypto_type)
    if error is None:
        hb.last_event_at = now
        hb.events_total = (hb.events_total or 0) + 1
    else:
        hb.last_error_at = now
        hb.last_error = error[:500]
        hb.errors_total = (hb.errors_total or 0) + 1
    db.commit()


def _ingest_unbound(db: Session, event: DepositEvent, now: datetime) -> dict[str, Any]:
    marker = f"address:{event.address}"
    seen = db.execute(
        select(PaymentDetection.id).where(
            PaymentDetection.channel_id == marker,
            PaymentDetection.tx_hash == event.tx_hash,
        )
    ).scalar_one_or_none()
    if seen is None:
        try:
            with db.begin_nested():
                db.add(
                    PaymentDetection(
                        channel_id=marker,
                        crypto_type=event.crypto_type,
                        address=event.address,
                        tx_hash=event.tx_hash,
                        amount=event.amount,
                        confirmations=event.confirmations,
                        accepted=False,
                        note=NOTE_UNBOUND,
                        detected_at=event.detected_at or now,
                        processed_at=now,
                    )
                )
        except IntegrityError:
            seen = True
    if seen is None:
        pool.credit(db, event.address, event.amount, now=now)
        logger.warning(
            "Deposit %s of %s %s to unbound address %s",
            event.tx_hash, event.amount, event.crypto_type, event.address,
        )
    db.commit()
    return {"matched": False, "address": event.address, "tx_hash": event.tx_hash, "duplicate": seen is not None}


def ingest(db: Session, event: DepositEvent, now: Optional[datetime] = None) -> dict[str, Any]:
    """Route a deposit event to the channel bound to its address."""
    now = now or _utcnow()
    asset = get_asset(event.crypto_type)
    try:
        addr = db.execute(
            select(CryptoAddress).where(CryptoAddress.address == event.address)
        ).scalar_one_or_none()
        if addr is None:
            raise ValidationError(f"address {event.address} is not issued by this service", code="unknown_address")
        if addr.crypto_type != asset.symbol:
            raise ValidationError(
                f"address {event.address} is {addr.crypto_type}, event says {asset.symbol}", code="invalid_event"
            )

        channel_id = None
        if addr.channel_id:
            channel_id = db.execute(
                select(PaymentChannel.channel_id).where(PaymentChannel.channel_id == addr.channel_id)
            ).scalar_one_or_none()
        if channel_id is None:
            result = _ingest_unbound(db, event, now)
        else:
            result = channels.submit_deposit(
                db,
                channel_id,
                tx_hash=event.tx_hash,
                amount=event.amount,
                confirmations=event.confirmations,
                detected_at=event.detected_at,
                final=event.is_final(),
                now=now,
            )
            result["matched"] = True
    except EngineError as e:
        db.rollback()
        logger.warning("Rejected %s event %s: %s", asset.symbol, event.tx_hash, e.message)
        _beat(db, asset.symbol, now, error=e.message)
        raise
    _beat(db, asset.symbol, now)
    return result


def _load_cursor(db: Session) -> Optional[str]:
    row = db.get(MonitorCursor, FEED_NAME, populate_existing=True)
    return row.cursor if row is not None else None


def _store_cursor(db: Session, cursor: str) -> None:
    row = db.get(MonitorCursor, FEED_NAME)
    if row is None:
        db.add(MonitorCursor(feed=FEED_NAME, cursor=cursor))
    else:
        row.cursor = cursor
    db.commit()


def poll_once(db: Session, feed: DepositFeed, timeout: float, now: Optional[datetime] = None) -> dict[str, Any]:
    """Fetch one batch from ``feed`` and ingest it; bad events are counted, not fatal.

    The feed decides where a poll resumes: the cursor it returns is stored
    once the batch is ingested and handed back on the next fetch. A page
    without a cursor keeps the previous one; events delivered again are
    absorbed as duplicates.
    """
    now = now or _utcnow()
    page = feed.fetch(_load_cursor(db), timeout)
    raw_events = page.events
    ingested = errors = 0
    for raw in raw_events:
        try:
            ingest(db, DepositEvent.from_dict(raw), now=now)
            ingested += 1
        except EngineError as e:
            errors += 1
            logger.warning("Skipping monitor event %r: %s", raw, e.message)
    if raw_events:
        logger.info("Monitor poll: %d fetched, %d ingested, %d rejected", len(raw_events), ingested, errors)
    if page.cursor is not None:
        _store_cursor(db, page.cursor)
    return {"fetched": len(raw_events), "ingested": ingested, "errors": errors}


def monitor_status(db: Session, *, limit: int = 20, now: Optional[datetime] = None) -> dict[str, Any]:
    now = now or _utcnow()
    window = timedelta(seconds=settings.MONITOR_POLL_SECONDS * HEALTHY_INTERVALS)
    beats = {hb.crypto_type: hb for hb in db.execute(select(MonitorHeartbeat)).scalars().all()}

    networks = []
    for symbol, asset in ASSETS.items():
        hb = beats.get(symbol)
        last = hb.last_event_at if hb else None
        networks.append(
            {
                "crypto_type": symbol,
                "name": asset.name,
                "confirmations_required": asset.confirmations_required,
                "healthy": last is not None and now - last <= window,
                "last_event_at": last.isoformat() if last else None,
                "last_error_at": hb.last_error_at.isoformat() if hb and hb.last_error_at else None,
                "last_error": hb.last_error if hb else None,
                "events_total": hb.events_total if hb else 0,
                "errors_total": hb.errors_total if hb else 0,
            }
        )

    recent = db.execute(
        select(PaymentDetection).order_by(PaymentDetection.detected_at.desc(), PaymentDetection.id.desc()).limit(limit)
    ).scalars().all()
    waiting = db.execute(
        select(PaymentChannel.status, func.count(PaymentChannel.id))
        .where(PaymentChannel.status.in_((st.PENDING, st.CONFIRMED)))
        .group_by(PaymentChannel.status)
    ).all()
    return {
        "ok": True,
        "networks": networks,
        "recent_detections": [channels.detection_to_dict(d) for d in recent],
        "channels": {s: n for s, n in waiting},
        "feed_configured": bool(settings.MONITOR_FEED_URL),
    }
