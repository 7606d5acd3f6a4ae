from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.orm import Session

from onboarding.assets import get_asset
from onboarding.channels import status as st
from onboarding.clients import AddressProvisioner
from onboarding.core.errors import ConflictError, NotFound, ProvisioningError
from onboarding.core.settings import settings
from onboarding.database.models import CryptoAddress, PaymentChannel

logger = logging.getLogger(__name__)

# candidates examined per allocation before falling back to provisioning
_REUSE_CANDIDATES = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def cooldown() -> timedelta:
    return timedelta(minutes=settings.ADDRESS_COOLDOWN_MINUTES)


def allocate(
    db: Session,
    *,
    crypto_type: str,
    channel_id: str,
    provisioner: AddressProvisioner,
    now: Optional[datetime] = None,
) -> CryptoAddress:
    """Bind an address to ``channel_id``, reusing an eligible one first.

    Does not commit; the channel insert and the binding share a transaction.
    """
    asset = get_asset(crypto_type)
    now = now or _utcnow()

    candidates = db.execute(
        select(CryptoAddress.id)
        .where(
            CryptoAddress.crypto_type == asset.symbol,
            CryptoAddress.reusable_after.is_not(None),
            CryptoAddress.reusable_after <= now,
            CryptoAddress.balance == 0,
        )
        .order_by(CryptoAddress.reusable_after.asc())
        .limit(_REUSE_CANDIDATES)
    ).scalars().all()

    for addr_id in candidates:
        # conditional claim: a concurrent allocator that won the row leaves rowcount 0
        res = db.execute(
            update(CryptoAddress)
            .where(
                CryptoAddress.id == addr_id,
                CryptoAddress.reusable_after.is_not(None),
                CryptoAddress.reusable_after <= now,
                CryptoAddress.balance == 0,
            )
            .values(channel_id=channel_id, bound_at=now, reusable_after=None)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 1:
            addr = db.get(CryptoAddress, addr_id, populate_existing=True)
            logger.info("Reusing %s address %s for channel %s", asset.symbol, addr.address, channel_id)
            return addr

    next_index = db.execute(
        select(func.coalesce(func.max(CryptoAddress.derivation_index), -1) + 1).where(
            CryptoAddress.crypto_type == asset.symbol
        )
    ).scalar_one()

    provisioned = provisioner.provision(asset.symbol, int(next_index))
    if not asset.is_valid_address(provisioned.address):
        raise ProvisioningError(f"provisioner returned malformed {asset.symbol} address {provisioned.address!r}")
    existing = db.execute(
        select(CryptoAddress.id).where(CryptoAddress.address == provisioned.address)
    ).scalar_one_or_none()
    if existing is not None:
        raise ProvisioningError(f"provisioner returned an address already in the pool: {provisioned.address}")

    addr = CryptoAddress(
        address=provisioned.address,
        crypto_type=asset.symbol,
        channel_id=channel_id,
        public_key=provisioned.public_key,
        derivation_index=provisioned.derivation_index if provisioned.derivation_index is not None else next_index,
        created_at=now,
        bound_at=now,
        balance=Decimal("0"),
    )
    db.add(addr)
    db.flush()
    logger.info("Provisioned new %s address %s for channel %s", asset.symbol, addr.address, channel_id)
    return addr


def _channel_for(db: Session, addr: CryptoAddress) -> Optional[PaymentChannel]:
    if not addr.channel_id:
        return None
    return db.execute(
        select(PaymentChannel).where(PaymentChannel.channel_id == addr.channel_id)
    ).scalar_one_or_none()


def _eligible_from(addr: CryptoAddress, channel: Optional[PaymentChannel], now: datetime) -> Optional[datetime]:
    """Start of the reuse window, or None while the address must stay out of the pool."""
    if addr.balance and Decimal(addr.balance) != 0:
        return None
    if channel is not None:
        if not st.is_terminal(channel.status):
            return None
        return (channel.terminal_at or now) + cooldown()
    return now + cooldown()


def release(db: Session, channel: PaymentChannel, now: Optional[datetime] = None) -> None:
    """Start the cooldown for addresses of a terminal channel. Does not commit."""
    now = now or _utcnow()
    addrs = db.execute(
        select(CryptoAddress).where(CryptoAddress.channel_id == channel.channel_id)
    ).scalars().all()
    for addr in addrs:
        addr.reusable_after = _eligible_from(addr, channel, now)


def unbind(db: Session, channel: PaymentChannel, now: Optional[datetime] = None) -> None:
    """Detach addresses from a terminal channel that is being deleted. Does not commit."""
    now = now or _utcnow()
    addrs = db.execute(
        select(CryptoAddress).where(CryptoAddress.channel_id == channel.channel_id)
    ).scalars().all()
    for addr in addrs:
        addr.reusable_after = _eligible_from(addr, channel, now)
        addr.channel_id = None


def mark_reusable(db: Session, address: str, now: Optional[datetime] = None) -> CryptoAddress:
    now = now or _utcnow()
    addr = get_address(db, address)
    channel = _channel_for(db, addr)
    if channel is not None and not st.is_terminal(channel.status):
        raise ConflictError(f"address {address} is bound to {channel.status} channel {channel.channel_id}")
    if Decimal(addr.balance or 0) != 0:
        raise ConflictError(f"address {address} still holds {addr.balance}; consolidate first", code="balance_not_zero")
    if addr.reusable_after is None:
        addr.reusable_after = _eligible_from(addr, channel, now)
        db.commit()
        logger.info("Address %s reusable after %s", address, addr.reusable_after.isoformat())
    return addr


def credit(db: Session, address: str, amount: Decimal, now: Optional[datetime] = None) -> Optional[CryptoAddress]:
    """Add a newly detected deposit to the observed balance. Does not commit."""
    now = now or _utcnow()
    addr = db.execute(select(CryptoAddress).where(CryptoAddress.address == address)).scalar_one_or_none()
    if addr is None:
        return None
    addr.balance = Decimal(addr.balance or 0) + Decimal(amount)
    addr.balance_updated_at = now
    if addr.balance != 0:
        addr.reusable_after = None
    return addr


def observe_balance(db: Session, address: str, balance: Decimal, now: Optional[datetime] = None) -> CryptoAddress:
    now = now or _utcnow()
    addr = get_address(db, address)
    addr.balance = Decimal(balance)
    addr.balance_updated_at = now
    if addr.balance != 0:
        addr.reusable_after = None
    elif addr.reusable_after is None:
        addr.reusable_after = _eligible_from(addr, _channel_for(db, addr), now)
    db.commit()
    return addr


def get_address(db: Session, address: str) -> CryptoAddress:
    addr = db.execute(select(CryptoAddress).where(CryptoAddress.address == address)).scalar_one_or_none()
    if addr is None:
        raise NotFound(f"address {address} not found")
    return addr


def is_reusable(addr: CryptoAddress, now: Optional[datetime] = None) -> bool:
    now = now or _utcnow()
    return addr.reusable_after is not None and addr.reusable_after <= now and Decimal(addr.balance or 0) == 0


def address_to_dict(addr: CryptoAddress, now: Optional[datetime] = None) -> dict[str, Any]:
    return {
        "address": addr.address,
        "crypto_type": addr.crypto_type,
        "channel_id": addr.channel_id,
        "derivation_index": addr.derivation_index,
        "balance": str(addr.balance),
        "created_at": addr.created_at.isoformat() if addr.created_at else None,
        "reusable_after": addr.reusable_after.isoformat() if addr.reusable_after else None,
        "reusable": is_reusable(addr, now),
    }


def list_addresses(
    db: Session, *, crypto_type: Optional[str] = None, limit: int = 50, offset: int = 0
) -> dict[str, Any]:
    q = select(CryptoAddress)
    cq = select(func.count(CryptoAddress.id))
    if crypto_type:
        symbol = get_asset(crypto_type).symbol
        q = q.where(CryptoAddress.crypto_type == symbol)
        cq = cq.where(CryptoAddress.crypto_type == symbol)
    rows = db.execute(q.order_by(CryptoAddress.created_at.desc()).limit(limit).offset(offset)).scalars().all()
    total = db.execute(cq).scalar_one()
    now = _utcnow()
    return {
        "addresses": [address_to_dict(a, now) for a in rows],
        "pagination": {"limit": limit, "offset": offset, "total": total, "has_more": offset + len(rows) < total},
    }


def address_stats(db: Session, now: Optional[datetime] = None) -> list[dict[str, Any]]:
    now = now or _utcnow()
    reusable = and_(
        CryptoAddress.reusable_after.is_not(None),
        CryptoAddress.reusable_after <= now,
        CryptoAddress.balance == 0,
    )
    in_use = or_(CryptoAddress.reusable_after.is_(None), CryptoAddress.reusable_after > now)
    rows = db.execute(
        select(
            CryptoAddress.crypto_type,
            func.count(CryptoAddress.id),
            func.sum(case((reusable, 1), else_=0)),
            func.sum(case((and_(in_use, CryptoAddress.channel_id.is_not(None)), 1), else_=0)),
            func.sum(case((CryptoAddress.balance > 0, 1), else_=0)),
            func.coalesce(func.sum(CryptoAddress.balance), 0),
        )
        .group_by(CryptoAddress.crypto_type)
        .order_by(CryptoAddress.crypto_type)
    ).all()
    return [
        {
            "crypto_type": r[0],
            "total_addresses": int(r[1] or 0),
            "reusable_addresses": int(r[2] or 0),
            "in_use_addresses": int(r[3] or 0),
            "with_balance": int(r[4] or 0),
            "total_balance": str(r[5]),
        }
        for r in rows
    ]


def settle(db: Session, addr: CryptoAddress, now: Optional[datetime] = None) -> None:
    """Re-evaluate reuse eligibility after a sweep emptied ``addr``. Does not commit."""
    now = now or _utcnow()
    if Decimal(addr.balance or 0) == 0 and addr.reusable_after is None:
        addr.reusable_after = _eligible_from(addr, _channel_for(db, addr), now)
