from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.types import TypeDecorator

from onboarding.db import Base

# crypto amounts keep the DECIMAL(20, 8) scale of the payment tables
AMOUNT = Numeric(20, 8)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend (SQLite drops tzinfo)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class PaymentChannel(Base):
    __tablename__ = "payment_channels"

    id = Column(Integer, primary_key=True, autoincrement=True)
    channel_id = Column(String(100), unique=True, nullable=False)
    username = Column(String(50), nullable=False, index=True)
    crypto_type = Column(String(10), nullable=False, index=True)
    payment_address = Column(String(255), nullable=False, index=True)
    memo = Column(String(255), nullable=True)
    amount_crypto = Column(AMOUNT, nullable=False)
    amount_usd = Column(Numeric(12, 6), nullable=False)
    status = Column(String(20), nullable=False, default="pending", index=True)
    public_keys = Column(JSON(none_as_null=True), nullable=True)

    tx_hash = Column(String(255), nullable=True)
    confirmations = Column(Integer, nullable=False, default=0)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)
    expires_at = Column(UTCDateTime, nullable=False, index=True)
    confirmed_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)
    terminal_at = Column(UTCDateTime, nullable=True)
    updated_at = Column(UTCDateTime, nullable=True, default=utcnow, onupdate=utcnow)

    # account creation decision, recorded once
    creation_method = Column(String(20), nullable=True)
    act_used = Column(Integer, nullable=False, default=0)
    creation_fee = Column(String(32), nullable=True)
    creation_tx_id = Column(String(255), nullable=True)

    failure_reason = Column(Text, nullable=True)

    @property
    def processing_time_seconds(self) -> int | None:
        if self.confirmed_at is None or self.created_at is None:
            return None
        return int((self.confirmed_at - self.created_at).total_seconds())


class CryptoAddress(Base):
    __tablename__ = "crypto_addresses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    address = Column(String(255), unique=True, nullable=False)
    crypto_type = Column(String(10), nullable=False, index=True)
    # no FK: deleted channels leave the address in the pool
    channel_id = Column(String(100), nullable=True, index=True)
    public_key = Column(String(255), nullable=True)
    derivation_index = Column(Integer, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    bound_at = Column(UTCDateTime, nullable=True)
    reusable_after = Column(UTCDateTime, nullable=True)
    balance = Column(AMOUNT, nullable=False, default=Decimal("0"))
    balance_updated_at = Column(UTCDateTime, nullable=True)


class PaymentDetection(Base):
    __tablename__ = "payment_detections"
    __table_args__ = (UniqueConstraint("channel_id", "tx_hash", name="uq_detection_channel_tx"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    channel_id = Column(String(100), nullable=False, index=True)
    crypto_type = Column(String(10), nullable=False)
    address = Column(String(255), nullable=False)
    tx_hash = Column(String(255), nullable=False, index=True)
    amount = Column(AMOUNT, nullable=False)
    confirmations = Column(Integer, nullable=False, default=0)
    accepted = Column(Boolean, nullable=False, default=False)
    note = Column(String(255), nullable=True)
    detected_at = Column(UTCDateTime, nullable=False, default=utcnow)
    processed_at = Column(UTCDateTime, nullable=True)


class ConsolidationPlan(Base):
    __tablename__ = "consolidation_plans"

    tx_id = Column(String(64), primary_key=True)
    crypto_type = Column(String(10), nullable=False, index=True)
    # set to crypto_type while planned, NULL afterwards: one planned plan per asset
    active_asset = Column(String(10), nullable=True, unique=True)
    destination_address = Column(String(255), nullable=False)
    priority = Column(String(10), nullable=False, default="medium")
    address_count = Column(Integer, nullable=False)
    total_balance = Column(AMOUNT, nullable=False)
    fee_estimate = Column(JSON, nullable=False)
    net_amount = Column(JSON, nullable=False)
    snapshot = Column(JSON, nullable=False)
    status = Column(String(16), nullable=False, default="planned")
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    expires_at = Column(UTCDateTime, nullable=False)
    executing_until = Column(UTCDateTime, nullable=True)

    blockchain_tx_hash = Column(String(255), nullable=True)
    total_amount = Column(AMOUNT, nullable=True)
    addresses_consolidated = Column(Integer, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)
    last_error = Column(Text, nullable=True)


class OperatorResources(Base):
    __tablename__ = "operator_resources"

    account = Column(String(50), primary_key=True)
    act_balance = Column(Integer, nullable=False, default=0)
    rc_current = Column(BigInteger, nullable=False, default=0)
    rc_max = Column(BigInteger, nullable=False, default=0)
    hive_balance = Column(Numeric(20, 3), nullable=False, default=Decimal("0"))
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)


class RcCost(Base):
    __tablename__ = "rc_costs"

    operation = Column(String(64), primary_key=True)
    rc_needed = Column(BigInteger, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)


class ResourceSnapshot(Base):
    __tablename__ = "resource_snapshots"
    __table_args__ = (Index("ix_resource_snapshots_account_time", "account", "recorded_at"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    account = Column(String(50), nullable=False)
    act_balance = Column(Integer, nullable=False)
    rc_current = Column(BigInteger, nullable=False)
    rc_max = Column(BigInteger, nullable=False)
    hive_balance = Column(Numeric(20, 3), nullable=False)
    recorded_at = Column(UTCDateTime, nullable=False, default=utcnow)


class MonitorHeartbeat(Base):
    __tablename__ = "monitor_heartbeats"

    crypto_type = Column(String(10), primary_key=True)
    last_event_at = Column(UTCDateTime, nullable=True)
    last_error_at = Column(UTCDateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    events_total = Column(Integer, nullable=False, default=0)
    errors_total = Column(Integer, nullable=False, default=0)


class MonitorCursor(Base):
    """Resume point handed back by a deposit feed; opaque to this service."""

    __tablename__ = "monitor_cursors"

    feed = Column(String(32), primary_key=True)
    cursor = Column(Text, nullable=True)
    updated_at = Column(UTCDateTime, nullable=True, default=utcnow, onupdate=utcnow)
