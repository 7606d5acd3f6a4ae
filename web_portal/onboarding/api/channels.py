from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from onboarding.accounts import resolver
from onboarding.channels import service
from onboarding.clients import AddressProvisioner
from onboarding.core.admin_auth import require_admin
from onboarding.db import get_db
from onboarding.deps import get_prices, get_provisioner
from onboarding.pricing.price_feed import PriceFeed
from onboarding.pricing.rates import pricing_table

router = APIRouter(prefix="/api/onboarding/admin", tags=["channels"], dependencies=[Depends(require_admin)])


class CreateChannelIn(BaseModel):
    username: str
    crypto_type: str
    public_keys: Optional[dict[str, str]] = None
    memo: Optional[str] = None


class DepositIn(BaseModel):
    tx_hash: str
    amount: Decimal
    confirmations: int = Field(ge=0)
    detected_at: Optional[datetime] = None
    final: Optional[bool] = None


class CompleteIn(BaseModel):
    tx_id: str
    method: str


class FailIn(BaseModel):
    reason: str


@router.get("/pricing")
def pricing(prices: PriceFeed = Depends(get_prices)):
    return pricing_table(prices)


@router.get("/channels")
def list_channels(
    status: Optional[str] = None,
    crypto_type: Optional[str] = None,
    days: Optional[int] = Query(default=None, ge=1),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    out = service.list_channels(db, status=status, crypto_type=crypto_type, days=days, limit=limit, offset=offset)
    return {"ok": True, **out}


@router.post("/channels", status_code=201)
def create_channel(
    body: CreateChannelIn,
    db: Session = Depends(get_db),
    provisioner: AddressProvisioner = Depends(get_provisioner),
    prices: PriceFeed = Depends(get_prices),
):
    channel = service.create_channel(
        db,
        username=body.username,
        crypto_type=body.crypto_type,
        public_keys=body.public_keys,
        memo=body.memo,
        provisioner=provisioner,
        price_feed=prices,
    )
    return {"ok": True, "channel": channel}


@router.get("/channels/{channel_id}")
def get_channel(channel_id: str, db: Session = Depends(get_db)):
    return {"ok": True, "channel": service.channel_to_dict(service.get_channel(db, channel_id))}


@router.delete("/channels/{channel_id}")
def delete_channel(channel_id: str, db: Session = Depends(get_db)):
    return service.cancel(db, channel_id, purge=True)


@router.post("/channels/{channel_id}/cancel")
def cancel_channel(channel_id: str, db: Session = Depends(get_db)):
    return service.cancel(db, channel_id, purge=False)


@router.post("/channels/{channel_id}/deposit")
def submit_deposit(channel_id: str, body: DepositIn, db: Session = Depends(get_db)):
    channel = service.submit_deposit(
        db,
        channel_id,
        tx_hash=body.tx_hash,
        amount=body.amount,
        confirmations=body.confirmations,
        detected_at=body.detected_at,
        final=body.final,
    )
    return {"ok": True, "channel": channel}


@router.post("/channels/{channel_id}/resolve")
def resolve_channel(channel_id: str, db: Session = Depends(get_db)):
    return resolver.resolve(db, channel_id)


@router.post("/channels/{channel_id}/complete")
def complete_channel(channel_id: str, body: CompleteIn, db: Session = Depends(get_db)):
    return {"ok": True, "channel": resolver.complete(db, channel_id, tx_id=body.tx_id, method=body.method)}


@router.post("/channels/{channel_id}/fail")
def fail_channel(channel_id: str, body: FailIn, db: Session = Depends(get_db)):
    return {"ok": True, "channel": service.fail(db, channel_id, body.reason)}


@router.post("/process-pending")
def process_pending(limit: int = Query(default=50, ge=1, le=500), db: Session = Depends(get_db)):
    return resolver.process_pending(db, limit=limit)
