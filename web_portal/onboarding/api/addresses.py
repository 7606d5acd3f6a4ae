from __future__ import annotations

from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from onboarding.addresses import pool
from onboarding.core.admin_auth import require_admin
from onboarding.db import get_db

router = APIRouter(prefix="/api/onboarding/admin", tags=["addresses"], dependencies=[Depends(require_admin)])


class BalanceIn(BaseModel):
    balance: Decimal = Field(ge=0)


@router.get("/address-stats")
def address_stats(db: Session = Depends(get_db)):
    return {"ok": True, "stats": pool.address_stats(db)}


@router.get("/crypto-addresses")
def crypto_addresses(
    crypto_type: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return {"ok": True, **pool.list_addresses(db, crypto_type=crypto_type, limit=limit, offset=offset)}


@router.post("/crypto-addresses/{address}/reusable")
def mark_reusable(address: str, db: Session = Depends(get_db)):
    return {"ok": True, "address": pool.address_to_dict(pool.mark_reusable(db, address))}


@router.post("/crypto-addresses/{address}/balance")
def observe_balance(address: str, body: BalanceIn, db: Session = Depends(get_db)):
    return {"ok": True, "address": pool.address_to_dict(pool.observe_balance(db, address, body.balance))}
