from __future__ import annotations

from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from onboarding.core.admin_auth import require_admin
from onboarding.db import get_db
from onboarding.resources import ledger

router = APIRouter(prefix="/api/onboarding/admin", tags=["resources"], dependencies=[Depends(require_admin)])


class SyncIn(BaseModel):
    act_balance: Optional[int] = Field(default=None, ge=0)
    rc_current: Optional[int] = Field(default=None, ge=0)
    rc_max: Optional[int] = Field(default=None, ge=0)
    hive_balance: Optional[Decimal] = Field(default=None, ge=0)


class RcCostIn(BaseModel):
    rc_needed: int = Field(ge=0)


@router.get("/act-status")
def act_status(db: Session = Depends(get_db)):
    return ledger.status(db)


@router.get("/rc-costs")
def rc_costs(db: Session = Depends(get_db)):
    return {"ok": True, "costs": ledger.rc_costs(db)}


@router.put("/rc-costs/{operation}")
def set_rc_cost(operation: str, body: RcCostIn, db: Session = Depends(get_db)):
    return {"ok": True, "costs": ledger.set_rc_cost(db, operation, body.rc_needed)}


@router.get("/resources/history")
def resources_history(hours: int = Query(default=24, ge=1, le=24 * 30), db: Session = Depends(get_db)):
    return {"ok": True, **ledger.history(db, hours=hours)}


@router.post("/resources/sync")
def resources_sync(body: SyncIn, db: Session = Depends(get_db)):
    return ledger.sync_resources(
        db,
        act_balance=body.act_balance,
        rc_current=body.rc_current,
        rc_max=body.rc_max,
        hive_balance=body.hive_balance,
    )


@router.post("/claim-act")
def claim_act(db: Session = Depends(get_db)):
    return ledger.claim_act(db)
