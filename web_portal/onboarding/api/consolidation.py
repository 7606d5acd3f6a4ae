from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from onboarding.clients import Sweeper
from onboarding.consolidation import service
from onboarding.core.admin_auth import require_admin
from onboarding.db import get_db
from onboarding.deps import get_sweeper

router = APIRouter(prefix="/api/onboarding/admin", tags=["consolidation"], dependencies=[Depends(require_admin)])


class PrepareIn(BaseModel):
    crypto_type: str
    destination_address: str
    priority: str = "medium"


class ExecuteIn(BaseModel):
    timeout_seconds: Optional[float] = Field(default=None, gt=0, le=300)


@router.get("/consolidation-info/{crypto_type}")
def consolidation_info(crypto_type: str, db: Session = Depends(get_db)):
    return service.get_info(db, crypto_type)


@router.post("/consolidation/prepare", status_code=201)
def prepare(body: PrepareIn, db: Session = Depends(get_db)):
    plan = service.prepare(
        db, crypto_type=body.crypto_type, destination=body.destination_address, priority=body.priority
    )
    return {"ok": True, "plan": plan}


@router.post("/consolidation/{tx_id}/execute")
def execute(
    tx_id: str,
    body: Optional[ExecuteIn] = None,
    db: Session = Depends(get_db),
    sweeper: Sweeper = Depends(get_sweeper),
):
    timeout = body.timeout_seconds if body else None
    return {"ok": True, "result": service.execute(db, tx_id, sweeper=sweeper, timeout=timeout)}


@router.get("/consolidation/{tx_id}")
def get_plan(tx_id: str, db: Session = Depends(get_db)):
    return {"ok": True, "plan": service.get_plan(db, tx_id)}
