from __future__ import annotations

from typing import Any, Union

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.orm import Session

from onboarding.core.admin_auth import require_admin
from onboarding.core.errors import EngineError
from onboarding.db import get_db
from onboarding.monitor.ingest import DepositEvent, ingest, monitor_status

router = APIRouter(prefix="/api/onboarding/admin", tags=["monitor"], dependencies=[Depends(require_admin)])


@router.get("/blockchain-monitor-status")
def blockchain_monitor_status(limit: int = Query(default=20, ge=1, le=200), db: Session = Depends(get_db)):
    return monitor_status(db, limit=limit)


@router.post("/monitor/events")
def push_events(
    payload: Union[dict[str, Any], list[dict[str, Any]]] = Body(...),
    db: Session = Depends(get_db),
):
    """Push ingestion. A single event propagates its error; a batch reports per event."""
    if isinstance(payload, dict):
        return {"ok": True, "result": ingest(db, DepositEvent.from_dict(payload))}

    results = []
    for raw in payload:
        try:
            results.append({"ok": True, "result": ingest(db, DepositEvent.from_dict(raw))})
        except EngineError as e:
            results.append(e.to_dict())
    return {"ok": all(r["ok"] for r in results), "results": results}
