from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy import text

from onboarding.api.addresses import router as addresses_router
from onboarding.api.channels import router as channels_router
from onboarding.api.consolidation import router as consolidation_router
from onboarding.api.monitor import router as monitor_router
from onboarding.api.resources import router as resources_router
from onboarding.core.errors import EngineError
from onboarding.core.settings import settings
from onboarding.db import get_engine

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, (settings.LOG_LEVEL or "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    scheduler = None
    if settings.SCHEDULER_ENABLED:
        from onboarding.jobs.scheduler import EngineScheduler

        scheduler = EngineScheduler()
        scheduler.start()
    logger.info("Onboarding engine up (build=%s)", settings.APP_BUILD_STAMP or "dev")
    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.stop()


app = FastAPI(title="Onboarding engine", lifespan=lifespan)

app.include_router(channels_router)
app.include_router(addresses_router)
app.include_router(consolidation_router)
app.include_router(resources_router)
app.include_router(monitor_router)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    if exc.http_code >= 500:
        logger.warning("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.http_code, content=exc.to_dict())


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    resp = await call_next(request)
    resp.headers.setdefault("X-Content-Type-Options", "nosniff")
    resp.headers.setdefault("Referrer-Policy", "no-referrer")
    if request.url.path.startswith("/api/onboarding/admin"):
        resp.headers["Cache-Control"] = "no-store"
    return resp


# --- ops endpoints (health/ready) ---

@app.get("/health")
def health():
    return {"ok": True}


@app.get("/ready")
def ready():
    out = {"ok": True, "db": False}
    try:
        with get_engine().connect() as c:
            c.execute(text("SELECT 1"))
        out["db"] = True
    except Exception as e:
        out["ok"] = False
        out["db_error"] = str(e)

    if not out["ok"]:
        return Response(content=json.dumps(out), status_code=503, media_type="application/json")
    return out
