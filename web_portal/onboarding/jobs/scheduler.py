"""Periodic engine jobs: channel expiry, plan expiry, monitor polling, resource snapshots."""

from __future__ import annotations

import logging
from typing import Callable, Optional

from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from onboarding.channels.service import expire_sweep
from onboarding.clients import DepositFeed, HttpDepositFeed
from onboarding.consolidation.service import expire_plans
from onboarding.core.errors import EngineError
from onboarding.core.settings import settings
from onboarding.db import session_scope
from onboarding.monitor.ingest import poll_once
from onboarding.resources.ledger import record_snapshot

logger = logging.getLogger(__name__)


class EngineScheduler:
    """Runs each job in its own session; a failing run is logged and retried next interval."""

    def __init__(
        self,
        session_factory: Callable = session_scope,
        feed: Optional[DepositFeed] = None,
    ) -> None:
        self.session_factory = session_factory
        self.feed = feed
        if self.feed is None and settings.MONITOR_FEED_URL:
            self.feed = HttpDepositFeed()
        self.scheduler = BackgroundScheduler(
            jobstores={"default": MemoryJobStore()},
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 60},
            timezone="UTC",
        )

    def _run(self, name: str, fn: Callable[[Session], object]) -> None:
        try:
            with self.session_factory() as db:
                fn(db)
        except EngineError as e:
            logger.warning("Job %s failed: %s (%s)", name, e.message, e.code)
        except Exception:
            logger.exception("Job %s crashed", name)

    def expire_channels(self) -> None:
        self._run("expire_channels", expire_sweep)

    def expire_plans(self) -> None:
        self._run("expire_plans", expire_plans)

    def poll_monitor(self) -> None:
        if self.feed is None:
            return
        self._run("poll_monitor", lambda db: poll_once(db, self.feed, timeout=settings.HTTP_TIMEOUT_SECONDS))

    def snapshot_resources(self) -> None:
        self._run("snapshot_resources", record_snapshot)

    def setup_jobs(self) -> None:
        jobs = [
            ("expire_channels", self.expire_channels, settings.EXPIRY_SWEEP_SECONDS),
            ("expire_plans", self.expire_plans, settings.EXPIRY_SWEEP_SECONDS),
            ("snapshot_resources", self.snapshot_resources, settings.RESOURCE_SNAPSHOT_SECONDS),
        ]
        if self.feed is not None:
            jobs.append(("poll_monitor", self.poll_monitor, settings.MONITOR_POLL_SECONDS))
        for job_id, fn, seconds in jobs:
            self.scheduler.add_job(
                fn,
                trigger=IntervalTrigger(seconds=seconds),
                id=job_id,
                name=job_id.replace("_", " ").title(),
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            logger.info("Scheduled %s every %ss", job_id, seconds)

    def start(self) -> None:
        self.setup_jobs()
        self.scheduler.start()
        logger.info("Engine scheduler started")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Engine scheduler stopped")
