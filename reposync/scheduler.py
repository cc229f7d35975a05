"""
Background scheduler for RepoSync.

Uses APScheduler to run one incremental sync of every enabled project per
day at the configured time and timezone.

Features:
- Daily cron job (SCHEDULE_TIME / SCHEDULE_TIMEZONE)
- Never more than one scheduled run at a time
- Job status tracking
- Graceful shutdown on SIGINT/SIGTERM
"""

from __future__ import annotations

import signal
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger

from .config import Config
from .engine import SyncEngine
from .factory import Components, build_components
from .models import RunResult
from .utils import ConfigError

JOB_ID = "daily-sync"


@dataclass
class JobStatus:
    """Status of the scheduled sync job."""
    last_run: Optional[datetime] = None
    last_results: list[RunResult] = field(default_factory=list)
    next_run: Optional[datetime] = None
    error_count: int = 0
    is_running: bool = False


def parse_schedule_time(value: str) -> tuple[int, int]:
    """Parse "HH:MM" into (hour, minute)."""
    try:
        hour_text, minute_text = value.split(":")
        hour, minute = int(hour_text), int(minute_text)
    except ValueError as e:
        raise ConfigError(f"Invalid schedule time {value!r}, expected HH:MM") from e
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ConfigError(f"Invalid schedule time {value!r}, expected HH:MM")
    return hour, minute


class SyncScheduler:
    """Runs the daily sync of all enabled projects."""

    def __init__(
        self,
        engine: SyncEngine,
        schedule_time: str = "08:00",
        schedule_timezone: str = "UTC",
        components: Optional[Components] = None,
    ):
        """
        Initialize scheduler.

        Args:
            engine: Engine to run.
            schedule_time: Daily run time, "HH:MM".
            schedule_timezone: Timezone name for schedule_time.
            components: Resources to close on stop, when the scheduler owns them.
        """
        self.engine = engine
        self.hour, self.minute = parse_schedule_time(schedule_time)
        self.timezone = schedule_timezone
        self._components = components

        self._scheduler = BackgroundScheduler(
            timezone=schedule_timezone,
            job_defaults={
                "max_instances": 1,  # Only one scheduled sync at a time
                "misfire_grace_time": 3600,
                "coalesce": True,
            },
        )
        self.status = JobStatus()
        self._running = False

        logger.info(f"SyncScheduler initialized (daily at {schedule_time} {schedule_timezone})")

    def start(self) -> None:
        """Start the scheduler."""
        if self._running:
            logger.warning("Scheduler already running")
            return

        logger.info("Starting scheduler")

        self._scheduler.add_job(
            self._run,
            trigger=CronTrigger(hour=self.hour, minute=self.minute, timezone=self.timezone),
            id=JOB_ID,
            name="Daily sync of all enabled projects",
            replace_existing=True,
        )
        self._scheduler.start()
        self._update_next_run()

        self._setup_signal_handlers()
        self._running = True
        logger.info(f"Scheduler started, next run at {self.status.next_run}")

    def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if not self._running:
            return

        logger.info("Stopping scheduler")
        self._running = False
        self._scheduler.shutdown(wait=True)

        if self._components:
            self._components.close()

        logger.info("Scheduler stopped")

    def wait(self) -> None:
        """Block until scheduler is stopped."""
        try:
            while self._running:
                time.sleep(1)
        except KeyboardInterrupt:
            self.stop()

    def get_status(self) -> dict[str, Any]:
        """Get status of the scheduled job."""
        job = self._scheduler.get_job(JOB_ID)
        return {
            "is_scheduled": job is not None,
            "next_run": str(self.status.next_run) if self.status.next_run else None,
            "last_run": str(self.status.last_run) if self.status.last_run else None,
            "last_success": (
                all(r.success for r in self.status.last_results)
                if self.status.last_results else None
            ),
            "error_count": self.status.error_count,
            "is_running": self.status.is_running,
        }

    def trigger_now(self) -> list[RunResult]:
        """Run the sync immediately, outside the schedule."""
        logger.info("Manual sync of all projects triggered")
        return self._run()

    # =========================================================================
    # Internal Methods
    # =========================================================================

    def _run(self) -> list[RunResult]:
        self.status.is_running = True
        try:
            results = self.engine.run_all(incremental=True)
        finally:
            self.status.is_running = False

        self.status.last_run = datetime.now(timezone.utc)
        self.status.last_results = results
        failed = [r for r in results if not r.success]
        if failed:
            self.status.error_count += len(failed)
            logger.error(f"Scheduled sync: {len(failed)} of {len(results)} projects failed")
        else:
            logger.info(f"Scheduled sync completed for {len(results)} projects")

        self._update_next_run()
        return results

    def _update_next_run(self) -> None:
        job = self._scheduler.get_job(JOB_ID)
        if job:
            self.status.next_run = job.next_run_time

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        def handler(signum, frame):
            logger.info(f"Received signal {signum}, shutting down")
            self.stop()

        signal.signal(signal.SIGINT, handler)
        signal.signal(signal.SIGTERM, handler)


def create_scheduler(config_path: Optional[str | Path] = None) -> SyncScheduler:
    """
    Create and configure scheduler.

    Args:
        config_path: Path to reposync.yaml.

    Returns:
        Configured SyncScheduler instance.
    """
    config = Config.load(config_path)

    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"Config error: {error}")
        raise ConfigError(f"Invalid configuration: {errors}")

    components = build_components(config)
    return SyncScheduler(
        engine=components.engine,
        schedule_time=config.scheduler.time,
        schedule_timezone=config.scheduler.timezone,
        components=components,
    )
