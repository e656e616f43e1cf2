"""
Recurring Jobs

Each job is a plain synchronous callable taking the current time. The
JobScheduler runs them from asyncio background loops, one per job kind, and
guards every run with the kind's lease so overlapping runs never happen.
"""

import asyncio
import logging
from datetime import datetime, time, timedelta
from typing import Any, Optional
from zoneinfo import ZoneInfo

from .coordinator import JobCoordinator, JobKind
from .exceptions import DataUnavailableError
from .models import PriceSeries, utcnow
from .prices import DEFAULT_TIMEZONE

logger = logging.getLogger(__name__)

DEFAULT_INTERVALS = {
    JobKind.PRICE_REFRESH: 15 * 60,
    JobKind.SCHEDULE_COMPUTE: 15 * 60,
    JobKind.TOKEN_REFRESH: 5 * 60,
    JobKind.DAILY_BATCH: 5 * 60,
}


class PriceRefreshJob:
    """Force-refreshes prices for every zone in use."""

    def __init__(self, price_feed, settings_repository, default_zone: str):
        self.price_feed = price_feed
        self.settings_repository = settings_repository
        self.default_zone = default_zone

    def run(self, now: datetime) -> dict[str, Any]:
        refreshed, failed = [], []
        for zone in self.settings_repository.zones(self.default_zone):
            try:
                self.price_feed.refresh(zone, now)
                refreshed.append(zone)
            except DataUnavailableError as e:
                logger.warning(f"Price refresh failed for {zone}: {e}")
                failed.append(zone)
        return {"refreshed": refreshed, "failed": failed}


class ScheduleComputeJob:
    """Runs the schedule cycle for every auto-apply user, one at a time."""

    def __init__(self, service, price_feed, settings_repository):
        self.service = service
        self.price_feed = price_feed
        self.settings_repository = settings_repository

    def run(self, now: datetime) -> dict[str, Any]:
        user_ids = self.settings_repository.list_auto_apply_user_ids()
        if not user_ids:
            logger.debug("No auto-apply users, nothing to compute")
            return {"processed": 0, "skipped": 0, "errors": 0}

        series_by_zone: dict[str, PriceSeries] = {}
        for user_id in user_ids:
            zone = self.service.resolve_zone(self.settings_repository.get_user_schedule_settings(user_id).zone)
            if zone in series_by_zone:
                continue
            try:
                series_by_zone[zone] = self.price_feed.horizon(zone, now)
            except DataUnavailableError as e:
                logger.warning(f"No prices for {zone}, users there get the fallback decision: {e}")
                # Empty series makes the service fall back to the last decision
                series_by_zone[zone] = PriceSeries(zone=zone, points=())

        processed = skipped = errors = 0
        for user_id in user_ids:
            zone = self.service.resolve_zone(self.settings_repository.get_user_schedule_settings(user_id).zone)
            try:
                result = self.service.run_cycle(user_id, now, prices=series_by_zone.get(zone))
            except Exception as e:
                logger.error(f"Schedule cycle failed for user={user_id}: {e}", exc_info=True)
                errors += 1
                continue
            if result.decision is None:
                skipped += 1
            else:
                processed += 1

        logger.info(f"Schedule compute finished: processed={processed}, skipped={skipped}, errors={errors}")
        return {"processed": processed, "skipped": skipped, "errors": errors}


class TokenRefreshJob:
    """Keeps device gateway tokens fresh for every known user."""

    def __init__(self, token_refresher, settings_repository):
        self.token_refresher = token_refresher
        self.settings_repository = settings_repository

    def run(self, now: datetime) -> dict[str, Any]:
        refreshed = errors = 0
        for user_id in self.settings_repository.list_user_ids():
            try:
                if self.token_refresher.refresh(user_id):
                    refreshed += 1
            except Exception as e:
                logger.error(f"Token refresh failed for user={user_id}: {e}")
                errors += 1
        return {"refreshed": refreshed, "errors": errors}


class DailyBatchJob:
    """Once-a-day batch after tomorrow's prices are published.

    Refreshes all zones, stores a default-settings decision per zone as the
    fallback and prunes old history.
    """

    def __init__(
        self,
        service,
        price_feed,
        settings_repository,
        history_repository,
        default_zone: str,
        timezone: str = DEFAULT_TIMEZONE,
        window_start: time = time(14, 0),
        window_minutes: int = 10,
        history_retention_days: int = 30,
    ):
        self.service = service
        self.price_feed = price_feed
        self.settings_repository = settings_repository
        self.history_repository = history_repository
        self.default_zone = default_zone
        self.tz = ZoneInfo(timezone)
        self.window_start = window_start
        self.window_minutes = window_minutes
        self.history_retention_days = history_retention_days
        self.last_run_date = None

    def in_window(self, now: datetime) -> bool:
        local = now.astimezone(self.tz)
        start = datetime.combine(local.date(), self.window_start, tzinfo=self.tz)
        return start <= local < start + timedelta(minutes=self.window_minutes)

    def run(self, now: datetime, force: bool = False) -> dict[str, Any]:
        local_date = now.astimezone(self.tz).date()
        if not force and (not self.in_window(now) or self.last_run_date == local_date):
            return {"skipped": True}

        defaults = self.settings_repository.defaults
        zones = self.settings_repository.zones(self.default_zone)
        decided = []
        for zone in zones:
            try:
                series = self.price_feed.refresh(zone, now)
                decision = self.service.generate_decision(zone, defaults, now, prices=series)
            except DataUnavailableError as e:
                logger.warning(f"Daily batch could not compute {zone}: {e}")
                continue
            self.service.record_decision(zone, decision)
            decided.append(zone)

        pruned = self.history_repository.prune_older_than(now - timedelta(days=self.history_retention_days))
        self.last_run_date = local_date
        logger.info(f"Daily batch finished: zones={decided}, pruned={pruned}")
        return {"skipped": False, "zones": decided, "pruned": pruned}


class JobScheduler:
    """Background runner with one loop per job kind."""

    def __init__(
        self,
        coordinator: JobCoordinator,
        jobs: dict,
        intervals: Optional[dict] = None,
        clock=utcnow,
    ):
        """Initialize scheduler.

        Args:
            coordinator: Grants the lease for each tick
            jobs: Job per JobKind (anything with run(now))
            intervals: Seconds between ticks per JobKind
            clock: Returns the current aware time
        """
        self.coordinator = coordinator
        self.jobs = {JobKind(kind): job for kind, job in jobs.items()}
        self.intervals = dict(DEFAULT_INTERVALS)
        self.intervals.update({JobKind(k): v for k, v in (intervals or {}).items()})
        self.clock = clock
        self._tasks: list[asyncio.Task] = []
        self._running = False

    async def start(self):
        """Start one background loop per job."""
        if self._running:
            logger.warning("Job scheduler already running")
            return

        self._running = True
        for kind in self.jobs:
            self._tasks.append(asyncio.create_task(self._run_loop(kind)))
        logger.info(f"Job scheduler started: {', '.join(k.value for k in self.jobs)}")

    async def stop(self):
        """Cancel the loops. Leases held by running ticks are released."""
        if not self._running:
            return

        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Job scheduler stopped")

    async def run_once(self, kind: JobKind, **kwargs) -> Optional[dict]:
        """Run a single leased tick of a job.

        Returns:
            The job's summary, or None when the lease is busy
        """
        kind = JobKind(kind)
        lease = self.coordinator.try_acquire(kind)
        if lease is None:
            return None
        try:
            return await asyncio.to_thread(self.jobs[kind].run, self.clock(), **kwargs)
        finally:
            self.coordinator.release(lease)

    async def _run_loop(self, kind: JobKind):
        logger.info(f"Job loop {kind.value} starting (every {self.intervals[kind]}s)")

        while self._running:
            try:
                await self.run_once(kind)
            except Exception as e:
                logger.error(f"Error in {kind.value} job: {e}", exc_info=True)

            await asyncio.sleep(self.intervals[kind])
