"""
Scheduler service for periodic hazard collection.

Uses APScheduler to trigger one interval job per hazard feed. Scheduled
runs and manual triggers for the same domain may overlap; natural-key
deduplication keeps the store consistent, so no per-domain lock is taken.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.core.observations import HazardDomain

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CollectionSchedule:
    """One periodic collection job."""

    job_id: str
    name: str
    domain: HazardDomain
    interval_seconds: int
    params: Dict[str, Any]


def default_schedules(settings) -> List[CollectionSchedule]:
    """Periodic jobs built from settings intervals."""
    return [
        CollectionSchedule(
            "collect_earthquakes_recent", "Recent earthquakes",
            HazardDomain.SEISMIC, settings.earthquake_interval_seconds,
            {"variant": "recent"},
        ),
        CollectionSchedule(
            "collect_earthquakes_significant", "Significant earthquakes",
            HazardDomain.SEISMIC, settings.significant_interval_seconds,
            {"variant": "significant"},
        ),
        CollectionSchedule(
            "collect_tides", "Coastal tide levels",
            HazardDomain.TIDE, settings.tide_interval_seconds, {},
        ),
        CollectionSchedule(
            "collect_rivers", "River gauge levels",
            HazardDomain.RIVER, settings.river_interval_seconds, {},
        ),
        CollectionSchedule(
            "collect_kp_index", "Planetary K-index",
            HazardDomain.SPACE_WEATHER, settings.kp_interval_seconds, {"metric": "kp"},
        ),
        CollectionSchedule(
            "collect_cme", "Coronal mass ejections",
            HazardDomain.SPACE_WEATHER, settings.cme_interval_seconds, {"metric": "cme"},
        ),
    ]


class CollectionScheduler:
    """Owns the AsyncIOScheduler and the periodic collection jobs."""

    def __init__(self, service, settings, scheduler: Optional[AsyncIOScheduler] = None):
        self.service = service
        self.settings = settings
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")

    async def run_scheduled_collection(self, domain: str, params: Dict[str, Any]) -> None:
        """
        Execute a scheduled collection run.

        This function is called by APScheduler when a job triggers.
        """
        summary = await self.service.run(HazardDomain(domain), params, trigger="scheduled")
        logger.debug(f"Scheduled {domain} run {summary.run_id} ended {summary.status.value}")

    def register_schedule(self, schedule: CollectionSchedule) -> bool:
        """
        Register a schedule with the APScheduler.

        Returns:
            True if registered successfully
        """
        try:
            self.scheduler.add_job(
                self.run_scheduled_collection,
                trigger=IntervalTrigger(seconds=schedule.interval_seconds),
                id=schedule.job_id,
                args=[schedule.domain.value, dict(schedule.params)],
                name=schedule.name,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            logger.info(
                f"Registered schedule: {schedule.name} every {schedule.interval_seconds}s"
            )
            return True

        except Exception as e:
            logger.error(f"Failed to register schedule {schedule.name}: {e}")
            return False

    def unregister_schedule(self, job_id: str) -> bool:
        """Remove a schedule from the APScheduler."""
        try:
            if self.scheduler.get_job(job_id):
                self.scheduler.remove_job(job_id)
                logger.info(f"Unregistered schedule {job_id}")
            return True
        except Exception as e:
            logger.error(f"Failed to unregister schedule {job_id}: {e}")
            return False

    def load_default_schedules(self) -> int:
        """Register every default schedule; returns the number registered."""
        count = sum(
            1 for schedule in default_schedules(self.settings)
            if self.register_schedule(schedule)
        )
        logger.info(f"Loaded {count} collection schedules")
        return count

    def start(self) -> None:
        """Start the scheduler if not already running."""
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Scheduler started")

    def stop(self) -> None:
        """Stop the scheduler."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    def get_status(self) -> Dict[str, Any]:
        """Get current scheduler status."""
        jobs = []
        for job in self.scheduler.get_jobs():
            next_run = getattr(job, "next_run_time", None)
            jobs.append({
                "id": job.id,
                "name": job.name,
                "next_run": next_run.isoformat() if next_run else None,
                "trigger": str(job.trigger),
            })

        return {
            "running": self.scheduler.running,
            "job_count": len(jobs),
            "jobs": jobs,
        }
