"""
Scheduler for periodic confidence decay and expired-record cleanup.

This module provides a background scheduler that periodically rescores
acceptance records as their verifications age and removes records whose TTL
has passed.
"""

import asyncio
import logging
from datetime import datetime, UTC
from typing import Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from acceptance_api.cache import get_read_cache
from acceptance_api.config import get_settings
from acceptance_api.database import SessionLocal
from acceptance_api.decay_service import DecayService
from acceptance_api.verification_service import VerificationLedger


logger = logging.getLogger(__name__)

settings = get_settings()

DECAY_JOB_ID = "confidence_decay"
CLEANUP_JOB_ID = "expired_cleanup"


class MaintenanceScheduler:
    """
    Scheduler for the ledger's periodic maintenance runs.

    Runs confidence decay and expired-record cleanup at configured intervals.
    A run still in progress causes the next tick of the same job to be skipped.
    """

    def __init__(
        self,
        decay_interval_minutes: Optional[int] = None,
        cleanup_interval_minutes: Optional[int] = None,
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        """
        Initialize the scheduler.

        Args:
            decay_interval_minutes: Decay interval (default from settings)
            cleanup_interval_minutes: Cleanup interval (default from settings)
            session_factory: Produces database sessions for each run
        """
        self.decay_interval_minutes = decay_interval_minutes or settings.decay_interval_minutes
        self.cleanup_interval_minutes = cleanup_interval_minutes or settings.cleanup_interval_minutes
        self.session_factory = session_factory
        self.scheduler = AsyncIOScheduler()
        self._running_jobs = set()
        self._last_run = {}
        self._last_result = {}

    async def run_decay(self):
        """Run one confidence decay pass. Called by the scheduler at each interval."""
        await self._run_guarded(DECAY_JOB_ID, self._decay)

    async def run_cleanup(self):
        """Run one expired-record cleanup pass."""
        await self._run_guarded(CLEANUP_JOB_ID, self._cleanup)

    async def _run_guarded(self, job_id: str, job: Callable[[], dict]):
        if job_id in self._running_jobs:
            logger.warning(f"{job_id} already in progress, skipping this iteration")
            return

        self._running_jobs.add(job_id)
        start_time = datetime.now(UTC)
        try:
            logger.info(f"Starting scheduled {job_id} at {start_time.isoformat()}")
            result = await asyncio.to_thread(job)
            self._last_run[job_id] = datetime.now(UTC)
            self._last_result[job_id] = result
        except Exception as e:
            logger.exception(f"Error in scheduled {job_id}: {e}")
            self._last_result[job_id] = {"success": False, "error": str(e)}
        finally:
            self._running_jobs.discard(job_id)

    def _decay(self) -> dict:
        with self.session_factory() as db:
            return DecayService(db).recalculate_all_scores(trigger="scheduled")

    def _cleanup(self) -> dict:
        with self.session_factory() as db:
            result = VerificationLedger(db).cleanup_expired(batch_size=settings.cleanup_batch_size)
        result["cache_entries_swept"] = get_read_cache().sweep()
        return result

    def start(self):
        """Start the scheduler."""
        if self.scheduler.running:
            logger.warning("Scheduler already running")
            return

        self.scheduler.add_job(
            self.run_decay,
            trigger=IntervalTrigger(minutes=self.decay_interval_minutes),
            id=DECAY_JOB_ID,
            name="Confidence Decay",
            replace_existing=True,
            max_instances=1,  # Prevent overlapping runs
        )
        self.scheduler.add_job(
            self.run_cleanup,
            trigger=IntervalTrigger(minutes=self.cleanup_interval_minutes),
            id=CLEANUP_JOB_ID,
            name="Expired Record Cleanup",
            replace_existing=True,
            max_instances=1,
        )

        self.scheduler.start()
        logger.info(
            f"Maintenance scheduler started - decay every {self.decay_interval_minutes} minutes, "
            f"cleanup every {self.cleanup_interval_minutes} minutes"
        )

    def stop(self):
        """Stop the scheduler."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Maintenance scheduler stopped")

    def get_status(self) -> dict:
        """Get scheduler status."""
        return {
            "running": self.scheduler.running,
            "decay_interval_minutes": self.decay_interval_minutes,
            "cleanup_interval_minutes": self.cleanup_interval_minutes,
            "jobs": {
                job_id: {
                    "last_run": self._last_run[job_id].isoformat() if job_id in self._last_run else None,
                    "last_result": self._last_result.get(job_id),
                    "in_progress": job_id in self._running_jobs,
                    "next_run": self._get_next_run_time(job_id),
                }
                for job_id in (DECAY_JOB_ID, CLEANUP_JOB_ID)
            },
        }

    def _get_next_run_time(self, job_id: str) -> Optional[str]:
        """Get the next scheduled run time of a job."""
        if not self.scheduler.running:
            return None

        job = self.scheduler.get_job(job_id)
        if job and job.next_run_time:
            return job.next_run_time.isoformat()
        return None


# Global scheduler instance
_scheduler: Optional[MaintenanceScheduler] = None


def get_scheduler() -> MaintenanceScheduler:
    """Get or create the global scheduler instance."""
    global _scheduler
    if _scheduler is None:
        _scheduler = MaintenanceScheduler()
    return _scheduler


def start_scheduler():
    """Start the global scheduler."""
    scheduler = get_scheduler()
    scheduler.start()


def stop_scheduler():
    """Stop the global scheduler."""
    global _scheduler
    if _scheduler is not None:
        _scheduler.stop()
        _scheduler = None


# CLI entry point for running maintenance standalone
if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Provider Acceptance Maintenance Scheduler")
    parser.add_argument(
        "--decay-interval",
        type=int,
        default=None,
        help="Decay interval in minutes (default from settings)"
    )
    parser.add_argument(
        "--cleanup-interval",
        type=int,
        default=None,
        help="Cleanup interval in minutes (default from settings)"
    )
    parser.add_argument(
        "--run-once",
        choices=["decay", "cleanup"],
        default=None,
        help="Run one job once and exit"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="With --run-once, report what would change without writing"
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="With --run-once decay, stop after this many records"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    if args.run_once == "decay":
        with SessionLocal() as db:
            result = DecayService(db).recalculate_all_scores(
                dry_run=args.dry_run,
                limit=args.limit,
                on_progress=lambda processed, updated: logger.info(
                    f"Progress: {processed} processed, {updated} updated"
                ),
                trigger="cli",
            )
            print(f"Decay complete: {result}")
    elif args.run_once == "cleanup":
        with SessionLocal() as db:
            result = VerificationLedger(db).cleanup_expired(
                dry_run=args.dry_run,
                batch_size=settings.cleanup_batch_size,
            )
            print(f"Cleanup complete: {result}")
    else:
        scheduler = MaintenanceScheduler(
            decay_interval_minutes=args.decay_interval,
            cleanup_interval_minutes=args.cleanup_interval,
        )
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        scheduler.scheduler.configure(event_loop=loop)
        scheduler.start()

        try:
            loop.run_forever()
        except KeyboardInterrupt:
            scheduler.stop()
            print("\nScheduler stopped")
