"""
Scheduler for periodic community-note scoring.

Deployments that cannot point an external cron at the trigger endpoint can
run this instead, either inside the API process (CN_RUN_SCHEDULER=true) or
standalone:

    python -m notes_consensus.scheduler --interval 30
    python -m notes_consensus.scheduler --run-once
"""

import asyncio
import logging
from datetime import datetime, UTC
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from notes_consensus.config import get_settings
from notes_consensus.database import SessionLocal
from notes_consensus.exceptions import ScoringRunError
from notes_consensus.labels import OzoneLabelPublisher
from notes_consensus.models import RunSummary
from notes_consensus.scoring_service import ScoringService


logger = logging.getLogger(__name__)

settings = get_settings()


def run_scoring_once() -> RunSummary:
    """Run one scoring pass with a fresh session and label publisher."""
    with SessionLocal() as db:
        publisher = OzoneLabelPublisher(db, settings)
        try:
            return ScoringService(db, publisher, settings).run_scoring()
        finally:
            publisher.close()


class ScoringScheduler:
    """
    Scheduler for periodic scoring runs.

    Overlap is prevented only within this process; a run started by the HTTP
    trigger at the same moment is not locked out.
    """

    def __init__(self, interval_minutes: Optional[int] = None):
        self.interval_minutes = interval_minutes or settings.scoring_interval_minutes
        self.scheduler = AsyncIOScheduler()
        self._is_running = False
        self._last_run: Optional[datetime] = None
        self._last_result: Optional[dict] = None

    async def run_scoring(self):
        """Run a scoring iteration. Called by the scheduler at each interval."""
        if self._is_running:
            logger.warning("Scoring already in progress, skipping this iteration")
            return

        self._is_running = True
        start_time = datetime.now(UTC)

        try:
            logger.info(f"Starting scheduled scoring run at {start_time.isoformat()}")
            # Runs block on label calls and delays; keep them off the event loop
            summary = await asyncio.to_thread(run_scoring_once)

            self._last_run = datetime.now(UTC)
            self._last_result = summary.model_dump(mode="json")

            logger.info(
                f"Scheduled scoring complete: "
                f"{summary.scored} notes, "
                f"{summary.labels.published + summary.labels.negated} label changes in "
                f"{summary.duration_ms}ms"
            )

        except ScoringRunError as e:
            logger.error(f"Scheduled scoring failed: {e}")
            self._last_result = {"success": False, "error": str(e), "phase": e.phase}
        except Exception as e:
            logger.exception(f"Error in scheduled scoring: {e}")
            self._last_result = {"success": False, "error": str(e)}
        finally:
            self._is_running = False

    def start(self):
        """Start the scheduler."""
        if self.scheduler.running:
            logger.warning("Scheduler already running")
            return

        self.scheduler.add_job(
            self.run_scoring,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id="community_notes_scoring",
            name="Community Notes Scoring",
            replace_existing=True,
            max_instances=1,
        )

        self.scheduler.start()
        logger.info(
            f"Scoring scheduler started - running every {self.interval_minutes} minutes"
        )

    def stop(self):
        """Stop the scheduler."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scoring scheduler stopped")

    def get_status(self) -> dict:
        """Get scheduler status."""
        return {
            "running": self.scheduler.running,
            "interval_minutes": self.interval_minutes,
            "last_run": self._last_run.isoformat() if self._last_run else None,
            "last_result": self._last_result,
            "is_scoring": self._is_running,
            "next_run": self._get_next_run_time(),
        }

    def _get_next_run_time(self) -> Optional[str]:
        if not self.scheduler.running:
            return None

        job = self.scheduler.get_job("community_notes_scoring")
        if job and job.next_run_time:
            return job.next_run_time.isoformat()
        return None


# Global scheduler instance
_scheduler: Optional[ScoringScheduler] = None


def get_scheduler() -> ScoringScheduler:
    """Get or create the global scheduler instance."""
    global _scheduler
    if _scheduler is None:
        _scheduler = ScoringScheduler()
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


async def _run_forever(interval_minutes: Optional[int]):
    scheduler = ScoringScheduler(interval_minutes=interval_minutes)
    scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.stop()


if __name__ == "__main__":
    import argparse

    from notes_consensus.database import init_db

    parser = argparse.ArgumentParser(description="Community Notes Scoring Scheduler")
    parser.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Scoring interval in minutes (default from settings)"
    )
    parser.add_argument(
        "--run-once",
        action="store_true",
        help="Run scoring once and exit"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    init_db()

    if args.run_once:
        summary = run_scoring_once()
        print(f"Scoring complete: {summary.model_dump_json()}")
    else:
        try:
            asyncio.run(_run_forever(args.interval))
        except KeyboardInterrupt:
            print("\nScheduler stopped")
