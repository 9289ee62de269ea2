import logging
from datetime import date
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import Settings, get_settings
from database import session_scope
from recurrence import LedgerEngine

logger = logging.getLogger(__name__)

# (job id, label passed to the run, trigger factory, misfire grace seconds)
LEDGER_JOBS = (
    # Shortly after midnight so a new month's entries exist on its first day.
    ("ledger_daily", "daily_00:05", lambda: CronTrigger(hour=0, minute=5), 3600),
    (
        "ledger_hourly_safety",
        "hourly_safety_net",
        lambda: IntervalTrigger(hours=1),
        300,
    ),
)


class SchedulerManager:
    """Runs the entry generator for every owner on a fixed cadence.

    Generation is idempotent, so overlapping or repeated runs only fill
    months that are still missing.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)

    def run_catch_up(self, label: str = "manual", today: Optional[date] = None) -> int:
        with session_scope() as session:
            created = LedgerEngine(session).catch_up_all(today)
        logger.info(f"ledger_catch_up: run={label} entries_created={created}")
        return created

    def register_jobs(self) -> list[str]:
        for job_id, label, make_trigger, grace in LEDGER_JOBS:
            self.scheduler.add_job(
                self.run_catch_up,
                make_trigger(),
                args=[label],
                id=job_id,
                replace_existing=True,
                misfire_grace_time=grace,
            )
        return [job.id for job in self.scheduler.get_jobs()]

    def start(self) -> None:
        self.run_catch_up("startup")
        job_ids = self.register_jobs()
        self.scheduler.start()
        logger.info(f"scheduler_started: jobs={','.join(job_ids)}")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("scheduler_stopped")
