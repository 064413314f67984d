import logging
from typing import Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from config import get_settings
from database import session_scope
from services import (
    post_recurring_for_all_users,
    send_reminders_for_all_users,
    settle_pending_for_all_users,
)

logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run(self, job: str, func: Callable[[Session], int], source: str) -> int:
        logger.info(f"scheduler_run: job={job} source={source}")
        try:
            with session_scope() as session:
                count = func(session)
        except Exception:
            logger.exception(f"scheduler_run_failed: job={job} source={source}")
            return 0
        logger.info(f"scheduler_run: job={job} source={source} count={count}")
        return count

    def run_maintenance(self, source: str = "manual") -> None:
        # recurring postings land before the elapsed period is settled
        self._run("recurring", post_recurring_for_all_users, source)
        self._run("settlements", settle_pending_for_all_users, source)

    def run_reminders(self, source: str = "manual") -> None:
        self._run("reminders", send_reminders_for_all_users, source)

    def start(self) -> None:
        self.run_maintenance("startup")
        self.run_reminders("startup")

        self.scheduler.add_job(
            self.run_maintenance,
            CronTrigger(hour=3, minute=15),
            args=["daily_03:15"],
            id="maintenance_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self.run_maintenance,
            IntervalTrigger(hours=1),
            args=["hourly_safety_net"],
            id="maintenance_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )
        self.scheduler.add_job(
            self.run_reminders,
            CronTrigger(hour=8, minute=0),
            args=["daily_08:00"],
            id="reminders_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info(
            "Scheduler started: maintenance daily 03:15 and hourly, reminders daily 08:00"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
