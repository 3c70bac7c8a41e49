import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from recurrence import RecurringEngine


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        self.settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)

    def run_job(self, source: str = "manual") -> int:
        logger.info(f"scheduler_run: source={source}")
        with session_scope() as session:
            summaries = RecurringEngine(session).generate_all_due()
        posted = sum(summary.successful for summary in summaries.values())
        failed = sum(summary.failed for summary in summaries.values())
        logger.info(
            f"scheduler_run: source={source} users={len(summaries)} "
            f"occurrences_posted={posted} failed={failed}"
        )
        return posted

    def start(self) -> None:
        self.run_job("startup")

        daily = f"{self.settings.daily_run_hour:02d}:{self.settings.daily_run_minute:02d}"
        trigger = CronTrigger(
            hour=self.settings.daily_run_hour, minute=self.settings.daily_run_minute
        )
        self.scheduler.add_job(
            self.run_job,
            trigger,
            args=[f"daily_{daily}"],
            id="recurring_daily",
            replace_existing=True,
            misfire_grace_time=3600,
            max_instances=1,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self.run_job,
            trigger,
            args=["hourly_safety_net"],
            id="recurring_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
            max_instances=1,
        )

        self.scheduler.start()
        logger.info(f"Scheduler started with daily {daily} and hourly safety net")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
