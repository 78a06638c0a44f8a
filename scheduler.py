import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import get_settings
from jobs import JobRunner


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, runner: Optional[JobRunner] = None) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        self._runner = runner

    @property
    def runner(self) -> JobRunner:
        if self._runner is None:
            self._runner = JobRunner()
        return self._runner

    def _run_recurring(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: job=recurring source={source}")
        outcome = self.runner.trigger_recurring_transactions()
        logger.info(f"scheduler_run: job=recurring source={source} outcome={outcome}")

    def _run_reports(self) -> None:
        logger.info("scheduler_run: job=reports")
        outcome = self.runner.generate_monthly_reports()
        logger.info(f"scheduler_run: job=reports outcome={outcome}")

    def _run_budgets(self) -> None:
        logger.info("scheduler_run: job=budgets")
        outcome = self.runner.check_budget_alerts()
        logger.info(f"scheduler_run: job=budgets outcome={outcome}")

    def register_jobs(self) -> None:
        self.scheduler.add_job(
            self._run_recurring,
            CronTrigger(hour=0, minute=0),
            args=["daily_00:00"],
            id="recurring_daily",
            replace_existing=True,
            misfire_grace_time=3600,
            max_instances=1,
        )
        self.scheduler.add_job(
            self._run_reports,
            CronTrigger(day=1, hour=0, minute=0),
            id="monthly_reports",
            replace_existing=True,
            misfire_grace_time=6 * 3600,
            max_instances=1,
        )
        self.scheduler.add_job(
            self._run_budgets,
            CronTrigger(day=1, hour=0, minute=0),
            id="budget_alerts",
            replace_existing=True,
            misfire_grace_time=6 * 3600,
            max_instances=1,
        )

    def start(self) -> None:
        self.register_jobs()
        # no trigger: runs once as soon as the scheduler starts
        self.scheduler.add_job(
            self._run_recurring,
            args=["startup"],
            id="recurring_startup",
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info("Scheduler started with daily recurring, monthly reports and budget alerts")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
