import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from recurrence import GenerationResult, RecurringGenerator
from services import TransactionLedger


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.hour = settings.recurring_hour
        self.minute = settings.recurring_minute
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> Optional[GenerationResult]:
        logger.info(f"scheduler_run: source={source}")
        with session_scope() as session:
            generator = RecurringGenerator(session, TransactionLedger(session))
            result = generator.run_pass()
        logger.info(
            f"scheduler_run: source={source} generated={result.generated} "
            f"skipped={result.skipped} errored={result.errored}"
        )
        return result

    def start(self) -> None:
        self._run_job("startup")

        label = f"{self.hour:02d}:{self.minute:02d}"
        self.scheduler.add_job(
            self._run_job,
            CronTrigger(hour=self.hour, minute=self.minute),
            args=[f"daily_{label}"],
            id="recurring_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self._run_job,
            IntervalTrigger(hours=1),
            args=["hourly_safety_net"],
            id="recurring_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(f"Scheduler started with daily {label} and hourly safety net")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
