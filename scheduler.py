import logging
from datetime import date
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from config import get_settings
from database import session_scope
from errors import TransientStoreError
from recurrence import local_today
from services import InstallmentService, TransactionService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DAILY_JOB_ID = "installments_daily"
SAFETY_JOB_ID = "installments_hourly_safety"


def run_installment_cycle(
    session: Session, today: Optional[date] = None, horizon: Optional[date] = None
) -> dict[str, int]:
    """Flag late installments, then materialize every company's series up to the horizon."""
    today = today or local_today()
    overdue = TransactionService(session).mark_overdue(today, all_companies=True)
    report = InstallmentService(session).generate_installments(
        horizon, today=today, all_companies=True
    )
    return {
        "overdue": overdue,
        "rules": report.rules_processed,
        "created": report.occurrences_created,
        "failed": len(report.errors),
    }


class SchedulerManager:
    def __init__(self) -> None:
        self.settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"installment_cycle_start: source={source}")
        try:
            with session_scope() as session:
                summary = run_installment_cycle(session)
        except TransientStoreError as exc:
            # Generation is idempotent; the next run picks up where this one stopped.
            logger.warning(f"installment_cycle_failed: source={source} error={exc}")
            return
        logger.info(
            f"installment_cycle_done: source={source} "
            + " ".join(f"{key}={value}" for key, value in summary.items())
        )

    def register_jobs(self) -> None:
        hour = self.settings.generation_hour
        minute = self.settings.generation_minute
        jobs = (
            (DAILY_JOB_ID, CronTrigger(hour=hour, minute=minute), f"daily_{hour:02d}:{minute:02d}", 3600),
            (SAFETY_JOB_ID, IntervalTrigger(hours=1), "hourly_safety_net", 300),
        )
        for job_id, trigger, source, grace in jobs:
            # One run per job at a time; a backlog of missed runs collapses into one.
            self.scheduler.add_job(
                self._run_job,
                trigger,
                args=[source],
                id=job_id,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=grace,
            )

    def start(self) -> None:
        self._run_job("startup")
        self.register_jobs()
        self.scheduler.start()
        logger.info(
            f"installment_scheduler_started: daily={self.settings.generation_hour:02d}:"
            f"{self.settings.generation_minute:02d} safety_interval_hours=1"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("installment_scheduler_stopped")
