import logging
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from balances import AccountBalanceMaintainer
from budget_cache import BudgetProgressCache
from config import get_settings
from database import engine, session_scope
from errors import TransientStoreError
from maintenance import ensure_indexes


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

INDEX_JOB_ATTEMPTS = 3


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.tz = ZoneInfo(settings.timezone)
        self.scheduler = BackgroundScheduler(timezone=self.tz)

    def _run_index_job(self, attempt: int = 1) -> None:
        logger.info(f"index_job: attempt={attempt}/{INDEX_JOB_ATTEMPTS}")
        try:
            ensured = ensure_indexes(engine)
        except TransientStoreError:
            if attempt >= INDEX_JOB_ATTEMPTS:
                logger.warning("index_job: giving up, continuing without indexes")
                return
            run_date = datetime.now(self.tz) + timedelta(seconds=1.2 * attempt)
            self.scheduler.add_job(
                self._run_index_job,
                DateTrigger(run_date=run_date),
                args=[attempt + 1],
                id="ensure_indexes_retry",
                replace_existing=True,
            )
            return
        logger.info(f"index_job: ensured={len(ensured)}")

    def _run_cache_rebuild(self, source: str = "manual") -> None:
        logger.info(f"cache_rebuild: source={source}")
        with session_scope() as session:
            count = BudgetProgressCache(session).rebuild()
        logger.info(f"cache_rebuild: source={source} budgets={count}")

    def _run_balance_rebuild(self, source: str = "manual") -> None:
        logger.info(f"balance_rebuild: source={source}")
        with session_scope() as session:
            drifted = AccountBalanceMaintainer(session).rebuild()
        logger.info(f"balance_rebuild: source={source} drifted={len(drifted)}")

    def start(self) -> None:
        self.scheduler.add_job(
            self._run_index_job,
            DateTrigger(run_date=datetime.now(self.tz) + timedelta(seconds=0.7)),
            id="ensure_indexes",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self._run_balance_rebuild,
            CronTrigger(hour=3, minute=10),
            args=["daily_03:10"],
            id="balance_rebuild",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self._run_cache_rebuild,
            CronTrigger(hour=3, minute=15),
            args=["daily_03:15"],
            id="budget_cache_rebuild",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info(
            "Scheduler started with index maintenance and daily balance and cache rebuilds"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
