import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Optional

from pydantic import ValidationError
from sqlalchemy.orm import sessionmaker

from config import Settings, get_settings
from errors import EventValidationError
from insights import GeminiInsightGenerator
from notifications import EmailNotifier
from periods import utcnow
from recurrence import RecurringJob, RecurringTransactionProcessor, select_due_jobs
from schemas import RecurringTransactionEvent
from services import BudgetAlertService, MonthlyReportService
from throttle import SlidingWindowRateLimiter, ThrottledDispatcher


logger = logging.getLogger(__name__)

MISSING_EVENT_DATA = "Missing required event data"


def parse_recurring_event(payload: Optional[Mapping[str, Any]]) -> RecurringJob:
    try:
        event = RecurringTransactionEvent.model_validate(payload or {})
    except ValidationError as exc:
        raise EventValidationError(MISSING_EVENT_DATA) from exc
    return RecurringJob(event.transaction_id, event.user_id)


class JobRunner:
    """Entry points for every trigger: daily, monthly and per-event."""

    def __init__(
        self,
        factory: Optional[sessionmaker] = None,
        *,
        settings: Optional[Settings] = None,
        notifier=None,
        insights=None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        self.factory = factory
        self.clock = clock
        self.notifier = notifier or EmailNotifier()
        self.insights = insights or GeminiInsightGenerator()
        self.dispatcher = ThrottledDispatcher(
            RecurringTransactionProcessor(factory, clock=clock),
            SlidingWindowRateLimiter(
                factory,
                limit=self.settings.throttle_limit,
                period=timedelta(seconds=self.settings.throttle_period_secs),
                clock=clock,
            ),
            max_workers=self.settings.dispatch_workers,
            retry_attempts=self.settings.retry_attempts,
            retry_backoff_secs=self.settings.retry_backoff_secs,
            sleep=sleep,
        )

    def trigger_recurring_transactions(self) -> dict[str, object]:
        jobs = select_due_jobs(self.factory, self.clock())
        logger.info(f"recurring_trigger: templates={len(jobs)}")
        if not jobs:
            return {"triggered": 0}
        return self.dispatcher.dispatch(jobs).as_dict()

    def process_recurring_transaction(
        self, payload: Optional[Mapping[str, Any]]
    ) -> dict[str, object]:
        try:
            job = parse_recurring_event(payload)
        except EventValidationError as exc:
            logger.error(f"recurring_event_invalid: payload={payload!r}")
            return {"error": str(exc)}
        return self.dispatcher.dispatch([job]).as_dict()

    def generate_monthly_reports(self) -> dict[str, object]:
        service = MonthlyReportService(
            self.notifier, self.insights, self.factory, clock=self.clock
        )
        return service.generate_all().as_dict()

    def check_budget_alerts(self) -> dict[str, object]:
        service = BudgetAlertService(
            self.notifier,
            self.factory,
            threshold=self.settings.budget_alert_threshold,
            clock=self.clock,
        )
        return service.check_all().as_dict()
