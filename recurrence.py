import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Optional, TypeVar, Union

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from database import session_scope
from errors import TransientStoreError
from models import RecurringInterval, Transaction, TransactionStatus, TransactionType
from periods import utcnow
from store import LedgerStore


logger = logging.getLogger(__name__)

D = TypeVar("D", date, datetime)


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: D, months: int) -> D:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = min(base.day, days_in_month(year, month))
    return base.replace(year=year, month=month, day=day)


def next_occurrence(value: D, interval: Union[RecurringInterval, str, None]) -> D:
    """Next date for ``interval``; short months snap to their last day.

    Unknown intervals return ``value`` unchanged.
    """
    try:
        interval = RecurringInterval(interval)
    except ValueError:
        return value
    if interval == RecurringInterval.daily:
        return value + timedelta(days=1)
    if interval == RecurringInterval.weekly:
        return value + timedelta(weeks=1)
    if interval == RecurringInterval.monthly:
        return _add_months(value, 1)
    return _add_months(value, 12)


def is_transaction_due(template: Transaction, now: datetime) -> bool:
    if not template.is_recurring or template.status != TransactionStatus.completed:
        return False
    if template.last_processed is None:
        return True
    return (
        template.next_recurring_date is not None
        and template.next_recurring_date <= now
    )


@dataclass(frozen=True)
class RecurringJob:
    transaction_id: int
    user_id: int

    @property
    def throttle_key(self) -> str:
        return f"recurring:{self.user_id}"


def select_due_jobs(
    factory: Optional[sessionmaker] = None, now: Optional[datetime] = None
) -> list[RecurringJob]:
    now = now or utcnow()
    with session_scope(factory) as session:
        templates = LedgerStore(session).due_templates(now)
        return [RecurringJob(t.id, t.user_id) for t in templates]


class _AlreadyClaimed(Exception):
    pass


class RecurringTransactionProcessor:
    def __init__(
        self,
        factory: Optional[sessionmaker] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.factory = factory
        self.clock = clock

    def process(self, job: RecurringJob) -> Optional[int]:
        """Post one due occurrence of a template; returns the new posting id.

        Returns None when the template is gone or no longer due, so calling this
        again before the next due date never posts twice.
        """
        try:
            with session_scope(self.factory) as session:
                return self._process(LedgerStore(session), job)
        except _AlreadyClaimed:
            logger.info(
                f"recurring_skip: transaction_id={job.transaction_id} reason=claimed"
            )
            return None
        except OperationalError as exc:
            raise TransientStoreError(
                f"Store unavailable while processing transaction {job.transaction_id}"
            ) from exc

    def _process(self, store: LedgerStore, job: RecurringJob) -> Optional[int]:
        template = store.template_for_owner(job.transaction_id, job.user_id)
        now = self.clock()
        if template is None or not is_transaction_due(template, now):
            logger.info(
                f"recurring_skip: transaction_id={job.transaction_id} reason=not_due"
            )
            return None
        if template.recurring_interval is None:
            logger.warning(
                f"recurring_skip: transaction_id={template.id} reason=no_interval"
            )
            return None

        seen_last_processed = template.last_processed
        delta = (
            -template.amount_cents
            if template.type == TransactionType.expense
            else template.amount_cents
        )
        # Balance first: a missing account fails here before any posting is written.
        store.increment_balance(template.account_id, delta)
        posting = store.insert_posting(template, now)
        claimed = store.advance_template(
            template,
            seen_last_processed=seen_last_processed,
            processed_at=now,
            next_date=next_occurrence(now, template.recurring_interval),
        )
        if not claimed:
            raise _AlreadyClaimed()
        logger.info(
            f"recurring_posted: transaction_id={template.id} posting_id={posting.id} "
            f"account_id={template.account_id} delta_cents={delta}"
        )
        return posting.id
