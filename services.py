from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from database import session_scope
from errors import NotificationError
from models import Account, Budget, TransactionType, User
from notifications import render_email
from periods import month_period, month_start, previous_month, utcnow
from store import LedgerStore


logger = logging.getLogger(__name__)


@dataclass
class MonthlyStats:
    total_income: int = 0
    total_expenses: int = 0
    by_category: dict[str, int] = field(default_factory=dict)
    transaction_count: int = 0

    @property
    def net(self) -> int:
        return self.total_income - self.total_expenses


class MonthlyStatsService:
    def __init__(self, factory: Optional[sessionmaker] = None) -> None:
        self.factory = factory

    def monthly_stats(
        self, user_id: int, reference: Union[date, datetime]
    ) -> MonthlyStats:
        period = month_period(reference)
        with session_scope(self.factory) as session:
            postings = LedgerStore(session).postings_between(
                user_id, period.starts_at, period.ends_before
            )

        stats = MonthlyStats(transaction_count=len(postings))
        for txn in postings:
            if txn.type == TransactionType.expense:
                stats.total_expenses += txn.amount_cents
                stats.by_category[txn.category] = (
                    stats.by_category.get(txn.category, 0) + txn.amount_cents
                )
            else:
                stats.total_income += txn.amount_cents
        return stats


@dataclass
class BudgetCheckResult:
    checked: int = 0
    alerted: int = 0
    skipped: int = 0
    failed: list[tuple[int, str]] = field(default_factory=list)
    unpersisted: list[int] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "checked": self.checked,
            "alerted": self.alerted,
            "skipped": self.skipped,
            "failed": [{"budgetId": bid, "error": err} for bid, err in self.failed],
            "unpersisted": list(self.unpersisted),
        }


class BudgetAlertService:
    """Sends one alert per budget once month-to-date spend crosses the threshold.

    The notification goes out before ``last_alert_sent`` is written, so a failed
    send leaves the budget eligible for the next run. A failed write after a
    successful send is logged and reported; the owner may be alerted again.
    """

    def __init__(
        self,
        notifier,
        factory: Optional[sessionmaker] = None,
        *,
        threshold: Union[int, Decimal] = 80,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.notifier = notifier
        self.factory = factory
        self.threshold = Decimal(threshold)
        self.clock = clock

    @staticmethod
    def percentage_used(total_expenses_cents: int, budget_cents: int) -> Decimal:
        return Decimal(total_expenses_cents) * 100 / Decimal(budget_cents)

    def check_all(self) -> BudgetCheckResult:
        result = BudgetCheckResult()
        with session_scope(self.factory) as session:
            rows = LedgerStore(session).budgets_with_default_account()

        for budget, account in rows:
            result.checked += 1
            if account is None:
                logger.info(f"budget_skip: budget_id={budget.id} reason=no_default_account")
                result.skipped += 1
                continue
            try:
                self._check(budget, account, result)
            except Exception as exc:
                logger.exception(f"budget_check_failed: budget_id={budget.id}")
                result.failed.append((budget.id, str(exc)))

        logger.info(
            f"budget_check_done: checked={result.checked} alerted={result.alerted} "
            f"skipped={result.skipped} failed={len(result.failed)} "
            f"unpersisted={len(result.unpersisted)}"
        )
        return result

    def _check(self, budget: Budget, account: Account, result: BudgetCheckResult) -> None:
        now = self.clock()
        with session_scope(self.factory) as session:
            total = LedgerStore(session).expense_total(
                budget.user_id, account.id, month_start(now), now
            )
        percentage = self.percentage_used(total, budget.amount_cents)
        logger.info(
            f"budget_usage: budget_id={budget.id} account_id={account.id} "
            f"spent_cents={total} budget_cents={budget.amount_cents} "
            f"percentage={percentage:.1f}"
        )
        if percentage < self.threshold or budget.last_alert_sent is not None:
            return

        self._notify(budget.user, account, budget, total, percentage)
        result.alerted += 1
        try:
            with session_scope(self.factory) as session:
                LedgerStore(session).mark_budget_alerted(budget.id, now)
        except SQLAlchemyError:
            logger.exception(f"budget_alert_persist_failed: budget_id={budget.id}")
            result.unpersisted.append(budget.id)

    def _notify(
        self,
        user: User,
        account: Account,
        budget: Budget,
        total_cents: int,
        percentage: Decimal,
    ) -> None:
        body = render_email(
            "budget_alert",
            user_name=user.name,
            account_name=account.name,
            percentage_used=percentage,
            budget_cents=budget.amount_cents,
            total_expenses_cents=total_cents,
            remaining_cents=budget.amount_cents - total_cents,
        )
        sent = self.notifier.send(user.email, f"Budget Alert for {account.name}", body)
        if not sent:
            raise NotificationError(f"Budget alert email to {user.email} failed")


@dataclass
class ReportRunResult:
    processed: int = 0
    failed: list[tuple[int, str]] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "processed": self.processed,
            "failed": [{"userId": uid, "error": err} for uid, err in self.failed],
        }


class MonthlyReportService:
    def __init__(
        self,
        notifier,
        insights,
        factory: Optional[sessionmaker] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.notifier = notifier
        self.insights = insights
        self.factory = factory
        self.clock = clock
        self.stats = MonthlyStatsService(factory)

    def generate_all(self) -> ReportRunResult:
        result = ReportRunResult()
        with session_scope(self.factory) as session:
            users = LedgerStore(session).users()

        period = previous_month(self.clock())
        for user in users:
            try:
                self.send_report(user, period.start)
            except Exception as exc:
                logger.exception(f"report_failed: user_id={user.id}")
                result.failed.append((user.id, str(exc)))
                continue
            result.processed += 1

        logger.info(
            f"report_run_done: month={period.slug} processed={result.processed} "
            f"failed={len(result.failed)}"
        )
        return result

    def send_report(self, user: User, reference: date) -> MonthlyStats:
        stats = self.stats.monthly_stats(user.id, reference)
        month_label = month_period(reference).label
        insights = self.insights.generate(stats, month_label)
        body = render_email(
            "monthly_report",
            user_name=user.name,
            month=month_label,
            stats=stats,
            insights=insights,
        )
        subject = f"Your Monthly Financial Report - {month_label}"
        if not self.notifier.send(user.email, subject, body):
            raise NotificationError(f"Monthly report email to {user.email} failed")
        return stats
