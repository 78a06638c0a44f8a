from datetime import datetime
from typing import Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session, joinedload

from errors import InvariantViolation
from models import (
    Account,
    Budget,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
)


RECURRING_SUFFIX = " (Recurring)"


class LedgerStore:
    """Queries and writes the background jobs need, bound to one session.

    Callers own the transaction: the processor composes ``increment_balance``,
    ``insert_posting`` and ``advance_template`` inside a single
    ``session_scope`` so they commit or roll back together.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def due_templates(self, now: datetime) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.is_recurring.is_(True),
                Transaction.status == TransactionStatus.completed,
                or_(
                    Transaction.last_processed.is_(None),
                    Transaction.next_recurring_date <= now,
                ),
            )
            .order_by(Transaction.user_id, Transaction.id)
        )
        return list(self.session.scalars(stmt).all())

    def template_for_owner(
        self, transaction_id: int, user_id: int
    ) -> Optional[Transaction]:
        stmt = select(Transaction).where(
            Transaction.id == transaction_id,
            Transaction.user_id == user_id,
        )
        return self.session.scalars(stmt).one_or_none()

    def insert_posting(self, template: Transaction, now: datetime) -> Transaction:
        posting = Transaction(
            user_id=template.user_id,
            account_id=template.account_id,
            type=template.type,
            amount_cents=template.amount_cents,
            description=f"{template.description or ''}{RECURRING_SUFFIX}".strip(),
            category=template.category,
            date=now,
            status=TransactionStatus.completed,
            is_recurring=False,
        )
        self.session.add(posting)
        self.session.flush()
        return posting

    def increment_balance(self, account_id: int, delta_cents: int) -> None:
        """Add ``delta_cents`` in SQL; anything but exactly one matched row is fatal."""
        result = self.session.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(balance_cents=Account.balance_cents + delta_cents)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvariantViolation(
                f"Balance update matched {result.rowcount} rows for account {account_id}"
            )

    def advance_template(
        self,
        template: Transaction,
        *,
        seen_last_processed: Optional[datetime],
        processed_at: datetime,
        next_date: datetime,
    ) -> bool:
        """Compare-and-set the schedule; False when another worker got there first."""
        guard = (
            Transaction.last_processed.is_(None)
            if seen_last_processed is None
            else Transaction.last_processed == seen_last_processed
        )
        result = self.session.execute(
            update(Transaction)
            .where(Transaction.id == template.id, guard)
            .values(last_processed=processed_at, next_recurring_date=next_date)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def postings_between(
        self, user_id: int, start: datetime, end_before: datetime
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == user_id,
                Transaction.date >= start,
                Transaction.date < end_before,
            )
            .order_by(Transaction.date, Transaction.id)
        )
        return list(self.session.scalars(stmt).all())

    def budgets_with_default_account(self) -> list[tuple[Budget, Optional[Account]]]:
        stmt = (
            select(Budget, Account)
            .select_from(Budget)
            .join(User, User.id == Budget.user_id)
            .outerjoin(
                Account,
                and_(Account.user_id == Budget.user_id, Account.is_default.is_(True)),
            )
            .options(joinedload(Budget.user))
            .order_by(Budget.id)
        )
        return [(budget, account) for budget, account in self.session.execute(stmt)]

    def expense_total(
        self, user_id: int, account_id: int, start: datetime, end: datetime
    ) -> int:
        total = self.session.execute(
            select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
                Transaction.user_id == user_id,
                Transaction.account_id == account_id,
                Transaction.type == TransactionType.expense,
                Transaction.date >= start,
                Transaction.date <= end,
            )
        ).scalar_one()
        return int(total or 0)

    def mark_budget_alerted(self, budget_id: int, when: datetime) -> bool:
        result = self.session.execute(
            update(Budget)
            .where(Budget.id == budget_id, Budget.last_alert_sent.is_(None))
            .values(last_alert_sent=when)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def users(self) -> list[User]:
        return list(self.session.scalars(select(User).order_by(User.id)).all())
