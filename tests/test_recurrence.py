from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError

from errors import InvariantViolation, TransientStoreError
from models import (
    Account,
    RecurringInterval,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from recurrence import (
    RecurringJob,
    RecurringTransactionProcessor,
    next_occurrence,
    select_due_jobs,
)
from store import LedgerStore


def test_next_occurrence_daily_and_weekly():
    assert next_occurrence(date(2024, 12, 31), RecurringInterval.daily) == date(2025, 1, 1)
    assert next_occurrence(date(2024, 12, 28), RecurringInterval.weekly) == date(2025, 1, 4)


def test_next_occurrence_monthly_snaps_to_month_end():
    assert next_occurrence(date(2024, 1, 31), RecurringInterval.monthly) == date(2024, 2, 29)
    assert next_occurrence(date(2023, 1, 31), RecurringInterval.monthly) == date(2023, 2, 28)
    assert next_occurrence(date(2024, 12, 15), RecurringInterval.monthly) == date(2025, 1, 15)


def test_next_occurrence_yearly_from_leap_day():
    assert next_occurrence(date(2024, 2, 29), RecurringInterval.yearly) == date(2025, 2, 28)


def test_next_occurrence_keeps_time_of_day():
    start = datetime(2025, 3, 31, 8, 30)
    assert next_occurrence(start, "MONTHLY") == datetime(2025, 4, 30, 8, 30)


def test_next_occurrence_unknown_interval_is_noop():
    start = date(2025, 5, 5)
    assert next_occurrence(start, "FORTNIGHTLY") == start
    assert next_occurrence(start, None) == start


def test_next_occurrence_always_moves_forward():
    day = date(2023, 12, 1)
    while day < date(2025, 3, 1):
        for interval in RecurringInterval:
            assert next_occurrence(day, interval) > day
        day += timedelta(days=1)


def test_select_due_jobs_filters_status_and_schedule(ledger, factory, clock):
    user = ledger.user()
    account = ledger.account(user)
    never_processed = ledger.template(account)
    overdue = ledger.template(
        account,
        last_processed=clock.now - timedelta(days=31),
        next_recurring_date=clock.now - timedelta(hours=1),
    )
    ledger.template(
        account,
        last_processed=clock.now - timedelta(days=1),
        next_recurring_date=clock.now + timedelta(days=6),
    )
    ledger.template(account, status=TransactionStatus.pending)
    ledger.posting(account, amount_cents=500)

    jobs = select_due_jobs(factory, clock.now)

    assert jobs == [
        RecurringJob(never_processed.id, user.id),
        RecurringJob(overdue.id, user.id),
    ]


def test_processor_posts_once_and_updates_balance(ledger, factory, clock):
    user = ledger.user()
    account = ledger.account(user, balance_cents=50_000)
    template = ledger.template(account, amount_cents=12_000)
    processor = RecurringTransactionProcessor(factory, clock=clock)
    job = RecurringJob(template.id, user.id)

    first = processor.process(job)
    second = processor.process(job)

    assert first is not None
    assert second is None
    with factory() as session:
        postings = session.scalars(
            select(Transaction).where(Transaction.is_recurring.is_(False))
        ).all()
        assert len(postings) == 1
        posting = postings[0]
        assert posting.amount_cents == 12_000
        assert posting.type == TransactionType.expense
        assert posting.category == "rent"
        assert posting.description == "Rent (Recurring)"
        assert posting.date == clock.now
        assert posting.recurring_interval is None

        assert session.get(Account, account.id).balance_cents == 38_000

        refreshed = session.get(Transaction, template.id)
        assert refreshed.last_processed == clock.now
        assert refreshed.next_recurring_date == datetime(2025, 2, 15, 12, 0)


def test_processor_credits_income(ledger, factory, clock):
    user = ledger.user()
    account = ledger.account(user, balance_cents=100)
    template = ledger.template(
        account,
        amount_cents=250_000,
        type=TransactionType.income,
        interval=RecurringInterval.weekly,
        category="salary",
    )

    RecurringTransactionProcessor(factory, clock=clock).process(
        RecurringJob(template.id, user.id)
    )

    with factory() as session:
        assert session.get(Account, account.id).balance_cents == 250_100
        refreshed = session.get(Transaction, template.id)
        assert refreshed.next_recurring_date == clock.now + timedelta(days=7)


def test_processor_runs_again_once_next_date_arrives(ledger, factory, clock):
    user = ledger.user()
    account = ledger.account(user)
    template = ledger.template(account, interval=RecurringInterval.daily)
    processor = RecurringTransactionProcessor(factory, clock=clock)
    job = RecurringJob(template.id, user.id)

    assert processor.process(job) is not None
    clock.advance(hours=23)
    assert processor.process(job) is None
    clock.advance(hours=1)
    assert processor.process(job) is not None

    with factory() as session:
        assert session.get(Account, account.id).balance_cents == -2000


def test_processor_ignores_other_owner(ledger, factory, clock):
    owner = ledger.user()
    stranger = ledger.user(email="eve@example.com", name="Eve")
    account = ledger.account(owner)
    template = ledger.template(account)

    result = RecurringTransactionProcessor(factory, clock=clock).process(
        RecurringJob(template.id, stranger.id)
    )

    assert result is None
    with factory() as session:
        assert session.get(Account, account.id).balance_cents == 0


def test_processor_rolls_back_when_balance_update_fails(
    ledger, factory, clock, monkeypatch
):
    user = ledger.user()
    account = ledger.account(user, balance_cents=1000)
    template = ledger.template(account)

    def broken_increment(self, account_id, delta_cents):
        raise RuntimeError("balance write failed")

    monkeypatch.setattr(LedgerStore, "increment_balance", broken_increment)

    with pytest.raises(RuntimeError):
        RecurringTransactionProcessor(factory, clock=clock).process(
            RecurringJob(template.id, user.id)
        )

    with factory() as session:
        assert session.scalars(
            select(Transaction).where(Transaction.is_recurring.is_(False))
        ).all() == []
        assert session.get(Account, account.id).balance_cents == 1000
        refreshed = session.get(Transaction, template.id)
        assert refreshed.last_processed is None
        assert refreshed.next_recurring_date is None


def test_processor_backs_out_when_template_already_claimed(
    ledger, factory, clock, monkeypatch
):
    user = ledger.user()
    account = ledger.account(user)
    template = ledger.template(account)
    processor = RecurringTransactionProcessor(factory, clock=clock)
    original_lookup = LedgerStore.template_for_owner

    def lookup_then_lose_race(self, transaction_id, user_id):
        found = original_lookup(self, transaction_id, user_id)
        # another worker finishes the same cycle after our read
        with factory() as other:
            LedgerStore(other).advance_template(
                found,
                seen_last_processed=None,
                processed_at=clock.now,
                next_date=clock.now + timedelta(days=31),
            )
            other.commit()
        return found

    monkeypatch.setattr(LedgerStore, "template_for_owner", lookup_then_lose_race)

    assert processor.process(RecurringJob(template.id, user.id)) is None
    with factory() as session:
        assert session.scalars(
            select(Transaction).where(Transaction.is_recurring.is_(False))
        ).all() == []
        assert session.get(Account, account.id).balance_cents == 0


def test_processor_reports_store_outage_as_transient(
    ledger, factory, clock, monkeypatch
):
    user = ledger.user()
    account = ledger.account(user)
    template = ledger.template(account)

    def unavailable(self, transaction_id, user_id):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(LedgerStore, "template_for_owner", unavailable)

    with pytest.raises(TransientStoreError):
        RecurringTransactionProcessor(factory, clock=clock).process(
            RecurringJob(template.id, user.id)
        )


def test_processor_refuses_template_whose_account_is_gone(ledger, factory, clock):
    user = ledger.user()
    account = ledger.account(user, balance_cents=500)
    template = ledger.template(account)
    # the test engine leaves SQLite foreign keys off, so the row can dangle
    with factory() as session:
        session.execute(
            update(Transaction)
            .where(Transaction.id == template.id)
            .values(account_id=account.id + 1000)
        )
        session.commit()

    with pytest.raises(InvariantViolation):
        RecurringTransactionProcessor(factory, clock=clock).process(
            RecurringJob(template.id, user.id)
        )

    with factory() as session:
        assert session.scalars(
            select(Transaction).where(Transaction.is_recurring.is_(False))
        ).all() == []
        assert session.get(Account, account.id).balance_cents == 500
        assert session.get(Transaction, template.id).last_processed is None
