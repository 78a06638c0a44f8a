from datetime import datetime, timedelta
from typing import Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from models import (
    Account,
    Budget,
    RecurringInterval,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
)


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += timedelta(seconds=seconds)


class FakeNotifier:
    def __init__(self, succeed: bool = True) -> None:
        self.succeed = succeed
        self.sent: list[tuple[str, str, str]] = []

    def send(self, recipient: str, subject: str, rendered_body: str) -> bool:
        if not self.succeed:
            return False
        self.sent.append((recipient, subject, rendered_body))
        return True


class FakeInsights:
    def __init__(self) -> None:
        self.calls: list[tuple[object, str]] = []

    def generate(self, stats, month_label: str) -> list[str]:
        self.calls.append((stats, month_label))
        return ["Spend less on food."]


class Ledger:
    """Seeds rows through short-lived sessions, like an outside writer would."""

    def __init__(self, factory: sessionmaker) -> None:
        self.factory = factory

    def _save(self, obj):
        with self.factory() as session:
            session.add(obj)
            session.commit()
            return obj

    def user(self, email: str = "ada@example.com", name: str = "Ada") -> User:
        return self._save(User(email=email, name=name))

    def account(
        self,
        user: User,
        *,
        name: str = "Checking",
        balance_cents: int = 0,
        is_default: bool = True,
    ) -> Account:
        return self._save(
            Account(
                user_id=user.id,
                name=name,
                balance_cents=balance_cents,
                is_default=is_default,
            )
        )

    def template(
        self,
        account: Account,
        *,
        amount_cents: int = 1000,
        type: TransactionType = TransactionType.expense,
        interval: RecurringInterval = RecurringInterval.monthly,
        category: str = "rent",
        date: datetime = datetime(2025, 1, 1, 9, 0),
        status: TransactionStatus = TransactionStatus.completed,
        last_processed: Optional[datetime] = None,
        next_recurring_date: Optional[datetime] = None,
    ) -> Transaction:
        return self._save(
            Transaction(
                user_id=account.user_id,
                account_id=account.id,
                type=type,
                amount_cents=amount_cents,
                description=category.title(),
                category=category,
                date=date,
                status=status,
                is_recurring=True,
                recurring_interval=interval,
                last_processed=last_processed,
                next_recurring_date=next_recurring_date,
            )
        )

    def posting(
        self,
        account: Account,
        *,
        amount_cents: int,
        type: TransactionType = TransactionType.expense,
        category: str = "food",
        date: datetime = datetime(2025, 1, 10, 12, 0),
    ) -> Transaction:
        return self._save(
            Transaction(
                user_id=account.user_id,
                account_id=account.id,
                type=type,
                amount_cents=amount_cents,
                description=category.title(),
                category=category,
                date=date,
            )
        )

    def budget(
        self, user: User, amount_cents: int, last_alert_sent: Optional[datetime] = None
    ) -> Budget:
        return self._save(
            Budget(
                user_id=user.id,
                amount_cents=amount_cents,
                last_alert_sent=last_alert_sent,
            )
        )


@pytest.fixture()
def factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture()
def ledger(factory) -> Ledger:
    return Ledger(factory)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 1, 15, 12, 0))


@pytest.fixture()
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture()
def insights() -> FakeInsights:
    return FakeInsights()
