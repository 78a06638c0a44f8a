from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Union


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    @property
    def starts_at(self) -> datetime:
        return datetime.combine(self.start, datetime.min.time())

    @property
    def ends_before(self) -> datetime:
        """First instant after the period; ``date < ends_before`` covers the last day."""
        return datetime.combine(self.end + timedelta(days=1), datetime.min.time())

    @property
    def label(self) -> str:
        return self.start.strftime("%B")


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def month_period(reference: Union[date, datetime]) -> Period:
    first = date(reference.year, reference.month, 1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return Period(first.strftime("%Y-%m"), first, next_month - date.resolution)


def previous_month(reference: Union[date, datetime]) -> Period:
    first_this = date(reference.year, reference.month, 1)
    return month_period(first_this - date.resolution)


def month_start(reference: datetime) -> datetime:
    return reference.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
