"""
Time-window and percentage helpers shared by the services.

Every window is half-open: ``start <= ts < end``. Keeping that rule in
one place is what lets adjacent windows (current vs previous period,
consecutive days) partition events without double counting.
"""
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Iterable, Optional, Tuple, TypeVar

from visitrack.core.errors import ValidationError

Clock = Callable[[], datetime]

K = TypeVar("K")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_day(value: datetime) -> datetime:
    value = ensure_utc(value)
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


@dataclass(frozen=True)
class TimeWindow:
    """Half-open interval ``[start, end)`` in UTC"""

    start: datetime
    end: datetime

    def __post_init__(self):
        object.__setattr__(self, "start", ensure_utc(self.start))
        object.__setattr__(self, "end", ensure_utc(self.end))
        if self.start >= self.end:
            raise ValidationError(
                "startDate must be before endDate",
                details={"startDate": self.start.isoformat(), "endDate": self.end.isoformat()}
            )

    @classmethod
    def trailing(cls, end: datetime, span: timedelta) -> "TimeWindow":
        return cls(end - span, end)

    @classmethod
    def resolve(
            cls,
            start: Optional[datetime],
            end: Optional[datetime],
            now: datetime,
            default_days: int = 30
    ) -> "TimeWindow":
        """Fill in missing bounds: end defaults to now, start to end - default_days"""
        end = ensure_utc(end) if end else now
        start = ensure_utc(start) if start else end - timedelta(days=default_days)
        return cls(start, end)

    @property
    def span(self) -> timedelta:
        return self.end - self.start

    def previous(self) -> "TimeWindow":
        """The equal-length window immediately before this one"""
        return TimeWindow(self.start - self.span, self.start)

    def contains(self, ts: datetime) -> bool:
        return self.start <= ensure_utc(ts) < self.end


def round2(value: float) -> float:
    return round(float(value), 2)


def percentage(part: float, whole: float) -> float:
    """``part / whole * 100`` rounded to 2 decimals, 0 when whole is 0"""
    if not whole:
        return 0.0
    return round2(part / whole * 100)


def percent_change(current: float, previous: float) -> Tuple[Optional[float], bool]:
    """Percent change of ``current`` against ``previous``.

    Returns ``(change, is_new)``. When previous is 0 the ratio is undefined:
    ``(0.0, False)`` if current is also 0, otherwise ``(None, True)``.
    """
    if previous == 0:
        if current == 0:
            return 0.0, False
        return None, True
    return round2((current - previous) / previous * 100), False


def rank(items: Iterable[Tuple[K, int]], limit: Optional[int] = None) -> list:
    """Order ``(key, count)`` pairs by count desc, key asc"""
    ranked = sorted(items, key=lambda item: (-item[1], item[0]))
    if limit is not None:
        ranked = ranked[:limit]
    return ranked


def trailing_days(days: int, today: date) -> list:
    """The ``days`` calendar days ending with ``today``, oldest first"""
    return [today - timedelta(days=offset) for offset in range(days - 1, -1, -1)]
