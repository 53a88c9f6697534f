"""
Clock -- Deterministic time abstraction.

Responsibility:
    Provides an injectable clock so that services never call
    ``datetime.now()`` directly.  Payment-status derivation and aging depend
    on "now", so every timestamp is traceable to an injected Clock instance.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O (except SystemClock,
    which is the one sanctioned I/O boundary for time).
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, time, timedelta, timezone


class Clock(ABC):
    """
    Abstract clock interface.

    Contract:
        Services that need current time receive a Clock via constructor
        injection.  ``now()`` returns a timezone-aware ``datetime``.
    """

    @abstractmethod
    def now(self) -> datetime:
        """Get the current time."""
        ...


class SystemClock(Clock):
    """Production clock returning the actual UTC time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Test clock with controlled time.

    Guarantees:
        ``now()`` returns the same value on repeated calls until
        ``advance()`` or ``set_time()`` is called.
    """

    def __init__(self, fixed_time: datetime | None = None):
        self._fixed_time = fixed_time or datetime(
            2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc
        )
        self._advance_seconds = 0

    def now(self) -> datetime:
        return self._fixed_time + timedelta(seconds=self._advance_seconds)

    def set_time(self, time: datetime) -> None:
        """Set the clock to a specific time."""
        self._fixed_time = time
        self._advance_seconds = 0

    def advance(self, seconds: int = 1) -> None:
        """Advance the clock by the specified seconds."""
        self._advance_seconds += seconds

    def advance_days(self, days: int) -> None:
        self._advance_seconds += days * 86400


def align_moments(
    due: date | datetime, now: date | datetime,
) -> tuple[date | datetime, date | datetime]:
    """
    Make a due date and "now" comparable.

    Two plain dates compare by whole days.  A plain date compared with a
    datetime is promoted to midnight in the datetime's timezone.
    """
    due_is_dt = isinstance(due, datetime)
    now_is_dt = isinstance(now, datetime)
    if due_is_dt and not now_is_dt:
        now = datetime.combine(now, time.min, tzinfo=due.tzinfo)
    elif now_is_dt and not due_is_dt:
        due = datetime.combine(due, time.min, tzinfo=now.tzinfo)
    return due, now


def is_past_due(due: date | datetime | None, now: date | datetime) -> bool:
    """True once ``now`` is strictly later than ``due``; never without a due date."""
    if due is None:
        return False
    aligned_due, aligned_now = align_moments(due, now)
    return aligned_now > aligned_due
