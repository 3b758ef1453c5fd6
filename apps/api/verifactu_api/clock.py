"""Clock abstraction so scheduling decisions can be driven from tests."""

from datetime import datetime, timedelta


class Clock:
    """Wall clock returning naive UTC datetimes (matches the DateTime columns)."""

    def now(self) -> datetime:
        return datetime.utcnow()


class FrozenClock(Clock):
    """Manually advanced clock."""

    def __init__(self, start: datetime):
        self._now = start

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self._now = self._now + timedelta(seconds=seconds, **kwargs)
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value


system_clock = Clock()
