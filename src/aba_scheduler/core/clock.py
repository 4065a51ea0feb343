"""
Injectable time sources
"""
from abc import ABC, abstractmethod
from datetime import datetime, timedelta


class Clock(ABC):
    """Source of the current wall-clock time (practice local time, naive)"""

    @abstractmethod
    def now(self) -> datetime:
        pass


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now()


class FixedClock(Clock):
    """Clock frozen at a given moment, advanced explicitly"""

    def __init__(self, moment: datetime):
        self._moment = moment

    def now(self) -> datetime:
        return self._moment

    def set(self, moment: datetime):
        self._moment = moment

    def advance(self, **kwargs) -> datetime:
        self._moment = self._moment + timedelta(**kwargs)
        return self._moment
