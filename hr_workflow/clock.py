"""
Clock Module

Time source for the engine. Production code uses SystemClock; tests
substitute FixedClock to drive deadline scans deterministically.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone, timedelta
from threading import Lock
from typing import Optional


class Clock(ABC):
    """Abstract time source"""
    
    @abstractmethod
    def now(self) -> datetime:
        """Current instant as a timezone-aware UTC datetime"""
        pass


class SystemClock(Clock):
    """Wall clock"""
    
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Manually advanced clock for tests and replays"""
    
    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
        if self._now.tzinfo is None:
            self._now = self._now.replace(tzinfo=timezone.utc)
        self._lock = Lock()
    
    def now(self) -> datetime:
        with self._lock:
            return self._now
    
    def set(self, instant: datetime) -> None:
        """Jump to an absolute instant"""
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        with self._lock:
            self._now = instant
    
    def advance(self, delta: timedelta) -> datetime:
        """Move the clock forward and return the new instant"""
        with self._lock:
            self._now = self._now + delta
            return self._now
