from contextlib import asynccontextmanager
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional
import asyncio
import logging

HOUR = timedelta(hours=1)
DAY = timedelta(days=1)

class SafetyBlocked(Exception):
    """A real trade was refused by the safety limits"""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason

@dataclass
class SafetyCounters:
    trades_this_hour: int
    trades_this_day: int
    hour_window_start: datetime
    day_window_start: datetime
    emergency_stop: bool = False

class TradePermit:
    """Reserved slot for one trade; commit() once the trade went through"""

    def __init__(self):
        self.committed = False

    def commit(self):
        self.committed = True

class SafetyGovernor:
    """
    Hourly/daily trade limiter with an emergency stop.

    Windows roll over lazily on every check. A permit reserves its slot under
    the lock, so concurrent trades can never overshoot a limit between the
    check and the counter increment.
    """

    def __init__(self,
                 max_trades_per_hour: int,
                 max_trades_per_day: int,
                 emergency_stop: bool = False,
                 clock: Callable[[], datetime] = None,
                 logger=None):
        self.max_trades_per_hour = max_trades_per_hour
        self.max_trades_per_day = max_trades_per_day
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = logger or logging.getLogger(__name__)

        now = self.clock()
        self.counters = SafetyCounters(
            trades_this_hour=0,
            trades_this_day=0,
            hour_window_start=now,
            day_window_start=now,
            emergency_stop=emergency_stop,
        )
        self._reserved = 0
        self._lock = asyncio.Lock()
        self.blocked_count = 0

    @classmethod
    def from_config(cls, safety_config, clock=None, logger=None) -> "SafetyGovernor":
        return cls(
            max_trades_per_hour=safety_config.max_trades_per_hour,
            max_trades_per_day=safety_config.max_trades_per_day,
            emergency_stop=safety_config.emergency_stop,
            clock=clock,
            logger=logger,
        )

    def _roll_windows(self, now: datetime):
        if now - self.counters.hour_window_start > HOUR:
            self.counters.trades_this_hour = 0
            self.counters.hour_window_start = now
        if now - self.counters.day_window_start > DAY:
            self.counters.trades_this_day = 0
            self.counters.day_window_start = now

    def _blocked_reason(self) -> Optional[str]:
        if self.counters.emergency_stop:
            return "emergency stop is active"
        if self.counters.trades_this_hour + self._reserved >= self.max_trades_per_hour:
            return f"hourly trade limit reached ({self.max_trades_per_hour})"
        if self.counters.trades_this_day + self._reserved >= self.max_trades_per_day:
            return f"daily trade limit reached ({self.max_trades_per_day})"
        return None

    async def check(self):
        """Raise SafetyBlocked if a trade would be refused right now"""
        async with self._lock:
            self._roll_windows(self.clock())
            reason = self._blocked_reason()
        if reason:
            self.blocked_count += 1
            self.logger.warning(f"Trade blocked: {reason}")
            raise SafetyBlocked(reason)

    @asynccontextmanager
    async def permit(self):
        """
        Reserve a trade slot for the duration of one trade.

        Usage:
            async with governor.permit() as permit:
                result = await executor.buy(...)
                if result.success:
                    permit.commit()
        """
        async with self._lock:
            self._roll_windows(self.clock())
            reason = self._blocked_reason()
            if reason is None:
                self._reserved += 1
        if reason:
            self.blocked_count += 1
            self.logger.warning(f"Trade blocked: {reason}")
            raise SafetyBlocked(reason)

        permit = TradePermit()
        try:
            yield permit
        finally:
            async with self._lock:
                self._reserved -= 1
                if permit.committed:
                    self._roll_windows(self.clock())
                    self.counters.trades_this_hour += 1
                    self.counters.trades_this_day += 1
                    self.logger.debug(f"Trade counted: {self.counters.trades_this_hour}/{self.max_trades_per_hour} "
                                      f"this hour, {self.counters.trades_this_day}/{self.max_trades_per_day} today")

    async def record_trade(self):
        """Count a real trade executed outside a permit"""
        async with self._lock:
            self._roll_windows(self.clock())
            self.counters.trades_this_hour += 1
            self.counters.trades_this_day += 1

    def set_emergency_stop(self, active: bool):
        self.counters.emergency_stop = active
        if active:
            self.logger.critical("Emergency stop activated, all real trades are blocked")
        else:
            self.logger.warning("Emergency stop cleared")

    def status(self) -> Dict:
        return {
            **asdict(self.counters),
            'max_trades_per_hour': self.max_trades_per_hour,
            'max_trades_per_day': self.max_trades_per_day,
            'reserved': self._reserved,
            'blocked_count': self.blocked_count,
        }
