"""
ExchangeClock: exchange-local time and the named daily windows.

Pure predicates over "now" in the venue timezone. The orchestrator consults
these; nothing here has side effects. ``now_fn`` is injectable so tests can
pin the clock.

Windows (defaults, exchange-local):
    session            09:30 - 16:00, Mon-Fri
    pre-warm           [entry_start - prewarm_seconds, entry_start)
    entry              [entry_start, entry_start + entry_window_seconds)
    end-of-window      final failsafe_seconds of the entry window
    mandatory exit     >= 15:55
"""
from datetime import datetime, date, time, timedelta, timezone
from typing import Callable, Dict, Optional
from zoneinfo import ZoneInfo

from daybot.config.config import ScheduleConfig


def _shift(t: time, seconds: int) -> time:
    anchor = datetime.combine(date(2000, 1, 3), t) + timedelta(seconds=seconds)
    return anchor.time()


class ExchangeClock:
    """Exchange-local time and window predicates."""

    def __init__(self, config: ScheduleConfig, now_fn: Optional[Callable[[], datetime]] = None):
        self.config = config
        self.tz = ZoneInfo(config.timezone)
        self._now_fn = now_fn or (lambda: datetime.now(timezone.utc))

        self.entry_start = config.entry_window_start
        self.entry_end = _shift(config.entry_window_start, config.entry_window_seconds)
        self.prewarm_start = _shift(config.entry_window_start, -config.prewarm_seconds)
        self.failsafe_start = _shift(self.entry_end, -config.failsafe_seconds)

    def now(self) -> datetime:
        """Current exchange-local time (aware)."""
        current = self._now_fn()
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        return current.astimezone(self.tz)

    def now_utc(self) -> datetime:
        """Current time as naive UTC (ledger representation)."""
        return self.now().astimezone(timezone.utc).replace(tzinfo=None)

    def _local_time(self) -> time:
        return self.now().time().replace(tzinfo=None)

    def is_trading_day(self) -> bool:
        """Mon-Fri. Exchange holidays are left to the broker clock."""
        return self.now().weekday() < 5

    def is_session_open(self) -> bool:
        return self.is_trading_day() and self.config.session_open <= self._local_time() < self.config.session_close

    def in_prewarm_window(self) -> bool:
        return self.is_trading_day() and self.prewarm_start <= self._local_time() < self.entry_start

    def in_entry_window(self) -> bool:
        return self.is_trading_day() and self.entry_start <= self._local_time() < self.entry_end

    def in_end_of_window_failsafe(self) -> bool:
        return self.is_trading_day() and self.failsafe_start <= self._local_time() < self.entry_end

    def is_mandatory_exit_time(self) -> bool:
        return self._local_time() >= self.config.mandatory_exit_time

    def today_key(self) -> str:
        """Exchange-local calendar day, YYYY-MM-DD (the claim key)."""
        return self.now().strftime("%Y-%m-%d")

    def start_of_day_utc(self, day: Optional[str] = None) -> datetime:
        """Exchange-local midnight of ``day`` (default today) as naive UTC."""
        if day is None:
            local_day = self.now().date()
        else:
            local_day = date.fromisoformat(day)
        midnight = datetime.combine(local_day, time(0, 0), tzinfo=self.tz)
        return midnight.astimezone(timezone.utc).replace(tzinfo=None)

    def window_info(self) -> Dict[str, str]:
        """Human-readable windows for diagnostics."""
        fmt = "%H:%M:%S"
        return {
            "timezone": self.config.timezone,
            "session": f"{self.config.session_open.strftime(fmt)}-{self.config.session_close.strftime(fmt)}",
            "prewarm": f"{self.prewarm_start.strftime(fmt)}-{self.entry_start.strftime(fmt)}",
            "entry": f"{self.entry_start.strftime(fmt)}-{self.entry_end.strftime(fmt)}",
            "failsafe": f"{self.failsafe_start.strftime(fmt)}-{self.entry_end.strftime(fmt)}",
            "mandatory_exit": f">={self.config.mandatory_exit_time.strftime(fmt)}",
        }
