from datetime import datetime, timedelta

from funnelbot.utils.datetime_utils import utc_now


class Clock:
    """Source of "now" for the schedulers; swapped for a fixed clock in tests."""

    def now(self) -> datetime:
        return utc_now()


class TimeScale:
    """
    Maps business delays onto real queue delays.

    A factor of 1.0 is real time. Staging environments use a large factor so
    that hours of funnel time pass in seconds; scaled delays never drop below
    `min_delay` unless the original delay was zero.
    """

    def __init__(self, factor: float = 1.0, min_delay: timedelta = timedelta(0)):
        if factor <= 0:
            raise ValueError("time scale factor must be positive")
        self.factor = factor
        self.min_delay = min_delay

    @property
    def is_real_time(self) -> bool:
        return self.factor == 1.0

    def compress(self, delay: timedelta) -> timedelta:
        if delay <= timedelta(0):
            return timedelta(0)
        if self.is_real_time:
            return delay
        return max(self.min_delay, delay / self.factor)
