"""
Period Resolution

Turns a symbolic period tag or an explicit pair of dates into absolute UTC
instants aligned to the operation's local day boundaries.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Callable, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

from opmetrics.metrics.errors import InvalidPeriodError

logger = structlog.get_logger(__name__)


class PeriodTag(str, Enum):
    """Dashboard period rotation"""
    TODAY = "1d"
    LAST_7_DAYS = "7d"
    LAST_30_DAYS = "30d"
    LAST_90_DAYS = "90d"
    CURRENT_MONTH = "current_month"

    @classmethod
    def parse(cls, value: "str | PeriodTag") -> "PeriodTag":
        try:
            return cls(value)
        except ValueError:
            allowed = ", ".join(t.value for t in cls)
            raise InvalidPeriodError(f"Unknown period {value!r}; expected one of: {allowed}") from None


# Calendar days ending today, inclusive
_DAY_COUNTS = {
    PeriodTag.TODAY: 1,
    PeriodTag.LAST_7_DAYS: 7,
    PeriodTag.LAST_30_DAYS: 30,
    PeriodTag.LAST_90_DAYS: 90,
}

_AD_NETWORK_PRESETS = {
    PeriodTag.TODAY: "today",
    PeriodTag.LAST_7_DAYS: "last_7d",
    PeriodTag.LAST_30_DAYS: "last_30d",
    PeriodTag.LAST_90_DAYS: "last_90d",
    PeriodTag.CURRENT_MONTH: "this_month",
}


@dataclass(frozen=True)
class DateRange:
    """
    Inclusive range of instants.

    `start`/`end` are aware UTC datetimes; `start_day`/`end_day` are the
    matching calendar days in `timezone`.
    """
    start: datetime
    end: datetime
    start_day: date
    end_day: date
    timezone: str
    fallback_zone: bool = False

    @property
    def naive_start(self) -> datetime:
        """Start as naive UTC, the storage convention"""
        return self.start.astimezone(timezone.utc).replace(tzinfo=None)

    @property
    def naive_end(self) -> datetime:
        """End as naive UTC, the storage convention"""
        return self.end.astimezone(timezone.utc).replace(tzinfo=None)

    @property
    def days(self) -> int:
        return (self.end_day - self.start_day).days + 1


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PeriodResolver:
    """
    Resolves periods against an operation's IANA time zone.

    Operations without a usable zone are resolved in `default_timezone` and
    the result is flagged with `fallback_zone=True`.
    """

    def __init__(
        self,
        default_timezone: str = "Europe/Madrid",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.default_timezone = default_timezone
        self._clock = clock or _utc_now

    def zone_for(self, timezone_name: Optional[str]) -> Tuple[ZoneInfo, bool]:
        """Return (zone, used_fallback)."""
        if timezone_name:
            try:
                return ZoneInfo(timezone_name), False
            except (ZoneInfoNotFoundError, ValueError):
                logger.warning("Unknown operation time zone, using fallback", timezone=timezone_name)
        else:
            logger.warning("Operation has no time zone, using fallback", fallback=self.default_timezone)
        return ZoneInfo(self.default_timezone), True

    def today(self, timezone_name: Optional[str]) -> date:
        """Current calendar day in the operation's zone"""
        zone, _ = self.zone_for(timezone_name)
        return self._clock().astimezone(zone).date()

    def local_days(self, tag: "str | PeriodTag", timezone_name: Optional[str]) -> Tuple[date, date]:
        """First and last local day covered by a period tag."""
        tag = PeriodTag.parse(tag)
        end_day = self.today(timezone_name)
        if tag is PeriodTag.CURRENT_MONTH:
            return end_day.replace(day=1), end_day
        return end_day - timedelta(days=_DAY_COUNTS[tag] - 1), end_day

    def resolve_tag(self, tag: "str | PeriodTag", timezone_name: Optional[str]) -> DateRange:
        start_day, end_day = self.local_days(tag, timezone_name)
        return self.resolve_dates(start_day, end_day, timezone_name)

    def resolve_dates(self, start_day: date, end_day: date, timezone_name: Optional[str]) -> DateRange:
        """Explicit range: local start-of-day to local end-of-day, in UTC."""
        if start_day > end_day:
            raise InvalidPeriodError(f"Range start {start_day} is after end {end_day}")

        zone, fallback = self.zone_for(timezone_name)
        start = datetime.combine(start_day, time.min, tzinfo=zone).astimezone(timezone.utc)
        end = datetime.combine(end_day, time.max, tzinfo=zone).astimezone(timezone.utc)

        return DateRange(
            start=start,
            end=end,
            start_day=start_day,
            end_day=end_day,
            timezone=zone.key,
            fallback_zone=fallback,
        )

    def previous(self, rng: DateRange) -> DateRange:
        """
        The immediately preceding range with the same number of local days.

        Its end is one microsecond before `rng.start`.
        """
        prev_end_day = rng.start_day - timedelta(days=1)
        prev_start_day = prev_end_day - timedelta(days=rng.days - 1)
        prev = self.resolve_dates(prev_start_day, prev_end_day, rng.timezone)
        if rng.fallback_zone:
            prev = DateRange(
                start=prev.start,
                end=prev.end,
                start_day=prev.start_day,
                end_day=prev.end_day,
                timezone=prev.timezone,
                fallback_zone=True,
            )
        return prev


def ad_network_preset(tag: Optional["str | PeriodTag"]) -> Optional[str]:
    """Ad-network date preset for a tag; None for explicit ranges."""
    if tag is None:
        return None
    return _AD_NETWORK_PRESETS[PeriodTag.parse(tag)]
