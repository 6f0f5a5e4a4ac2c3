"""
Metrics Cache

Snapshots keyed by (operation, period, provider) in `metrics_snapshots`.

Per key: absent -> fresh (put) -> stale (valid_until elapsed) -> fresh (recomputed put)

`put` replaces the previous row inside one transaction, so two snapshots for
the same key never coexist. Concurrent writers for one key: last write wins.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from opmetrics.database.models import MetricsSnapshot
from opmetrics.metrics.aggregator import DayBucket
from opmetrics.metrics.composer import MONEY_FIELDS, DashboardMetrics, metric_values
from opmetrics.metrics.currency import to_decimal
from opmetrics.metrics.periods import DateRange

logger = structlog.get_logger(__name__)

ALL_PROVIDERS = "*"

DECIMAL_FIELDS = frozenset(MONEY_FIELDS) | {"profit_margin", "roi", "delivery_rate", "avg_delivery_time_days"}


@dataclass(frozen=True)
class CacheKey:
    operation_id: str
    period: str
    provider: Optional[str] = None

    @property
    def provider_key(self) -> str:
        return self.provider or ALL_PROVIDERS


@dataclass
class CachedSnapshot:
    metrics: DashboardMetrics
    calculated_at: datetime
    valid_until: datetime
    fresh: bool


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _aware_utc(value: datetime) -> datetime:
    """Stored timestamps are naive UTC; callers always see aware UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_row(key: CacheKey, metrics: DashboardMetrics, rng: DateRange,
            calculated_at: datetime, valid_until: datetime) -> MetricsSnapshot:
    return MetricsSnapshot(
        operation_id=key.operation_id,
        period=key.period,
        provider_key=key.provider_key,
        range_start=rng.naive_start,
        range_end=rng.naive_end,
        calculated_at=calculated_at,
        valid_until=valid_until,
        revenue_series=[bucket.to_json() for bucket in metrics.revenue_series],
        degraded_components=list(metrics.degraded_components),
        **metric_values(metrics),
    )


def _from_row(row: MetricsSnapshot) -> DashboardMetrics:
    values = {}
    for name in metric_values(DashboardMetrics(base_currency=row.base_currency)):
        value = getattr(row, name)
        if name in DECIMAL_FIELDS:
            value = to_decimal(value)
        values[name] = value

    return DashboardMetrics(
        revenue_series=[DayBucket.from_json(item) for item in (row.revenue_series or [])],
        degraded_components=list(row.degraded_components or []),
        **values,
    )


class MetricsCache:
    """
    Relational snapshot cache.

    Args:
        session_factory: Sessions for metrics_snapshots
        ttl_seconds: TTL per period tag
        default_ttl_seconds: TTL for tags not in `ttl_seconds`
        degraded_ttl_seconds: Upper bound on the TTL of snapshots computed
            with a degraded component
        clock: Injectable "now" (aware UTC)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ttl_seconds: Optional[Dict[str, int]] = None,
        default_ttl_seconds: int = 3600,
        degraded_ttl_seconds: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session_factory = session_factory
        self.ttl_seconds = dict(ttl_seconds or {})
        self.default_ttl_seconds = default_ttl_seconds
        self.degraded_ttl_seconds = degraded_ttl_seconds
        self._clock = clock or _utc_now

    def ttl_for(self, period: str, degraded: bool = False) -> timedelta:
        seconds = self.ttl_seconds.get(str(period), self.default_ttl_seconds)
        if degraded and self.degraded_ttl_seconds is not None:
            seconds = min(seconds, self.degraded_ttl_seconds)
        return timedelta(seconds=seconds)

    async def get(self, key: CacheKey) -> Optional[CachedSnapshot]:
        """Snapshot for `key`, fresh or stale; None when absent or unreadable."""
        try:
            async with self.session_factory() as session:
                row = (
                    await session.execute(
                        select(MetricsSnapshot).where(
                            MetricsSnapshot.operation_id == key.operation_id,
                            MetricsSnapshot.period == key.period,
                            MetricsSnapshot.provider_key == key.provider_key,
                        )
                    )
                ).scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.warning("Snapshot cache read failed, treating as miss", key=str(key), error=str(e))
            return None

        if row is None:
            return None

        now = _naive_utc(self._clock())
        return CachedSnapshot(
            metrics=_from_row(row),
            calculated_at=_aware_utc(row.calculated_at),
            valid_until=_aware_utc(row.valid_until),
            fresh=_naive_utc(row.valid_until) > now,
        )

    async def put(
        self,
        key: CacheKey,
        metrics: DashboardMetrics,
        rng: DateRange,
        ttl: Optional[timedelta] = None,
    ) -> Optional[CachedSnapshot]:
        """
        Replace the snapshot for `key`.

        Snapshots carrying degraded components expire after the shorter
        degraded TTL unless `ttl` is given.

        A unique violation from a concurrent writer is retried once. Write
        failures are logged and reported as None; the caller still has the
        computed metrics.
        """
        ttl = ttl or self.ttl_for(key.period, degraded=bool(metrics.degraded_components))
        calculated_at = _naive_utc(self._clock())
        valid_until = calculated_at + ttl

        for attempt in (1, 2):
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        await session.execute(
                            delete(MetricsSnapshot).where(
                                MetricsSnapshot.operation_id == key.operation_id,
                                MetricsSnapshot.period == key.period,
                                MetricsSnapshot.provider_key == key.provider_key,
                            )
                        )
                        session.add(_to_row(key, metrics, rng, calculated_at, valid_until))
                break
            except IntegrityError as e:
                if attempt == 2:
                    logger.error("Snapshot write lost to concurrent writers", key=str(key), error=str(e))
                    return None
                logger.info("Concurrent snapshot write detected, retrying", key=str(key))
            except SQLAlchemyError as e:
                logger.error("Snapshot write failed", key=str(key), error=str(e))
                return None

        logger.debug("Snapshot stored", key=str(key), ttl_seconds=int(ttl.total_seconds()))
        return CachedSnapshot(
            metrics=metrics,
            calculated_at=_aware_utc(calculated_at),
            valid_until=_aware_utc(valid_until),
            fresh=True,
        )

    async def invalidate_all(self) -> int:
        return await self._delete()

    async def invalidate_operation(self, operation_id: str) -> int:
        """Drop every snapshot of one operation, e.g. after an order sync."""
        return await self._delete(MetricsSnapshot.operation_id == operation_id)

    async def _delete(self, *conditions) -> int:
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(delete(MetricsSnapshot).where(*conditions))
        removed = result.rowcount or 0
        logger.info("Snapshots invalidated", removed=removed, scoped=bool(conditions))
        return removed
