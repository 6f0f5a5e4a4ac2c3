"""
Order Aggregator

Set-based aggregation over the order store:
- per-bucket status counts (pending, confirmed, shipped, delivered, returned, cancelled)
- total / delivered / paid revenue
- carrier acknowledgement counts for the delivery rate
- unique customers and average delivery time
- day-bucketed revenue series in the operation's time zone

Store failures surface as TransientStoreFailure; they are never turned into
zero metrics.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

import polars as pl
import structlog
from sqlalchemy import and_, case, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from opmetrics.database.models import Order, PaymentStatus
from opmetrics.metrics.currency import money, to_decimal
from opmetrics.metrics.errors import TransientStoreFailure
from opmetrics.metrics.periods import DateRange
from opmetrics.metrics.query import MetricsQuery, OperationContext, order_conditions

logger = structlog.get_logger(__name__)


class StatusBucket(str, Enum):
    """Dashboard status buckets"""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    RETURNED = "returned"
    CANCELLED = "cancelled"


DELIVERED_STATUSES = frozenset({"delivered"})
RETURNED_STATUSES = frozenset({"returned"})
CANCELLED_STATUSES = frozenset({"cancelled", "canceled", "rejected"})
SHIPPED_STATUSES = frozenset({
    "shipped", "in transit", "in_transit", "in delivery", "sent", "out_for_delivery",
})
PRE_SHIPMENT_STATUSES = frozenset({
    "pending", "confirmed", "packed", "new order", "item packed", "incident",
    "processing", "in_warehouse", "redeployment", "unpacked",
})

# Carrier confirmation codes that do not mean the carrier accepted the order
UNACCEPTED_CARRIER_CODES = frozenset({
    "", "unpacked", "pending", "new order", "rejected", "cancelled", "canceled",
})


def normalize_status(raw: Optional[str]) -> str:
    return (raw or "").strip().lower()


def bucket_for(
    status: Optional[str],
    carrier_imported: bool = False,
    carrier_confirmation: Optional[str] = None,
) -> StatusBucket:
    """
    Map a raw channel/carrier status to a dashboard bucket.

    A pre-shipment order only counts as confirmed once a carrier has
    imported it with an accepting confirmation code; the channel's own
    "confirmed" status is not enough. Unknown statuses are pending.
    """
    normalized = normalize_status(status)

    if normalized in DELIVERED_STATUSES:
        return StatusBucket.DELIVERED
    if normalized in RETURNED_STATUSES:
        return StatusBucket.RETURNED
    if normalized in CANCELLED_STATUSES:
        return StatusBucket.CANCELLED
    if normalized in SHIPPED_STATUSES:
        return StatusBucket.SHIPPED
    if normalized in PRE_SHIPMENT_STATUSES and carrier_imported:
        if normalize_status(carrier_confirmation) not in UNACCEPTED_CARRIER_CODES:
            return StatusBucket.CONFIRMED
    return StatusBucket.PENDING


@dataclass(frozen=True)
class DayBucket:
    """One local calendar day of the revenue series."""
    day: date
    revenue: Decimal
    order_count: int
    delivered_count: int = 0

    def to_json(self) -> dict:
        return {
            "day": self.day.isoformat(),
            "revenue": str(self.revenue),
            "order_count": self.order_count,
            "delivered_count": self.delivered_count,
        }

    @classmethod
    def from_json(cls, payload: dict) -> "DayBucket":
        return cls(
            day=date.fromisoformat(payload["day"]),
            revenue=to_decimal(payload["revenue"]),
            order_count=int(payload["order_count"]),
            delivered_count=int(payload.get("delivered_count", 0)),
        )


@dataclass
class OrderAggregate:
    """Aggregator output for one query."""
    status_counts: Dict[StatusBucket, int] = field(
        default_factory=lambda: {bucket: 0 for bucket in StatusBucket}
    )
    total_orders: int = 0
    total_revenue: Decimal = Decimal("0")
    delivered_revenue: Decimal = Decimal("0")
    paid_revenue: Decimal = Decimal("0")
    delivered_count: int = 0
    paid_count: int = 0
    carrier_orders: int = 0
    carrier_delivered_orders: int = 0
    unique_customers: int = 0
    avg_delivery_time_days: Decimal = Decimal("0")
    revenue_series: List[DayBucket] = field(default_factory=list)

    @property
    def total_leads(self) -> int:
        return self.total_orders


@dataclass(frozen=True)
class StatusShare:
    status: str
    count: int
    percentage: float


@dataclass(frozen=True)
class ProviderStats:
    provider: str
    total_orders: int
    delivered_orders: int
    total_revenue: Decimal
    success_rate: float


def _cents(value) -> int:
    return int(money(value) * 100)


def _from_cents(value) -> Decimal:
    return (Decimal(int(value or 0)) / 100).quantize(Decimal("0.01"))


_FRAME_SCHEMA = {
    "order_date": pl.Datetime("us"),
    "last_status_update": pl.Datetime("us"),
    "total_cents": pl.Int64,
    "status": pl.Utf8,
}


class OrderAggregator:
    """
    Runs the order-store queries for a resolved MetricsQuery.

    Each public call opens its own session so it can run concurrently with
    the cost calculator.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def aggregate(self, query: MetricsQuery) -> OrderAggregate:
        try:
            async with self.session_factory() as session:
                result = await self._status_totals(session, query)
                result.unique_customers = await self._unique_customers(session, query)
                frame = await self._order_frame(session, query, query.range)
        except (SQLAlchemyError, OSError) as e:
            raise self._store_failure("aggregate", query, e) from e

        result.revenue_series = bucket_by_local_day(frame, query.range)
        result.avg_delivery_time_days = average_delivery_days(frame)

        logger.debug(
            "Orders aggregated",
            operation_id=query.context.operation_id,
            total_orders=result.total_orders,
            delivered=result.delivered_count,
        )
        return result

    async def period_totals(self, query: MetricsQuery, rng: DateRange) -> OrderAggregate:
        """Counts and revenue only, for period-over-period comparison."""
        try:
            async with self.session_factory() as session:
                return await self._status_totals(session, query, rng)
        except (SQLAlchemyError, OSError) as e:
            raise self._store_failure("period_totals", query, e) from e

    async def day_series(self, query: MetricsQuery, delivered_only: bool = False) -> List[DayBucket]:
        try:
            async with self.session_factory() as session:
                frame = await self._order_frame(session, query, query.range)
        except (SQLAlchemyError, OSError) as e:
            raise self._store_failure("day_series", query, e) from e

        if delivered_only:
            frame = frame.filter(pl.col("status").is_in(list(DELIVERED_STATUSES)))
        return bucket_by_local_day(frame, query.range)

    async def orders_by_status(self, query: MetricsQuery) -> List[StatusShare]:
        status = func.lower(func.trim(Order.status))
        stmt = (
            select(status.label("status"), func.count(Order.id).label("orders"))
            .where(and_(*order_conditions(query)))
            .group_by(status)
            .order_by(func.count(Order.id).desc())
        )
        try:
            async with self.session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except (SQLAlchemyError, OSError) as e:
            raise self._store_failure("orders_by_status", query, e) from e

        total = sum(row.orders for row in rows)
        return [
            StatusShare(
                status=row.status or "unknown",
                count=row.orders,
                percentage=round(row.orders / total * 100, 1) if total else 0.0,
            )
            for row in rows
        ]

    async def provider_comparison(self, context: OperationContext) -> List[ProviderStats]:
        """All-time per-provider totals for an operation."""
        status = func.lower(func.trim(Order.status))
        delivered = case((status.in_(sorted(DELIVERED_STATUSES)), 1), else_=0)
        stmt = (
            select(
                Order.provider.label("provider"),
                func.count(Order.id).label("orders"),
                func.sum(delivered).label("delivered"),
                func.coalesce(
                    func.sum(case((status.in_(sorted(CANCELLED_STATUSES)), 0), else_=Order.total)), 0
                ).label("revenue"),
            )
            .where(Order.operation_id == context.operation_id)
            .group_by(Order.provider)
            .order_by(Order.provider)
        )
        try:
            async with self.session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except (SQLAlchemyError, OSError) as e:
            logger.error("Order store query failed", stage="provider_comparison",
                         operation_id=context.operation_id, error=str(e))
            raise TransientStoreFailure("provider_comparison", e) from e

        return [
            ProviderStats(
                provider=row.provider,
                total_orders=row.orders,
                delivered_orders=int(row.delivered or 0),
                total_revenue=money(row.revenue),
                success_rate=round(int(row.delivered or 0) / row.orders * 100, 1) if row.orders else 0.0,
            )
            for row in rows
        ]

    # =========================================================================
    # Queries
    # =========================================================================

    async def _status_totals(
        self,
        session: AsyncSession,
        query: MetricsQuery,
        rng: Optional[DateRange] = None,
    ) -> OrderAggregate:
        is_paid = Order.payment_status == PaymentStatus.PAID.value
        stmt = (
            select(
                Order.status,
                Order.carrier_imported,
                Order.carrier_confirmation,
                func.count(Order.id).label("orders"),
                func.coalesce(func.sum(Order.total), 0).label("revenue"),
                func.sum(case((is_paid, 1), else_=0)).label("paid_orders"),
                func.coalesce(func.sum(case((is_paid, Order.total), else_=0)), 0).label("paid_revenue"),
            )
            .where(and_(*order_conditions(query, rng)))
            .group_by(Order.status, Order.carrier_imported, Order.carrier_confirmation)
        )
        rows = (await session.execute(stmt)).all()

        result = OrderAggregate()
        for row in rows:
            bucket = bucket_for(row.status, row.carrier_imported, row.carrier_confirmation)
            orders = int(row.orders)
            revenue = to_decimal(row.revenue)

            result.status_counts[bucket] += orders
            result.total_orders += orders
            result.paid_count += int(row.paid_orders or 0)
            result.paid_revenue += to_decimal(row.paid_revenue)

            if bucket is not StatusBucket.CANCELLED:
                result.total_revenue += revenue
            if bucket is StatusBucket.DELIVERED:
                result.delivered_count += orders
                result.delivered_revenue += revenue
            if row.carrier_imported:
                result.carrier_orders += orders
                if bucket is StatusBucket.DELIVERED:
                    result.carrier_delivered_orders += orders

        result.total_revenue = money(result.total_revenue)
        result.delivered_revenue = money(result.delivered_revenue)
        result.paid_revenue = money(result.paid_revenue)
        return result

    async def _unique_customers(self, session: AsyncSession, query: MetricsQuery) -> int:
        stmt = (
            select(func.count(func.distinct(Order.customer_id)))
            .where(and_(*order_conditions(query)), Order.customer_id.is_not(None))
        )
        return int((await session.execute(stmt)).scalar() or 0)

    async def _order_frame(self, session: AsyncSession, query: MetricsQuery, rng: DateRange) -> pl.DataFrame:
        stmt = (
            select(Order.order_date, Order.last_status_update, Order.total, Order.status)
            .where(and_(*order_conditions(query, rng)))
        )
        rows = (await session.execute(stmt)).all()
        return pl.DataFrame(
            [
                (row.order_date, row.last_status_update, _cents(row.total), normalize_status(row.status))
                for row in rows
            ],
            schema=_FRAME_SCHEMA,
            orient="row",
        )

    def _store_failure(self, stage: str, query: MetricsQuery, error: BaseException) -> TransientStoreFailure:
        logger.error(
            "Order store query failed",
            stage=stage,
            operation_id=query.context.operation_id,
            error=str(error),
            error_type=type(error).__name__,
        )
        return TransientStoreFailure(stage, error)


# =============================================================================
# Frame transforms
# =============================================================================

def bucket_by_local_day(frame: pl.DataFrame, rng: DateRange) -> List[DayBucket]:
    """
    Project naive-UTC order timestamps into the range's zone, truncate to
    the local date and sum per day. Every day of the range is present.
    """
    days = pl.DataFrame(
        {"day": pl.date_range(rng.start_day, rng.end_day, interval="1d", eager=True)}
    )

    per_day = (
        frame.with_columns(
            pl.col("order_date")
            .dt.replace_time_zone("UTC")
            .dt.convert_time_zone(rng.timezone)
            .dt.date()
            .alias("day"),
            pl.when(pl.col("status").is_in(list(CANCELLED_STATUSES)))
            .then(0)
            .otherwise(pl.col("total_cents"))
            .alias("revenue_cents"),
            pl.col("status").is_in(list(DELIVERED_STATUSES)).cast(pl.Int64).alias("is_delivered"),
        )
        .group_by("day")
        .agg(
            pl.col("revenue_cents").sum().alias("revenue_cents"),
            pl.len().alias("order_count"),
            pl.col("is_delivered").sum().alias("delivered_count"),
        )
    )

    series = (
        days.join(per_day, on="day", how="left")
        .with_columns(
            pl.col("revenue_cents").fill_null(0),
            pl.col("order_count").fill_null(0),
            pl.col("delivered_count").fill_null(0),
        )
        .sort("day")
    )

    return [
        DayBucket(
            day=row["day"],
            revenue=_from_cents(row["revenue_cents"]),
            order_count=int(row["order_count"]),
            delivered_count=int(row["delivered_count"]),
        )
        for row in series.iter_rows(named=True)
    ]


def average_delivery_days(frame: pl.DataFrame) -> Decimal:
    """Mean days from order to last status update, delivered orders only."""
    durations = (
        frame.filter(
            pl.col("status").is_in(list(DELIVERED_STATUSES))
            & pl.col("last_status_update").is_not_null()
        )
        .select(
            ((pl.col("last_status_update") - pl.col("order_date")).dt.total_seconds() / 86400)
            .alias("days")
        )
    )
    if durations.height == 0:
        return Decimal("0.00")

    mean = durations["days"].mean()
    if mean is None:
        return Decimal("0.00")
    return money(Decimal(repr(max(mean, 0.0))))
