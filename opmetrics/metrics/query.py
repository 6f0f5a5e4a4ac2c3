"""
Request Context and Query Shapes

A metrics request arrives as one of two variants:

- ByPeriod: a dashboard period tag, optionally narrowed to one provider.
  Participates in the snapshot cache.
- ByRange: explicit local dates, optionally narrowed to a provider and/or a
  product. Never cached.

Both are resolved once, against an explicit OperationContext, into a
MetricsQuery that every component consumes.
"""

from dataclasses import dataclass
from datetime import date
from typing import List, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from opmetrics.database.models import Operation, Order, OrderItem
from opmetrics.metrics.errors import InvalidPeriodError, NoOperationFound
from opmetrics.metrics.periods import DateRange, PeriodResolver, PeriodTag


@dataclass(frozen=True)
class OperationContext:
    """Resolved operation and store identifiers, injected per request."""
    operation_id: str
    store_id: str
    name: str
    base_currency: str
    timezone: Optional[str] = None


@dataclass(frozen=True)
class ByPeriod:
    tag: PeriodTag
    provider: Optional[str] = None


@dataclass(frozen=True)
class ByRange:
    start: date
    end: date
    provider: Optional[str] = None
    product_id: Optional[str] = None


@dataclass(frozen=True)
class _ProductByTag:
    """Product filter expressed with a tag; resolved into ByRange dates."""
    tag: PeriodTag
    provider: Optional[str]
    product_id: str


MetricsRequest = Union[ByPeriod, ByRange]


@dataclass(frozen=True)
class MetricsQuery:
    """Canonical internal form of a request."""
    context: OperationContext
    range: DateRange
    provider: Optional[str] = None
    product_id: Optional[str] = None
    period: Optional[PeriodTag] = None

    @property
    def cacheable(self) -> bool:
        return self.period is not None and self.product_id is None


def build_request(
    period: Optional[str] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    provider: Optional[str] = None,
    product_id: Optional[str] = None,
) -> "MetricsRequest | _ProductByTag":
    """
    Collapse loose request parameters into one variant.

    An explicit range wins over a tag. A product filter without explicit
    dates keeps its tag until `resolve_query` turns it into ByRange dates,
    so it is never cached.
    """
    if start is not None or end is not None:
        if start is None or end is None:
            raise InvalidPeriodError("Both 'from' and 'to' are required for an explicit range")
        return ByRange(start=start, end=end, provider=provider, product_id=product_id)

    tag = PeriodTag.parse(period or PeriodTag.CURRENT_MONTH.value)
    if product_id is not None:
        return _ProductByTag(tag=tag, provider=provider, product_id=product_id)
    return ByPeriod(tag=tag, provider=provider)


def resolve_query(
    context: OperationContext,
    request: "MetricsRequest | _ProductByTag",
    resolver: PeriodResolver,
) -> MetricsQuery:
    """Resolve a request variant against the operation's time zone."""
    if isinstance(request, ByPeriod):
        return MetricsQuery(
            context=context,
            range=resolver.resolve_tag(request.tag, context.timezone),
            provider=request.provider,
            period=request.tag,
        )

    if isinstance(request, _ProductByTag):
        start, end = resolver.local_days(request.tag, context.timezone)
        request = ByRange(start=start, end=end, provider=request.provider, product_id=request.product_id)

    return MetricsQuery(
        context=context,
        range=resolver.resolve_dates(request.start, request.end, context.timezone),
        provider=request.provider,
        product_id=request.product_id,
    )


async def load_operation_context(session: AsyncSession, operation_id: Optional[str]) -> OperationContext:
    """
    Look up the operation a request is scoped to.

    Raises:
        NoOperationFound: unknown or missing id
    """
    if not operation_id:
        raise NoOperationFound(operation_id)

    operation = await session.get(Operation, operation_id)
    if operation is None:
        raise NoOperationFound(operation_id)

    return OperationContext(
        operation_id=operation.id,
        store_id=operation.store_id,
        name=operation.name,
        base_currency=operation.currency.upper(),
        timezone=operation.timezone,
    )


def order_conditions(query: MetricsQuery, rng: Optional[DateRange] = None) -> List:
    """WHERE clauses shared by every order-store query."""
    rng = rng or query.range
    conditions = [
        Order.operation_id == query.context.operation_id,
        Order.order_date >= rng.naive_start,
        Order.order_date <= rng.naive_end,
    ]
    if query.provider:
        conditions.append(Order.provider == query.provider)
    if query.product_id:
        conditions.append(
            Order.id.in_(select(OrderItem.order_id).where(OrderItem.product_id == query.product_id))
        )
    return conditions
