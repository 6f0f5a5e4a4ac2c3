"""
Metrics Service

Request entry point:

    cache lookup (ByPeriod only)
      hit   -> cached snapshot, display layer refreshed with current rates
      stale -> synchronous recompute, overwrite
      miss  -> compute, put
    bypass (ByRange / product filter) -> compute, never read or written

    compute = (aggregate || previous-period totals || costs) -> compose
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from opmetrics.metrics.aggregator import DayBucket, OrderAggregator, ProviderStats, StatusShare
from opmetrics.metrics.composer import DashboardMetrics, compose, empty_metrics, reference_costs, to_display
from opmetrics.metrics.costs import (
    CostCalculator,
    MarketingCostCalculator,
    ProductCostCalculator,
    gather_all,
)
from opmetrics.metrics.currency import CurrencyNormalizer, RateSet
from opmetrics.metrics.errors import NoOperationFound, TransientStoreFailure, UnknownCurrencyError
from opmetrics.metrics.periods import DateRange, PeriodResolver
from opmetrics.metrics.query import (
    MetricsQuery,
    OperationContext,
    load_operation_context,
    resolve_query,
)
from opmetrics.metrics.snapshot_cache import CacheKey, MetricsCache
from opmetrics.monitoring import CACHE_LOOKUPS, METRICS_COMPUTE_SECONDS

logger = structlog.get_logger(__name__)


@dataclass
class MetricsResult:
    """Metrics plus everything the dashboard shows around them."""
    operation_id: Optional[str]
    metrics: DashboardMetrics
    cache_status: str  # hit, stale, miss, bypass, empty
    rates: RateSet
    display_currency: str
    display: Dict[str, Decimal]
    period: Optional[str] = None
    range: Optional[DateRange] = None
    calculated_at: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    reference_costs: Dict[str, Decimal] = field(default_factory=dict)


@dataclass
class SeriesResult:
    operation_id: Optional[str]
    series: List[DayBucket] = field(default_factory=list)
    range: Optional[DateRange] = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MetricsService:
    """Dashboard metrics for one operation per call."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        resolver: PeriodResolver,
        aggregator: OrderAggregator,
        costs: CostCalculator,
        cache: MetricsCache,
        normalizer: CurrencyNormalizer,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session_factory = session_factory
        self.resolver = resolver
        self.aggregator = aggregator
        self.costs = costs
        self.cache = cache
        self.normalizer = normalizer
        self._clock = clock or _utc_now

    # =========================================================================
    # Metrics
    # =========================================================================

    async def get_metrics(
        self,
        operation_id: Optional[str],
        request,
        display_currency: Optional[str] = None,
    ) -> MetricsResult:
        """
        Metrics for a ByPeriod or ByRange request.

        Raises:
            TransientStoreFailure: the order store could not be read; nothing is cached
            InvalidPeriodError: unknown tag or inverted range
        """
        try:
            context = await self.load_context(operation_id)
        except NoOperationFound:
            logger.info("No operation found, returning empty metrics", operation_id=operation_id)
            rates = await self.normalizer.current_rates()
            return self._present(
                None, empty_metrics(rates.reference), "empty", rates, display_currency
            )

        query = resolve_query(context, request, self.resolver)
        log = logger.bind(
            operation_id=context.operation_id,
            period=query.period.value if query.period else "custom",
            provider=query.provider,
        )

        if not query.cacheable:
            CACHE_LOOKUPS.labels(result="bypass").inc()
            log.info("Snapshot cache bypassed", product_id=query.product_id)
            metrics, rates = await self._compute(query)
            return self._present(
                context.operation_id, metrics, "bypass", rates, display_currency,
                query=query, calculated_at=self._clock(),
            )

        key = CacheKey(context.operation_id, query.period.value, query.provider)
        cached = await self.cache.get(key)

        if cached is not None and cached.fresh:
            CACHE_LOOKUPS.labels(result="hit").inc()
            log.info("Snapshot cache hit", valid_until=cached.valid_until.isoformat())
            rates = await self.normalizer.current_rates()
            return self._present(
                context.operation_id, cached.metrics, "hit", rates, display_currency,
                query=query, calculated_at=cached.calculated_at, valid_until=cached.valid_until,
            )

        status = "stale" if cached is not None else "miss"
        CACHE_LOOKUPS.labels(result=status).inc()
        log.info(f"Snapshot cache {status}, recomputing")

        metrics, rates = await self._compute(query)
        stored = await self.cache.put(key, metrics, query.range)

        return self._present(
            context.operation_id, metrics, status, rates, display_currency,
            query=query,
            calculated_at=stored.calculated_at if stored else self._clock(),
            valid_until=stored.valid_until if stored else None,
        )

    async def _compute(self, query: MetricsQuery):
        previous_range = self.resolver.previous(query.range)

        with METRICS_COMPUTE_SECONDS.time():
            aggregate, previous, costs = await gather_all(
                self.aggregator.aggregate(query),
                self.aggregator.period_totals(query, previous_range),
                self.costs.compute(query),
            )

        metrics = compose(aggregate, costs, previous)
        if query.range.fallback_zone:
            metrics.degraded_components.append("timezone")

        if metrics.status_total != metrics.total_orders:
            logger.error(
                "Status buckets do not reconcile with total orders",
                operation_id=query.context.operation_id,
                bucketed=metrics.status_total,
                total=metrics.total_orders,
            )

        logger.info(
            "Metrics computed",
            operation_id=query.context.operation_id,
            total_orders=metrics.total_orders,
            delivered_revenue=str(metrics.delivered_revenue),
            cost_strategy=costs.cost_strategy,
            degraded=metrics.degraded_components or None,
        )
        return metrics, costs.rates

    def _present(
        self,
        operation_id: Optional[str],
        metrics: DashboardMetrics,
        cache_status: str,
        rates: RateSet,
        display_currency: Optional[str],
        query: Optional[MetricsQuery] = None,
        calculated_at: Optional[datetime] = None,
        valid_until: Optional[datetime] = None,
    ) -> MetricsResult:
        currency = (display_currency or rates.reference).upper()
        try:
            display = to_display(metrics, rates, currency)
            in_reference = reference_costs(metrics, rates)
        except UnknownCurrencyError as e:
            if display_currency:
                raise
            logger.warning(
                "No rate for base currency, displaying in base currency",
                base_currency=metrics.base_currency,
                missing=e.currency,
            )
            currency = metrics.base_currency
            display = to_display(metrics, rates, currency)
            in_reference = {}

        return MetricsResult(
            operation_id=operation_id,
            metrics=metrics,
            cache_status=cache_status,
            rates=rates,
            display_currency=currency,
            display=display,
            period=query.period.value if query and query.period else None,
            range=query.range if query else None,
            calculated_at=calculated_at,
            valid_until=valid_until,
            reference_costs=in_reference,
        )

    # =========================================================================
    # Charts and breakdowns
    # =========================================================================

    async def revenue_over_time(self, operation_id: Optional[str], request) -> SeriesResult:
        """Delivered-only revenue per local day."""
        try:
            context = await self.load_context(operation_id)
        except NoOperationFound:
            return SeriesResult(operation_id=None)

        query = resolve_query(context, request, self.resolver)
        series = await self.aggregator.day_series(query, delivered_only=True)
        return SeriesResult(operation_id=context.operation_id, series=series, range=query.range)

    async def orders_by_status(self, operation_id: Optional[str], request) -> List[StatusShare]:
        try:
            context = await self.load_context(operation_id)
        except NoOperationFound:
            return []
        return await self.aggregator.orders_by_status(resolve_query(context, request, self.resolver))

    async def provider_comparison(self, operation_id: Optional[str]) -> List[ProviderStats]:
        try:
            context = await self.load_context(operation_id)
        except NoOperationFound:
            return []
        return await self.aggregator.provider_comparison(context)

    async def invalidate(self, operation_id: Optional[str] = None) -> int:
        if operation_id:
            return await self.cache.invalidate_operation(operation_id)
        return await self.cache.invalidate_all()

    async def load_context(self, operation_id: Optional[str]) -> OperationContext:
        try:
            async with self.session_factory() as session:
                return await load_operation_context(session, operation_id)
        except (SQLAlchemyError, OSError) as e:
            logger.error("Operation lookup failed", operation_id=operation_id, error=str(e))
            raise TransientStoreFailure("operation_lookup", e) from e


def create_metrics_service(
    settings,
    session_factory: async_sessionmaker[AsyncSession],
    rate_provider,
    ads_client=None,
    shared_cache=None,
    clock: Optional[Callable[[], datetime]] = None,
) -> MetricsService:
    """Wire the components from application settings."""
    normalizer = CurrencyNormalizer(
        provider=rate_provider,
        session_factory=session_factory,
        reference=settings.currency.reference_currency,
        live_ttl_seconds=settings.currency.live_cache_ttl_seconds,
        emergency_rates=settings.currency.emergency_rates,
        shared_cache=shared_cache,
        clock=clock,
    )
    costs = CostCalculator(
        products=ProductCostCalculator(session_factory),
        marketing=MarketingCostCalculator(
            session_factory,
            normalizer,
            ads_client=ads_client,
            fetch_timeout_seconds=settings.ads.fetch_timeout_seconds,
        ),
        normalizer=normalizer,
    )
    return MetricsService(
        session_factory=session_factory,
        resolver=PeriodResolver(settings.metrics.default_timezone, clock=clock),
        aggregator=OrderAggregator(session_factory),
        costs=costs,
        cache=MetricsCache(
            session_factory,
            ttl_seconds=settings.metrics.ttl_seconds,
            default_ttl_seconds=settings.metrics.default_ttl_seconds,
            degraded_ttl_seconds=settings.metrics.degraded_ttl_seconds,
            clock=clock,
        ),
        normalizer=normalizer,
        clock=clock,
    )
