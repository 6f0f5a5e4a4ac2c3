"""
Cost Calculator

Two independent sub-computations, run concurrently:

Product + shipping cost (store-backed, never silently zeroed)
    FastCostAggregation      one aggregated join orders x items x linked costs
    RowByRowCostAggregation  per-order / per-SKU lookups, used only when the
                             aggregated join reports an OptimizedQueryFailure

Marketing cost (external, degradable)
    manual AdSpendEntry rows converted with their own day's rates, plus
    ad-network spend fetched per account under a timeout

All outputs are in the operation's base currency.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import timezone
from decimal import Decimal
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from opmetrics.database.models import AdCampaign, AdSpendEntry, LinkedProductCost, Order, OrderItem
from opmetrics.metrics.aggregator import DELIVERED_STATUSES, RETURNED_STATUSES, normalize_status
from opmetrics.metrics.currency import CurrencyNormalizer, RateSet, convert, money, to_decimal
from opmetrics.metrics.errors import (
    DegradedExternalFetch,
    OptimizedQueryFailure,
    TransientStoreFailure,
    UnknownCurrencyError,
)
from opmetrics.metrics.periods import ad_network_preset
from opmetrics.metrics.query import MetricsQuery, order_conditions
from opmetrics.monitoring import DEGRADED_FETCHES

logger = structlog.get_logger(__name__)

ZERO = Decimal("0")


async def gather_all(*aws):
    """
    Like asyncio.gather, but every branch finishes before the first error
    is re-raised, so a failed computation leaves nothing running behind it.
    """
    results = await asyncio.gather(*aws, return_exceptions=True)
    for outcome in results:
        if isinstance(outcome, BaseException):
            raise outcome
    return results


# =============================================================================
# Result types
# =============================================================================

@dataclass
class ProductCostTotals:
    product_costs: Decimal = ZERO
    shipping_costs: Decimal = ZERO
    return_handling_costs: Decimal = ZERO
    unlinked_items: int = 0
    strategy: str = "aggregated"

    @property
    def combined_costs(self) -> Decimal:
        return self.product_costs + self.shipping_costs


@dataclass(frozen=True)
class StrategyOutcome:
    """Either totals or the reason the strategy could not produce them."""
    totals: Optional[ProductCostTotals] = None
    failure: Optional[OptimizedQueryFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None


@dataclass
class MarketingCosts:
    manual: Decimal = ZERO
    network: Decimal = ZERO
    degraded_components: List[str] = field(default_factory=list)

    @property
    def total(self) -> Decimal:
        return self.manual + self.network


@dataclass
class CostBreakdown:
    """Cost Calculator output, in base currency."""
    base_currency: str
    reference_currency: str
    product_costs: Decimal
    shipping_costs: Decimal
    return_handling_costs: Decimal
    marketing_costs: Decimal
    manual_marketing_costs: Decimal
    network_marketing_costs: Decimal
    unlinked_items: int
    rates: RateSet
    cost_strategy: str = "aggregated"
    degraded_components: List[str] = field(default_factory=list)

    @property
    def combined_costs(self) -> Decimal:
        return self.product_costs + self.shipping_costs

    @property
    def total_costs(self) -> Decimal:
        return self.combined_costs + self.marketing_costs + self.return_handling_costs


# =============================================================================
# Product + shipping cost strategies
# =============================================================================

def _cost_order_filter():
    status = func.lower(func.trim(Order.status))
    is_delivered = status.in_(sorted(DELIVERED_STATUSES))
    is_returned = status.in_(sorted(RETURNED_STATUSES))
    return is_delivered, is_returned


class CostAggregationStrategy(ABC):
    """Computes product, shipping and return-handling totals for a query."""

    name: str = "base"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @abstractmethod
    async def run(self, query: MetricsQuery) -> StrategyOutcome:
        ...


class FastCostAggregation(CostAggregationStrategy):
    """Single aggregated join; failures are reported, not raised."""

    name = "aggregated"

    async def run(self, query: MetricsQuery) -> StrategyOutcome:
        try:
            async with self.session_factory() as session:
                row = (await session.execute(self.statement(query))).one()
            totals = ProductCostTotals(
                product_costs=money(row.product_costs),
                shipping_costs=money(row.shipping_costs),
                return_handling_costs=money(row.return_handling_costs),
                unlinked_items=int(row.unlinked_items or 0),
                strategy=self.name,
            )
        except (SQLAlchemyError, OSError, ValueError, TypeError, ArithmeticError) as e:
            return StrategyOutcome(failure=OptimizedQueryFailure(f"{type(e).__name__}: {e}"))
        return StrategyOutcome(totals=totals)

    def statement(self, query: MetricsQuery):
        is_delivered, is_returned = _cost_order_filter()
        qty = OrderItem.quantity

        def delivered_sum(column):
            return func.coalesce(
                func.sum(case((is_delivered, qty * func.coalesce(column, 0)), else_=0)), 0
            )

        conditions = list(order_conditions(query))
        conditions.append(or_(is_delivered, is_returned))
        if query.product_id:
            conditions.append(OrderItem.product_id == query.product_id)

        return (
            select(
                delivered_sum(LinkedProductCost.cost_price).label("product_costs"),
                delivered_sum(LinkedProductCost.shipping_cost).label("shipping_costs"),
                func.coalesce(
                    func.sum(case((is_returned, qty * func.coalesce(LinkedProductCost.handling_fee, 0)), else_=0)),
                    0,
                ).label("return_handling_costs"),
                func.sum(case((LinkedProductCost.id.is_(None), 1), else_=0)).label("unlinked_items"),
            )
            .select_from(Order)
            .join(OrderItem, OrderItem.order_id == Order.id)
            .outerjoin(
                LinkedProductCost,
                and_(
                    LinkedProductCost.operation_id == Order.operation_id,
                    LinkedProductCost.sku == OrderItem.sku,
                    LinkedProductCost.is_active.is_(True),
                ),
            )
            .where(and_(*conditions))
        )


class RowByRowCostAggregation(CostAggregationStrategy):
    """
    Degraded-mode recovery: one query per order and per distinct SKU.

    Malformed rows are skipped with a warning. Store failures still raise
    TransientStoreFailure; product costs are never silently zeroed.
    """

    name = "row_by_row"

    async def run(self, query: MetricsQuery) -> StrategyOutcome:
        is_delivered, is_returned = _cost_order_filter()
        totals = ProductCostTotals(strategy=self.name)
        links: Dict[str, Optional[LinkedProductCost]] = {}
        skipped = 0

        try:
            async with self.session_factory() as session:
                orders = (
                    await session.execute(
                        select(Order.id, Order.status).where(
                            and_(*order_conditions(query)), or_(is_delivered, is_returned)
                        )
                    )
                ).all()

                for order in orders:
                    delivered = normalize_status(order.status) in DELIVERED_STATUSES
                    item_filter = [OrderItem.order_id == order.id]
                    if query.product_id:
                        item_filter.append(OrderItem.product_id == query.product_id)
                    items = (await session.execute(select(OrderItem).where(*item_filter))).scalars().all()

                    for item in items:
                        if item.sku not in links:
                            links[item.sku] = await self._linked_cost(session, query, item.sku)
                        link = links[item.sku]
                        if link is None:
                            totals.unlinked_items += 1
                            continue

                        try:
                            quantity = int(item.quantity)
                            if quantity < 0:
                                raise ValueError(f"negative quantity {quantity}")
                            if delivered:
                                totals.product_costs += quantity * to_decimal(link.cost_price)
                                totals.shipping_costs += quantity * to_decimal(link.shipping_cost)
                            else:
                                totals.return_handling_costs += quantity * to_decimal(link.handling_fee)
                        except (TypeError, ValueError) as e:
                            skipped += 1
                            logger.warning(
                                "Skipping malformed order item",
                                order_id=order.id,
                                sku=item.sku,
                                error=str(e),
                            )
        except (SQLAlchemyError, OSError) as e:
            logger.error(
                "Order store query failed",
                stage="product_costs_row_by_row",
                operation_id=query.context.operation_id,
                error=str(e),
            )
            raise TransientStoreFailure("product_costs", e) from e

        totals.product_costs = money(totals.product_costs)
        totals.shipping_costs = money(totals.shipping_costs)
        totals.return_handling_costs = money(totals.return_handling_costs)
        if skipped:
            logger.warning("Row-by-row cost aggregation skipped items", skipped=skipped)
        return StrategyOutcome(totals=totals)

    async def _linked_cost(self, session: AsyncSession, query: MetricsQuery, sku: Optional[str]):
        if not sku:
            return None
        return (
            await session.execute(
                select(LinkedProductCost).where(
                    LinkedProductCost.operation_id == query.context.operation_id,
                    LinkedProductCost.sku == sku,
                    LinkedProductCost.is_active.is_(True),
                )
            )
        ).scalar_one_or_none()


class ProductCostCalculator:
    """Runs the aggregated strategy and falls back to row-by-row on failure."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        fast: Optional[CostAggregationStrategy] = None,
        fallback: Optional[CostAggregationStrategy] = None,
    ):
        self.fast = fast or FastCostAggregation(session_factory)
        self.fallback = fallback or RowByRowCostAggregation(session_factory)

    async def compute(self, query: MetricsQuery) -> ProductCostTotals:
        outcome = await self.fast.run(query)
        if outcome.ok:
            return outcome.totals

        DEGRADED_FETCHES.labels(component="product_costs").inc()
        logger.warning(
            "Aggregated cost query failed, using row-by-row aggregation",
            operation_id=query.context.operation_id,
            reason=outcome.failure.reason,
        )

        recovered = await self.fallback.run(query)
        if not recovered.ok:
            raise TransientStoreFailure("product_costs", recovered.failure)
        return recovered.totals


# =============================================================================
# Marketing cost
# =============================================================================

class MarketingCostCalculator:
    """Manual ad spend plus selected-campaign spend from the ad network."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        normalizer: CurrencyNormalizer,
        ads_client=None,
        fetch_timeout_seconds: float = 10.0,
    ):
        self.session_factory = session_factory
        self.normalizer = normalizer
        self.ads_client = ads_client
        self.fetch_timeout_seconds = fetch_timeout_seconds

    async def compute(self, query: MetricsQuery) -> MarketingCosts:
        (manual, manual_degraded), (network, network_degraded) = await gather_all(
            self.manual_spend(query),
            self.network_spend(query),
        )
        return MarketingCosts(
            manual=money(manual),
            network=money(network),
            degraded_components=manual_degraded + network_degraded,
        )

    async def manual_spend(self, query: MetricsQuery):
        """Sum of AdSpendEntry rows, each converted with its entry-date rates."""
        try:
            async with self.session_factory() as session:
                entries = (
                    await session.execute(
                        select(AdSpendEntry.amount, AdSpendEntry.currency, AdSpendEntry.spend_date).where(
                            AdSpendEntry.operation_id == query.context.operation_id,
                            AdSpendEntry.spend_date >= query.range.naive_start,
                            AdSpendEntry.spend_date <= query.range.naive_end,
                        )
                    )
                ).all()
        except (SQLAlchemyError, OSError) as e:
            logger.error("Ad spend query failed", operation_id=query.context.operation_id, error=str(e))
            raise TransientStoreFailure("manual_ad_spend", e) from e

        if not entries:
            return ZERO, []

        zone = ZoneInfo(query.range.timezone)

        def local_day(ts):
            return ts.replace(tzinfo=timezone.utc).astimezone(zone).date()

        rate_sets = await self.normalizer.rates_for_dates({local_day(e.spend_date) for e in entries})

        total = ZERO
        degraded: List[str] = []
        base = query.context.base_currency
        for entry in entries:
            try:
                total += convert(entry.amount, entry.currency, base, rate_sets[local_day(entry.spend_date)])
            except UnknownCurrencyError as e:
                if "manual_ad_spend" not in degraded:
                    degraded.append("manual_ad_spend")
                DEGRADED_FETCHES.labels(component="manual_ad_spend").inc()
                logger.warning("Skipping ad spend entry with unknown currency", currency=e.currency)
        return total, degraded

    async def network_spend(self, query: MetricsQuery):
        """One concurrent fetch per ad account; a failed account counts as zero."""
        if self.ads_client is None:
            return ZERO, []

        try:
            async with self.session_factory() as session:
                campaigns = (
                    await session.execute(
                        select(AdCampaign.account_id, AdCampaign.campaign_id).where(
                            AdCampaign.operation_id == query.context.operation_id,
                            AdCampaign.is_selected.is_(True),
                        )
                    )
                ).all()
        except (SQLAlchemyError, OSError) as e:
            logger.error("Ad campaign query failed", operation_id=query.context.operation_id, error=str(e))
            raise TransientStoreFailure("ad_campaigns", e) from e

        by_account: Dict[str, List[str]] = defaultdict(list)
        for campaign in campaigns:
            by_account[campaign.account_id].append(campaign.campaign_id)
        if not by_account:
            return ZERO, []

        preset = ad_network_preset(query.period) if query.period else None
        accounts = sorted(by_account)
        results = await asyncio.gather(
            *(
                asyncio.wait_for(
                    self.ads_client.fetch_selected_campaign_spend(
                        account, query.range, by_account[account], preset
                    ),
                    timeout=self.fetch_timeout_seconds,
                )
                for account in accounts
            ),
            return_exceptions=True,
        )

        rates = await self.normalizer.rate_for(query.range.end_day)
        total = ZERO
        degraded: List[str] = []
        for account, outcome in zip(accounts, results):
            error_type = type(outcome).__name__
            if isinstance(outcome, asyncio.TimeoutError):
                reason = f"timed out after {self.fetch_timeout_seconds}s"
            elif isinstance(outcome, DegradedExternalFetch):
                reason = outcome.reason
            elif isinstance(outcome, Exception):
                reason = str(outcome) or error_type
            elif isinstance(outcome, BaseException):
                # Cancellation and interpreter exits are not account failures
                raise outcome
            else:
                try:
                    total += convert(outcome.amount, outcome.currency, query.context.base_currency, rates)
                    continue
                except (UnknownCurrencyError, AttributeError, TypeError, ValueError, ArithmeticError) as e:
                    error_type = type(e).__name__
                    reason = str(e)

            if "ad_network" not in degraded:
                degraded.append("ad_network")
            DEGRADED_FETCHES.labels(component="ad_network").inc()
            logger.warning(
                "Ad network spend degraded to zero",
                component="ad_network",
                account_id=account,
                reason=reason,
                error_type=error_type,
            )

        return total, degraded


class CostCalculator:
    """Joins product costs, marketing costs and the live rate fetch."""

    def __init__(
        self,
        products: ProductCostCalculator,
        marketing: MarketingCostCalculator,
        normalizer: CurrencyNormalizer,
    ):
        self.products = products
        self.marketing = marketing
        self.normalizer = normalizer

    async def compute(self, query: MetricsQuery) -> CostBreakdown:
        product, marketing, rates = await gather_all(
            self.products.compute(query),
            self.marketing.compute(query),
            self.normalizer.current_rates(),
        )

        degraded = list(marketing.degraded_components)
        if product.strategy != FastCostAggregation.name:
            degraded.append("product_costs")
        if product.unlinked_items:
            logger.info(
                "Order items without linked costs",
                operation_id=query.context.operation_id,
                unlinked_items=product.unlinked_items,
            )

        return CostBreakdown(
            base_currency=query.context.base_currency,
            reference_currency=rates.reference,
            product_costs=product.product_costs,
            shipping_costs=product.shipping_costs,
            return_handling_costs=product.return_handling_costs,
            marketing_costs=marketing.total,
            manual_marketing_costs=marketing.manual,
            network_marketing_costs=marketing.network,
            unlinked_items=product.unlinked_items,
            rates=rates,
            cost_strategy=product.strategy,
            degraded_components=degraded,
        )
