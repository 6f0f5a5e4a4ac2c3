"""
Metrics Composer

Pure functions combining aggregator and cost outputs into dashboard metrics.
Every ratio with a zero denominator is 0, never an error or NaN.
"""

from dataclasses import dataclass, field, fields
from decimal import Decimal
from typing import Dict, List, Optional

from opmetrics.metrics.aggregator import DayBucket, OrderAggregate, StatusBucket
from opmetrics.metrics.costs import CostBreakdown
from opmetrics.metrics.currency import RateSet, convert, money

ZERO = Decimal("0")

MONEY_FIELDS = (
    "total_revenue",
    "delivered_revenue",
    "paid_revenue",
    "average_order_value",
    "product_costs",
    "shipping_costs",
    "combined_costs",
    "marketing_costs",
    "return_handling_costs",
    "total_costs",
    "profit",
    "cpa_per_delivered",
    "cpa_per_lead",
)

COST_FIELDS = (
    "product_costs",
    "shipping_costs",
    "combined_costs",
    "marketing_costs",
    "return_handling_costs",
    "total_costs",
)


@dataclass
class DashboardMetrics:
    """Composed metrics; monetary fields in `base_currency`."""
    base_currency: str

    total_orders: int = 0
    pending_orders: int = 0
    confirmed_orders: int = 0
    shipped_orders: int = 0
    delivered_orders: int = 0
    returned_orders: int = 0
    cancelled_orders: int = 0
    paid_orders: int = 0
    carrier_orders: int = 0
    carrier_delivered_orders: int = 0

    total_revenue: Decimal = ZERO
    delivered_revenue: Decimal = ZERO
    paid_revenue: Decimal = ZERO
    average_order_value: Decimal = ZERO

    product_costs: Decimal = ZERO
    shipping_costs: Decimal = ZERO
    combined_costs: Decimal = ZERO
    marketing_costs: Decimal = ZERO
    return_handling_costs: Decimal = ZERO
    total_costs: Decimal = ZERO

    profit: Decimal = ZERO
    profit_margin: Decimal = ZERO
    roi: Decimal = ZERO
    cpa_per_delivered: Decimal = ZERO
    cpa_per_lead: Decimal = ZERO
    delivery_rate: Decimal = ZERO

    unique_customers: int = 0
    avg_delivery_time_days: Decimal = ZERO
    unlinked_items: int = 0

    revenue_growth: Optional[float] = None
    orders_growth: Optional[float] = None

    revenue_series: List[DayBucket] = field(default_factory=list)
    degraded_components: List[str] = field(default_factory=list)

    @property
    def status_total(self) -> int:
        return (
            self.pending_orders
            + self.confirmed_orders
            + self.shipped_orders
            + self.delivered_orders
            + self.returned_orders
            + self.cancelled_orders
        )


def safe_div(numerator, denominator) -> Decimal:
    """numerator / denominator, or 0 when the denominator is 0."""
    denominator = Decimal(denominator)
    if denominator == 0:
        return ZERO
    return Decimal(numerator) / denominator


def percentage(numerator, denominator) -> Decimal:
    return money(safe_div(numerator, denominator) * 100)


def growth(current, previous) -> Optional[float]:
    """Percent change vs. the previous period; None without a baseline."""
    previous = Decimal(previous)
    if previous == 0:
        return None
    return round(float((Decimal(current) - previous) / previous * 100), 2)


def compose(
    aggregate: OrderAggregate,
    costs: CostBreakdown,
    previous: Optional[OrderAggregate] = None,
) -> DashboardMetrics:
    counts = aggregate.status_counts
    combined = costs.combined_costs
    marketing = costs.marketing_costs
    returns = costs.return_handling_costs
    total_costs = combined + marketing + returns
    revenue = aggregate.delivered_revenue
    profit = revenue - combined - marketing - returns

    return DashboardMetrics(
        base_currency=costs.base_currency,
        total_orders=aggregate.total_orders,
        pending_orders=counts[StatusBucket.PENDING],
        confirmed_orders=counts[StatusBucket.CONFIRMED],
        shipped_orders=counts[StatusBucket.SHIPPED],
        delivered_orders=counts[StatusBucket.DELIVERED],
        returned_orders=counts[StatusBucket.RETURNED],
        cancelled_orders=counts[StatusBucket.CANCELLED],
        paid_orders=aggregate.paid_count,
        carrier_orders=aggregate.carrier_orders,
        carrier_delivered_orders=aggregate.carrier_delivered_orders,
        total_revenue=money(aggregate.total_revenue),
        delivered_revenue=money(revenue),
        paid_revenue=money(aggregate.paid_revenue),
        average_order_value=money(safe_div(revenue, aggregate.delivered_count)),
        product_costs=money(costs.product_costs),
        shipping_costs=money(costs.shipping_costs),
        combined_costs=money(combined),
        marketing_costs=money(marketing),
        return_handling_costs=money(returns),
        total_costs=money(total_costs),
        profit=money(profit),
        profit_margin=percentage(profit, revenue),
        roi=percentage(revenue - total_costs, total_costs),
        cpa_per_delivered=money(safe_div(marketing, aggregate.delivered_count)),
        cpa_per_lead=money(safe_div(marketing, aggregate.total_leads)),
        delivery_rate=percentage(aggregate.carrier_delivered_orders, aggregate.carrier_orders),
        unique_customers=aggregate.unique_customers,
        avg_delivery_time_days=aggregate.avg_delivery_time_days,
        unlinked_items=costs.unlinked_items,
        revenue_growth=growth(aggregate.total_revenue, previous.total_revenue) if previous else None,
        orders_growth=growth(aggregate.total_orders, previous.total_orders) if previous else None,
        revenue_series=list(aggregate.revenue_series),
        degraded_components=list(costs.degraded_components),
    )


def empty_metrics(base_currency: str = "EUR") -> DashboardMetrics:
    """The valid "no operation / no data yet" answer."""
    return DashboardMetrics(base_currency=base_currency)


def to_display(metrics: DashboardMetrics, rates: RateSet, display_currency: str) -> Dict[str, Decimal]:
    """Monetary fields converted from base to display currency."""
    display_currency = display_currency.upper()
    return {
        name: money(convert(getattr(metrics, name), metrics.base_currency, display_currency, rates))
        for name in MONEY_FIELDS
    }


def reference_costs(metrics: DashboardMetrics, rates: RateSet) -> Dict[str, Decimal]:
    """Cost breakdown in the rate set's reference currency."""
    return {
        name: money(convert(getattr(metrics, name), metrics.base_currency, rates.reference, rates))
        for name in COST_FIELDS
    }


def metric_values(metrics: DashboardMetrics) -> Dict[str, object]:
    """Scalar fields (no series, no diagnostics) by name."""
    skip = {"revenue_series", "degraded_components"}
    return {f.name: getattr(metrics, f.name) for f in fields(metrics) if f.name not in skip}
