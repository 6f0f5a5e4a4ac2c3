"""
Unit Tests - Metrics Composition
"""
from decimal import Decimal

import pytest

from opmetrics.metrics.aggregator import OrderAggregate, StatusBucket
from opmetrics.metrics.composer import (
    compose,
    empty_metrics,
    growth,
    metric_values,
    percentage,
    reference_costs,
    safe_div,
    to_display,
)
from opmetrics.metrics.costs import CostBreakdown
from opmetrics.metrics.currency import RateSet

RATES = RateSet(rates={"EUR": Decimal("6"), "USD": Decimal("5")}, reference="BRL")


def make_costs(product="0", shipping="0", marketing="0", returns="0", **kwargs) -> CostBreakdown:
    return CostBreakdown(
        base_currency="EUR",
        reference_currency="BRL",
        product_costs=Decimal(product),
        shipping_costs=Decimal(shipping),
        return_handling_costs=Decimal(returns),
        marketing_costs=Decimal(marketing),
        manual_marketing_costs=Decimal(marketing),
        network_marketing_costs=Decimal("0"),
        unlinked_items=0,
        rates=RATES,
        **kwargs,
    )


@pytest.fixture
def dashboard_aggregate() -> OrderAggregate:
    """10 orders: 6 delivered at 100, 2 cancelled, 2 pending"""
    aggregate = OrderAggregate()
    aggregate.status_counts[StatusBucket.DELIVERED] = 6
    aggregate.status_counts[StatusBucket.CANCELLED] = 2
    aggregate.status_counts[StatusBucket.PENDING] = 2
    aggregate.total_orders = 10
    aggregate.total_revenue = Decimal("700.00")
    aggregate.delivered_revenue = Decimal("600.00")
    aggregate.delivered_count = 6
    aggregate.carrier_orders = 8
    aggregate.carrier_delivered_orders = 6
    return aggregate


class TestRatios:
    """Tests for zero-safe arithmetic"""

    def test_safe_div_by_zero(self):
        assert safe_div(Decimal("10"), 0) == Decimal("0")

    def test_percentage_rounds_to_cents(self):
        assert percentage(Decimal("1"), Decimal("3")) == Decimal("33.33")

    def test_growth(self):
        assert growth(Decimal("600"), Decimal("500")) == 20.0
        assert growth(3, 4) == -25.0

    def test_growth_without_baseline(self):
        assert growth(Decimal("600"), Decimal("0")) is None


class TestCompose:
    """Tests for compose()"""

    def test_no_data_has_no_errors(self):
        """Test every ratio is zero when every denominator is zero"""
        metrics = compose(OrderAggregate(), make_costs(), OrderAggregate())

        assert metrics.average_order_value == Decimal("0.00")
        assert metrics.profit_margin == Decimal("0.00")
        assert metrics.roi == Decimal("0.00")
        assert metrics.cpa_per_delivered == Decimal("0.00")
        assert metrics.cpa_per_lead == Decimal("0.00")
        assert metrics.delivery_rate == Decimal("0.00")
        assert metrics.revenue_growth is None
        assert metrics.orders_growth is None

    def test_marketing_without_orders(self):
        metrics = compose(OrderAggregate(), make_costs(marketing="40"))

        assert metrics.profit == Decimal("-40.00")
        assert metrics.profit_margin == Decimal("0.00")
        assert metrics.roi == Decimal("-100.00")
        assert metrics.cpa_per_delivered == Decimal("0.00")

    def test_dashboard_scenario(self, dashboard_aggregate):
        """Test profit, margin and ROI for the reference dashboard"""
        metrics = compose(dashboard_aggregate, make_costs(product="120", shipping="60", marketing="50"))

        assert metrics.delivered_revenue == Decimal("600.00")
        assert metrics.combined_costs == Decimal("180.00")
        assert metrics.total_costs == Decimal("230.00")
        assert metrics.profit == Decimal("370.00")
        assert metrics.profit_margin == Decimal("61.67")
        assert metrics.roi == Decimal("160.87")
        assert metrics.average_order_value == Decimal("100.00")
        assert metrics.cpa_per_delivered == Decimal("8.33")
        assert metrics.cpa_per_lead == Decimal("5.00")
        assert metrics.delivery_rate == Decimal("75.00")
        assert metrics.status_total == metrics.total_orders

    def test_returns_reduce_profit(self, dashboard_aggregate):
        metrics = compose(dashboard_aggregate, make_costs(product="120", shipping="60", returns="10"))

        assert metrics.profit == Decimal("410.00")
        assert metrics.total_costs == Decimal("190.00")

    def test_growth_against_previous(self, dashboard_aggregate):
        previous = OrderAggregate(total_orders=8, total_revenue=Decimal("560.00"))

        metrics = compose(dashboard_aggregate, make_costs(), previous)

        assert metrics.revenue_growth == 25.0
        assert metrics.orders_growth == 25.0

    def test_degraded_components_carried(self, dashboard_aggregate):
        costs = make_costs(degraded_components=["ad_network"])

        assert compose(dashboard_aggregate, costs).degraded_components == ["ad_network"]


class TestDisplay:
    """Tests for display currency conversion"""

    def test_to_display(self, dashboard_aggregate):
        metrics = compose(dashboard_aggregate, make_costs(product="120", shipping="60", marketing="50"))

        display = to_display(metrics, RATES, "brl")

        assert display["delivered_revenue"] == Decimal("3600.00")
        assert display["profit"] == Decimal("2220.00")

    def test_reference_costs(self, dashboard_aggregate):
        metrics = compose(dashboard_aggregate, make_costs(product="120", shipping="60", marketing="50", returns="3"))

        costs = reference_costs(metrics, RATES)

        assert costs == {
            "product_costs": Decimal("720.00"),
            "shipping_costs": Decimal("360.00"),
            "combined_costs": Decimal("1080.00"),
            "marketing_costs": Decimal("300.00"),
            "return_handling_costs": Decimal("18.00"),
            "total_costs": Decimal("1398.00"),
        }

    def test_empty_metrics(self):
        metrics = empty_metrics("BRL")
        values = metric_values(metrics)

        assert values["total_orders"] == 0
        assert values["base_currency"] == "BRL"
        assert "revenue_series" not in values
