"""
Unit Tests - Metrics Service
"""
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from opmetrics.integrations.ads import AdSpend
from opmetrics.database.models import MetricsSnapshot
from opmetrics.metrics.errors import TransientStoreFailure, UnknownCurrencyError
from opmetrics.metrics.periods import PeriodTag
from opmetrics.metrics.query import ByPeriod, ByRange, build_request
from opmetrics.metrics.service import create_metrics_service
from opmetrics.metrics.snapshot_cache import CacheKey

WEEK = ByPeriod(PeriodTag.LAST_7_DAYS)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


async def snapshot_count(session_factory) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count(MetricsSnapshot.id)))).scalar()


@pytest.fixture
async def dashboard_orders(seeder):
    """
    Last 7 days: 6 delivered at 100 (one SKU-A each), 2 cancelled at 80,
    2 pending at 50, 50 EUR of manual ad spend. Previous 7 days: 1 delivered
    order at 100.
    """
    await seeder.operation()
    await seeder.linked_cost("SKU-A", cost_price="20", shipping_cost="10")
    for day in (10, 10, 11, 12, 13, 14):
        await seeder.order(
            "delivered", "100", utc(2024, 6, day, 9),
            carrier_imported=True, carrier_confirmation="ok",
            customer_id=f"c-{day}", items=[("SKU-A", 1, "p-a")],
        )
    for day in (11, 12):
        await seeder.order("cancelled", "80", utc(2024, 6, day, 9), items=[("SKU-A", 1, "p-a")])
    for day in (13, 14):
        await seeder.order("pending", "50", utc(2024, 6, day, 9), items=[("SKU-B", 1, "p-b")])
    await seeder.ad_spend("50", "EUR", utc(2024, 6, 12, 10))

    await seeder.order("delivered", "100", utc(2024, 6, 5, 9), items=[("SKU-A", 1, "p-a")])


class TestGetMetrics:
    """Tests for MetricsService.get_metrics"""

    async def test_dashboard_scenario(self, metrics_service, dashboard_orders):
        """Test the reference dashboard numbers end to end"""
        result = await metrics_service.get_metrics("op-1", WEEK)
        metrics = result.metrics

        assert result.cache_status == "miss"
        assert result.period == "7d"
        assert metrics.total_orders == 10
        assert metrics.delivered_orders == 6
        assert metrics.cancelled_orders == 2
        assert metrics.pending_orders == 2
        assert metrics.status_total == metrics.total_orders
        assert metrics.total_revenue == Decimal("700.00")
        assert metrics.delivered_revenue == Decimal("600.00")
        assert metrics.combined_costs == Decimal("180.00")
        assert metrics.marketing_costs == Decimal("50.00")
        assert metrics.profit == Decimal("370.00")
        assert metrics.profit_margin == Decimal("61.67")
        assert metrics.roi == Decimal("160.87")
        assert metrics.average_order_value == Decimal("100.00")
        assert metrics.unique_customers == 5
        assert metrics.revenue_growth == 600.0
        assert metrics.orders_growth == 900.0
        assert metrics.degraded_components == []
        assert len(metrics.revenue_series) == 7

    async def test_reference_costs(self, metrics_service, dashboard_orders):
        """Test the cost breakdown is also reported in the reference currency"""
        result = await metrics_service.get_metrics("op-1", WEEK)

        assert result.rates.reference == "BRL"
        assert result.reference_costs["combined_costs"] == Decimal("1080.00")
        assert result.reference_costs["marketing_costs"] == Decimal("300.00")
        assert result.reference_costs["total_costs"] == Decimal("1380.00")

        hit = await metrics_service.get_metrics("op-1", WEEK)
        assert hit.cache_status == "hit"
        assert hit.reference_costs == result.reference_costs

    async def test_display_defaults_to_reference_currency(self, metrics_service, dashboard_orders):
        result = await metrics_service.get_metrics("op-1", WEEK)

        assert result.display_currency == "BRL"
        assert result.display["profit"] == Decimal("2220.00")
        assert result.rates.reference == "BRL"

    async def test_display_currency_override(self, metrics_service, dashboard_orders):
        result = await metrics_service.get_metrics("op-1", WEEK, display_currency="usd")

        assert result.display_currency == "USD"
        assert result.display["profit"] == Decimal("444.00")

    async def test_unknown_display_currency(self, metrics_service, dashboard_orders):
        with pytest.raises(UnknownCurrencyError):
            await metrics_service.get_metrics("op-1", WEEK, display_currency="XYZ")

    async def test_second_request_is_a_hit(self, metrics_service, dashboard_orders, rate_provider, session_factory):
        first = await metrics_service.get_metrics("op-1", WEEK)
        second = await metrics_service.get_metrics("op-1", WEEK)

        assert second.cache_status == "hit"
        assert second.metrics.profit == first.metrics.profit
        assert second.calculated_at == first.calculated_at
        assert second.valid_until == first.valid_until
        assert second.calculated_at.utcoffset() == timedelta(0)
        assert len(rate_provider.historical_calls) == 1
        assert await snapshot_count(session_factory) == 1

    async def test_stale_snapshot_recomputed(self, metrics_service, dashboard_orders, seeder, clock, session_factory):
        """Test an expired snapshot is recomputed and replaced in place"""
        await metrics_service.get_metrics("op-1", WEEK)
        await seeder.order("delivered", "100", utc(2024, 6, 15, 12, 30))

        assert (await metrics_service.get_metrics("op-1", WEEK)).metrics.total_orders == 10

        clock.advance(minutes=61)
        result = await metrics_service.get_metrics("op-1", WEEK)

        assert result.cache_status == "stale"
        assert result.metrics.total_orders == 11
        assert await snapshot_count(session_factory) == 1

    async def test_explicit_range_bypasses_cache(self, metrics_service, dashboard_orders, session_factory):
        result = await metrics_service.get_metrics("op-1", ByRange(date(2024, 6, 9), date(2024, 6, 15)))

        assert result.cache_status == "bypass"
        assert result.period is None
        assert result.calculated_at.utcoffset() == timedelta(0)
        assert result.valid_until is None
        assert result.metrics.profit == Decimal("370.00")
        assert await snapshot_count(session_factory) == 0

    async def test_product_filter_bypasses_cache(self, metrics_service, dashboard_orders, session_factory):
        result = await metrics_service.get_metrics("op-1", build_request(period="7d", product_id="p-b"))

        assert result.cache_status == "bypass"
        assert result.metrics.total_orders == 2
        assert result.metrics.combined_costs == Decimal("0.00")
        assert await snapshot_count(session_factory) == 0

    async def test_provider_filter_is_its_own_snapshot(self, metrics_service, dashboard_orders, session_factory):
        result = await metrics_service.get_metrics("op-1", ByPeriod(PeriodTag.LAST_7_DAYS, provider="amazon"))

        assert result.metrics.total_orders == 0
        await metrics_service.get_metrics("op-1", WEEK)
        assert await snapshot_count(session_factory) == 2

    async def test_unknown_operation_is_empty(self, metrics_service, session_factory):
        result = await metrics_service.get_metrics("missing", WEEK)

        assert result.cache_status == "empty"
        assert result.operation_id is None
        assert result.metrics.total_orders == 0
        assert result.metrics.profit == Decimal("0")
        assert await snapshot_count(session_factory) == 0

    async def test_store_failure_is_not_cached(self, metrics_service, dashboard_orders, break_order_store, session_factory):
        await break_order_store()

        with pytest.raises(TransientStoreFailure):
            await metrics_service.get_metrics("op-1", WEEK)

        assert await snapshot_count(session_factory) == 0

    async def test_store_failure_keeps_stale_snapshot(
        self, metrics_service, dashboard_orders, break_order_store, clock
    ):
        """Test a failed recompute leaves the previous snapshot untouched"""
        first = await metrics_service.get_metrics("op-1", WEEK)
        clock.advance(hours=2)
        await break_order_store()

        with pytest.raises(TransientStoreFailure):
            await metrics_service.get_metrics("op-1", WEEK)

        kept = await metrics_service.cache.get(CacheKey("op-1", "7d"))
        assert kept.calculated_at == first.calculated_at
        assert not kept.fresh

    async def test_ad_network_timeout_degrades(
        self, test_settings, session_factory, rate_provider, ads_client, clock, dashboard_orders, seeder
    ):
        """Test a hanging ad account zeroes only its own spend"""
        test_settings.ads.fetch_timeout_seconds = 0.05
        await seeder.campaign("act_1", "c-1")
        ads_client.responses = {"act_1": 5.0}
        service = create_metrics_service(
            test_settings, session_factory, rate_provider=rate_provider, ads_client=ads_client, clock=clock
        )

        result = await service.get_metrics("op-1", WEEK)

        assert result.metrics.marketing_costs == Decimal("50.00")
        assert result.metrics.combined_costs == Decimal("180.00")
        assert result.metrics.profit == Decimal("370.00")
        assert result.metrics.degraded_components == ["ad_network"]

    async def test_degraded_snapshot_expires_early(
        self, test_settings, session_factory, rate_provider, ads_client, clock, dashboard_orders, seeder
    ):
        """Test a snapshot missing ad spend is recomputed after the short TTL"""
        test_settings.ads.fetch_timeout_seconds = 0.05
        await seeder.campaign("act_1", "c-1")
        ads_client.responses = {"act_1": 5.0}
        service = create_metrics_service(
            test_settings, session_factory, rate_provider=rate_provider, ads_client=ads_client, clock=clock
        )

        degraded = await service.get_metrics("op-1", WEEK)
        assert degraded.valid_until - degraded.calculated_at == timedelta(
            seconds=test_settings.metrics.degraded_ttl_seconds
        )

        ads_client.responses = {"act_1": AdSpend("act_1", Decimal("10"), "EUR")}
        clock.advance(seconds=test_settings.metrics.degraded_ttl_seconds + 1)
        recovered = await service.get_metrics("op-1", WEEK)

        assert recovered.cache_status == "stale"
        assert recovered.metrics.marketing_costs == Decimal("60.00")
        assert recovered.metrics.degraded_components == []
        assert recovered.valid_until - recovered.calculated_at == timedelta(hours=1)

    async def test_fallback_zone_flagged(self, metrics_service, seeder):
        await seeder.operation(timezone_name="Nowhere/Special")

        result = await metrics_service.get_metrics("op-1", WEEK)

        assert result.range.timezone == "Europe/Madrid"
        assert "timezone" in result.metrics.degraded_components


class TestBreakdowns:
    """Tests for the chart and breakdown entry points"""

    async def test_revenue_over_time(self, metrics_service, dashboard_orders):
        result = await metrics_service.revenue_over_time("op-1", WEEK)

        by_day = {bucket.day: bucket.revenue for bucket in result.series}
        assert by_day[date(2024, 6, 10)] == Decimal("200.00")
        # Pending orders are not delivered revenue
        assert by_day[date(2024, 6, 13)] == Decimal("100.00")
        assert sum(by_day.values()) == Decimal("600.00")

    async def test_orders_by_status(self, metrics_service, dashboard_orders):
        shares = await metrics_service.orders_by_status("op-1", WEEK)

        assert {s.status: s.count for s in shares} == {"delivered": 6, "cancelled": 2, "pending": 2}

    async def test_provider_comparison(self, metrics_service, dashboard_orders):
        stats = await metrics_service.provider_comparison("op-1")

        assert len(stats) == 1
        assert stats[0].total_orders == 11

    async def test_unknown_operation_breakdowns(self, metrics_service):
        assert (await metrics_service.revenue_over_time("missing", WEEK)).series == []
        assert await metrics_service.orders_by_status("missing", WEEK) == []
        assert await metrics_service.provider_comparison("missing") == []

    async def test_invalidate(self, metrics_service, dashboard_orders, session_factory):
        await metrics_service.get_metrics("op-1", WEEK)
        await metrics_service.get_metrics("op-1", ByPeriod(PeriodTag.TODAY))

        assert await metrics_service.invalidate("op-1") == 2
        assert await snapshot_count(session_factory) == 0
