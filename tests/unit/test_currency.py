"""
Unit Tests - Currency Normalizer
"""
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from opmetrics.database.models import ExchangeRateSet
from opmetrics.metrics.currency import CurrencyNormalizer, RateSet, convert, money
from opmetrics.metrics.errors import UnknownCurrencyError
from opmetrics.serving.cache import CacheManager

RATES = RateSet(rates={"EUR": Decimal("6"), "USD": Decimal("5")}, reference="BRL")


@pytest.fixture
def normalizer(rate_provider, session_factory, clock):
    return CurrencyNormalizer(
        provider=rate_provider,
        session_factory=session_factory,
        reference="BRL",
        live_ttl_seconds=900,
        emergency_rates={"BRL": "1", "EUR": "6.37", "USD": "5.2"},
        clock=clock,
    )


class TestConversion:
    """Tests for pure conversions"""

    def test_cross_rate(self):
        assert convert(Decimal("100"), "EUR", "USD", RATES) == Decimal("120")

    @pytest.mark.parametrize(
        "rates",
        [
            RateSet(
                rates={"EUR": Decimal("6"), "USD": Decimal("5"), "GBP": Decimal("6.5"), "MXN": Decimal("0.29")},
                reference="BRL",
            ),
            # Shaped like the currency API pivot: reference-per-USD / value-per-USD
            RateSet(
                rates={
                    "USD": Decimal("5") / Decimal("1"),
                    "EUR": Decimal("5") / Decimal("0.8"),
                    "GBP": Decimal("5") / Decimal("0.79"),
                    "MXN": Decimal("5") / Decimal("17.3"),
                },
                reference="BRL",
            ),
        ],
        ids=["flat", "pivoted"],
    )
    @pytest.mark.parametrize("amount", ["0.01", "0.99", "37.45", "1234.56", "1000000000"])
    @pytest.mark.parametrize("pair", [("USD", "EUR"), ("EUR", "BRL"), ("BRL", "USD"), ("EUR", "USD"), ("GBP", "MXN")])
    def test_round_trip(self, rates, amount, pair):
        """Test converting there and back returns the original amount within a cent"""
        source, target = pair
        original = Decimal(amount)

        there = convert(original, source, target, rates)
        back = convert(there, target, source, rates)

        assert abs(money(back) - original) <= Decimal("0.01")

    def test_reference_currency(self):
        assert RATES.rate("brl") == Decimal("1")
        assert convert(Decimal("10"), "EUR", "BRL", RATES) == Decimal("60")

    def test_same_currency_needs_no_rate(self):
        assert convert(Decimal("12.5"), "PLN", "PLN", RATES) == Decimal("12.5")

    def test_unknown_currency(self):
        with pytest.raises(UnknownCurrencyError) as exc_info:
            convert(Decimal("1"), "JPY", "EUR", RATES)

        assert exc_info.value.currency == "JPY"

    def test_money_rounds_half_up(self):
        assert money(Decimal("2.345")) == Decimal("2.35")
        assert money(None) == Decimal("0.00")

    def test_rate_set_json(self):
        restored = RateSet.from_json(RATES.to_json())

        assert restored.rate("EUR") == Decimal("6")
        assert restored.reference == "BRL"


class TestLiveRates:
    """Tests for the live rate cache and its fallbacks"""

    async def test_live_rates_reused_within_ttl(self, normalizer, rate_provider, clock):
        await normalizer.current_rates()
        clock.advance(seconds=899)
        await normalizer.current_rates()

        assert rate_provider.current_calls == 1

        clock.advance(seconds=2)
        await normalizer.current_rates()

        assert rate_provider.current_calls == 2

    async def test_emergency_table_without_history(self, normalizer, rate_provider):
        """Test the static table is used when the provider never answered"""
        rate_provider.fail_current = True

        rates = await normalizer.current_rates()

        assert rates.source == "emergency"
        assert rates.rate("EUR") == Decimal("6.37")

    async def test_last_known_rates_after_failure(self, normalizer, rate_provider, clock):
        await normalizer.current_rates()
        rate_provider.fail_current = True
        clock.advance(seconds=1000)

        rates = await normalizer.current_rates()

        assert rates.source == "fake"
        assert rates.rate("EUR") == Decimal("6")

    async def test_failed_fetch_retried_after_a_minute(self, normalizer, rate_provider, clock):
        rate_provider.fail_current = True
        await normalizer.current_rates()
        await normalizer.current_rates()

        assert rate_provider.current_calls == 1

        rate_provider.fail_current = False
        clock.advance(seconds=61)
        rates = await normalizer.current_rates()

        assert rate_provider.current_calls == 2
        assert rates.source == "fake"

    async def test_shared_cache_between_workers(self, rate_provider, session_factory, clock, fake_redis):
        """Test a second process picks up rates published by the first"""
        shared = CacheManager("fx", default_ttl=900)
        first = CurrencyNormalizer(rate_provider, session_factory, shared_cache=shared, clock=clock)
        second = CurrencyNormalizer(rate_provider, session_factory, shared_cache=shared, clock=clock)

        await first.current_rates()
        rates = await second.current_rates()

        assert rate_provider.current_calls == 1
        assert rates.rate("USD") == Decimal("5")
        assert fake_redis.ttls["fx:latest:BRL"] == 900

    async def test_shared_cache_unavailable(self, normalizer, rate_provider):
        """Test an uninitialized Redis only costs a provider call"""
        normalizer.shared_cache = CacheManager("fx")

        rates = await normalizer.current_rates()

        assert rate_provider.current_calls == 1
        assert rates.rate("EUR") == Decimal("6")

    async def test_status_tracks_provider_health(self, normalizer, rate_provider, clock):
        assert normalizer.status()["status"] == "unknown"

        rate_provider.fail_current = True
        await normalizer.current_rates()
        assert normalizer.status()["status"] == "degraded"
        assert normalizer.status()["source"] == "emergency"

        rate_provider.fail_current = False
        clock.advance(seconds=61)
        await normalizer.current_rates()
        assert normalizer.status()["status"] == "healthy"
        assert normalizer.status()["reason"] is None


class TestHistoricalRates:
    """Tests for per-day rate lookups"""

    async def test_one_fetch_per_distinct_date(self, normalizer, rate_provider):
        """Test duplicate days collapse into one batched provider call"""
        days = [date(2024, 6, 10), date(2024, 6, 10), date(2024, 6, 12)]

        result = await normalizer.rates_for_dates(days)

        assert set(result) == {date(2024, 6, 10), date(2024, 6, 12)}
        assert rate_provider.historical_calls == [{date(2024, 6, 10), date(2024, 6, 12)}]

        await normalizer.rates_for_dates(days)

        assert len(rate_provider.historical_calls) == 1

    async def test_fetched_days_are_persisted(self, normalizer, rate_provider, session_factory, clock):
        await normalizer.rates_for_dates([date(2024, 6, 1), date(2024, 6, 2)])

        async with session_factory() as session:
            stored = (await session.execute(select(func.count(ExchangeRateSet.id)))).scalar()
        assert stored == 2

        # A fresh process reads them back instead of calling the provider
        other = CurrencyNormalizer(rate_provider, session_factory, reference="BRL", clock=clock)
        rates = await other.rate_for(date(2024, 6, 1))

        assert len(rate_provider.historical_calls) == 1
        assert rates.rate("EUR") == Decimal("6")
        assert rates.rate_date == date(2024, 6, 1)

    async def test_today_uses_live_rates(self, normalizer, rate_provider):
        await normalizer.rate_for(date(2024, 6, 15))

        assert rate_provider.current_calls == 1
        assert rate_provider.historical_calls == []

    async def test_unavailable_day_uses_live_rates(self, normalizer, rate_provider):
        rate_provider.unavailable_days = {date(2024, 6, 3)}

        result = await normalizer.rates_for_dates([date(2024, 6, 3), date(2024, 6, 4)])

        assert result[date(2024, 6, 3)].rate_date is None
        assert result[date(2024, 6, 4)].rate_date == date(2024, 6, 4)

    async def test_history_outage_degrades_to_live(self, normalizer, rate_provider):
        rate_provider.fail_historical = True

        rates = await normalizer.rate_for(date(2024, 5, 20))

        assert rates.rate("USD") == Decimal("5")
        assert rate_provider.current_calls == 1
