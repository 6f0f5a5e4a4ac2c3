"""
Test Suite Configuration
"""
import asyncio
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Set

import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from opmetrics.config import Settings
from opmetrics.database.models import (
    AdCampaign,
    AdSpendEntry,
    Base,
    LinkedProductCost,
    Operation,
    Order,
    OrderItem,
)
from opmetrics.integrations.ads import AdSpend
from opmetrics.metrics.currency import RateSet
from opmetrics.metrics.errors import DegradedExternalFetch
from opmetrics.metrics.periods import PeriodResolver
from opmetrics.metrics.query import OperationContext, resolve_query
from opmetrics.metrics.service import create_metrics_service

# Saturday 2024-06-15 12:00 UTC (14:00 in Madrid)
NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)

OPERATION_ID = "op-1"
STORE_ID = "store-1"


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeRateProvider:
    """Exchange-rate provider double recording every call."""

    def __init__(self, rates: Optional[Dict[str, str]] = None):
        self.rates = {k: Decimal(v) for k, v in (rates or {"EUR": "6", "USD": "5", "GBP": "6.5"}).items()}
        self.current_calls = 0
        self.historical_calls: List[Set[date]] = []
        self.fail_current = False
        self.fail_historical = False
        self.unavailable_days: Set[date] = set()

    async def current_rates(self) -> RateSet:
        self.current_calls += 1
        if self.fail_current:
            raise DegradedExternalFetch("exchange_rates", "provider down")
        return RateSet(rates=dict(self.rates), reference="BRL", source="fake")

    async def historical_rates(self, dates: Set[date]) -> Dict[date, RateSet]:
        self.historical_calls.append(set(dates))
        if self.fail_historical:
            raise DegradedExternalFetch("exchange_rates", "history down")
        return {
            day: RateSet(rates=dict(self.rates), reference="BRL", rate_date=day, source="fake")
            for day in dates
            if day not in self.unavailable_days
        }


class FakeAdsClient:
    """
    Ad-network double.

    `responses` maps account id to an AdSpend, an exception instance to raise,
    or a number of seconds to hang.
    """

    def __init__(self, responses: Optional[dict] = None):
        self.responses = responses or {}
        self.calls = []

    async def fetch_selected_campaign_spend(self, account_id, date_range, campaign_ids, preset=None):
        self.calls.append((account_id, sorted(campaign_ids), preset))
        response = self.responses.get(account_id, AdSpend(account_id, Decimal("0"), "EUR"))
        if isinstance(response, BaseException):
            raise response
        if isinstance(response, (int, float)):
            await asyncio.sleep(response)
            return AdSpend(account_id, Decimal("999"), "EUR")
        return response


class FakeRedis:
    """In-memory stand-in for redis.asyncio.Redis (string values)."""

    def __init__(self):
        self.store: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}

    async def get(self, key):
        return self.store.get(key)

    async def setex(self, key, ttl, value):
        self.store[key] = value
        self.ttls[key] = ttl
        return True

    async def ping(self):
        return True


class StoreSeeder:
    """Inserts source rows through the test session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self._counter = 0

    async def add(self, *rows) -> None:
        async with self.session_factory() as session:
            session.add_all(rows)
            await session.commit()

    async def operation(self, operation_id=OPERATION_ID, currency="EUR", timezone_name="Europe/Madrid"):
        await self.add(
            Operation(
                id=operation_id,
                store_id=STORE_ID,
                name=f"Operation {operation_id}",
                currency=currency,
                timezone=timezone_name,
            )
        )

    async def order(
        self,
        status: str,
        total: str,
        order_date: datetime,
        operation_id=OPERATION_ID,
        provider="shopify",
        carrier_imported=False,
        carrier_confirmation=None,
        payment_status=None,
        customer_id=None,
        last_status_update=None,
        items=(),
    ) -> str:
        """`items` is a sequence of (sku, quantity) or (sku, quantity, product_id)."""
        self._counter += 1
        order_id = f"ord-{self._counter}"
        rows = [
            Order(
                id=order_id,
                operation_id=operation_id,
                store_id=STORE_ID,
                status=status,
                total=Decimal(total),
                currency="EUR",
                provider=provider,
                carrier_imported=carrier_imported,
                carrier_confirmation=carrier_confirmation,
                payment_status=payment_status,
                customer_id=customer_id,
                order_date=order_date.replace(tzinfo=None),
                last_status_update=last_status_update.replace(tzinfo=None) if last_status_update else None,
            )
        ]
        for item in items:
            sku, quantity = item[0], item[1]
            product_id = item[2] if len(item) > 2 else None
            rows.append(OrderItem(order_id=order_id, sku=sku, quantity=quantity, product_id=product_id))
        await self.add(*rows)
        return order_id

    async def linked_cost(self, sku, cost_price, shipping_cost, handling_fee="0", operation_id=OPERATION_ID, is_active=True):
        await self.add(
            LinkedProductCost(
                operation_id=operation_id,
                store_id=STORE_ID,
                sku=sku,
                cost_price=Decimal(cost_price),
                shipping_cost=Decimal(shipping_cost),
                handling_fee=Decimal(handling_fee),
                is_active=is_active,
            )
        )

    async def ad_spend(self, amount, currency, spend_date: datetime, platform="facebook", operation_id=OPERATION_ID):
        await self.add(
            AdSpendEntry(
                operation_id=operation_id,
                amount=Decimal(amount),
                currency=currency,
                platform=platform,
                spend_date=spend_date.replace(tzinfo=None),
            )
        )

    async def campaign(self, account_id, campaign_id, is_selected=True, operation_id=OPERATION_ID):
        await self.add(
            AdCampaign(
                operation_id=operation_id,
                account_id=account_id,
                campaign_id=campaign_id,
                is_selected=is_selected,
            )
        )


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings"""
    return Settings(
        app_env="testing",
        debug=True,
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
async def test_engine(tmp_path):
    """File-backed SQLite so concurrent sessions get their own connections"""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'metrics.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def seeder(session_factory) -> StoreSeeder:
    return StoreSeeder(session_factory)


@pytest.fixture
def rate_provider() -> FakeRateProvider:
    return FakeRateProvider()


@pytest.fixture
def ads_client() -> FakeAdsClient:
    return FakeAdsClient()


@pytest.fixture
def resolver(clock) -> PeriodResolver:
    return PeriodResolver("Europe/Madrid", clock=clock)


@pytest.fixture
def context() -> OperationContext:
    return OperationContext(
        operation_id=OPERATION_ID,
        store_id=STORE_ID,
        name="Operation op-1",
        base_currency="EUR",
        timezone="Europe/Madrid",
    )


@pytest.fixture
def make_query(context, resolver):
    """Resolve a request against the default test operation"""
    def _make(request, ctx: Optional[OperationContext] = None):
        return resolve_query(ctx or context, request, resolver)
    return _make


@pytest.fixture
def fake_redis(monkeypatch) -> FakeRedis:
    """Install an in-memory client behind opmetrics.serving.cache"""
    client = FakeRedis()
    monkeypatch.setattr("opmetrics.serving.cache._redis_client", client)
    return client


@pytest.fixture
def break_order_store(test_engine):
    """Drop the order tables so every order query fails"""
    async def _break():
        async with test_engine.begin() as conn:
            await conn.execute(text("DROP TABLE order_items"))
            await conn.execute(text("DROP TABLE orders"))
    return _break


@pytest.fixture
def metrics_service(test_settings, session_factory, rate_provider, ads_client, clock):
    return create_metrics_service(
        test_settings,
        session_factory,
        rate_provider=rate_provider,
        ads_client=ads_client,
        clock=clock,
    )
