"""
Currency Normalizer

Rate sets pivot on a single reference currency: `rates["EUR"] == 6.37` means
one euro is worth 6.37 units of the reference currency. Conversions are pure
functions of an explicit RateSet; only the normalizer does I/O.

Lookup order for live rates:
    in-process cache -> shared Redis cache -> provider -> last known -> emergency table

Lookup order for a past day:
    in-process memo -> exchange_rate_sets table -> one batched provider call -> live rates
"""

import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Callable, Dict, Iterable, Optional, Protocol, Set

import structlog
from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from opmetrics.database.models import ExchangeRateSet
from opmetrics.metrics.errors import DegradedExternalFetch, UnknownCurrencyError
from opmetrics.monitoring import DEGRADED_FETCHES

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")

# Retry window for the provider after a failed live fetch
FAILED_FETCH_RETRY_SECONDS = 60


def to_decimal(value: Any) -> Decimal:
    """Coerce DB/JSON numerics to Decimal; None becomes 0."""
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"Not a monetary value: {value!r}") from e


def money(value: Any) -> Decimal:
    """Round half-up to cents."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class RateSet:
    """Immutable currency -> reference multipliers for one day."""
    rates: Dict[str, Decimal] = field(hash=False)
    reference: str
    rate_date: Optional[date] = None
    source: str = "provider"

    def rate(self, currency: str) -> Decimal:
        code = currency.upper()
        if code == self.reference:
            return Decimal("1")
        try:
            return self.rates[code]
        except KeyError:
            raise UnknownCurrencyError(code, self.rate_date) from None

    def supports(self, currency: str) -> bool:
        code = currency.upper()
        return code == self.reference or code in self.rates

    def to_json(self) -> dict:
        return {
            "reference": self.reference,
            "rate_date": self.rate_date.isoformat() if self.rate_date else None,
            "source": self.source,
            "rates": {code: str(value) for code, value in self.rates.items()},
        }

    @classmethod
    def from_json(cls, payload: dict) -> "RateSet":
        raw_date = payload.get("rate_date")
        return cls(
            rates={code.upper(): to_decimal(value) for code, value in payload["rates"].items()},
            reference=payload["reference"].upper(),
            rate_date=date.fromisoformat(raw_date) if raw_date else None,
            source=payload.get("source", "provider"),
        )

    def as_display(self) -> Dict[str, float]:
        """Multipliers for the response payload."""
        display = {code: float(value) for code, value in self.rates.items()}
        display[self.reference] = 1.0
        return display


def convert(amount: Any, from_currency: str, to_currency: str, rates: RateSet) -> Decimal:
    """
    Convert an amount between two currencies using `rates`.

    No rounding happens here; callers round with `money()` once, at the end.
    """
    value = to_decimal(amount)
    if from_currency.upper() == to_currency.upper():
        return value
    return value * rates.rate(from_currency) / rates.rate(to_currency)


class ExchangeRateProvider(Protocol):
    """External rate source."""

    async def current_rates(self) -> RateSet:
        ...

    async def historical_rates(self, dates: Set[date]) -> Dict[date, RateSet]:
        ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CurrencyNormalizer:
    """
    Process-wide access point for exchange rates.

    Args:
        provider: External rate source
        session_factory: Sessions for the exchange_rate_sets table
        reference: Reference currency every rate set pivots on
        live_ttl_seconds: How long live rates are reused
        emergency_rates: Static table used when nothing else is available
        shared_cache: Optional Redis CacheManager shared between workers
        clock: Injectable "now" (aware UTC)
    """

    def __init__(
        self,
        provider: ExchangeRateProvider,
        session_factory: async_sessionmaker[AsyncSession],
        reference: str = "BRL",
        live_ttl_seconds: int = 900,
        emergency_rates: Optional[Dict[str, Decimal]] = None,
        shared_cache=None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.provider = provider
        self.session_factory = session_factory
        self.reference = reference.upper()
        self.live_ttl = timedelta(seconds=live_ttl_seconds)
        self.emergency_rates = {k.upper(): to_decimal(v) for k, v in (emergency_rates or {}).items()}
        self.shared_cache = shared_cache
        self._clock = clock or _utc_now

        self._lock = asyncio.Lock()
        self._live: Optional[RateSet] = None
        self._live_expires: Optional[datetime] = None
        self._last_known: Optional[RateSet] = None
        self._degraded_reason: Optional[str] = None
        self._historical: Dict[date, RateSet] = {}

    # =========================================================================
    # Live rates
    # =========================================================================

    async def current_rates(self) -> RateSet:
        """Live rate set; never raises."""
        async with self._lock:
            now = self._clock()
            if self._live is not None and self._live_expires > now:
                return self._live

            rates = await self._read_shared()
            if rates is None:
                try:
                    rates = await self.provider.current_rates()
                except DegradedExternalFetch as e:
                    self._degraded_reason = e.reason
                    rates = self._fallback_rates(e.reason)
                    self._live = rates
                    self._live_expires = now + timedelta(
                        seconds=min(FAILED_FETCH_RETRY_SECONDS, self.live_ttl.total_seconds())
                    )
                    return rates
                await self._write_shared(rates)

            self._live = rates
            self._live_expires = now + self.live_ttl
            self._last_known = rates
            self._degraded_reason = None
            return rates

    def status(self) -> Dict[str, Optional[str]]:
        """Where the live rates currently come from, for health checks."""
        if self._live is None:
            return {"status": "unknown", "source": None}
        return {
            "status": "degraded" if self._degraded_reason else "healthy",
            "source": self._live.source,
            "rate_date": self._live.rate_date.isoformat() if self._live.rate_date else None,
            "reason": self._degraded_reason,
        }

    def _fallback_rates(self, reason: str) -> RateSet:
        DEGRADED_FETCHES.labels(component="exchange_rates").inc()
        if self._last_known is not None:
            logger.warning(
                "Rate provider failed, using last known rate set",
                reason=reason,
                rate_date=str(self._last_known.rate_date),
            )
            return self._last_known

        logger.warning("Rate provider failed, using emergency rate table", reason=reason)
        return RateSet(
            rates=dict(self.emergency_rates),
            reference=self.reference,
            rate_date=self._clock().date(),
            source="emergency",
        )

    def _shared_key(self) -> str:
        return f"latest:{self.reference}"

    async def _read_shared(self) -> Optional[RateSet]:
        if self.shared_cache is None:
            return None
        try:
            payload = await self.shared_cache.get(self._shared_key())
        except (RedisError, RuntimeError) as e:
            logger.warning("Shared rate cache unavailable", error=str(e))
            return None
        if not payload:
            return None
        return RateSet.from_json(payload)

    async def _write_shared(self, rates: RateSet) -> None:
        if self.shared_cache is None:
            return
        try:
            await self.shared_cache.set(
                self._shared_key(), rates.to_json(), ttl=int(self.live_ttl.total_seconds())
            )
        except (RedisError, RuntimeError) as e:
            logger.warning("Could not publish live rates to shared cache", error=str(e))

    # =========================================================================
    # Historical rates
    # =========================================================================

    async def rate_for(self, day: date) -> RateSet:
        """Rate set in effect on `day`."""
        return (await self.rates_for_dates([day]))[day]

    async def rates_for_dates(self, days: Iterable[date]) -> Dict[date, RateSet]:
        """
        Rate sets for many days at once.

        At most one provider call is issued for all days missing from the
        memo and the persisted table.
        """
        wanted = set(days)
        today = self._clock().date()
        result: Dict[date, RateSet] = {}

        live_days = {d for d in wanted if d >= today}
        if live_days:
            current = await self.current_rates()
            for d in live_days:
                result[d] = current

        missing = set()
        for d in wanted - live_days:
            if d in self._historical:
                result[d] = self._historical[d]
            else:
                missing.add(d)

        if missing:
            stored = await self._load_stored(missing)
            self._historical.update(stored)
            result.update(stored)
            missing -= stored.keys()

        if missing:
            fetched = await self._fetch_historical(missing)
            await self._persist(fetched)
            self._historical.update(fetched)
            result.update(fetched)
            missing -= fetched.keys()

        if missing:
            current = await self.current_rates()
            logger.warning(
                "Historical rates unavailable, using current rate set",
                days=sorted(d.isoformat() for d in missing),
            )
            for d in missing:
                result[d] = current

        return result

    async def _load_stored(self, days: Set[date]) -> Dict[date, RateSet]:
        try:
            async with self.session_factory() as session:
                rows = await session.execute(
                    select(ExchangeRateSet).where(
                        ExchangeRateSet.reference_currency == self.reference,
                        ExchangeRateSet.rate_date.in_(days),
                    )
                )
                return {
                    row.rate_date: RateSet(
                        rates={code: to_decimal(v) for code, v in row.rates.items()},
                        reference=row.reference_currency,
                        rate_date=row.rate_date,
                        source=row.source,
                    )
                    for row in rows.scalars()
                }
        except SQLAlchemyError as e:
            logger.warning("Could not read stored exchange rates", error=str(e))
            return {}

    async def _fetch_historical(self, days: Set[date]) -> Dict[date, RateSet]:
        try:
            return await self.provider.historical_rates(days)
        except DegradedExternalFetch as e:
            DEGRADED_FETCHES.labels(component="historical_rates").inc()
            logger.warning("Historical rate fetch degraded", reason=e.reason, days=len(days))
            return {}

    async def _persist(self, rate_sets: Dict[date, RateSet]) -> None:
        """Record fetched days; an existing row for the day is left untouched."""
        for day, rates in rate_sets.items():
            async with self.session_factory() as session:
                session.add(
                    ExchangeRateSet(
                        rate_date=day,
                        reference_currency=self.reference,
                        rates={code: str(v) for code, v in rates.rates.items()},
                        source=rates.source,
                    )
                )
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    logger.debug("Rate set already recorded", rate_date=day.isoformat())
                except SQLAlchemyError as e:
                    await session.rollback()
                    logger.warning("Could not persist rate set", rate_date=day.isoformat(), error=str(e))
