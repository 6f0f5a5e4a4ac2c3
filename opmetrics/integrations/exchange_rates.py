"""
currencyapi.com client.

The API quotes every currency against USD (`data[code].value` = units of
`code` per USD). Rates are pivoted onto the configured reference currency:
one unit of `code` is worth `value[reference] / value[code]` reference units.
"""

import asyncio
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional, Set

import httpx
import structlog

from opmetrics.metrics.currency import RateSet, to_decimal
from opmetrics.metrics.errors import DegradedExternalFetch

logger = structlog.get_logger(__name__)


class CurrencyApiProvider:
    """Exchange-rate provider backed by currencyapi.com v3."""

    component = "exchange_rates"

    def __init__(
        self,
        api_key: Optional[str],
        reference: str = "BRL",
        currencies: Optional[List[str]] = None,
        base_url: str = "https://api.currencyapi.com/v3",
        timeout_seconds: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.reference = reference.upper()
        self.currencies = sorted({c.upper() for c in (currencies or [])} | {self.reference})
        self.base_url = base_url.rstrip("/")
        self.timeout = httpx.Timeout(timeout_seconds)

        # HTTP client (created lazily or passed in for testing)
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def current_rates(self) -> RateSet:
        payload = await self._get("latest", {})
        return self._to_rate_set(payload, rate_date=None, source="currencyapi")

    async def historical_rates(self, dates: Set[date]) -> Dict[date, RateSet]:
        """
        One request per day, issued concurrently.

        Days that fail are left out of the result; the call only raises when
        every day failed.
        """
        ordered = sorted(dates)
        results = await asyncio.gather(
            *(self._historical_day(day) for day in ordered),
            return_exceptions=True,
        )

        rate_sets: Dict[date, RateSet] = {}
        failures = []
        for day, outcome in zip(ordered, results):
            if isinstance(outcome, DegradedExternalFetch):
                failures.append(f"{day.isoformat()}: {outcome.reason}")
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                rate_sets[day] = outcome

        if failures:
            logger.warning("Some historical rate days failed", failed=len(failures), requested=len(ordered))
            if not rate_sets:
                raise DegradedExternalFetch(self.component, "; ".join(failures))

        return rate_sets

    async def _historical_day(self, day: date) -> RateSet:
        payload = await self._get("historical", {"date": day.isoformat()})
        return self._to_rate_set(payload, rate_date=day, source="currencyapi")

    async def _get(self, endpoint: str, params: Dict[str, str]) -> dict:
        if not self.api_key:
            raise DegradedExternalFetch(self.component, "CURRENCY_API_KEY is not configured")

        client = await self._get_client()
        query = {"apikey": self.api_key, "currencies": ",".join(self.currencies), **params}

        try:
            response = await client.get(f"{self.base_url}/{endpoint}", params=query)
        except httpx.TimeoutException:
            raise DegradedExternalFetch(self.component, f"{endpoint} request timed out") from None
        except httpx.HTTPError as e:
            raise DegradedExternalFetch(self.component, f"{endpoint} request failed: {e}") from e

        if response.status_code != 200:
            raise DegradedExternalFetch(self.component, f"{endpoint} returned HTTP {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise DegradedExternalFetch(self.component, f"{endpoint} returned invalid JSON") from e

    def _to_rate_set(self, payload: dict, rate_date: Optional[date], source: str) -> RateSet:
        data = payload.get("data") if isinstance(payload, dict) else None
        if not data:
            raise DegradedExternalFetch(self.component, "response has no 'data' section")

        try:
            per_usd = {code.upper(): to_decimal(entry["value"]) for code, entry in data.items()}
        except (KeyError, TypeError, ValueError) as e:
            raise DegradedExternalFetch(self.component, f"malformed rate entry: {e}") from e

        reference_per_usd = per_usd.get(self.reference)
        if not reference_per_usd:
            raise DegradedExternalFetch(self.component, f"response lacks {self.reference}")

        rates = {
            code: reference_per_usd / value
            for code, value in per_usd.items()
            if code != self.reference and value > 0
        }
        rates[self.reference] = Decimal("1")

        return RateSet(rates=rates, reference=self.reference, rate_date=rate_date, source=source)
