"""
Graph API (Meta Marketing API) spend client.

Only the read side the metrics service needs: campaign-level spend for a set
of selected campaigns in one ad account.

API Reference: https://developers.facebook.com/docs/marketing-api/insights
"""

import json
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Protocol

import httpx
import structlog

from opmetrics.metrics.currency import to_decimal
from opmetrics.metrics.errors import DegradedExternalFetch
from opmetrics.metrics.periods import DateRange

logger = structlog.get_logger(__name__)

# Insights pagination guard
MAX_PAGES = 20


@dataclass(frozen=True)
class AdSpend:
    """Spend of one ad account, in the account's currency."""
    account_id: str
    amount: Decimal
    currency: str


class AdNetworkClient(Protocol):

    async def fetch_selected_campaign_spend(
        self,
        account_id: str,
        date_range: DateRange,
        campaign_ids: List[str],
        preset: Optional[str] = None,
    ) -> AdSpend:
        ...


def _account_path(account_id: str) -> str:
    return account_id if account_id.startswith("act_") else f"act_{account_id}"


class GraphAdsClient:
    """
    Reads campaign spend through the insights edge.

    Every failure (transport, HTTP status, payload) is raised as
    DegradedExternalFetch so callers can zero the account's contribution.
    """

    component = "ad_network"

    def __init__(
        self,
        access_token: Optional[str],
        base_url: str = "https://graph.facebook.com",
        api_version: str = "v18.0",
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.access_token = access_token
        self.base_url = f"{base_url.rstrip('/')}/{api_version}"
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

    async def fetch_selected_campaign_spend(
        self,
        account_id: str,
        date_range: DateRange,
        campaign_ids: List[str],
        preset: Optional[str] = None,
    ) -> AdSpend:
        """
        Sum spend for `campaign_ids` in one account.

        Uses the ad-network date preset when the request came from a period
        tag, otherwise an explicit since/until on the operation's local days.
        """
        if not self.access_token:
            raise DegradedExternalFetch(self.component, "ad network access token is not configured")
        if not campaign_ids:
            return AdSpend(account_id=account_id, amount=Decimal("0"), currency="USD")

        params = {
            "access_token": self.access_token,
            "level": "campaign",
            "fields": "campaign_id,spend,account_currency",
            "filtering": json.dumps(
                [{"field": "campaign.id", "operator": "IN", "value": list(campaign_ids)}]
            ),
            "limit": "500",
        }
        if preset:
            params["date_preset"] = preset
        else:
            params["time_range"] = json.dumps(
                {"since": date_range.start_day.isoformat(), "until": date_range.end_day.isoformat()}
            )

        client = await self._get_client()
        url: Optional[str] = f"{self.base_url}/{_account_path(account_id)}/insights"
        total = Decimal("0")
        currency: Optional[str] = None
        pages = 0

        while url and pages < MAX_PAGES:
            payload = await self._get(client, url, params)
            rows = payload.get("data", [])
            if not isinstance(rows, list):
                raise DegradedExternalFetch(self.component, f"insights data is {type(rows).__name__}, not a list")
            for row in rows:
                if not isinstance(row, dict):
                    raise DegradedExternalFetch(self.component, f"insights row is {type(row).__name__}, not an object")
                try:
                    total += to_decimal(row.get("spend"))
                except ValueError as e:
                    raise DegradedExternalFetch(self.component, f"malformed spend value: {e}") from e
                row_currency = row.get("account_currency")
                if row_currency is not None and not isinstance(row_currency, str):
                    raise DegradedExternalFetch(self.component, "malformed account_currency")
                currency = currency or row_currency

            paging = payload.get("paging") or {}
            if not isinstance(paging, dict):
                raise DegradedExternalFetch(self.component, "malformed paging block")
            # The `next` link already carries every query parameter
            url = paging.get("next")
            params = None
            pages += 1

        if currency is None:
            currency = await self._account_currency(client, account_id)

        logger.debug(
            "Fetched ad account spend",
            account_id=account_id,
            campaigns=len(campaign_ids),
            amount=str(total),
            currency=currency,
        )
        return AdSpend(account_id=account_id, amount=total, currency=currency.upper())

    async def _account_currency(self, client: httpx.AsyncClient, account_id: str) -> str:
        payload = await self._get(
            client,
            f"{self.base_url}/{_account_path(account_id)}",
            {"access_token": self.access_token, "fields": "currency"},
        )
        currency = payload.get("currency")
        if not currency or not isinstance(currency, str):
            raise DegradedExternalFetch(self.component, f"no currency reported for account {account_id}")
        return currency

    async def _get(self, client: httpx.AsyncClient, url: str, params: Optional[dict]) -> dict:
        try:
            response = await client.get(url, params=params)
        except httpx.TimeoutException:
            raise DegradedExternalFetch(self.component, "request timed out") from None
        except httpx.HTTPError as e:
            raise DegradedExternalFetch(self.component, f"request failed: {e}") from e

        if response.status_code != 200:
            raise DegradedExternalFetch(
                self.component, f"HTTP {response.status_code}: {response.text[:200]}"
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise DegradedExternalFetch(self.component, "invalid JSON in response") from e
        if not isinstance(payload, dict):
            raise DegradedExternalFetch(self.component, f"response is {type(payload).__name__}, not an object")
        return payload
