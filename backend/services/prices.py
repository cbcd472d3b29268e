"""
backend/services/prices.py

BTC/USD price oracle with failover: CoinGecko first, then Kraken.

 - get_current_price() -> float
 - get_historical_price(day) -> float (daily price for a past date)

Used by the portfolio summary, the /api/prices routes, to stamp
btc_price_at_creation on new invoices and to price ledger rows created
without one. Raises ExternalServiceError when every source fails.
"""

import logging
from datetime import date, datetime, timezone
from typing import Optional

import httpx

from backend.config import settings
from backend.errors import BadRequestError, ExternalServiceError

logger = logging.getLogger(__name__)


class PriceOracle:
    def __init__(
        self,
        coingecko_url: Optional[str] = None,
        kraken_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.coingecko_url = (coingecko_url or settings.coingecko_api_url).rstrip("/")
        self.kraken_url = (kraken_url or settings.kraken_api_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.http_timeout_seconds
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    @staticmethod
    async def _get_json(client: httpx.AsyncClient, url: str, **params):
        """GET and decode JSON, or None on any transport/HTTP/decode failure."""
        try:
            resp = await client.get(url, params=params or None)
        except httpx.HTTPError as e:
            logger.debug(f"Price source {url} unreachable: {e}")
            return None
        if resp.status_code != 200:
            logger.debug(f"Price source {url} returned {resp.status_code}")
            return None
        try:
            return resp.json()
        except ValueError:
            return None

    @staticmethod
    def _kraken_pair(data) -> Optional[object]:
        if not isinstance(data, dict) or data.get("error") != []:
            return None
        result = data.get("result") or {}
        # The key for BTC/USD pair (e.g. "XXBTZUSD"); skip the "last" cursor
        for key, value in result.items():
            if key != "last":
                return value
        return None

    async def get_current_price(self) -> float:
        """Current BTC price in USD."""
        async with self._client() as client:
            # 1. CoinGecko simple price: {"bitcoin": {"usd": <price>}}
            data = await self._get_json(
                client, f"{self.coingecko_url}/simple/price", ids="bitcoin", vs_currencies="usd"
            )
            try:
                return float(data["bitcoin"]["usd"])
            except (TypeError, KeyError, ValueError):
                pass

            # 2. Kraken ticker: last trade price in result[pair]["c"][0]
            data = await self._get_json(client, f"{self.kraken_url}/Ticker", pair="XBTUSD")
            pair = self._kraken_pair(data)
            try:
                return float(pair["c"][0])
            except (TypeError, KeyError, IndexError, ValueError):
                pass

        logger.warning("All price sources failed for current BTC price")
        raise ExternalServiceError("Unable to retrieve current Bitcoin price from CoinGecko or Kraken.")

    async def get_historical_price(self, day: date) -> float:
        """Daily BTC price in USD for a past date."""
        if day > datetime.now(timezone.utc).date():
            raise BadRequestError("Date cannot be in the future.")

        async with self._client() as client:
            # 1. CoinGecko history wants DD-MM-YYYY
            data = await self._get_json(
                client,
                f"{self.coingecko_url}/coins/bitcoin/history",
                date=day.strftime("%d-%m-%Y"),
                localization="false",
            )
            try:
                return float(data["market_data"]["current_price"]["usd"])
            except (TypeError, KeyError, ValueError):
                pass

            # 2. Kraken daily OHLC starting at 00:00 UTC of that day
            since = int(datetime(day.year, day.month, day.day, tzinfo=timezone.utc).timestamp())
            data = await self._get_json(
                client, f"{self.kraken_url}/OHLC", pair="XBTUSD", interval=1440, since=since
            )
            rows = self._kraken_pair(data) or []
            try:
                # Each OHLC entry: [time, open, high, low, close, vwap, volume, count]
                for row in rows:
                    if int(row[0]) == since:
                        return float(row[1])
                if rows:
                    return float(rows[0][1])
            except (TypeError, IndexError, ValueError):
                pass

        logger.warning(f"All price sources failed for BTC price on {day}")
        raise ExternalServiceError(f"Unable to retrieve Bitcoin price for {day.isoformat()}.")


def get_price_oracle() -> PriceOracle:
    """FastAPI dependency; overridden in tests."""
    return PriceOracle()
