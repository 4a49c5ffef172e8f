"""
Deribit API Client
Fetches public market data and hands back normalized records
"""

import aiohttp
import asyncio
import logging
import ssl
import time
from typing import Callable, List, Optional

import certifi

from .errors import GatewayError, RateLimitError
from .records import (
    BookSummary, Candle, FundingPoint, IndexPrice, Instrument, OrderBook, Ticker,
    parse_book_summary, parse_chart_candles, parse_funding_points, parse_instrument,
    parse_order_book, parse_ticker, parse_vol_index_candles,
)

logger = logging.getLogger(__name__)

TOO_MANY_REQUESTS = 10028


class RateGate:
    """
    Minimum spacing between outgoing requests.
    Owned by one client instance; `reset` forgets the last slot.
    """

    def __init__(self, requests_per_second: float = 15.0,
                 clock: Callable[[], float] = time.monotonic):
        self.interval = 1.0 / requests_per_second if requests_per_second > 0 else 0.0
        self._clock = clock
        self._next_slot = 0.0
        self._lock = asyncio.Lock()

    async def wait(self):
        if self.interval <= 0:
            return
        async with self._lock:
            now = self._clock()
            delay = self._next_slot - now
            self._next_slot = max(now, self._next_slot) + self.interval
        if delay > 0:
            await asyncio.sleep(delay)

    def reset(self):
        self._next_slot = 0.0


class DeribitClient:
    """
    Async client for the Deribit public API
    No authentication needed for public endpoints
    """

    BASE_URL = "https://www.deribit.com/api/v2"
    TEST_URL = "https://test.deribit.com/api/v2"

    def __init__(self, testnet: bool = False, requests_per_second: float = 15.0,
                 timeout: float = 10.0):
        self.base_url = self.TEST_URL if testnet else self.BASE_URL
        self.rate_gate = RateGate(requests_per_second)
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None
        # Deribit uses a Let's Encrypt chain that older macOS installs struggle with.
        self._ssl_context = ssl.create_default_context(cafile=certifi.where())

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(ssl=self._ssl_context)
            self._session = aiohttp.ClientSession(connector=connector, timeout=self._timeout)
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def reset(self):
        """Drop the HTTP session and rate-gate state"""
        await self.close()
        self.rate_gate.reset()

    async def _request(self, method: str, params: dict = None):
        """Make API request, returning the `result` member"""
        await self.rate_gate.wait()
        session = await self._get_session()
        url = f"{self.base_url}/public/{method}"

        try:
            async with session.get(url, params=params) as response:
                if response.status == 429:
                    raise RateLimitError(f"Deribit rate limit on {method}", method=method, code=429)
                data = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            logger.error(f"Deribit request failed: {method}: {e}")
            raise GatewayError(f"Deribit request failed: {e}", method=method) from e
        except asyncio.TimeoutError as e:
            logger.error(f"Deribit request timed out: {method}")
            raise GatewayError(f"Deribit request timed out: {method}", method=method) from e

        if not isinstance(data, dict):
            raise GatewayError(f"Unexpected Deribit payload for {method}", method=method)
        if 'error' in data:
            error = data['error'] or {}
            code = error.get('code') if isinstance(error, dict) else None
            if code == TOO_MANY_REQUESTS:
                raise RateLimitError(f"Deribit rate limit on {method}", method=method, code=code)
            logger.error(f"Deribit API error on {method}: {error}")
            raise GatewayError(f"Deribit API error: {error}", method=method, code=code)
        return data.get('result', data)

    # ------------------------------------------------------------------
    async def get_instruments(self, currency: str = "BTC",
                              kind: Optional[str] = None) -> List[Instrument]:
        """Active instruments; options and futures when `kind` is None"""
        kinds = [kind] if kind else ["option", "future"]
        instruments: List[Instrument] = []
        for k in kinds:
            result = await self._request("get_instruments", {
                "currency": currency,
                "kind": k,
                "expired": "false"
            })
            for raw in result or []:
                parsed = parse_instrument(raw)
                if parsed is not None:
                    instruments.append(parsed)
        return instruments

    async def get_index_price(self, currency: str = "BTC") -> IndexPrice:
        """Get current index price"""
        result = await self._request("get_index_price", {
            "index_name": f"{currency.lower()}_usd"
        })
        price = result.get('index_price') if isinstance(result, dict) else None
        if not isinstance(price, (int, float)) or price <= 0:
            raise GatewayError("Deribit returned no index price", method="get_index_price")
        timestamp = result.get('timestamp') or int(time.time() * 1000)
        return IndexPrice(price=float(price), timestamp=int(timestamp))

    async def get_ticker(self, instrument_name: str) -> Ticker:
        """Get ticker for specific instrument"""
        result = await self._request("ticker", {
            "instrument_name": instrument_name
        })
        return parse_ticker(result)

    async def get_order_book(self, instrument_name: str, depth: int = 20) -> OrderBook:
        result = await self._request("get_order_book", {
            "instrument_name": instrument_name,
            "depth": depth
        })
        return parse_order_book(result)

    async def get_book_summary_by_currency(self, currency: str = "BTC",
                                           kind: str = "option") -> List[BookSummary]:
        """Get book summary (open interest, mark IV) for all instruments"""
        result = await self._request("get_book_summary_by_currency", {
            "currency": currency,
            "kind": kind
        })
        summaries = [parse_book_summary(raw) for raw in result or []]
        return [s for s in summaries if s is not None]

    async def get_funding_rate_history(self, instrument_name: str, start_ms: int, end_ms: int,
                                       period: Optional[int] = None) -> List[FundingPoint]:
        params = {
            "instrument_name": instrument_name,
            "start_timestamp": start_ms,
            "end_timestamp": end_ms,
        }
        if period:
            params["period"] = period
        result = await self._request("get_funding_rate_history", params)
        return parse_funding_points(result)

    async def get_volatility_index_data(self, currency: str, start_ms: int, end_ms: int,
                                        resolution: str = "1D") -> List[Candle]:
        """DVOL candles; closes kept in the exchange's percent scale"""
        result = await self._request("get_volatility_index_data", {
            "currency": currency,
            "resolution": resolution,
            "start_timestamp": start_ms,
            "end_timestamp": end_ms
        })
        return parse_vol_index_candles(result)

    async def get_tradingview_chart_data(self, instrument_name: str, start_ms: int, end_ms: int,
                                         resolution: str = "1D") -> List[Candle]:
        """Underlying OHLC history"""
        result = await self._request("get_tradingview_chart_data", {
            "instrument_name": instrument_name,
            "resolution": resolution,
            "start_timestamp": start_ms,
            "end_timestamp": end_ms
        })
        return parse_chart_candles(result)
