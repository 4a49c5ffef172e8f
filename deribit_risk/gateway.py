"""
Market gateway protocol
Engines depend on this shape only; `DeribitClient` is the live implementation.
"""

from typing import List, Optional, Protocol

from .records import BookSummary, Candle, FundingPoint, IndexPrice, Instrument, OrderBook, Ticker


class MarketGateway(Protocol):

    async def get_instruments(self, currency: str, kind: Optional[str] = None) -> List[Instrument]:
        ...

    async def get_index_price(self, currency: str) -> IndexPrice:
        ...

    async def get_ticker(self, instrument_name: str) -> Ticker:
        ...

    async def get_order_book(self, instrument_name: str, depth: int = 20) -> OrderBook:
        ...

    async def get_book_summary_by_currency(self, currency: str, kind: str = "option") -> List[BookSummary]:
        ...

    async def get_funding_rate_history(self, instrument_name: str, start_ms: int, end_ms: int,
                                       period: Optional[int] = None) -> List[FundingPoint]:
        ...

    async def get_volatility_index_data(self, currency: str, start_ms: int, end_ms: int,
                                        resolution: str = "1D") -> List[Candle]:
        ...

    async def get_tradingview_chart_data(self, instrument_name: str, start_ms: int, end_ms: int,
                                         resolution: str = "1D") -> List[Candle]:
        ...
