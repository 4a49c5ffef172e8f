"""
OHLC helpers for the candle-based KPIs
True range, Wilder and simple ATR, and simple moving averages over
perpetual candles. Missing highs or lows fall back to the close.
"""

import math
from typing import List, Optional, Sequence

from .gateway import MarketGateway
from .records import Candle


def bars_per_day(resolution_sec: int) -> float:
    return 86400 / resolution_sec if resolution_sec > 0 else 1.0


def window_bars(days: float, resolution_sec: int = 86400) -> int:
    """Trailing window in days as a bar count, at least 2"""
    return max(2, round(max(1.0, days) * bars_per_day(resolution_sec)))


def sort_candles(candles: Sequence[Candle]) -> List[Candle]:
    return sorted((c for c in candles if c.close is not None and math.isfinite(c.close)),
                  key=lambda c: c.ts)


def _high(c: Candle) -> float:
    return c.high if c.high is not None and math.isfinite(c.high) else c.close


def _low(c: Candle) -> float:
    return c.low if c.low is not None and math.isfinite(c.low) else c.close


def true_range(cur: Candle, prev_close: float) -> float:
    h, lo = _high(cur), _low(cur)
    return max(h - lo, abs(h - prev_close), abs(lo - prev_close))


def true_ranges(candles: Sequence[Candle]) -> List[float]:
    ordered = sort_candles(candles)
    return [true_range(cur, prev.close) for prev, cur in zip(ordered, ordered[1:])]


def atr_wilder(candles: Sequence[Candle], period: int = 14) -> Optional[float]:
    """
    Latest Wilder ATR in price units.

    Seeded with the mean of the first `period` true ranges, then smoothed
    as atr = atr + (tr - atr) / period. Needs period + 1 candles.
    """
    period = max(2, int(period))
    trs = true_ranges(candles)
    if len(trs) < period:
        return None
    atr = sum(trs[:period]) / period
    for tr in trs[period:]:
        atr += (tr - atr) / period
    return atr


def atr_simple(candles: Sequence[Candle], window: int = 14) -> Optional[float]:
    """Plain mean of the last `window` true ranges"""
    trs = true_ranges(candles)
    if window <= 0 or len(trs) < window:
        return None
    return sum(trs[-window:]) / window


def sma(closes: Sequence[float], window: int, end: Optional[int] = None) -> Optional[float]:
    """Mean of the `window` closes ending at index `end` (default: the last)"""
    end = len(closes) - 1 if end is None else end
    start = end - window + 1
    if window <= 0 or start < 0 or end >= len(closes):
        return None
    return sum(closes[start:end + 1]) / window


def chart_resolution(resolution_sec: int) -> str:
    return "1D" if resolution_sec >= 86400 else str(max(1, resolution_sec // 60))


async def perpetual_candles(gateway: MarketGateway, currency: str, bars: int, now: int,
                            resolution_sec: int = 86400) -> List[Candle]:
    """The last `bars` perpetual candles ending at `now`, oldest first"""
    span_ms = int(bars * resolution_sec * 1000)
    candles = await gateway.get_tradingview_chart_data(
        f"{currency}-PERPETUAL", now - span_ms, now, chart_resolution(resolution_sec))
    return sort_candles(candles)
