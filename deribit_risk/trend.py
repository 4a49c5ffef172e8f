"""
Trend filters from perpetual daily candles
Spot distance from its 20/50/100/200D SMAs, and trend quality from the
50D/100D SMA separation and slopes (bps of spot per day).
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence

from .config import SmaConfig, TrendQualityConfig
from .errors import DataInsufficientError
from .expiries import now_ms
from .gateway import MarketGateway
from .ohlc import atr_simple, perpetual_candles, sma
from .records import Candle

UP = "up"
DOWN = "down"
FLAT = "flat"

UPTREND = "uptrend"
DOWNTREND = "downtrend"
MIXED = "mixed"

RANGE_FRIENDLY = "range-friendly"
GRINDY_TREND = "grindy trend risk"
TRANSITION = "transition"


@dataclass(frozen=True)
class SmaRow:
    tenor: int
    sma: Optional[float]
    distance_pct: Optional[float]    # (spot - sma) / sma * 100
    slope: Optional[str]

    @property
    def above(self) -> Optional[bool]:
        return None if self.distance_pct is None else self.distance_pct >= 0


@dataclass(frozen=True)
class SpotVsSmaResult:
    spot: float
    rows: List[SmaRow]
    main_tenor: int
    as_of: int

    @property
    def main(self) -> Optional[SmaRow]:
        return next((r for r in self.rows if r.tenor == self.main_tenor and r.sma is not None), None)


@dataclass(frozen=True)
class TrendQualityResult:
    spot: float
    separation_pct: float       # (SMA fast - SMA slow) / spot * 100
    fast_slope_bps: float
    slow_slope_bps: float
    atr: Optional[float]
    direction: str
    regime: str
    fast: int
    slow: int
    as_of: int


def slope_label(now: Optional[float], prev: Optional[float], eps: float = 0.0005) -> Optional[str]:
    if now is None or prev is None:
        return None
    diff = now - prev
    tolerance = abs(now) * eps
    if diff > tolerance:
        return UP
    if diff < -tolerance:
        return DOWN
    return FLAT


def sma_rows(closes: Sequence[float], tenors: Sequence[int], eps: float = 0.0005) -> List[SmaRow]:
    last = len(closes) - 1
    spot = closes[last]
    rows = []
    for tenor in tenors:
        current = sma(closes, tenor, last)
        previous = sma(closes, tenor, last - 1)
        distance = (spot - current) / current * 100 if current else None
        rows.append(SmaRow(tenor=tenor, sma=current, distance_pct=distance,
                           slope=slope_label(current, previous, eps)))
    return rows


def classify_trend(separation_pct: float, fast_bps: float, slow_bps: float,
                   config: Optional[TrendQualityConfig] = None):
    """(direction, regime) for the short-premium carry framing"""
    cfg = config or TrendQualityConfig()
    if separation_pct > 0 and fast_bps > 0 and slow_bps > 0:
        direction = UPTREND
    elif separation_pct < 0 and fast_bps < 0 and slow_bps < 0:
        direction = DOWNTREND
    else:
        direction = MIXED

    sep, fast, slow = abs(separation_pct), abs(fast_bps), abs(slow_bps)
    if sep < cfg.range_sep_pct and fast < cfg.range_fast_bps and slow < cfg.range_slow_bps:
        regime = RANGE_FRIENDLY
    elif sep >= cfg.trend_sep_pct and (fast >= cfg.trend_fast_bps or slow >= cfg.trend_slow_bps):
        regime = GRINDY_TREND
    else:
        regime = TRANSITION
    return direction, regime


def trend_quality(candles: Sequence[Candle], config: Optional[TrendQualityConfig] = None,
                  as_of: int = 0) -> Optional[TrendQualityResult]:
    cfg = config or TrendQualityConfig()
    closes = [c.close for c in candles]
    if not closes or closes[-1] <= 0:
        return None
    last = len(closes) - 1
    spot = closes[last]
    fast_now, fast_prev = sma(closes, cfg.fast, last), sma(closes, cfg.fast, last - 1)
    slow_now, slow_prev = sma(closes, cfg.slow, last), sma(closes, cfg.slow, last - 1)
    if None in (fast_now, fast_prev, slow_now, slow_prev):
        return None

    separation = (fast_now - slow_now) / spot * 100
    fast_bps = (fast_now - fast_prev) / spot * 10_000
    slow_bps = (slow_now - slow_prev) / spot * 10_000
    direction, regime = classify_trend(separation, fast_bps, slow_bps, cfg)
    return TrendQualityResult(
        spot=spot,
        separation_pct=separation,
        fast_slope_bps=fast_bps,
        slow_slope_bps=slow_bps,
        atr=atr_simple(candles, cfg.atr_window),
        direction=direction,
        regime=regime,
        fast=cfg.fast,
        slow=cfg.slow,
        as_of=as_of,
    )


class TrendEngine:

    def __init__(self, gateway: MarketGateway, sma_config: Optional[SmaConfig] = None,
                 quality_config: Optional[TrendQualityConfig] = None):
        self.gateway = gateway
        self.sma_config = sma_config or SmaConfig()
        self.quality_config = quality_config or TrendQualityConfig()

    async def spot_vs_sma(self, currency: str = "BTC", now: Optional[int] = None) -> SpotVsSmaResult:
        cfg = self.sma_config
        now = now_ms() if now is None else now
        candles = await perpetual_candles(self.gateway, currency, cfg.history_bars, now)
        if not candles:
            raise DataInsufficientError("No price history")
        closes = [c.close for c in candles]
        result = SpotVsSmaResult(spot=closes[-1], rows=sma_rows(closes, cfg.tenors, cfg.slope_eps),
                                 main_tenor=cfg.main_tenor, as_of=now)
        if result.main is None:
            raise DataInsufficientError(f"Not enough history for the {cfg.main_tenor}D SMA")
        return result

    async def trend_quality(self, currency: str = "BTC", now: Optional[int] = None) -> TrendQualityResult:
        cfg = self.quality_config
        now = now_ms() if now is None else now
        candles = await perpetual_candles(self.gateway, currency, cfg.history_bars, now)
        if not candles:
            raise DataInsufficientError("No price history")
        result = trend_quality(candles, cfg, as_of=now)
        if result is None:
            raise DataInsufficientError(f"Not enough history for {cfg.fast}D/{cfg.slow}D SMAs")
        return result
