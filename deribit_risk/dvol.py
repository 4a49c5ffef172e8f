"""
IV rank and percentile from the DVOL index
"""

import math
from dataclasses import dataclass
from typing import Optional, Sequence

from .config import DvolConfig
from .errors import DataInsufficientError
from .expiries import now_ms
from .gateway import MarketGateway
from .records import DAY_MS, Candle, normalize_vol_pct


@dataclass(frozen=True)
class IvRankResult:
    current: float        # DVOL, percent scale
    ivr: int              # 0-100
    ivp: int              # 0-100
    low: float
    high: float
    last_updated: int
    samples: int


def _clamp_pct(x: float) -> int:
    return int(max(0, min(100, round(x))))


def iv_rank(candles: Sequence[Candle], window_days: int = 365) -> Optional[IvRankResult]:
    """
    Rank (position between the window's min and max) and percentile (share
    of closes strictly below the latest) over the last `window_days`.
    """
    if not candles:
        return None
    history = sorted(candles, key=lambda c: c.ts)
    last_ts = history[-1].ts
    start = last_ts - window_days * DAY_MS
    closes = [v for v in (normalize_vol_pct(c.close) for c in history if c.ts >= start)
              if v is not None and math.isfinite(v)]
    if not closes:
        return None

    current = closes[-1]
    lo, hi = min(closes), max(closes)
    span = hi - lo
    rank = (current - lo) / span * 100 if span > 0 else 0.0
    percentile = sum(1 for v in closes if v < current) / len(closes) * 100
    return IvRankResult(current=current, ivr=_clamp_pct(rank), ivp=_clamp_pct(percentile),
                        low=lo, high=hi, last_updated=last_ts, samples=len(closes))


class IvRankEngine:

    def __init__(self, gateway: MarketGateway, config: Optional[DvolConfig] = None):
        self.gateway = gateway
        self.config = config or DvolConfig()

    async def compute(self, currency: str = "BTC", now: Optional[int] = None) -> IvRankResult:
        now = now_ms() if now is None else now
        start = now - self.config.lookback_days * DAY_MS
        candles = await self.gateway.get_volatility_index_data(currency, start, now, self.config.resolution)
        result = iv_rank(candles, self.config.window_days)
        if result is None:
            raise DataInsufficientError("No usable DVOL values in 1y window")
        return result
