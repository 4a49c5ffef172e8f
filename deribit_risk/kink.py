"""
Term-structure kink: 0DTE ATM IV against the mean of 1-3DTE ATM IV
"""

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .concurrency import fetch_bounded
from .config import KinkConfig, RetryConfig
from .errors import DataInsufficientError
from .expiries import now_ms
from .gateway import MarketGateway
from .records import DAY_MS, Instrument


@dataclass(frozen=True)
class KinkResult:
    index_price: float
    as_of: int
    iv_0dte: Optional[float]
    ivs: Dict[int, Optional[float]]
    mean_1to3: Optional[float]
    kink_points: Optional[float]
    kink_ratio: Optional[float]
    atm_instruments: Dict[int, str] = field(default_factory=dict)


def day_bucket(expiry_ts: int, now: int) -> Optional[int]:
    diff = math.floor((expiry_ts - now) / DAY_MS)
    return diff if 0 <= diff <= 3 else None


def pick_atm(instruments: Sequence[Instrument], spot: float) -> Optional[Instrument]:
    candidates = [i for i in instruments if i.strike and i.strike > 0]
    if not candidates or not spot or spot <= 0:
        return None
    return min(candidates, key=lambda i: abs(math.log(i.strike / spot)))


def kink_metrics(iv0: Optional[float], others: Sequence[Optional[float]]):
    """(mean, points, ratio); points and ratio are None without iv0 or a mean"""
    values = [v for v in others if v is not None and math.isfinite(v)]
    mean = sum(values) / len(values) if values else None
    if iv0 is None or mean is None:
        return mean, None, None
    ratio = iv0 / mean if mean != 0 else None
    return mean, iv0 - mean, ratio


class TermStructureKinkEngine:

    def __init__(self, gateway: MarketGateway, config: Optional[KinkConfig] = None,
                 retry: Optional[RetryConfig] = None):
        self.gateway = gateway
        self.config = config or KinkConfig()
        self.retry = retry or RetryConfig()

    async def compute(self, currency: str = "BTC", now: Optional[int] = None) -> KinkResult:
        now = now_ms() if now is None else now
        instruments = await self.gateway.get_instruments(currency, "option")
        spot = (await self.gateway.get_index_price(currency)).price
        if not instruments:
            raise DataInsufficientError("No active option instruments")

        buckets: Dict[int, List[Instrument]] = {b: [] for b in self.config.buckets}
        for inst in instruments:
            if not inst.is_option or inst.expiry_ts is None:
                continue
            b = day_bucket(inst.expiry_ts, now)
            if b in buckets:
                buckets[b].append(inst)

        atm = {b: pick_atm(legs, spot) for b, legs in buckets.items()}
        picked = [(b, inst) for b, inst in atm.items() if inst is not None]
        tickers = await fetch_bounded([inst.name for _, inst in picked], self.gateway.get_ticker, self.retry)

        ivs: Dict[int, Optional[float]] = {b: None for b in buckets}
        for (b, _), ticker in zip(picked, tickers):
            ivs[b] = ticker.mark_iv if ticker else None

        iv0 = ivs.get(0)
        mean, points, ratio = kink_metrics(iv0, [ivs.get(b) for b in buckets if b != 0])
        return KinkResult(
            index_price=spot,
            as_of=now,
            iv_0dte=iv0,
            ivs=ivs,
            mean_1to3=mean,
            kink_points=points,
            kink_ratio=ratio,
            atm_instruments={b: inst.name for b, inst in picked},
        )
