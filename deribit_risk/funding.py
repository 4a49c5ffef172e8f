"""
Perpetual funding: current 8h rate, 7-day average and z-score
"""

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from .config import FundingConfig
from .errors import DataInsufficientError, GatewayError
from .expiries import now_ms
from .gateway import MarketGateway
from .records import DAY_MS, FundingPoint

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FundingResult:
    instrument: str
    current_8h: Optional[float]
    avg_7d_8h: Optional[float]
    z_score: Optional[float]
    updated_at: Optional[int]
    aggregated_from_1h: bool = False

    @property
    def current_annualized_pct(self) -> Optional[float]:
        return annualize_8h(self.current_8h)

    @property
    def avg_annualized_pct(self) -> Optional[float]:
        return annualize_8h(self.avg_7d_8h)


def annualize_8h(rate: Optional[float], periods_per_year: float = 1095) -> Optional[float]:
    """8h funding rate to an annualized percent; 3 periods a day, 365 days"""
    if rate is None or not math.isfinite(rate):
        return None
    return rate * periods_per_year * 100


def aggregate_1h(points: Sequence[FundingPoint], window: int = 8) -> List[FundingPoint]:
    """Rolling sum of `window` hourly rates, stamped at the window's last point"""
    hourly = [p for p in points if p.rate_1h is not None]
    out: List[FundingPoint] = []
    for i in range(window - 1, len(hourly)):
        total = sum(p.rate_1h for p in hourly[i - window + 1:i + 1])
        out.append(FundingPoint(timestamp=hourly[i].timestamp, rate_8h=total))
    return out


def funding_stats(series: Sequence[FundingPoint]):
    """(current, average, z-score, updated_at) over the 8h series"""
    current = updated_at = None
    for p in reversed(series):
        if p.rate_8h is not None:
            current, updated_at = p.rate_8h, p.timestamp
            break

    values = np.array([p.rate_8h for p in series if p.rate_8h is not None], dtype=float)
    avg = float(values.mean()) if len(values) >= 2 else None

    z = None
    if current is not None and avg is not None:
        sd = float(values.std(ddof=1))
        if sd > 0:
            z = (current - avg) / sd
    return current, avg, z, updated_at


class FundingEngine:

    def __init__(self, gateway: MarketGateway, config: Optional[FundingConfig] = None):
        self.gateway = gateway
        self.config = config or FundingConfig()

    async def compute(self, instrument: Optional[str] = None, now: Optional[int] = None) -> FundingResult:
        cfg = self.config
        instrument = instrument or cfg.instrument
        now = now_ms() if now is None else now
        start = int(now - cfg.lookback_days * DAY_MS)

        series: List[FundingPoint] = []
        try:
            series = [p for p in await self.gateway.get_funding_rate_history(
                instrument, start, now, cfg.period_8h_sec) if p.rate_8h is not None]
        except GatewayError as e:
            logger.debug(f"8h funding history unavailable for {instrument}: {e}")

        aggregated = False
        if not series:
            hourly = await self.gateway.get_funding_rate_history(instrument, start, now, cfg.period_1h_sec)
            series = aggregate_1h(hourly)
            aggregated = bool(series)

        if not series:
            raise DataInsufficientError(f"No funding data returned for {instrument}")

        current, avg, z, updated_at = funding_stats(series)
        if current is None and avg is None:
            raise DataInsufficientError("No usable funding values in window")
        return FundingResult(instrument=instrument, current_8h=current, avg_7d_8h=avg,
                             z_score=z, updated_at=updated_at, aggregated_from_1h=aggregated)
