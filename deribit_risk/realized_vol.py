"""
Realized volatility and its ratio to implied
Close-to-close and Parkinson RV from perpetual candles, compared with ATM IV
(RV/IV factor), with DVOL (IV-RV spread), and with the expected move
(short-horizon ATR / EM).
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np

from .config import AtrEmConfig, HitRateConfig, IvRvConfig, RealizedVolConfig
from .errors import DataInsufficientError, GatewayError
from .expected_move import ExpectedMoveEngine, em_pct_from_iv
from .expiries import now_ms
from .gateway import MarketGateway
from .interpolation import ExtrapolationMode, interpolate_iv_value
from .ohlc import atr_wilder, bars_per_day, perpetual_candles, window_bars
from .records import DAY_MS, Candle, normalize_vol_pct
from .term import AtmTermBuilder

logger = logging.getLogger(__name__)

PARKINSON_K = 1 / (4 * math.log(2))

RICH = "Implied > realized (premium relatively rich)"
BALANCED = "Realized ≈ implied (balanced)"
ELEVATED = "Realized ≥ implied (move risk elevated)"


@dataclass(frozen=True)
class RealizedVolResult:
    rv: float                       # annualized decimal, close-to-close
    rv_parkinson: Optional[float]
    iv: Optional[float]             # ATM IV at the comparison tenor
    rv_em_factor: Optional[float]   # rv / iv
    window: int
    as_of: int


@dataclass(frozen=True)
class HitRateResult:
    hit_rate_pct: Optional[float]
    total: int
    hits: int

    @property
    def misses(self) -> int:
        return self.total - self.hits


@dataclass(frozen=True)
class IvRvSpreadResult:
    dvol_pct: float                                  # DVOL, percent scale
    rv_pct: Dict[int, Optional[float]] = field(default_factory=dict)
    main_window: int = 21
    as_of: int = 0

    @property
    def spread(self) -> Optional[float]:
        rv = self.rv_pct.get(self.main_window)
        return self.dvol_pct - rv if rv is not None else None

    def spread_for(self, window: int) -> Optional[float]:
        rv = self.rv_pct.get(window)
        return self.dvol_pct - rv if rv is not None else None


@dataclass(frozen=True)
class AtrEmResult:
    spot: float
    atm_iv: float
    atr: float
    em: float
    atr_days: float
    horizon_days: int
    regime: str
    as_of: int

    @property
    def ratio(self) -> float:
        return self.atr / self.em


def realized_vol_from_closes(closes: Sequence[float], window: int = 20,
                             periods_per_year: float = 365) -> Optional[float]:
    """Sample stdev of the last `window` log returns, annualized"""
    if len(closes) < window + 1:
        return None
    tail = np.asarray(closes[-(window + 1):], dtype=float)
    with np.errstate(divide='ignore', invalid='ignore'):
        returns = np.log(tail[1:] / tail[:-1])
    returns = returns[np.isfinite(returns)]
    if len(returns) < 2:
        return None
    variance = np.var(returns, ddof=1)
    return float(math.sqrt(max(variance, 0.0)) * math.sqrt(periods_per_year))


def parkinson_vol(candles: Sequence[Candle], window: int = 20,
                  periods_per_year: float = 365) -> Optional[float]:
    """Range-based estimator: sqrt(k * mean(ln(H/L)^2)) annualized, k = 1/(4 ln 2)"""
    ranges = [(c.high, c.low) for c in candles[-window:]
              if c.high and c.low and c.high > 0 and c.low > 0 and c.high >= c.low]
    if len(ranges) < 2:
        return None
    squared = np.log(np.array([h for h, _ in ranges]) / np.array([lo for _, lo in ranges])) ** 2
    return float(math.sqrt(PARKINSON_K * float(np.mean(squared)) * periods_per_year))


def rv_em_factor(rv: Optional[float], iv: Optional[float]) -> Optional[float]:
    if rv is None or iv is None or not math.isfinite(rv) or not math.isfinite(iv) or iv == 0:
        return None
    return rv / iv


def atr_em_regime(ratio: float, config: Optional[AtrEmConfig] = None) -> str:
    config = config or AtrEmConfig()
    if ratio <= config.rich_below:
        return RICH
    if ratio <= config.balanced_below:
        return BALANCED
    return ELEVATED


def latest_dvol_pct(candles: Sequence[Candle]) -> Optional[float]:
    for c in sorted(candles, key=lambda c: c.ts, reverse=True):
        value = normalize_vol_pct(c.close)
        if value is not None:
            return value
    return None


def expected_move_hit_rate(iv_series: Sequence[Candle], closes: Sequence[Candle],
                           horizon_days: int = 1, lookback: int = 30) -> HitRateResult:
    """
    Share of days whose next close stayed within the IV-implied expected move.

    `iv_series` closes are annualized vol (percent or decimal); both series
    are aligned on their timestamps.
    """
    by_day: Dict[int, Dict[str, float]] = {}
    for c in iv_series:
        vol = normalize_vol_pct(c.close)
        if vol is not None:
            by_day.setdefault(c.ts, {})['iv'] = vol / 100
    for c in closes:
        by_day.setdefault(c.ts, {})['spot'] = c.close

    entries = [by_day[ts] for ts in sorted(by_day)][-(lookback + 1):]
    hits = total = 0
    for today, tomorrow in zip(entries, entries[1:]):
        spot, iv, next_spot = today.get('spot'), today.get('iv'), tomorrow.get('spot')
        if spot is None or iv is None or next_spot is None:
            continue
        total += 1
        if abs(next_spot - spot) <= spot * em_pct_from_iv(iv, horizon_days):
            hits += 1
    return HitRateResult(hit_rate_pct=hits / total * 100 if total else None, total=total, hits=hits)


class RealizedVolEngine:

    def __init__(self, gateway: MarketGateway, config: Optional[RealizedVolConfig] = None,
                 term_builder: Optional[AtmTermBuilder] = None):
        self.gateway = gateway
        self.config = config or RealizedVolConfig()
        self.term_builder = term_builder or AtmTermBuilder(gateway)

    async def history(self, currency: str, bars: int, now: int) -> List[Candle]:
        return await perpetual_candles(self.gateway, currency, bars, now, self.config.resolution_sec)

    async def atm_iv(self, currency: str, tenor_days: float, now: int) -> Optional[float]:
        """ATM IV at `tenor_days`, or None when the term cannot be built"""
        try:
            term = await self.term_builder.build(currency=currency, now=now)
        except (GatewayError, DataInsufficientError) as e:
            logger.warning(f"ATM IV unavailable for {currency}, reporting RV alone: {e}")
            return None
        return interpolate_iv_value(term.nodes(), tenor_days / 365, ExtrapolationMode.FLAT)

    async def compute(self, currency: str = "BTC", now: Optional[int] = None) -> RealizedVolResult:
        cfg = self.config
        now = now_ms() if now is None else now
        candles = await self.history(currency, cfg.window + 50, now)
        closes = [c.close for c in candles]

        ppy = cfg.periods_per_year * bars_per_day(cfg.resolution_sec)
        rv = realized_vol_from_closes(closes, cfg.window, ppy)
        if rv is None:
            raise DataInsufficientError("Insufficient price history for RV")

        iv = await self.atm_iv(currency, cfg.iv_tenor_days, now)
        return RealizedVolResult(
            rv=rv,
            rv_parkinson=parkinson_vol(candles, cfg.window, ppy),
            iv=iv,
            rv_em_factor=rv_em_factor(rv, iv),
            window=cfg.window,
            as_of=now,
        )

    async def hit_rate(self, currency: str = "BTC", config: Optional[HitRateConfig] = None,
                       now: Optional[int] = None) -> HitRateResult:
        config = config or HitRateConfig()
        now = now_ms() if now is None else now
        start = now - (config.lookback + 2) * DAY_MS
        ivs = await self.gateway.get_volatility_index_data(currency, start, now, "1D")
        prices = await self.gateway.get_tradingview_chart_data(f"{currency}-PERPETUAL", start, now, "1D")
        result = expected_move_hit_rate(ivs, prices, config.horizon_days, config.lookback)
        if not result.total:
            raise DataInsufficientError("No overlapping DVOL and price history")
        return result

    async def iv_rv_spread(self, currency: str = "BTC", config: Optional[IvRvConfig] = None,
                           now: Optional[int] = None) -> IvRvSpreadResult:
        """DVOL (30D implied) minus close-to-close RV over several windows"""
        config = config or IvRvConfig()
        now = now_ms() if now is None else now
        dvol = await self.gateway.get_volatility_index_data(
            currency, now - config.dvol_lookback_days * DAY_MS, now, "1D")
        dvol_pct = latest_dvol_pct(dvol)
        if dvol_pct is None:
            raise DataInsufficientError("Awaiting IV (DVOL) data")

        resolution = self.config.resolution_sec
        ppy = config.periods_per_year * bars_per_day(resolution)
        longest = max(window_bars(w, resolution) for w in config.windows)
        closes = [c.close for c in await self.history(currency, longest + 5, now)]

        rv_pct: Dict[int, Optional[float]] = {}
        for w in config.windows:
            rv = realized_vol_from_closes(closes, window_bars(w, resolution), ppy)
            rv_pct[w] = rv * 100 if rv is not None else None
        if rv_pct.get(config.main_window) is None:
            raise DataInsufficientError(f"Insufficient price history for {config.main_window}D RV")
        return IvRvSpreadResult(dvol_pct=dvol_pct, rv_pct=rv_pct, main_window=config.main_window, as_of=now)

    async def atr_em(self, currency: str = "BTC", config: Optional[AtrEmConfig] = None,
                     now: Optional[int] = None) -> AtrEmResult:
        """Short-horizon Wilder ATR against the expected move over the same horizon"""
        config = config or AtrEmConfig()
        now = now_ms() if now is None else now
        period = window_bars(config.atr_days, config.resolution_sec)
        candles = await perpetual_candles(self.gateway, currency, period + 30, now, config.resolution_sec)
        atr = atr_wilder(candles, period)
        if atr is None:
            raise DataInsufficientError(f"Insufficient price history for ATR({period})")

        term = await self.term_builder.build(currency=currency, now=now)
        row = ExpectedMoveEngine().row(term.index_price, term.nodes(), config.horizon_days, now)
        if row.abs is None or row.abs <= 0 or row.iv is None:
            raise DataInsufficientError(f"No {config.horizon_days}D expected move")
        ratio = atr / row.abs
        return AtrEmResult(spot=term.index_price, atm_iv=row.iv, atr=atr, em=row.abs,
                           atr_days=config.atr_days, horizon_days=config.horizon_days,
                           regime=atr_em_regime(ratio, config), as_of=now)
