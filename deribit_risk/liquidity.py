"""
Composite liquidity stress
Reads the order books of the perpetual and two representative options
(~3D and ~30D), scores spread and depth stress per market in [0, 1] and
blends them with fixed market weights.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from .config import LiquidityConfig
from .errors import DataInsufficientError
from .expiries import now_ms
from .gateway import MarketGateway
from .records import Instrument, OrderBook

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LiquidityStressMarket:
    id: str
    label: str
    instrument: str
    dte: Optional[float] = None
    spread_bps: Optional[float] = None
    tick_spread: Optional[float] = None
    depth: float = 0.0
    spread_stress: float = 0.0
    depth_stress: float = 0.0
    stress: float = 0.0


@dataclass(frozen=True)
class LiquidityStressMetrics:
    combined_stress: float
    markets: List[LiquidityStressMarket] = field(default_factory=list)
    avg_spread_bps: Optional[float] = None
    total_depth: float = 0.0
    index_price: Optional[float] = None


def clamp(x: float, lo: float = 0.0, hi: float = 1.0) -> float:
    return max(lo, min(hi, x))


def option_tick(price: float, cfg: LiquidityConfig) -> float:
    return cfg.wide_tick if price >= cfg.tick_threshold else cfg.narrow_tick


def book_mid(book: OrderBook, fallback: Optional[float] = None) -> Tuple[Optional[float], Optional[float], Optional[float]]:
    """(bid, ask, mid); mid falls back to ask, bid, mark, then `fallback`"""
    bid, ask = book.top_bid(), book.top_ask()
    if bid and ask:
        mid = (bid + ask) / 2
    else:
        mid = ask or bid or book.mark_price or fallback
    return bid, ask, mid


def depth_within(book: OrderBook, mid: float, window_pct: float) -> float:
    lower, upper = mid * (1 - window_pct), mid * (1 + window_pct)
    depth = sum(level.amount for level in book.bids if level.price >= lower)
    depth += sum(level.amount for level in book.asks if level.price <= upper)
    return depth


def score_market(book: OrderBook, market_id: str, label: str, is_option: bool,
                 cfg: Optional[LiquidityConfig] = None, dte: Optional[float] = None,
                 index_price: Optional[float] = None) -> Optional[LiquidityStressMarket]:
    """Spread and depth stress for one book; None when no price can be read"""
    cfg = cfg or LiquidityConfig()
    bid, ask, mid = book_mid(book, index_price)
    if not mid or not math.isfinite(mid):
        return None

    spread_bps = (ask - bid) / mid * 10_000 if bid and ask else None
    tick_spread = None
    if is_option and bid and ask:
        tick_spread = (ask - bid) / option_tick(mid, cfg)

    if tick_spread is not None and math.isfinite(tick_spread):
        spread_stress = clamp((tick_spread - 1) / (cfg.max_ticks - 1))
    elif spread_bps is not None and math.isfinite(spread_bps):
        spread_stress = clamp(spread_bps / cfg.max_spread_bps)
    else:
        spread_stress = 0.0

    window = max(cfg.window_pct, cfg.option_min_window_pct) if is_option else cfg.window_pct
    depth = depth_within(book, mid, window)
    denom = cfg.clip_size * 4 if cfg.clip_size > 0 else 1
    depth_stress = 1 - min(depth / denom, 1)

    stress = cfg.spread_weight * spread_stress + cfg.depth_weight * depth_stress
    return LiquidityStressMarket(
        id=market_id, label=label, instrument=book.name, dte=dte,
        spread_bps=spread_bps, tick_spread=tick_spread, depth=depth,
        spread_stress=spread_stress, depth_stress=depth_stress, stress=clamp(stress),
    )


def combine(markets: Sequence[LiquidityStressMarket], cfg: Optional[LiquidityConfig] = None,
            index_price: Optional[float] = None) -> LiquidityStressMetrics:
    """Weighted stress, renormalized over the markets actually present"""
    cfg = cfg or LiquidityConfig()
    if not markets:
        raise DataInsufficientError("No liquidity markets available")

    weights = [cfg.market_weights.get(m.id, 0.0) for m in markets]
    weight_sum = sum(weights)
    if weight_sum > 0:
        combined = sum(w * m.stress for w, m in zip(weights, markets)) / weight_sum
    else:
        combined = sum(m.stress for m in markets) / len(markets)

    return LiquidityStressMetrics(
        combined_stress=clamp(combined),
        markets=list(markets),
        avg_spread_bps=sum(m.spread_bps or 0.0 for m in markets) / len(markets),
        total_depth=sum(m.depth for m in markets),
        index_price=index_price,
    )


def pick_tenor_option(instruments: Sequence[Instrument], index_price: Optional[float], target_dte: float,
                      dte_range: Tuple[float, float], now: int) -> Optional[Instrument]:
    lo, hi = dte_range
    candidates = [(i, i.dte(now)) for i in instruments
                  if i.is_option and i.is_active and i.expiry_ts is not None]
    candidates = [(i, dte) for i, dte in candidates if lo <= dte <= hi]
    if not candidates:
        return None

    def rank(row):
        inst, dte = row
        distance = abs(inst.strike - index_price) if index_price and inst.strike is not None else 0.0
        return abs(dte - target_dte), distance

    return min(candidates, key=rank)[0]


class LiquidityStressEngine:

    def __init__(self, gateway: MarketGateway, config: Optional[LiquidityConfig] = None):
        self.gateway = gateway
        self.config = config or LiquidityConfig()

    def pick_markets(self, instruments: Sequence[Instrument], index_price: Optional[float],
                     now: int) -> List[Tuple[str, str, Instrument]]:
        cfg = self.config
        picks: List[Tuple[str, str, Instrument]] = []
        perp = next((i for i in instruments if i.is_perpetual and i.is_active), None)
        if perp:
            picks.append(('perp', 'Perp', perp))
        short = pick_tenor_option(instruments, index_price, cfg.near_target_dte, cfg.near_dte_range, now)
        if short:
            picks.append(('3d', '3D expiry', short))
        month = pick_tenor_option(instruments, index_price, cfg.month_target_dte, cfg.month_dte_range, now)
        if month:
            picks.append(('30d', '30D expiry', month))
        return picks

    async def compute(self, currency: str = "BTC", now: Optional[int] = None) -> LiquidityStressMetrics:
        now = now_ms() if now is None else now
        index_price = (await self.gateway.get_index_price(currency)).price
        instruments = await self.gateway.get_instruments(currency)

        markets: List[LiquidityStressMarket] = []
        for market_id, label, inst in self.pick_markets(instruments, index_price, now):
            book = await self.gateway.get_order_book(inst.name, self.config.book_depth)
            scored = score_market(book, market_id, label, inst.is_option, self.config,
                                  inst.dte(now) if inst.is_option else None, index_price)
            if scored is None:
                logger.debug(f"No usable mid for {inst.name}")
                continue
            markets.append(scored)

        return combine(markets, self.config, index_price)
