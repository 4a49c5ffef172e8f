"""
Dealer gamma exposure
USD gamma per leg is gamma * spot^2 * open interest. Legs are netted per
strike as calls minus puts and ranked by magnitude ("gamma walls"). The
center of mass compresses the surface into one strike and its distance
from spot.
"""

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from .concurrency import fetch_bounded
from .config import GammaConfig, RetryConfig
from .errors import DataInsufficientError
from .expiries import now_ms
from .gateway import MarketGateway
from .records import Instrument

logger = logging.getLogger(__name__)

PINNED = "pinned"
UPSIDE = "upside"
DOWNSIDE = "downside"
UNKNOWN = "unknown"


@dataclass(frozen=True)
class GammaLeg:
    name: str
    strike: float
    is_call: bool
    gamma: float
    open_interest: float
    dte_days: Optional[float] = None

    def usd(self, spot: float) -> float:
        return self.gamma * spot * spot * self.open_interest


@dataclass(frozen=True)
class GammaByStrike:
    strike: float
    gex_call_usd: float
    gex_put_usd: float

    @property
    def gex_net_usd(self) -> float:
        return self.gex_call_usd - self.gex_put_usd

    @property
    def gex_abs_usd(self) -> float:
        return abs(self.gex_net_usd)


@dataclass(frozen=True)
class GammaWalls:
    index_price: float
    rows: List[GammaByStrike]      # ranked by |net| desc, then distance to spot
    legs: List[GammaLeg]
    top_n: int = 3

    @property
    def top(self) -> List[GammaByStrike]:
        return self.rows[:self.top_n]


@dataclass(frozen=True)
class CenterOfMass:
    k_com: Optional[float]
    distance_pct: Optional[float]   # (K_com - spot) / spot * 100
    side: str

    @property
    def has_data(self) -> bool:
        return self.k_com is not None


def aggregate_by_strike(legs: Sequence[GammaLeg], spot: float) -> List[GammaByStrike]:
    """Net call minus put USD gamma per strike, ranked by magnitude"""
    buckets: Dict[float, List[float]] = {}
    for leg in legs:
        if not leg.gamma or leg.open_interest <= 0:
            continue
        bucket = buckets.setdefault(leg.strike, [0.0, 0.0])
        bucket[0 if leg.is_call else 1] += leg.usd(spot)

    rows = [GammaByStrike(strike=k, gex_call_usd=c, gex_put_usd=p) for k, (c, p) in buckets.items()]
    rows.sort(key=lambda r: (-r.gex_abs_usd, abs(r.strike - spot)))
    return rows


def classify_side(distance_pct: Optional[float], pinned_pct: float = 0.75) -> str:
    if distance_pct is None or not math.isfinite(distance_pct):
        return UNKNOWN
    if abs(distance_pct) < pinned_pct:
        return PINNED
    return UPSIDE if distance_pct > 0 else DOWNSIDE


def _center(weighted: Sequence, spot: float, pinned_pct: float) -> CenterOfMass:
    weight_sum = 0.0
    strike_sum = 0.0
    for strike, weight in weighted:
        w = abs(weight)
        if not math.isfinite(strike) or not math.isfinite(w) or w <= 0:
            continue
        weight_sum += w
        strike_sum += w * strike
    if weight_sum == 0 or not spot:
        return CenterOfMass(k_com=None, distance_pct=None, side=UNKNOWN)
    k_com = strike_sum / weight_sum
    distance = (k_com - spot) / spot * 100
    return CenterOfMass(k_com=k_com, distance_pct=distance, side=classify_side(distance, pinned_pct))


def center_of_mass(rows: Sequence[GammaByStrike], spot: float, pinned_pct: float = 0.75) -> CenterOfMass:
    """K_com = sum(K * |gex|) / sum(|gex|) over the strike rows"""
    return _center([(r.strike, r.gex_abs_usd) for r in rows], spot, pinned_pct)


def bucket_center_of_mass(legs: Sequence[GammaLeg], spot: float, min_dte: float = 7,
                          max_dte: float = 45, tau_days: float = 30,
                          pinned_pct: float = 0.75) -> CenterOfMass:
    """Per-leg weights |gamma*S^2*OI| * exp(-T/tau), restricted to a DTE bucket"""
    weighted = [
        (leg.strike, leg.usd(spot) * math.exp(-leg.dte_days / tau_days))
        for leg in legs
        if leg.dte_days is not None and min_dte <= leg.dte_days <= max_dte and leg.open_interest > 0
    ]
    return _center(weighted, spot, pinned_pct)


def gamma_gravity(rows: Sequence[GammaByStrike], spot: float, band_pct: float = 5.0) -> Optional[float]:
    """Share of |net| gamma sitting within +/- band_pct of spot"""
    total = sum(r.gex_abs_usd for r in rows)
    if total <= 0 or not spot:
        return None
    band = spot * band_pct / 100
    inside = sum(r.gex_abs_usd for r in rows if abs(r.strike - spot) <= band)
    return inside / total


def com_badge(side: str) -> Optional[str]:
    return {
        PINNED: "Structurally heavy here",
        UPSIDE: "Heavier upside structure",
        DOWNSIDE: "Heavier downside structure",
    }.get(side)


class GammaExposureEngine:

    def __init__(self, gateway: MarketGateway, config: Optional[GammaConfig] = None,
                 retry: Optional[RetryConfig] = None):
        self.gateway = gateway
        self.config = config or GammaConfig()
        self.retry = retry or RetryConfig()

    def near_spot(self, instruments: Sequence[Instrument], spot: float) -> List[Instrument]:
        if not spot or spot <= 0:
            return []
        return [i for i in instruments
                if i.is_option and i.strike is not None
                and abs(i.strike - spot) / spot <= self.config.window_pct]

    async def compute(self, currency: str = "BTC", now: Optional[int] = None) -> GammaWalls:
        now = now_ms() if now is None else now
        spot = (await self.gateway.get_index_price(currency)).price
        instruments = await self.gateway.get_instruments(currency, "option")
        summaries = await self.gateway.get_book_summary_by_currency(currency, "option")
        oi_by_name = {s.name: s.open_interest for s in summaries}

        near = self.near_spot(instruments, spot)
        if not near:
            raise DataInsufficientError(f"No options within {self.config.window_pct:.0%} of spot")

        tickers = await fetch_bounded([i.name for i in near], self.gateway.get_ticker, self.retry)

        legs: List[GammaLeg] = []
        for inst, ticker in zip(near, tickers):
            gamma = ticker.gamma if ticker else None
            oi = oi_by_name.get(inst.name, 0.0)
            if not gamma or oi <= 0:
                continue
            legs.append(GammaLeg(
                name=inst.name,
                strike=inst.strike,
                is_call=inst.option_type == 'call',
                gamma=gamma,
                open_interest=oi,
                dte_days=inst.dte(now),
            ))

        rows = aggregate_by_strike(legs, spot)
        logger.debug(f"Gamma walls: {len(rows)} strikes from {len(legs)} legs")
        return GammaWalls(index_price=spot, rows=rows, legs=legs, top_n=self.config.top_n)
