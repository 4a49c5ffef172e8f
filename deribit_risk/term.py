"""
ATM implied-volatility term structure
For each selected expiry, pick the call and put strikes nearest the
reference price, read their mark IVs and emit one term point.
"""

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from .concurrency import fetch_bounded
from .config import AtmTermConfig, RetryConfig
from .expiries import group_by_expiry, now_ms, select_expiries_by_horizon, select_expiries_in_range
from .gateway import MarketGateway
from .interpolation import TermNode
from .records import DAY_MS, Instrument, Ticker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IVPoint:
    expiry_ts: int
    dte_days: float
    t_annual: float
    iv: float
    strike_call: Optional[float] = None
    strike_put: Optional[float] = None
    call_name: Optional[str] = None
    put_name: Optional[str] = None

    def to_node(self) -> TermNode:
        return TermNode(t_annual=self.t_annual, iv=self.iv, expiry_ts=self.expiry_ts)


@dataclass(frozen=True)
class AtmTerm:
    as_of: int
    index_price: float
    points: List[IVPoint]

    @property
    def expiries(self) -> List[int]:
        return [p.expiry_ts for p in self.points]

    def nodes(self) -> List[TermNode]:
        return to_term_nodes(self.points)


def to_term_nodes(points: Sequence[IVPoint]) -> List[TermNode]:
    return sorted((p.to_node() for p in points if p.t_annual > 0), key=lambda n: n.t_annual)


def forward_price(spot: float, t_annual: float, rate: Optional[float] = None,
                  dividend: Optional[float] = None) -> float:
    """S*e^((r-q)T); plain spot when neither rate nor yield is given"""
    if rate is None and dividend is None:
        return spot
    return spot * math.exp(((rate or 0.0) - (dividend or 0.0)) * t_annual)


def nearest_strike(instruments: Sequence[Instrument], reference: float) -> Optional[Instrument]:
    candidates = [i for i in instruments if i.strike is not None]
    if not candidates:
        return None
    return min(candidates, key=lambda i: abs(i.strike - reference))


class AtmTermBuilder:
    """Builds `IVPoint`s, nearest expiry first"""

    def __init__(self, gateway: MarketGateway, config: Optional[AtmTermConfig] = None,
                 retry: Optional[RetryConfig] = None):
        self.gateway = gateway
        self.config = config or AtmTermConfig()
        self.retry = retry or RetryConfig()

    def choose_expiries(self, groups: Dict[int, List[Instrument]], now: int) -> List[int]:
        cfg = self.config
        if cfg.mode == "all":
            return select_expiries_in_range(groups, max(0.0, cfg.min_dte_days),
                                            max(cfg.min_dte_days, cfg.max_dte_days),
                                            cfg.all_cap, now)
        return select_expiries_by_horizon(groups, cfg.max_expiries, cfg.near_days,
                                          cfg.min_monthly, now)

    def pick_legs(self, legs: Sequence[Instrument], spot: float, t_annual: float):
        """Nearest call and put to the reference price, honoring the optional band"""
        cfg = self.config
        calls = [i for i in legs if i.option_type == 'call']
        puts = [i for i in legs if i.option_type == 'put']

        if cfg.band_pct > 0 and spot > 0:
            lo, hi = spot * (1 - cfg.band_pct), spot * (1 + cfg.band_pct)
            band_calls = [i for i in calls if lo <= i.strike <= hi]
            band_puts = [i for i in puts if lo <= i.strike <= hi]
            if band_calls or band_puts:
                calls, puts = band_calls, band_puts

        reference = forward_price(spot, t_annual, cfg.rate, cfg.dividend)
        return nearest_strike(calls, reference), nearest_strike(puts, reference)

    async def build(self, instruments: Optional[Sequence[Instrument]] = None,
                    spot: Optional[float] = None, currency: str = "BTC",
                    now: Optional[int] = None) -> AtmTerm:
        now = now_ms() if now is None else now
        if spot is None:
            spot = (await self.gateway.get_index_price(currency)).price
        if instruments is None:
            instruments = await self.gateway.get_instruments(currency, "option")

        groups = group_by_expiry(instruments, now, self.config.min_dte_hours)
        expiries = self.choose_expiries(groups, now)

        selections = []
        for ts in expiries:
            t_annual = max(0, ts - now) / DAY_MS / self.config.day_count
            call, put = self.pick_legs(groups.get(ts, []), spot, t_annual)
            if call is None and put is None:
                continue
            selections.append((ts, t_annual, call, put))

        names = sorted({leg.name for _, _, call, put in selections for leg in (call, put) if leg})
        tickers = await fetch_bounded(names, self.gateway.get_ticker, self.retry)
        by_name: Dict[str, Ticker] = {n: t for n, t in zip(names, tickers) if t is not None}

        points: List[IVPoint] = []
        for ts, t_annual, call, put in selections:
            iv_call = by_name[call.name].mark_iv if call and call.name in by_name else None
            iv_put = by_name[put.name].mark_iv if put and put.name in by_name else None
            if iv_call is not None and iv_put is not None:
                iv = (iv_call + iv_put) / 2
            else:
                iv = iv_call if iv_call is not None else iv_put
            if iv is None:
                logger.debug(f"No usable ATM IV for expiry {ts}")
                continue
            points.append(IVPoint(
                expiry_ts=ts,
                dte_days=(ts - now) / DAY_MS,
                t_annual=t_annual,
                iv=iv,
                strike_call=call.strike if call else None,
                strike_put=put.strike if put else None,
                call_name=call.name if call else None,
                put_name=put.name if put else None,
            ))

        points.sort(key=lambda p: p.expiry_ts)
        return AtmTerm(as_of=now, index_price=spot, points=points)
