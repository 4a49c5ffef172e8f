"""
25-delta risk reversal
Picks the expiry nearest the target tenor, reads delta and IV for the
strikes around spot, and interpolates each wing to |delta| = 0.25 in delta
space. A clamped or overly wide bracket falls back to the single
nearest-delta leg, and the result says so.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

from .concurrency import fetch_bounded
from .config import RetryConfig, SkewConfig
from .errors import DataInsufficientError
from .expiries import expiry_label, now_ms
from .gateway import MarketGateway
from .records import DAY_MS, Instrument

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeltaLeg:
    name: str
    strike: float
    delta: float
    iv: float


@dataclass(frozen=True)
class DeltaInterpolated:
    iv: float
    left: DeltaLeg
    right: DeltaLeg
    weight: float

    source = "interpolated"

    @property
    def label(self) -> str:
        if self.left.name == self.right.name:
            return self.left.name
        return f"{self.left.name} / {self.right.name}"


@dataclass(frozen=True)
class Nearest:
    iv: float
    leg: DeltaLeg
    reason: str        # 'clamped' | 'too_wide'

    source = "nearest"

    @property
    def label(self) -> str:
        return self.leg.name


DeltaResult = Union[DeltaInterpolated, Nearest]


@dataclass(frozen=True)
class SkewResult:
    expiry_ts: int
    expiry_label: str
    skew: float
    iv_call_25: float
    iv_put_25: float
    call: DeltaResult
    put: DeltaResult

    @property
    def interpolated(self) -> bool:
        return isinstance(self.call, DeltaInterpolated) and isinstance(self.put, DeltaInterpolated)


def _nearest(legs: Sequence[DeltaLeg], target: float, reason: str) -> Nearest:
    leg = min(legs, key=lambda x: abs(x.delta - target))
    return Nearest(iv=leg.iv, leg=leg, reason=reason)


def interpolate_by_delta(legs: Sequence[DeltaLeg], target: float,
                         too_wide: float = 0.12) -> Optional[DeltaResult]:
    """Linear IV interpolation in delta space, or the nearest leg when unreliable"""
    if not legs:
        return None
    ordered = sorted(legs, key=lambda x: x.delta)

    for leg in ordered:
        if leg.delta == target:
            return DeltaInterpolated(iv=leg.iv, left=leg, right=leg, weight=0.0)

    if target < ordered[0].delta or target > ordered[-1].delta:
        return _nearest(ordered, target, 'clamped')

    for left, right in zip(ordered, ordered[1:]):
        if left.delta < target < right.delta:
            span = right.delta - left.delta
            if span > too_wide:
                return _nearest((left, right), target, 'too_wide')
            w = (target - left.delta) / span
            return DeltaInterpolated(iv=left.iv + w * (right.iv - left.iv),
                                     left=left, right=right, weight=w)
    return _nearest(ordered, target, 'clamped')


def pick_target_expiry(instruments: Sequence[Instrument], target_days: float,
                       min_days: float, now: int) -> Optional[int]:
    expiries = {i.expiry_ts for i in instruments
                if i.is_option and i.is_active and i.expiry_ts is not None
                and (i.expiry_ts - now) / DAY_MS > min_days}
    if not expiries:
        return None
    return min(sorted(expiries), key=lambda ts: abs((ts - now) / DAY_MS - target_days))


def otm_strikes_near_spot(legs: Sequence[Instrument], spot: float, limit: int) -> List[Instrument]:
    """The `limit` out-of-the-money strikes closest to spot"""
    otm = [i for i in legs if i.strike is not None
           and (i.strike >= spot if i.option_type == 'call' else i.strike <= spot)]
    return sorted(otm, key=lambda i: abs(i.strike - spot))[:max(1, limit)]


class SkewEngine:

    def __init__(self, gateway: MarketGateway, config: Optional[SkewConfig] = None,
                 retry: Optional[RetryConfig] = None):
        self.gateway = gateway
        self.config = config or SkewConfig()
        self.retry = retry or RetryConfig()

    def _keep(self, inst: Instrument, delta: Optional[float], iv: Optional[float]) -> bool:
        if delta is None or iv is None or not (0 < iv <= self.config.max_iv):
            return False
        if inst.option_type == 'call':
            return 0 < delta <= 0.5
        return -0.5 <= delta < 0

    async def compute(self, currency: str = "BTC", instruments: Optional[Sequence[Instrument]] = None,
                      spot: Optional[float] = None, now: Optional[int] = None) -> SkewResult:
        cfg = self.config
        now = now_ms() if now is None else now
        if instruments is None:
            instruments = await self.gateway.get_instruments(currency, "option")
        if spot is None:
            spot = (await self.gateway.get_index_price(currency)).price

        expiry_ts = pick_target_expiry(instruments, cfg.target_days, cfg.min_days, now)
        if expiry_ts is None:
            raise DataInsufficientError("No active option expiries found")

        series = [i for i in instruments if i.expiry_ts == expiry_ts and i.is_active and i.is_option]
        chosen = (otm_strikes_near_spot([i for i in series if i.option_type == 'call'], spot, cfg.max_per_side)
                  + otm_strikes_near_spot([i for i in series if i.option_type == 'put'], spot, cfg.max_per_side))

        tickers = await fetch_bounded([i.name for i in chosen], self.gateway.get_ticker,
                                      self.retry, return_exceptions=True)

        calls: List[DeltaLeg] = []
        puts: List[DeltaLeg] = []
        for inst, ticker in zip(chosen, tickers):
            if ticker is None or not self._keep(inst, ticker.delta, ticker.mark_iv):
                continue
            leg = DeltaLeg(name=inst.name, strike=inst.strike, delta=ticker.delta, iv=ticker.mark_iv)
            (calls if inst.option_type == 'call' else puts).append(leg)

        if not calls or not puts:
            raise DataInsufficientError("Missing call/put data for selected expiry")

        call = interpolate_by_delta(calls, cfg.target_delta, cfg.too_wide)
        put = interpolate_by_delta(puts, -cfg.target_delta, cfg.too_wide)
        if isinstance(call, Nearest) or isinstance(put, Nearest):
            logger.debug(f"25d skew fell back to nearest leg for expiry {expiry_ts}")

        return SkewResult(
            expiry_ts=expiry_ts,
            expiry_label=expiry_label(expiry_ts),
            skew=call.iv - put.iv,
            iv_call_25=call.iv,
            iv_put_25=put.iv,
            call=call,
            put=put,
        )
