"""
EM-sized iron condor credit
Short strikes at spot -/+ short_mult * EM, long hedges at spot -/+
hedge_mult * EM, on the option chain nearest the target DTE. Option
prices are quoted in the underlying and converted to USD at spot.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from .concurrency import fetch_bounded
from .config import CondorConfig, RetryConfig
from .errors import DataInsufficientError
from .expected_move import expected_move
from .expiries import now_ms
from .gateway import MarketGateway
from .records import DAY_MS, Instrument, Ticker

LEGS = ('short_put', 'long_put', 'short_call', 'long_call')


@dataclass(frozen=True)
class CondorLeg:
    name: Optional[str]
    strike_target: float
    strike: Optional[float] = None
    mid_usd: Optional[float] = None
    bid: Optional[float] = None
    ask: Optional[float] = None
    liquid: bool = False


@dataclass(frozen=True)
class CondorResult:
    spot: float
    dte: int
    expiry_ts: int
    em_usd: float
    em_source: str                  # 'straddle' | 'iv'
    legs: Dict[str, CondorLeg] = field(default_factory=dict)
    credit_usd: float = float('nan')
    width_put_usd: float = 0.0
    width_call_usd: float = 0.0
    max_loss_usd: float = float('nan')
    liquidity_ok: bool = False
    passes: bool = False

    @property
    def em_pct(self) -> float:
        return self.em_usd / self.spot

    @property
    def pct_of_em(self) -> Optional[float]:
        if self.em_usd > 0 and math.isfinite(self.credit_usd):
            return self.credit_usd / self.em_usd * 100
        return None


def utc_day_start(ts: int) -> int:
    d = datetime.fromtimestamp(ts / 1000, tz=timezone.utc)
    return int(datetime(d.year, d.month, d.day, tzinfo=timezone.utc).timestamp() * 1000)


def pick_chain_near_dte(instruments: Sequence[Instrument], target_dte: float, dte_min: float,
                        dte_max: float, now: int) -> Tuple[List[Instrument], int, Optional[int]]:
    """Chain whose whole-day DTE (from UTC midnight) is nearest the target"""
    today = utc_day_start(now)
    buckets: Dict[int, List[Instrument]] = {}
    for inst in instruments:
        if not inst.is_option or inst.expiry_ts is None:
            continue
        dte = math.floor((inst.expiry_ts - today) / DAY_MS)
        if dte_min <= dte <= dte_max:
            buckets.setdefault(inst.expiry_ts, []).append(inst)
    if not buckets:
        return [], -1, None
    ts = min(sorted(buckets), key=lambda t: abs(math.floor((t - today) / DAY_MS) - target_dte))
    return buckets[ts], math.floor((ts - today) / DAY_MS), ts


def nearest_name(chain: Sequence[Instrument], option_type: str, target: float) -> Optional[Instrument]:
    legs = [i for i in chain if i.option_type == option_type]
    if not legs:
        return None
    return min(legs, key=lambda i: abs((i.strike or 0) - target))


def leg_mid(ticker: Optional[Ticker]) -> Optional[float]:
    return ticker.mid() if ticker else None


def ba_ok(mid_usd: Optional[float], bid: Optional[float], ask: Optional[float],
          spot: float, max_frac: float) -> bool:
    """Bid/ask spread within `max_frac` of the USD mid"""
    if mid_usd is None or bid is None or ask is None or ask <= 0:
        return False
    return (ask - bid) * spot / max(abs(mid_usd), 1e-6) <= max_frac


def condor_credit(legs: Dict[str, CondorLeg],
                  cfg: CondorConfig) -> Tuple[float, float, float, float, bool, bool]:
    """(credit, put width, call width, max loss, liquidity ok, passes)"""
    def mid(key: str) -> float:
        value = legs[key].mid_usd if key in legs else None
        return value if value is not None else float('nan')

    credit = mid('short_put') - mid('long_put') + mid('short_call') - mid('long_call')
    width_put = abs(legs['short_put'].strike_target - legs['long_put'].strike_target)
    width_call = abs(legs['long_call'].strike_target - legs['short_call'].strike_target)
    max_loss = max(width_put, width_call) - credit
    liquid = all(legs[k].liquid for k in LEGS if k in legs) and len(legs) == len(LEGS)
    passes = math.isfinite(credit) and credit >= cfg.min_credit_usd and liquid
    return credit, width_put, width_call, max_loss, liquid, passes


class CondorCreditEngine:

    def __init__(self, gateway: MarketGateway, config: Optional[CondorConfig] = None,
                 retry: Optional[RetryConfig] = None):
        self.gateway = gateway
        self.config = config or CondorConfig()
        self.retry = retry or RetryConfig()

    async def expected_move_usd(self, chain: Sequence[Instrument], spot: float,
                                expiry_ts: int, now: int) -> Tuple[float, str]:
        """ATM straddle mid, or spot * iv * sqrt(t) when the straddle has no price"""
        strikes = sorted({i.strike for i in chain if i.strike is not None})
        atm = min(strikes, key=lambda k: abs(k - spot))
        call = next((i for i in chain if i.option_type == 'call' and i.strike == atm), None)
        put = next((i for i in chain if i.option_type == 'put' and i.strike == atm), None)
        if call is None or put is None:
            raise DataInsufficientError("No ATM call/put pair for condor expiry")

        c_tk, p_tk = await fetch_bounded([call.name, put.name], self.gateway.get_ticker, self.retry)
        c_mid, p_mid = leg_mid(c_tk), leg_mid(p_tk)
        if c_mid is not None and p_mid is not None:
            return (c_mid + p_mid) * spot, 'straddle'

        ivs = [t.mark_iv for t in (c_tk, p_tk) if t is not None and t.mark_iv is not None]
        if not ivs:
            raise DataInsufficientError("No ATM price or IV for condor expiry")
        em, _ = expected_move(spot, sum(ivs) / len(ivs), max(0, expiry_ts - now) / DAY_MS / 365)
        return em, 'iv'

    async def compute(self, currency: str = "BTC", now: Optional[int] = None) -> CondorResult:
        cfg = self.config
        now = now_ms() if now is None else now
        spot = (await self.gateway.get_index_price(currency)).price
        instruments = await self.gateway.get_instruments(currency, "option")

        chain, dte, expiry_ts = pick_chain_near_dte(instruments, cfg.target_dte, cfg.dte_min, cfg.dte_max, now)
        if not chain:
            raise DataInsufficientError(f"No option chain within {cfg.dte_min}-{cfg.dte_max} DTE")

        em_usd, em_source = await self.expected_move_usd(chain, spot, expiry_ts, now)
        targets = {
            'short_put': ('put', spot - cfg.short_mult * em_usd),
            'long_put': ('put', spot - cfg.hedge_mult * em_usd),
            'short_call': ('call', spot + cfg.short_mult * em_usd),
            'long_call': ('call', spot + cfg.hedge_mult * em_usd),
        }
        picked = {k: nearest_name(chain, side, target) for k, (side, target) in targets.items()}
        names = [inst.name for inst in picked.values() if inst is not None]
        tickers = dict(zip(names, await fetch_bounded(names, self.gateway.get_ticker, self.retry)))

        legs: Dict[str, CondorLeg] = {}
        for key, (_, target) in targets.items():
            inst = picked[key]
            ticker = tickers.get(inst.name) if inst else None
            mid = leg_mid(ticker)
            mid_usd = mid * spot if mid is not None else None
            bid = ticker.best_bid if ticker else None
            ask = ticker.best_ask if ticker else None
            legs[key] = CondorLeg(
                name=inst.name if inst else None,
                strike_target=target,
                strike=inst.strike if inst else None,
                mid_usd=mid_usd,
                bid=bid,
                ask=ask,
                liquid=ba_ok(mid_usd, bid, ask, spot, cfg.max_ba_frac),
            )

        credit, width_put, width_call, max_loss, liquid, passes = condor_credit(legs, cfg)
        return CondorResult(
            spot=spot, dte=dte, expiry_ts=expiry_ts, em_usd=em_usd, em_source=em_source, legs=legs,
            credit_usd=credit, width_put_usd=width_put, width_call_usd=width_call,
            max_loss_usd=max_loss, liquidity_ok=liquid, passes=passes,
        )
