"""
Open-interest concentration by strike
Shares are taken over the included OI mass only (front expiry and price
window filters applied first), so they always sum to 1.
"""

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .config import OIConcentrationConfig
from .expiries import now_ms
from .gateway import MarketGateway
from .records import BookSummary


@dataclass
class OIStrikeBucket:
    strike: float
    oi: float = 0.0
    calls_oi: float = 0.0
    puts_oi: float = 0.0


@dataclass(frozen=True)
class OIConcentrationMetrics:
    ts: int
    currency: str
    expiry_scope: str
    window_pct: Optional[float]
    index_price: Optional[float]
    total_oi: float
    top_n: int
    top_n_share: float
    top1_share: float
    hhi: float
    entropy: float
    gini: float
    ranked_strikes: List[OIStrikeBucket] = field(default_factory=list)
    included_count: int = 0
    scanned_count: int = 0
    front_expiry_ts: Optional[int] = None

    @property
    def hhi_norm(self) -> float:
        """HHI rescaled to [0, 1] for the number of included strikes"""
        n = self.included_count
        if n <= 1:
            return 1.0 if self.total_oi > 0 else 0.0
        return (self.hhi - 1 / n) / (1 - 1 / n)

    @property
    def dominant_strike(self) -> Optional[float]:
        return self.ranked_strikes[0].strike if self.ranked_strikes else None

    @property
    def dominant_oi(self) -> Optional[float]:
        return self.ranked_strikes[0].oi if self.ranked_strikes else None


def entropy(shares: Sequence[float]) -> float:
    """Shannon entropy in nats"""
    return sum(p * math.log(1 / p) for p in shares if p > 0)


def gini(values: Sequence[float]) -> float:
    """Gini coefficient of non-negative values via the sorted cumulative sum"""
    n = len(values)
    if n == 0:
        return 0.0
    ordered = sorted(values)
    total = sum(ordered)
    if total <= 0:
        return 0.0
    cum = 0.0
    b = 0.0
    for v in ordered:
        cum += v
        b += cum
    return 1 + 1 / n - (2 * b) / (n * total)


def front_expiry(rows: Sequence[BookSummary]) -> Optional[int]:
    expiries = [r.expiry_ts for r in rows if r.expiry_ts is not None]
    return min(expiries) if expiries else None


def aggregate_oi(rows: Sequence[BookSummary], expiry_ts: Optional[int] = None,
                 index_price: Optional[float] = None,
                 window_pct: Optional[float] = None) -> List[OIStrikeBucket]:
    windowed = bool(index_price) and window_pct is not None and window_pct > 0
    lo = index_price * (1 - window_pct) if windowed else None
    hi = index_price * (1 + window_pct) if windowed else None

    buckets: Dict[float, OIStrikeBucket] = {}
    for row in rows:
        if expiry_ts is not None and row.expiry_ts != expiry_ts:
            continue
        if not row.open_interest > 0:
            continue
        strike = row.strike
        if strike is None or not math.isfinite(strike):
            continue
        if windowed and not (lo <= strike <= hi):
            continue
        bucket = buckets.setdefault(strike, OIStrikeBucket(strike=strike))
        bucket.oi += row.open_interest
        if row.option_type == 'call':
            bucket.calls_oi += row.open_interest
        elif row.option_type == 'put':
            bucket.puts_oi += row.open_interest
    return list(buckets.values())


def concentration_metrics(buckets: Sequence[OIStrikeBucket], top_n: int = 3, currency: str = "BTC",
                          expiry_scope: str = "front", window_pct: Optional[float] = None,
                          index_price: Optional[float] = None, scanned_count: int = 0,
                          front_expiry_ts: Optional[int] = None,
                          ts: Optional[int] = None) -> OIConcentrationMetrics:
    ranked = sorted(buckets, key=lambda b: -b.oi)
    total = sum(b.oi for b in ranked)
    shares = [b.oi / total for b in ranked] if total > 0 else []

    return OIConcentrationMetrics(
        ts=now_ms() if ts is None else ts,
        currency=currency,
        expiry_scope=expiry_scope,
        window_pct=window_pct,
        index_price=index_price,
        total_oi=total,
        top_n=top_n,
        top_n_share=sum(shares[:max(1, top_n)]),
        top1_share=shares[0] if shares else 0.0,
        hhi=sum(p * p for p in shares),
        entropy=entropy(shares),
        gini=gini([b.oi for b in ranked]) if total > 0 else 0.0,
        ranked_strikes=ranked,
        included_count=len(ranked),
        scanned_count=scanned_count,
        front_expiry_ts=front_expiry_ts,
    )


class OIConcentrationEngine:

    def __init__(self, gateway: MarketGateway, config: Optional[OIConcentrationConfig] = None):
        self.gateway = gateway
        self.config = config or OIConcentrationConfig()

    async def compute(self, currency: str = "BTC", now: Optional[int] = None) -> OIConcentrationMetrics:
        cfg = self.config
        rows = await self.gateway.get_book_summary_by_currency(currency, "option")

        selected = front_expiry(rows) if cfg.scope == "front" else None
        index_price = None
        if cfg.window_pct is not None and cfg.window_pct > 0:
            index_price = (await self.gateway.get_index_price(currency)).price

        buckets = aggregate_oi(rows, selected, index_price, cfg.window_pct)
        return concentration_metrics(
            buckets, cfg.top_n, currency, cfg.scope, cfg.window_pct, index_price,
            scanned_count=len(rows), front_expiry_ts=selected, ts=now)
