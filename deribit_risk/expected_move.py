"""
Expected move per horizon
EM = spot * iv(tenor) * sqrt(tenor in years), with iv(tenor) read from the
ATM term structure. Display rows hold IV flat outside the listed curve and
carry a representative real expiry for each horizon.
"""

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .config import ExpectedMoveConfig
from .expiries import now_ms, pick_expiry_for_target
from .interpolation import (
    Clamped, ExtrapolationMode, Interpolated, Extrapolated, TermNode, interpolate_iv,
)


@dataclass(frozen=True)
class ExpectedMoveRow:
    days: int
    iv: Optional[float]
    pct: Optional[float]        # decimal, 0.05 = 5%
    abs: Optional[float]        # price units
    expiry_ts: int
    expiry_label: str
    source: Optional[str]       # interpolated | extrapolated | clamped


def expected_move(spot: float, iv: float, t_annual: float) -> Tuple[float, float]:
    """(em, sqrt_t)"""
    sqrt_t = math.sqrt(max(0.0, t_annual))
    return spot * iv * sqrt_t, sqrt_t


def em_pct_from_iv(iv: float, days: float) -> float:
    return iv * math.sqrt(max(0.0, days) / 365)


def iv_from_em_pct(em_pct: float, days: float) -> Optional[float]:
    sqrt_t = math.sqrt(max(0.0, days) / 365)
    return em_pct / sqrt_t if sqrt_t > 0 else None


class ExpectedMoveEngine:

    def __init__(self, config: Optional[ExpectedMoveConfig] = None,
                 mode: ExtrapolationMode = ExtrapolationMode.FLAT):
        self.config = config or ExpectedMoveConfig()
        self.mode = mode

    def row(self, spot: Optional[float], nodes: Sequence[TermNode], days: int,
            now: int, curve_expiries: Sequence[int] = ()) -> ExpectedMoveRow:
        result = interpolate_iv(nodes, days / 365, self.mode)

        left_ts = right_ts = None
        if isinstance(result, (Interpolated, Extrapolated)):
            left_ts, right_ts = result.left.expiry_ts, result.right.expiry_ts
        elif isinstance(result, Clamped):
            left_ts = result.node.expiry_ts
        expiry_ts, label = pick_expiry_for_target(
            days, left_ts, right_ts, curve_expiries,
            far_threshold_days=self.config.far_threshold_days,
            tolerance_days=self.config.ceil_tolerance_days, now=now)

        if result is None:
            return ExpectedMoveRow(days, None, None, None, expiry_ts, label, None)
        if isinstance(result, Extrapolated) and result.floored:
            return ExpectedMoveRow(days, None, None, None, expiry_ts, label, result.source)
        pct = em_pct_from_iv(result.iv, days)
        abs_move = spot * pct if spot and spot > 0 else None
        return ExpectedMoveRow(days, result.iv, pct, abs_move, expiry_ts, label, result.source)

    def compute(self, spot: Optional[float], nodes: Sequence[TermNode],
                horizons: Optional[Sequence[int]] = None, now: Optional[int] = None) -> List[ExpectedMoveRow]:
        now = now_ms() if now is None else now
        horizons = horizons or self.config.horizons
        days = sorted({max(0, int(d)) for d in horizons})
        curve = sorted(n.expiry_ts for n in nodes if n.expiry_ts is not None)
        return [self.row(spot, nodes, d, now, curve) for d in days]
