"""
Variance-space IV interpolation
Total variance V(t) = iv^2 * t is interpolated linearly; IV is never blended
directly. Outside the observed curve the caller chooses between extending
the variance slope (SLOPE) and holding the edge IV flat (FLAT).
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Union


@dataclass(frozen=True)
class TermNode:
    t_annual: float
    iv: float
    expiry_ts: Optional[int] = None

    @property
    def variance(self) -> float:
        return self.iv * self.iv * self.t_annual


class ExtrapolationMode(Enum):
    SLOPE = "slope"
    FLAT = "flat"


@dataclass(frozen=True)
class Interpolated:
    iv: float
    left: TermNode
    right: TermNode
    weight: float      # weight of the right node

    source = "interpolated"


@dataclass(frozen=True)
class Extrapolated:
    iv: float
    left: TermNode
    right: TermNode
    side: str          # 'below' | 'above'
    floored: bool = False   # variance hit 0, so iv is 0.0

    source = "extrapolated"


@dataclass(frozen=True)
class Clamped:
    iv: float
    node: TermNode

    source = "clamped"


InterpolationResult = Union[Interpolated, Extrapolated, Clamped]


def usable_nodes(nodes: Iterable[TermNode]) -> List[TermNode]:
    pts = [n for n in nodes
           if n is not None and math.isfinite(n.t_annual) and n.t_annual > 0
           and math.isfinite(n.iv) and n.iv >= 0]
    return sorted(pts, key=lambda n: n.t_annual)


def _iv_from_variance(v: float, t: float) -> Optional[float]:
    iv = math.sqrt(max(v, 0.0) / t)
    return iv if math.isfinite(iv) else None


def interpolate_iv(nodes: Iterable[TermNode], t_target: float,
                   mode: ExtrapolationMode = ExtrapolationMode.SLOPE) -> Optional[InterpolationResult]:
    """
    IV at `t_target` (years) from term nodes.

    Returns None for a non-positive or non-finite target or an empty curve.
    A single node is returned flat as Clamped. Slope extrapolation floors
    variance at 0; such results carry `floored=True` and iv 0.0, which is
    not a quotable IV.
    """
    if t_target is None or not math.isfinite(t_target) or t_target <= 0:
        return None
    pts = usable_nodes(nodes)
    if not pts:
        return None
    if len(pts) == 1:
        return Clamped(iv=pts[0].iv, node=pts[0])

    for a, b in zip(pts, pts[1:]):
        if a.t_annual <= t_target <= b.t_annual:
            if t_target == a.t_annual:
                return Interpolated(iv=a.iv, left=a, right=b, weight=0.0)
            if t_target == b.t_annual:
                return Interpolated(iv=b.iv, left=a, right=b, weight=1.0)
            w = (t_target - a.t_annual) / (b.t_annual - a.t_annual)
            v = a.variance + w * (b.variance - a.variance)
            iv = _iv_from_variance(v, t_target)
            if iv is None:
                return None
            return Interpolated(iv=iv, left=a, right=b, weight=w)

    below = t_target < pts[0].t_annual
    if mode is ExtrapolationMode.FLAT:
        edge = pts[0] if below else pts[-1]
        return Clamped(iv=edge.iv, node=edge)

    a, b = (pts[0], pts[1]) if below else (pts[-2], pts[-1])
    slope = (b.variance - a.variance) / (b.t_annual - a.t_annual)
    anchor = a if below else b
    v = anchor.variance + slope * (t_target - anchor.t_annual)
    iv = _iv_from_variance(v, t_target)
    if iv is None:
        return None
    return Extrapolated(iv=iv, left=a, right=b, side='below' if below else 'above', floored=v <= 0)


def interpolate_iv_value(nodes: Iterable[TermNode], t_target: float,
                         mode: ExtrapolationMode = ExtrapolationMode.SLOPE) -> Optional[float]:
    result = interpolate_iv(nodes, t_target, mode)
    return result.iv if result is not None else None
