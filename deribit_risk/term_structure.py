"""
IV term-structure classification
"""

import math
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
from scipy.stats import linregress

from .term import IVPoint

CONTANGO = "contango"
BACKWARDATION = "backwardation"
FLAT = "flat"
INSUFFICIENT = "insufficient"


@dataclass(frozen=True)
class TermStructureStats:
    n: int
    slope_per_year: Optional[float]
    term_premium: Optional[float]
    label: str


def linreg_slope(x: Sequence[float], y: Sequence[float]) -> Optional[float]:
    """OLS slope of y on x; None with fewer than 2 points or no spread in x"""
    n = min(len(x), len(y))
    if n < 2:
        return None
    xs = np.asarray(x[:n], dtype=float)
    ys = np.asarray(y[:n], dtype=float)
    if np.ptp(xs) == 0:
        return None
    return float(linregress(xs, ys).slope)


def classify(slope: Optional[float], premium: Optional[float], eps: float = 0.005) -> str:
    """eps of 0.005 is half a vol point per year, enough to suppress noise flips"""
    if slope is None or premium is None:
        return INSUFFICIENT
    if slope > eps and premium > 0:
        return CONTANGO
    if slope < -eps and premium < 0:
        return BACKWARDATION
    return FLAT


def term_structure_stats(points: Sequence[IVPoint], eps: float = 0.005) -> TermStructureStats:
    usable = sorted((p for p in points if math.isfinite(p.iv) and p.t_annual > 0),
                    key=lambda p: p.dte_days)
    n = len(usable)
    if n < 2:
        return TermStructureStats(n=n, slope_per_year=None, term_premium=None, label=INSUFFICIENT)

    slope = linreg_slope([p.t_annual for p in usable], [p.iv for p in usable])
    premium = usable[-1].iv - usable[0].iv
    return TermStructureStats(n=n, slope_per_year=slope, term_premium=premium,
                              label=classify(slope, premium, eps))
