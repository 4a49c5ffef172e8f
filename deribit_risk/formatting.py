"""
Display formatting for KPI values
"""

import math
from typing import Optional

DASH = "—"


def _ok(x: Optional[float]) -> bool:
    return x is not None and math.isfinite(x)


def fmt_pct(x: Optional[float], digits: int = 1, signed: bool = False) -> str:
    """Decimal fraction as percent: 0.452 -> '45.2%'"""
    if not _ok(x):
        return DASH
    sign = "+" if signed and x > 0 else ""
    return f"{sign}{x * 100:.{digits}f}%"


def fmt_pct_points(x: Optional[float], digits: int = 1, signed: bool = False) -> str:
    """Value already in percent: 45.2 -> '45.2%'"""
    if not _ok(x):
        return DASH
    sign = "+" if signed and x > 0 else ""
    return f"{sign}{x:.{digits}f}%"


def fmt_vol_points(x: Optional[float], digits: int = 2) -> str:
    """Decimal IV difference in vol points: 0.0123 -> '+1.23 vol pts'"""
    if not _ok(x):
        return DASH
    return f"{x * 100:+.{digits}f} vol pts"


def fmt_usd(x: Optional[float], digits: int = 0) -> str:
    if not _ok(x):
        return DASH
    sign = "-" if x < 0 else ""
    return f"{sign}${abs(x):,.{digits}f}"


def fmt_usd_compact(x: Optional[float]) -> str:
    if not _ok(x):
        return DASH
    sign = "-" if x < 0 else ""
    v = abs(x)
    for scale, suffix in ((1e9, "B"), (1e6, "M"), (1e3, "K")):
        if v >= scale:
            return f"{sign}${v / scale:.1f}{suffix}"
    return f"{sign}${v:.0f}"


def fmt_num(x: Optional[float], digits: int = 2) -> str:
    if not _ok(x):
        return DASH
    return f"{x:,.{digits}f}"


def fmt_strike(x: Optional[float]) -> str:
    if not _ok(x):
        return DASH
    return f"{x:,.0f}"
