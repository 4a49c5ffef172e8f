"""
Expiry selection
Keeps near-term expiries verbatim and collapses far-dated ones to one per
calendar month, reserving monthly slots so long tenors always have a right
bracket for interpolation.
"""

import logging
import time
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .records import DAY_MS, Instrument

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


def _utc(ts: int) -> datetime:
    return datetime.fromtimestamp(ts / 1000, tz=timezone.utc)


def expiry_label(ts: int) -> str:
    """'27 Dec' style display label"""
    return _utc(ts).strftime("%d %b")


def group_by_expiry(instruments: Iterable[Instrument], now: Optional[int] = None,
                    min_dte_hours: float = 0, options_only: bool = True) -> Dict[int, List[Instrument]]:
    """Expiry timestamp -> instruments, skipping anything expiring within `min_dte_hours`"""
    now = now_ms() if now is None else now
    cutoff = now + min_dte_hours * 3_600_000
    groups: Dict[int, List[Instrument]] = defaultdict(list)
    for inst in instruments:
        if options_only and not inst.is_option:
            continue
        if inst.expiry_ts is None or inst.expiry_ts <= cutoff:
            continue
        groups[inst.expiry_ts].append(inst)
    return dict(groups)


def select_expiries_by_horizon(groups: Mapping[int, Sequence], max_expiries: int = 6,
                               near_days: float = 14, min_monthly: int = 3,
                               now: Optional[int] = None) -> List[int]:
    """
    Choose at most `max_expiries` expiry timestamps from `groups`.

    Near expiries (<= near_days out) are kept as listed. Beyond that only the
    latest expiry of each UTC month survives, and min(min_monthly, months)
    of those are reserved before near expiries fill the rest of the cap.
    """
    now = now_ms() if now is None else now
    max_expiries = max(1, max_expiries)
    min_monthly = max(0, min_monthly)

    near: List[int] = []
    far: List[int] = []
    for ts in sorted(groups):
        if (ts - now) / DAY_MS <= near_days:
            near.append(ts)
        else:
            far.append(ts)

    by_month: Dict[Tuple[int, int], int] = {}
    for ts in far:
        d = _utc(ts)
        key = (d.year, d.month)
        if key not in by_month or ts > by_month[key]:
            by_month[key] = ts
    far_monthly = sorted(by_month.values())

    reserved = min(min_monthly, len(far_monthly))
    near_used = min(len(near), max(0, max_expiries - reserved))

    out = near[:near_used] + far_monthly[:reserved]
    i = reserved
    while len(out) < max_expiries and i < len(far_monthly):
        out.append(far_monthly[i])
        i += 1

    return sorted(set(out))[:max_expiries]


def select_expiries_in_range(groups: Mapping[int, Sequence], min_dte_days: float, max_dte_days: float,
                             cap: int, now: Optional[int] = None) -> List[int]:
    """Every expiry with DTE in [min, max], nearest first, capped"""
    now = now_ms() if now is None else now
    picked = [ts for ts in sorted(groups)
              if min_dte_days <= (ts - now) / DAY_MS <= max_dte_days]
    return picked[:max(1, cap)]


def ceil_expiry(expiries: Iterable[int], target_days: float, tolerance_days: float = 0,
                now: Optional[int] = None) -> Optional[int]:
    """Smallest expiry at or after now + target_days (less the tolerance)"""
    now = now_ms() if now is None else now
    target_ts = now + (target_days - max(0.0, tolerance_days)) * DAY_MS
    for ts in sorted(expiries):
        if ts >= target_ts:
            return ts
    return None


def pick_expiry_for_target(target_days: float, left_ts: Optional[int] = None,
                           right_ts: Optional[int] = None,
                           curve_expiries: Optional[Sequence[int]] = None,
                           far_threshold_days: float = 10, tolerance_days: float = 0,
                           now: Optional[int] = None) -> Tuple[int, str]:
    """
    Representative expiry to display for a tenor.

    Prefers the ceil expiry from the curve, then the right bracket node, then
    the left one. A bracket node more than max(2*target, far_threshold_days)
    away is replaced with a synthesized now + target_days.
    """
    now = now_ms() if now is None else now
    far_threshold = max(2 * target_days, far_threshold_days)

    if curve_expiries:
        ts = ceil_expiry(curve_expiries, target_days, tolerance_days, now)
        if ts is not None:
            return ts, expiry_label(ts)

    ts = right_ts if right_ts is not None else left_ts
    if ts is None or (ts - now) / DAY_MS > far_threshold:
        ts = int(now + target_days * DAY_MS)
    return ts, expiry_label(ts)
