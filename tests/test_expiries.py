from __future__ import annotations

from deribit_risk.expiries import (
    ceil_expiry,
    expiry_label,
    group_by_expiry,
    pick_expiry_for_target,
    select_expiries_by_horizon,
    select_expiries_in_range,
)
from deribit_risk.records import DAY_MS

from tests.fakes import HOUR_MS, NOW, option, perpetual


def _groups(*days: float) -> dict:
    return {int(NOW + d * DAY_MS): ["x"] for d in days}


def test_near_expiries_under_cap_are_returned_unchanged() -> None:
    groups = _groups(1, 2, 3, 7, 10)
    out = select_expiries_by_horizon(groups, max_expiries=6, near_days=14, min_monthly=3, now=NOW)
    assert out == sorted(groups)


def test_far_monthly_slots_are_reserved_before_near_entries() -> None:
    near = [1, 2, 3, 4, 5, 6, 7]
    far = [40, 70, 100, 130]
    groups = _groups(*near, *far)

    out = select_expiries_by_horizon(groups, max_expiries=6, near_days=14, min_monthly=3, now=NOW)

    assert len(out) == 6
    far_out = [ts for ts in out if (ts - NOW) / DAY_MS > 14]
    assert len(far_out) == 3
    assert out == [int(NOW + d * DAY_MS) for d in (1, 2, 3, 40, 70, 100)]


def test_far_expiries_collapse_to_latest_per_month() -> None:
    # 2025-02-05 and 2025-02-20 share a month; 2025-03-12 stands alone
    groups = _groups(35, 50, 70)
    out = select_expiries_by_horizon(groups, max_expiries=6, near_days=14, min_monthly=3, now=NOW)
    assert out == [int(NOW + d * DAY_MS) for d in (50, 70)]


def test_backfill_with_extra_months_when_room_remains() -> None:
    groups = _groups(2, 40, 70, 100, 130, 160)
    out = select_expiries_by_horizon(groups, max_expiries=5, near_days=14, min_monthly=2, now=NOW)
    assert out == [int(NOW + d * DAY_MS) for d in (2, 40, 70, 100, 130)]


def test_select_expiries_in_range() -> None:
    groups = _groups(1, 3, 10, 500)
    out = select_expiries_in_range(groups, 2, 400, cap=48, now=NOW)
    assert out == [int(NOW + d * DAY_MS) for d in (3, 10)]


def test_group_by_expiry_skips_near_expiry_and_futures() -> None:
    soon = option(6 / 24, 100_000, "call")
    later = option(3, 100_000, "put")
    groups = group_by_expiry([soon, later, perpetual()], now=NOW, min_dte_hours=12)
    assert groups == {later.expiry_ts: [later]}


def test_ceil_expiry_honors_tolerance() -> None:
    expiries = [int(NOW + d * DAY_MS) for d in (6, 8, 30)]
    assert ceil_expiry(expiries, 7, now=NOW) == expiries[1]
    assert ceil_expiry(expiries, 7, tolerance_days=1, now=NOW) == expiries[0]
    assert ceil_expiry(expiries, 31, now=NOW) is None


def test_pick_expiry_prefers_ceil_from_curve() -> None:
    curve = [int(NOW + d * DAY_MS) for d in (3, 9, 30)]
    ts, label = pick_expiry_for_target(7, left_ts=curve[0], right_ts=curve[1], curve_expiries=curve, now=NOW)
    assert ts == curve[1]
    assert label == expiry_label(curve[1])


def test_pick_expiry_synthesizes_date_when_bracket_is_far() -> None:
    far = int(NOW + 30 * DAY_MS)
    ts, label = pick_expiry_for_target(1, left_ts=None, right_ts=far, now=NOW)
    assert ts == NOW + DAY_MS
    assert label == "02 Jan"


def test_pick_expiry_uses_right_bracket_when_close() -> None:
    right = int(NOW + 8 * DAY_MS + 2 * HOUR_MS)
    ts, _ = pick_expiry_for_target(7, left_ts=None, right_ts=right, now=NOW)
    assert ts == right
