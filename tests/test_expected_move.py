from __future__ import annotations

import math

import pytest

from deribit_risk.expected_move import (
    ExpectedMoveEngine,
    em_pct_from_iv,
    expected_move,
    iv_from_em_pct,
)
from deribit_risk.interpolation import ExtrapolationMode, TermNode
from deribit_risk.records import DAY_MS

from tests.fakes import NOW

EXP_7 = NOW + 7 * DAY_MS
EXP_30 = NOW + 30 * DAY_MS
NODES = [TermNode(7 / 365, 0.60, EXP_7), TermNode(30 / 365, 0.50, EXP_30)]


@pytest.mark.parametrize("spot,iv,t", [(100_000, 0.5, 0.25), (3_200, 0.8, 7 / 365), (1.0, 1.2, 2.0)])
def test_expected_move_over_spot_is_iv_sqrt_t(spot: float, iv: float, t: float) -> None:
    em, sqrt_t = expected_move(spot, iv, t)
    assert sqrt_t == pytest.approx(math.sqrt(t))
    assert em / spot == pytest.approx(iv * math.sqrt(t))


def test_em_pct_inverts() -> None:
    pct = em_pct_from_iv(0.5, 30)
    assert iv_from_em_pct(pct, 30) == pytest.approx(0.5)
    assert iv_from_em_pct(pct, 0) is None


def test_engine_rows_use_flat_iv_outside_curve() -> None:
    rows = ExpectedMoveEngine().compute(100_000, NODES, now=NOW)

    assert [r.days for r in rows] == [1, 7, 30]
    one_day, week, month = rows

    assert one_day.source == "clamped"
    assert one_day.iv == 0.60
    assert week.iv == 0.60
    assert week.source == "interpolated"
    assert week.pct == pytest.approx(0.60 * math.sqrt(7 / 365))
    assert week.abs == pytest.approx(100_000 * week.pct)
    assert month.iv == 0.50


def test_engine_rows_pick_real_expiries() -> None:
    rows = ExpectedMoveEngine().compute(100_000, NODES, now=NOW)
    assert [r.expiry_ts for r in rows] == [EXP_7, EXP_7, EXP_30]


def test_slope_mode_extrapolates() -> None:
    engine = ExpectedMoveEngine(mode=ExtrapolationMode.SLOPE)
    row = engine.row(100_000, NODES, 60, NOW)
    assert row.source == "extrapolated"
    assert row.iv < 0.50
    assert row.expiry_ts == EXP_30


def test_far_bracket_is_replaced_with_synthesized_date() -> None:
    nodes = [TermNode(30 / 365, 0.50, EXP_30), TermNode(180 / 365, 0.55, NOW + 180 * DAY_MS)]
    row = ExpectedMoveEngine(mode=ExtrapolationMode.SLOPE).row(100_000, nodes, 1, NOW)
    assert row.expiry_ts == NOW + DAY_MS


def test_empty_curve_gives_empty_row() -> None:
    row = ExpectedMoveEngine().row(100_000, [], 7, NOW)
    assert row.iv is None
    assert row.abs is None
    assert row.expiry_ts == NOW + 7 * DAY_MS


def test_floored_slope_extrapolation_has_no_move() -> None:
    inverted = [TermNode(7 / 365, 0.90, EXP_7), TermNode(30 / 365, 0.30, EXP_30)]
    row = ExpectedMoveEngine(mode=ExtrapolationMode.SLOPE).row(100_000, inverted, 60, NOW)
    assert row.source == "extrapolated"
    assert row.iv is None
    assert row.pct is None
    assert row.abs is None
