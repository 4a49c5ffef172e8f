from __future__ import annotations

import asyncio

import pytest

from deribit_risk.gamma import (
    DOWNSIDE,
    PINNED,
    UNKNOWN,
    UPSIDE,
    GammaExposureEngine,
    GammaLeg,
    aggregate_by_strike,
    bucket_center_of_mass,
    center_of_mass,
    classify_side,
    com_badge,
    gamma_gravity,
)
from deribit_risk.errors import DataInsufficientError
from deribit_risk.records import BookSummary, Ticker

from tests.fakes import NOW, FakeGateway, option

SPOT = 100_000.0

# (strike, side, gamma, oi)
FIXTURE = [
    (98_000, "put", 0.00002, 100),
    (98_000, "call", 0.00001, 50),
    (102_000, "call", 0.00003, 200),
]


def _gateway(extra: list = ()) -> FakeGateway:
    instruments, tickers, summaries = [], {}, []
    for strike, side, gamma, oi in list(FIXTURE) + list(extra):
        inst = option(20, strike, side)
        instruments.append(inst)
        tickers[inst.name] = Ticker(inst.name, gamma=gamma)
        summaries.append(BookSummary(inst.name, open_interest=oi, expiry_ts=inst.expiry_ts,
                                     strike=inst.strike, option_type=side))
    return FakeGateway(spot=SPOT, instruments=instruments, tickers=tickers, summaries=summaries)


def test_gex_matches_hand_computed_totals() -> None:
    walls = asyncio.run(GammaExposureEngine(_gateway()).compute(now=NOW))

    by_strike = {r.strike: r for r in walls.rows}
    assert by_strike[98_000].gex_call_usd == pytest.approx(5e6)
    assert by_strike[98_000].gex_put_usd == pytest.approx(2e7)
    assert by_strike[98_000].gex_net_usd == pytest.approx(-1.5e7)
    assert by_strike[102_000].gex_net_usd == pytest.approx(6e7)
    assert [r.strike for r in walls.rows] == [102_000, 98_000]
    for row in walls.rows:
        assert row.gex_abs_usd == abs(row.gex_net_usd)


def test_strikes_outside_window_are_ignored() -> None:
    walls = asyncio.run(GammaExposureEngine(_gateway([(150_000, "call", 0.001, 1_000)])).compute(now=NOW))
    assert 150_000 not in {r.strike for r in walls.rows}


def test_missing_index_price_selects_nothing() -> None:
    instruments = [option(20, 100_000, "call")]
    engine = GammaExposureEngine(FakeGateway())
    assert engine.near_spot(instruments, 0.0) == []
    assert engine.near_spot(instruments, -1.0) == []

    gateway = _gateway()
    gateway.spot = 0.0
    with pytest.raises(DataInsufficientError):
        asyncio.run(GammaExposureEngine(gateway).compute(now=NOW))


def test_ties_rank_by_distance_to_spot() -> None:
    legs = [GammaLeg("a", 95_000, True, 1e-5, 10), GammaLeg("b", 101_000, True, 1e-5, 10)]
    rows = aggregate_by_strike(legs, SPOT)
    assert [r.strike for r in rows] == [101_000, 95_000]


def test_center_of_mass_and_side() -> None:
    walls = asyncio.run(GammaExposureEngine(_gateway()).compute(now=NOW))
    com = center_of_mass(walls.rows, SPOT)

    assert com.k_com == pytest.approx((102_000 * 6e7 + 98_000 * 1.5e7) / 7.5e7)
    assert com.distance_pct == pytest.approx(1.2)
    assert com.side == UPSIDE
    assert com_badge(com.side) == "Heavier upside structure"


def test_bucket_center_of_mass_respects_dte_window() -> None:
    legs = [
        GammaLeg("near", 99_000, True, 1e-5, 10, dte_days=2),
        GammaLeg("mid", 101_000, True, 1e-5, 10, dte_days=20),
    ]
    com = bucket_center_of_mass(legs, SPOT, min_dte=7, max_dte=45)
    assert com.k_com == pytest.approx(101_000)

    empty = bucket_center_of_mass(legs[:1], SPOT)
    assert not empty.has_data
    assert empty.side == UNKNOWN


def test_classify_side() -> None:
    assert classify_side(0.5) == PINNED
    assert classify_side(-2.0) == DOWNSIDE
    assert classify_side(2.0) == UPSIDE
    assert classify_side(None) == UNKNOWN


def test_gamma_gravity_band() -> None:
    walls = asyncio.run(GammaExposureEngine(_gateway()).compute(now=NOW))
    assert gamma_gravity(walls.rows, SPOT, band_pct=5.0) == pytest.approx(1.0)
    assert gamma_gravity(walls.rows, SPOT, band_pct=1.0) == pytest.approx(0.0)
    assert gamma_gravity([], SPOT) is None
