from __future__ import annotations

import asyncio
import math

import pytest

from deribit_risk.config import AtmTermConfig
from deribit_risk.records import Ticker
from deribit_risk.term import AtmTermBuilder, IVPoint, forward_price, nearest_strike
from deribit_risk.term_structure import (
    BACKWARDATION,
    CONTANGO,
    FLAT,
    INSUFFICIENT,
    linreg_slope,
    term_structure_stats,
)

from tests.fakes import NOW, FakeGateway, option


def test_two_leg_chain_yields_single_atm_node() -> None:
    call = option(10, 95_000, "call")
    put = option(10, 105_000, "put")
    gateway = FakeGateway(
        spot=100_000,
        instruments=[call, put],
        tickers={call.name: Ticker(call.name, mark_iv=0.50), put.name: Ticker(put.name, mark_iv=0.50)},
    )

    term = asyncio.run(AtmTermBuilder(gateway).build(now=NOW))

    assert len(term.points) == 1
    point = term.points[0]
    assert point.iv == pytest.approx(0.50)
    assert point.strike_call == 95_000
    assert point.strike_put == 105_000
    assert point.dte_days == pytest.approx(10)
    assert term.index_price == 100_000


def test_call_and_put_ivs_are_averaged_or_used_alone() -> None:
    legs = [option(5, 100_000, "call"), option(5, 100_000, "put"),
            option(9, 100_000, "call"), option(9, 100_000, "put")]
    tickers = {
        legs[0].name: Ticker(legs[0].name, mark_iv=0.50),
        legs[1].name: Ticker(legs[1].name, mark_iv=0.60),
        legs[2].name: Ticker(legs[2].name, mark_iv=None),
        legs[3].name: Ticker(legs[3].name, mark_iv=0.70),
    }
    gateway = FakeGateway(instruments=legs, tickers=tickers)

    term = asyncio.run(AtmTermBuilder(gateway).build(now=NOW))

    assert [p.iv for p in term.points] == [pytest.approx(0.55), pytest.approx(0.70)]
    assert term.expiries == sorted(term.expiries)


def test_expiry_without_usable_iv_is_dropped() -> None:
    legs = [option(5, 100_000, "call"), option(9, 100_000, "call")]
    tickers = {legs[0].name: Ticker(legs[0].name), legs[1].name: Ticker(legs[1].name, mark_iv=0.4)}
    term = asyncio.run(AtmTermBuilder(FakeGateway(instruments=legs, tickers=tickers)).build(now=NOW))
    assert [p.expiry_ts for p in term.points] == [legs[1].expiry_ts]


def test_nearest_strike_per_side_and_band() -> None:
    legs = [option(5, k, side) for k in (90_000, 99_000, 103_000) for side in ("call", "put")]
    builder = AtmTermBuilder(FakeGateway(), AtmTermConfig(band_pct=0.02))
    call, put = builder.pick_legs(legs, 100_000, 5 / 365)
    assert call.strike == 99_000
    assert put.strike == 99_000

    assert nearest_strike([], 100_000) is None


def test_forward_price_uses_carry() -> None:
    assert forward_price(100_000, 0.5) == 100_000
    assert forward_price(100_000, 1.0, rate=0.05) == pytest.approx(100_000 * math.exp(0.05))


def _points(ivs: list) -> list:
    return [IVPoint(expiry_ts=NOW + i, dte_days=36.5 * (i + 1), t_annual=0.1 * (i + 1), iv=iv)
            for i, iv in enumerate(ivs)]


def test_term_structure_classification() -> None:
    contango = term_structure_stats(_points([0.50, 0.55, 0.60]))
    assert contango.label == CONTANGO
    assert contango.slope_per_year == pytest.approx(0.5)
    assert contango.term_premium == pytest.approx(0.10)

    assert term_structure_stats(_points([0.60, 0.55, 0.50])).label == BACKWARDATION
    assert term_structure_stats(_points([0.50, 0.5001, 0.5002])).label == FLAT

    single = term_structure_stats(_points([0.5]))
    assert single.label == INSUFFICIENT
    assert single.slope_per_year is None


def test_linreg_slope_needs_spread_in_x() -> None:
    assert linreg_slope([1.0], [2.0]) is None
    assert linreg_slope([1.0, 1.0], [2.0, 3.0]) is None
    assert linreg_slope([0.0, 1.0, 2.0], [1.0, 3.0, 5.0]) == pytest.approx(2.0)
