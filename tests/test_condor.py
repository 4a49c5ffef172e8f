from __future__ import annotations

import asyncio
import math

import pytest

from deribit_risk.condor import (
    CondorCreditEngine,
    CondorLeg,
    ba_ok,
    condor_credit,
    pick_chain_near_dte,
    utc_day_start,
)
from deribit_risk.config import CondorConfig
from deribit_risk.errors import DataInsufficientError
from deribit_risk.records import Ticker

from tests.fakes import HOUR_MS, NOW, FakeGateway, option

SPOT = 100_000.0


def _premium(strike: float) -> float:
    return 0.03 * math.exp(-abs(strike - SPOT) / 5_000)


def _chain(days: float = 14, strikes=range(85_000, 116_000, 1_000)):
    instruments, tickers = [], {}
    for strike in strikes:
        for side in ("call", "put"):
            inst = option(days, strike, side)
            p = _premium(strike)
            instruments.append(inst)
            tickers[inst.name] = Ticker(inst.name, mark_iv=0.5, best_bid=p * 0.99, best_ask=p * 1.01)
    return instruments, tickers


def _legs(mids: dict, liquid: bool = True) -> dict:
    targets = {"short_put": 95_000, "long_put": 92_000, "short_call": 105_000, "long_call": 108_000}
    return {k: CondorLeg(name=k, strike_target=targets[k], strike=targets[k], mid_usd=mids[k], liquid=liquid)
            for k in targets}


def test_credit_widths_and_max_loss() -> None:
    legs = _legs({"short_put": 800, "long_put": 300, "short_call": 700, "long_call": 250})
    credit, width_put, width_call, max_loss, liquid, passes = condor_credit(legs, CondorConfig())
    assert credit == pytest.approx(950)
    assert width_put == 3_000
    assert width_call == 3_000
    assert max_loss == pytest.approx(2_050)
    assert liquid
    assert passes


def test_small_credit_or_illiquid_leg_fails() -> None:
    small = _legs({"short_put": 60, "long_put": 40, "short_call": 50, "long_call": 30})
    assert not condor_credit(small, CondorConfig())[5]

    illiquid = _legs({"short_put": 800, "long_put": 300, "short_call": 700, "long_call": 250}, liquid=False)
    assert not condor_credit(illiquid, CondorConfig())[5]


def test_missing_mid_makes_credit_nan() -> None:
    legs = _legs({"short_put": 800, "long_put": None, "short_call": 700, "long_call": 250})
    credit, *_, passes = condor_credit(legs, CondorConfig())
    assert math.isnan(credit)
    assert not passes


def test_bid_ask_filter() -> None:
    assert ba_ok(1_000, 0.0099, 0.0101, SPOT, 0.05)
    assert not ba_ok(1_000, 0.009, 0.011, SPOT, 0.05)
    assert not ba_ok(1_000, None, 0.011, SPOT, 0.05)


def test_chain_dte_counts_whole_days_from_utc_midnight() -> None:
    assert utc_day_start(NOW) == NOW - 8 * HOUR_MS
    week = option(7, 100_000, "call")
    fortnight = option(13, 100_000, "call")
    far = option(40, 100_000, "call")
    chain, dte, ts = pick_chain_near_dte([week, fortnight, far], 14, 7, 21, NOW)
    assert chain == [fortnight]
    assert dte == 13
    assert ts == fortnight.expiry_ts

    assert pick_chain_near_dte([far], 14, 7, 21, NOW) == ([], -1, None)


def test_engine_sizes_condor_from_straddle() -> None:
    instruments, tickers = _chain()
    gateway = FakeGateway(spot=SPOT, instruments=instruments, tickers=tickers)

    result = asyncio.run(CondorCreditEngine(gateway).compute(now=NOW))

    assert result.dte == 14
    assert result.em_source == "straddle"
    assert result.em_usd == pytest.approx(0.06 * SPOT)
    assert result.legs["short_put"].strike == 94_000
    assert result.legs["long_put"].strike == 90_000
    assert result.legs["short_call"].strike == 106_000
    assert result.legs["long_call"].strike == 110_000

    expected = (_premium(94_000) - _premium(90_000) + _premium(106_000) - _premium(110_000)) * SPOT
    assert result.credit_usd == pytest.approx(expected)
    assert result.width_put_usd == pytest.approx(0.6 * 6_000)
    assert result.max_loss_usd == pytest.approx(0.6 * 6_000 - expected)
    assert result.liquidity_ok
    assert result.passes
    assert result.pct_of_em == pytest.approx(expected / 6_000 * 100)


def test_engine_falls_back_to_iv_when_straddle_unpriced() -> None:
    instruments, tickers = _chain()
    for name, ticker in list(tickers.items()):
        if "-100000-" in name:
            tickers[name] = Ticker(name, mark_iv=0.5)
    gateway = FakeGateway(spot=SPOT, instruments=instruments, tickers=tickers)

    result = asyncio.run(CondorCreditEngine(gateway).compute(now=NOW))

    assert result.em_source == "iv"
    assert result.em_usd == pytest.approx(SPOT * 0.5 * math.sqrt(14 / 365))


def test_engine_without_chain_is_insufficient() -> None:
    instruments, tickers = _chain(days=60)
    gateway = FakeGateway(spot=SPOT, instruments=instruments, tickers=tickers)
    with pytest.raises(DataInsufficientError):
        asyncio.run(CondorCreditEngine(gateway).compute(now=NOW))
