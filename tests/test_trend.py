from __future__ import annotations

import asyncio

import pytest

from deribit_risk.config import TrendQualityConfig
from deribit_risk.errors import DataInsufficientError
from deribit_risk.trend import (
    DOWN,
    DOWNTREND,
    FLAT,
    GRINDY_TREND,
    MIXED,
    RANGE_FRIENDLY,
    TRANSITION,
    UP,
    UPTREND,
    TrendEngine,
    classify_trend,
    slope_label,
    sma_rows,
    trend_quality,
)

from tests.fakes import FakeGateway, daily_candles


def test_slope_label_tolerance() -> None:
    assert slope_label(101.0, 100.0) == UP
    assert slope_label(99.0, 100.0) == DOWN
    assert slope_label(100.04, 100.0) == FLAT
    assert slope_label(None, 100.0) is None


def test_sma_rows_distance_and_slope() -> None:
    closes = [float(i) for i in range(1, 26)]
    rows = {r.tenor: r for r in sma_rows(closes, (5, 20, 30))}

    assert rows[5].sma == pytest.approx(23.0)
    assert rows[5].distance_pct == pytest.approx(2 / 23 * 100)
    assert rows[5].slope == UP
    assert rows[5].above
    assert rows[20].sma == pytest.approx(15.5)
    assert rows[30].sma is None
    assert rows[30].above is None


@pytest.mark.parametrize(
    "sep,fast,slow,direction,regime",
    [
        (1.0, 2.0, 1.0, UPTREND, RANGE_FRIENDLY),
        (-7.0, -12.0, -3.0, DOWNTREND, GRINDY_TREND),
        (3.0, 4.0, -1.0, MIXED, TRANSITION),
        (6.5, 3.0, 2.0, UPTREND, TRANSITION),
    ],
)
def test_classify_trend(sep, fast, slow, direction, regime) -> None:
    assert classify_trend(sep, fast, slow) == (direction, regime)


def test_trend_quality_from_short_smas() -> None:
    candles = daily_candles([100.0, 100.0, 100.0, 103.0, 106.0])
    cfg = TrendQualityConfig(fast=2, slow=3, atr_window=2)

    result = trend_quality(candles, cfg)

    assert result.separation_pct == pytest.approx(1.5 / 106 * 100)
    assert result.fast_slope_bps == pytest.approx(3 / 106 * 10_000)
    assert result.slow_slope_bps == pytest.approx(2 / 106 * 10_000)
    assert result.direction == UPTREND
    assert result.regime == TRANSITION
    assert result.atr is not None
    assert trend_quality(candles[:3], cfg) is None


def test_spot_vs_sma_reports_available_tenors(now) -> None:
    gateway = FakeGateway(candles=daily_candles([100_000.0 + 100 * i for i in range(30)], end=now))

    result = asyncio.run(TrendEngine(gateway).spot_vs_sma(now=now))

    assert result.main.tenor == 20
    assert result.main.above
    assert [r.tenor for r in result.rows] == [20, 50, 100, 200]
    assert all(r.sma is None for r in result.rows[1:])


def test_trend_engine_needs_enough_history(now) -> None:
    short = FakeGateway(candles=daily_candles([100_000.0] * 10, end=now))
    with pytest.raises(DataInsufficientError):
        asyncio.run(TrendEngine(short).spot_vs_sma(now=now))

    medium = FakeGateway(candles=daily_candles([100_000.0] * 60, end=now))
    with pytest.raises(DataInsufficientError):
        asyncio.run(TrendEngine(medium).trend_quality(now=now))

    long = FakeGateway(candles=daily_candles([100_000.0] * 150, end=now))
    result = asyncio.run(TrendEngine(long).trend_quality(now=now))
    assert result.direction == MIXED
    assert result.regime == RANGE_FRIENDLY
    assert result.atr == pytest.approx(2_000)
