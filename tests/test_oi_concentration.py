from __future__ import annotations

import asyncio
import math

import pytest

from deribit_risk.config import OIConcentrationConfig
from deribit_risk.oi_concentration import (
    OIConcentrationEngine,
    OIStrikeBucket,
    aggregate_oi,
    concentration_metrics,
    gini,
)
from deribit_risk.records import DAY_MS, BookSummary

from tests.fakes import NOW, FakeGateway

FRONT = NOW + 2 * DAY_MS
BACK = NOW + 30 * DAY_MS


def _buckets(*ois: float) -> list:
    return [OIStrikeBucket(strike=100_000 + i * 1_000, oi=oi) for i, oi in enumerate(ois)]


def test_top_n_over_all_strikes_is_one() -> None:
    m = concentration_metrics(_buckets(50, 30, 20), top_n=3, ts=NOW)
    assert m.top_n_share == pytest.approx(1.0)
    assert m.top1_share == pytest.approx(0.5)
    assert m.hhi == pytest.approx(0.38)
    expected_entropy = sum(p * math.log(1 / p) for p in (0.5, 0.3, 0.2))
    assert m.entropy == pytest.approx(expected_entropy)
    assert m.dominant_strike == 100_000


def test_single_strike_is_fully_concentrated() -> None:
    m = concentration_metrics(_buckets(42), top_n=3, ts=NOW)
    assert m.hhi == pytest.approx(1.0)
    assert m.top1_share == pytest.approx(1.0)
    assert m.gini == pytest.approx(0.0)
    assert m.entropy == pytest.approx(0.0)


def test_equal_strikes_have_zero_gini() -> None:
    assert gini([10.0, 10.0]) == pytest.approx(0.0)
    assert gini([0.0, 10.0]) == pytest.approx(0.5)
    assert gini([]) == 0.0


def test_zero_total_returns_zeroed_metrics() -> None:
    m = concentration_metrics([], top_n=3, ts=NOW)
    assert m.total_oi == 0
    assert m.top_n_share == 0
    assert m.hhi == 0
    assert m.gini == 0
    assert m.dominant_strike is None


def _summaries() -> list:
    return [
        BookSummary("f-100k-C", 30, FRONT, 100_000, "call"),
        BookSummary("f-100k-P", 20, FRONT, 100_000, "put"),
        BookSummary("f-110k-C", 50, FRONT, 110_000, "call"),
        BookSummary("f-90k-P", 0, FRONT, 90_000, "put"),
        BookSummary("b-100k-C", 500, BACK, 100_000, "call"),
    ]


def test_aggregate_merges_sides_per_strike() -> None:
    buckets = {b.strike: b for b in aggregate_oi(_summaries(), FRONT)}
    assert set(buckets) == {100_000, 110_000}
    assert buckets[100_000].oi == 50
    assert buckets[100_000].calls_oi == 30
    assert buckets[100_000].puts_oi == 20


def test_aggregate_price_window() -> None:
    buckets = aggregate_oi(_summaries(), None, index_price=100_000, window_pct=0.05)
    assert [b.strike for b in buckets] == [100_000]
    assert buckets[0].oi == 550


def test_engine_scopes_to_front_expiry() -> None:
    gateway = FakeGateway(summaries=_summaries())
    m = asyncio.run(OIConcentrationEngine(gateway).compute(now=NOW))

    assert m.front_expiry_ts == FRONT
    assert m.total_oi == 100
    assert m.included_count == 2
    assert m.scanned_count == 5
    assert m.top1_share == pytest.approx(0.5)


def test_engine_all_expiries() -> None:
    gateway = FakeGateway(summaries=_summaries())
    m = asyncio.run(OIConcentrationEngine(gateway, OIConcentrationConfig(scope="all")).compute(now=NOW))
    assert m.total_oi == 600
    assert m.front_expiry_ts is None


def test_normalized_hhi() -> None:
    assert concentration_metrics(_buckets(10, 10), ts=NOW).hhi_norm == pytest.approx(0.0)
    assert concentration_metrics(_buckets(42), ts=NOW).hhi_norm == 1.0
    assert concentration_metrics([], ts=NOW).hhi_norm == 0.0
