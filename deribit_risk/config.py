"""
Engine configuration
Tunable constants are empirical choices; they live here so callers can
override them without touching the algorithms.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class Settings:
    """Process-level settings, read from the environment by `from_env`"""
    testnet: bool = False
    currency: str = "BTC"
    max_concurrency: int = 4
    requests_per_second: float = 15.0
    refresh_delay_ms: int = 250
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        currency = os.getenv("RISK_CURRENCY", "BTC").upper()
        if currency not in ("BTC", "ETH"):
            raise ValueError(f"Unsupported RISK_CURRENCY: {currency}")
        return cls(
            testnet=_env_bool("DERIBIT_TESTNET"),
            currency=currency,
            max_concurrency=int(os.getenv("RISK_MAX_CONCURRENCY", "4")),
            requests_per_second=float(os.getenv("RISK_REQUESTS_PER_SECOND", "15")),
            refresh_delay_ms=int(os.getenv("RISK_REFRESH_DELAY_MS", "250")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


@dataclass
class RetryConfig:
    limit: int = 4            # concurrent in-flight requests
    attempts: int = 4
    base_delay: float = 0.25  # seconds
    max_delay: float = 2.0


@dataclass
class AtmTermConfig:
    mode: str = "curated"          # 'curated' | 'all'
    min_dte_hours: float = 12
    band_pct: float = 0.0          # 0 disables the ±band filter
    max_expiries: int = 8
    near_days: float = 14
    min_monthly: int = 3
    min_dte_days: float = 2        # 'all' mode only
    max_dte_days: float = 400
    all_cap: int = 48
    rate: Optional[float] = None
    dividend: Optional[float] = None
    day_count: float = 365


@dataclass
class TermStructureConfig:
    eps: float = 0.005


@dataclass
class ExpectedMoveConfig:
    horizons: Tuple[int, ...] = (1, 7, 30)
    far_threshold_days: float = 10
    ceil_tolerance_days: float = 0


@dataclass
class SkewConfig:
    target_days: float = 30
    min_days: float = 1
    max_per_side: int = 40
    target_delta: float = 0.25
    too_wide: float = 0.12
    max_iv: float = 3.0


@dataclass
class KinkConfig:
    buckets: Tuple[int, ...] = (0, 1, 2, 3)


@dataclass
class GammaConfig:
    window_pct: float = 0.10
    top_n: int = 3
    pinned_pct: float = 0.75
    gravity_band_pct: float = 5.0
    bucket_min_dte: float = 7
    bucket_max_dte: float = 45
    decay_tau_days: float = 30


@dataclass
class OIConcentrationConfig:
    top_n: int = 3
    scope: str = "front"               # 'front' | 'all'
    window_pct: Optional[float] = None


@dataclass
class LiquidityConfig:
    window_pct: float = 0.005
    clip_size: float = 10
    option_min_window_pct: float = 0.03
    book_depth: int = 20
    wide_tick: float = 0.0005
    narrow_tick: float = 0.0001
    tick_threshold: float = 0.005
    max_ticks: float = 8
    max_spread_bps: float = 400
    spread_weight: float = 0.5
    depth_weight: float = 0.5
    market_weights: Dict[str, float] = field(
        default_factory=lambda: {'perp': 0.2, '3d': 0.4, '30d': 0.4})
    near_target_dte: float = 3
    near_dte_range: Tuple[float, float] = (2, 7)
    month_target_dte: float = 30
    month_dte_range: Tuple[float, float] = (21, 40)


@dataclass
class RealizedVolConfig:
    window: int = 20
    periods_per_year: float = 365
    resolution_sec: int = 86400
    iv_tenor_days: float = 30


@dataclass
class CondorConfig:
    target_dte: float = 14
    dte_min: float = 7
    dte_max: float = 21
    short_mult: float = 1.0
    hedge_mult: float = 1.6
    min_credit_usd: float = 50
    max_ba_frac: float = 0.05


@dataclass
class FundingConfig:
    instrument: str = "BTC-PERPETUAL"
    lookback_days: float = 7
    period_8h_sec: int = 28800
    period_1h_sec: int = 3600
    periods_per_year: float = 1095


@dataclass
class DvolConfig:
    lookback_days: int = 400
    window_days: int = 365
    resolution: str = "1D"


@dataclass
class HitRateConfig:
    horizon_days: int = 1
    lookback: int = 30


@dataclass
class AtrEmConfig:
    atr_days: float = 5
    horizon_days: int = 5
    resolution_sec: int = 86400
    rich_below: float = 0.7       # ratio bands for the regime label
    balanced_below: float = 1.0


@dataclass
class IvRvConfig:
    windows: Tuple[int, ...] = (7, 21, 60)
    main_window: int = 21
    dvol_lookback_days: int = 5
    periods_per_year: float = 365


@dataclass
class SmaConfig:
    tenors: Tuple[int, ...] = (20, 50, 100, 200)
    main_tenor: int = 20
    slope_eps: float = 0.0005     # relative day-over-day change read as flat
    history_bars: int = 260


@dataclass
class TrendQualityConfig:
    fast: int = 50
    slow: int = 100
    atr_window: int = 14
    history_bars: int = 260
    range_sep_pct: float = 2
    range_fast_bps: float = 5
    range_slow_bps: float = 3
    trend_sep_pct: float = 6
    trend_fast_bps: float = 10
    trend_slow_bps: float = 6
