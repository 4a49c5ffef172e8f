"""
KPI payloads
The boundary shape handed to the presentation layer or a snapshot sink:
one `KpiPayload` per KPI, built from a service's refresh state.
"""

from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .basis import BasisResult
from .condor import CondorResult
from .dvol import IvRankResult
from .expected_move import ExpectedMoveRow, iv_from_em_pct
from .formatting import (
    DASH, fmt_num, fmt_pct, fmt_pct_points, fmt_strike, fmt_usd, fmt_usd_compact, fmt_vol_points,
)
from .funding import FundingResult
from .gamma import CenterOfMass, GammaWalls, com_badge
from .kink import KinkResult
from .liquidity import LiquidityStressMetrics
from .oi_concentration import OIConcentrationMetrics
from .realized_vol import AtrEmResult, HitRateResult, IvRvSpreadResult, RealizedVolResult
from .service import READY, RefreshResult
from .skew import SkewResult
from .term import AtmTerm
from .term_structure import TermStructureStats
from .trend import SpotVsSmaResult, TrendQualityResult


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class KpiPoint(ApiModel):
    key: str
    label: str
    value: Optional[float] = None
    formatted: str


class KpiPayload(ApiModel):
    kpi_id: str
    status: str = Field(pattern="^(loading|ready|error|empty)$")
    main: Optional[KpiPoint] = None
    mini: List[KpiPoint] = Field(default_factory=list)
    meta: Optional[str] = None
    extra_badge: Optional[str] = None
    guidance_value: Optional[float] = None
    error: Optional[str] = None


class KpiView(ApiModel):
    main: Optional[KpiPoint] = None
    mini: List[KpiPoint] = Field(default_factory=list)
    meta: Optional[str] = None
    extra_badge: Optional[str] = None
    guidance_value: Optional[float] = None


def point(key: str, label: str, value: Optional[float], formatted: str) -> KpiPoint:
    return KpiPoint(key=key, label=label, value=value, formatted=formatted)


# ============================================================
# VIEWS
# ============================================================

def atm_iv_view(data: Tuple[AtmTerm, TermStructureStats]) -> KpiView:
    term, stats = data
    front = term.points[0] if term.points else None
    return KpiView(
        main=point("atm_iv", "Front ATM IV", front.iv if front else None,
                   fmt_pct(front.iv if front else None)),
        mini=[point(f"iv_{p.expiry_ts}", f"{p.dte_days:.0f}D", p.iv, fmt_pct(p.iv)) for p in term.points],
        meta=f"{len(term.points)} expiries vs index {fmt_strike(term.index_price)}",
        guidance_value=front.iv * 100 if front else None,
    )


def term_structure_view(stats: TermStructureStats) -> KpiView:
    return KpiView(
        main=point("label", "Term structure", stats.slope_per_year, stats.label.capitalize()),
        mini=[
            point("slope", "Slope / yr", stats.slope_per_year, fmt_vol_points(stats.slope_per_year)),
            point("premium", "Term premium", stats.term_premium, fmt_vol_points(stats.term_premium)),
            point("n", "Expiries", float(stats.n), str(stats.n)),
        ],
        guidance_value=stats.term_premium * 100 if stats.term_premium is not None else None,
    )


def expected_move_view(rows: List[ExpectedMoveRow]) -> KpiView:
    mini = [point(f"em_{r.days}d", f"{r.days}D ({r.expiry_label})", r.abs,
                  f"±{fmt_usd(r.abs)} ({fmt_pct(r.pct, 2)})") for r in rows]
    first = rows[0] if rows else None
    return KpiView(
        main=mini[0] if mini else None,
        mini=mini,
        meta="IV held flat outside the listed curve",
        extra_badge="Extrapolated" if any(r.source == "clamped" for r in rows) else None,
        guidance_value=first.pct * 100 if first and first.pct is not None else None,
    )


def skew_view(result: SkewResult) -> KpiView:
    return KpiView(
        main=point("rr25", "25Δ RR", result.skew, fmt_vol_points(result.skew)),
        mini=[
            point("call25", "25Δ call IV", result.iv_call_25, fmt_pct(result.iv_call_25)),
            point("put25", "25Δ put IV", result.iv_put_25, fmt_pct(result.iv_put_25)),
        ],
        meta=f"{result.expiry_label} • C: {result.call.label} • P: {result.put.label}",
        extra_badge=None if result.interpolated else "Nearest strike",
        guidance_value=result.skew * 100,
    )


def kink_view(result: KinkResult) -> KpiView:
    mini = [point(f"iv_{b}d", f"{b}DTE", iv, fmt_pct(iv)) for b, iv in sorted(result.ivs.items())]
    mini.append(point("ratio", "Ratio", result.kink_ratio, fmt_num(result.kink_ratio)))
    return KpiView(
        main=point("kink", "0DTE vs 1-3DTE", result.kink_points, fmt_vol_points(result.kink_points)),
        mini=mini,
        guidance_value=result.kink_points * 100 if result.kink_points is not None else None,
    )


def gamma_walls_view(walls: GammaWalls) -> KpiView:
    top = walls.top
    mini = [point(f"wall_{r.strike:.0f}", fmt_strike(r.strike), r.gex_net_usd,
                  fmt_usd_compact(r.gex_net_usd)) for r in top]
    return KpiView(
        main=point("top_wall", "Top wall", top[0].strike if top else None,
                   fmt_strike(top[0].strike) if top else "—"),
        mini=mini,
        meta=f"Spot {fmt_strike(walls.index_price)}",
    )


def gamma_com_view(data: Tuple[GammaWalls, CenterOfMass, Optional[float]]) -> KpiView:
    walls, com, gravity = data
    return KpiView(
        main=point("k_com", "Γ center of mass", com.distance_pct, fmt_pct_points(com.distance_pct, 2, signed=True)),
        mini=[
            point("k_com_strike", "K_COM", com.k_com, fmt_strike(com.k_com)),
            point("gravity", "Gamma gravity", gravity, fmt_pct(gravity)),
        ],
        meta=f"K_COM {fmt_strike(com.k_com)} vs Spot {fmt_strike(walls.index_price)} • 7–45D, e^{{-T/30}}",
        extra_badge=com_badge(com.side),
        guidance_value=com.distance_pct,
    )


def oi_concentration_view(m: OIConcentrationMetrics) -> KpiView:
    return KpiView(
        main=point("top_n_share", f"Top {m.top_n} share", m.top_n_share, fmt_pct(m.top_n_share)),
        mini=[
            point("top1", "Top strike", m.top1_share, f"{fmt_strike(m.dominant_strike)} • {fmt_pct(m.top1_share)}"),
            point("hhi", "HHI", m.hhi, fmt_num(m.hhi, 3)),
            point("hhi_norm", "HHI (normalized)", m.hhi_norm, fmt_num(m.hhi_norm, 3)),
            point("entropy", "Entropy", m.entropy, fmt_num(m.entropy, 2)),
            point("gini", "Gini", m.gini, fmt_num(m.gini, 2)),
        ],
        meta=f"{m.included_count}/{m.scanned_count} strikes • {m.expiry_scope}",
        guidance_value=m.top_n_share * 100,
    )


def liquidity_view(m: LiquidityStressMetrics) -> KpiView:
    return KpiView(
        main=point("stress", "Liquidity stress", m.combined_stress, fmt_pct(m.combined_stress, 0)),
        mini=[point(mk.id, mk.label, mk.stress, fmt_pct(mk.stress, 0)) for mk in m.markets],
        meta=f"Avg spread {fmt_num(m.avg_spread_bps, 1)} bps • depth {fmt_num(m.total_depth, 1)}",
        guidance_value=m.combined_stress * 100,
    )


def realized_vol_view(r: RealizedVolResult) -> KpiView:
    return KpiView(
        main=point("rv", f"RV {r.window}D", r.rv, fmt_pct(r.rv)),
        mini=[
            point("parkinson", "Parkinson", r.rv_parkinson, fmt_pct(r.rv_parkinson)),
            point("iv", "ATM IV", r.iv, fmt_pct(r.iv)),
        ],
        guidance_value=r.rv * 100,
    )


def rv_em_view(r: RealizedVolResult) -> KpiView:
    return KpiView(
        main=point("rv_em", "RV / IV", r.rv_em_factor, fmt_num(r.rv_em_factor)),
        mini=[
            point("rv", "RV", r.rv, fmt_pct(r.rv)),
            point("iv", "IV", r.iv, fmt_pct(r.iv)),
        ],
        meta=None if r.iv is not None else "ATM IV unavailable",
        guidance_value=r.rv_em_factor,
    )


def condor_view(c: CondorResult) -> KpiView:
    straddle_iv = iv_from_em_pct(c.em_pct, c.dte) if c.spot else None
    return KpiView(
        main=point("pct_of_em", "Credit % of EM", c.pct_of_em, fmt_pct_points(c.pct_of_em)),
        mini=[
            point("credit", "Credit", c.credit_usd, fmt_usd(c.credit_usd)),
            point("em", "EM", c.em_usd, fmt_usd(c.em_usd)),
            point("em_iv", "EM-implied IV", straddle_iv, fmt_pct(straddle_iv)),
            point("max_loss", "Max loss", c.max_loss_usd, fmt_usd(c.max_loss_usd)),
        ],
        meta=f"{c.dte}D • EM from {c.em_source}",
        extra_badge="Passes" if c.passes else "Fails filters",
        guidance_value=c.pct_of_em,
    )


def funding_view(f: FundingResult) -> KpiView:
    return KpiView(
        main=point("current", "Funding (ann.)", f.current_annualized_pct,
                   fmt_pct_points(f.current_annualized_pct, 2)),
        mini=[
            point("avg7d", "7D avg (ann.)", f.avg_annualized_pct, fmt_pct_points(f.avg_annualized_pct, 2)),
            point("z", "Z-score", f.z_score, fmt_num(f.z_score)),
        ],
        meta=f.instrument + (" • from 1h" if f.aggregated_from_1h else ""),
        guidance_value=f.current_annualized_pct,
    )


def ivr_view(r: IvRankResult) -> KpiView:
    return KpiView(
        main=point("ivr", "IV rank", float(r.ivr), str(r.ivr)),
        mini=[
            point("ivp", "IV percentile", float(r.ivp), str(r.ivp)),
            point("dvol", "DVOL", r.current, fmt_num(r.current, 1)),
        ],
        meta=f"1y range {fmt_num(r.low, 1)}–{fmt_num(r.high, 1)}",
        guidance_value=float(r.ivr),
    )


def basis_view(b: BasisResult) -> KpiView:
    mini = [point("abs", "Basis", b.basis_abs, fmt_usd(b.basis_abs, 2))]
    if b.annualized_pct is not None:
        mini.append(point("ann", "Annualized", b.annualized_pct, fmt_pct(b.annualized_pct, 2)))
    return KpiView(
        main=point("pct", "Basis", b.basis_pct, fmt_pct(b.basis_pct, 3, signed=True)),
        mini=mini,
        meta=b.instrument,
        guidance_value=b.basis_pct * 100,
    )


def hit_rate_view(h: HitRateResult) -> KpiView:
    return KpiView(
        main=point("hit_rate", "EM hit rate", h.hit_rate_pct, fmt_pct_points(h.hit_rate_pct, 0)),
        mini=[
            point("hits", "Hits", float(h.hits), str(h.hits)),
            point("misses", "Misses", float(h.misses), str(h.misses)),
        ],
        guidance_value=h.hit_rate_pct,
    )


def iv_rv_spread_view(r: IvRvSpreadResult) -> KpiView:
    rv_main = r.rv_pct.get(r.main_window)
    mini = [point(f"rv_{w}d", f"RV {w}D", rv, f"{fmt_pct_points(rv)} • {fmt_pct_points(r.spread_for(w), signed=True)}")
            for w, rv in sorted(r.rv_pct.items())]
    return KpiView(
        main=point("spread", f"IV − RV ({r.main_window}D)", r.spread, fmt_pct_points(r.spread, signed=True)),
        mini=mini,
        meta=f"DVOL {fmt_num(r.dvol_pct, 1)} vs RV {r.main_window}D window",
        extra_badge=f"IV {fmt_num(r.dvol_pct, 1)} • RV {fmt_num(rv_main, 1)}",
        guidance_value=r.spread,
    )


def atr_em_view(r: AtrEmResult) -> KpiView:
    return KpiView(
        main=point("ratio", "ATR / EM", r.ratio, f"{fmt_num(r.ratio)}×"),
        mini=[
            point("spot", "Spot", r.spot, fmt_strike(r.spot)),
            point("atm_iv", "ATM IV (ann.)", r.atm_iv, fmt_pct(r.atm_iv)),
            point("atr", f"ATR ({r.atr_days:g}D)", r.atr, fmt_num(r.atr, 0)),
            point("em", f"{r.horizon_days}D Expected Move", r.em, fmt_num(r.em, 0)),
        ],
        meta=r.regime,
        extra_badge=f"{r.horizon_days}d",
        guidance_value=r.ratio,
    )


def spot_vs_sma_view(r: SpotVsSmaResult) -> KpiView:
    main = r.main
    mini = []
    for row in r.rows:
        if row.sma is None:
            mini.append(point(f"sma_{row.tenor}", f"{row.tenor}D", None, "not enough history"))
            continue
        side = "above" if row.above else "below"
        mini.append(point(f"sma_{row.tenor}", f"{row.tenor}D", row.distance_pct,
                          f"{fmt_pct_points(row.distance_pct, signed=True)} (@ {fmt_strike(row.sma)}) / "
                          f"{side} / slope {row.slope or DASH}"))
    return KpiView(
        main=point("distance", f"Spot vs {main.tenor}D SMA", main.distance_pct,
                   f"{fmt_pct_points(main.distance_pct, signed=True)} vs {main.tenor}D SMA (@ {fmt_strike(main.sma)})"),
        mini=mini,
        meta=f"{'above' if main.above else 'below'}, slope {main.slope or DASH}",
        extra_badge="Spot vs " + "/".join(str(row.tenor) for row in r.rows) + "D SMA",
        guidance_value=main.distance_pct,
    )


def sma_trend_view(r: TrendQualityResult) -> KpiView:
    mini = [
        point("sep", f"MA separation (MA{r.fast}−MA{r.slow})/spot", r.separation_pct,
              fmt_pct_points(r.separation_pct, signed=True)),
        point("fast_slope", f"{r.fast}D slope (bps/day)", r.fast_slope_bps, f"{r.fast_slope_bps:+.0f} bps/d"),
        point("slow_slope", f"{r.slow}D slope (bps/day)", r.slow_slope_bps, f"{r.slow_slope_bps:+.0f} bps/d"),
    ]
    if r.atr is not None and r.atr > 0:
        mini.append(point("atr", "ATR (price units)", r.atr, fmt_num(r.atr, 0)))
    return KpiView(
        main=point("sep", "MA separation", r.separation_pct,
                   f"{fmt_pct_points(r.separation_pct, signed=True)} MA{r.fast}−MA{r.slow}"),
        mini=mini,
        meta=f"{r.direction} • {r.regime}",
        extra_badge="MA slope + separation",
        guidance_value=r.separation_pct,
    )


VIEWS: Dict[str, Callable[[Any], KpiView]] = {
    "atm-iv": atm_iv_view,
    "term-structure": term_structure_view,
    "expected-move": expected_move_view,
    "skew-25d": skew_view,
    "ts-kink": kink_view,
    "gamma-walls": gamma_walls_view,
    "gamma-com": gamma_com_view,
    "oi-concentration": oi_concentration_view,
    "liquidity-stress": liquidity_view,
    "realized-vol": realized_vol_view,
    "rv-em-factor": rv_em_view,
    "condor-credit": condor_view,
    "funding": funding_view,
    "ivr": ivr_view,
    "basis": basis_view,
    "em-hit-rate": hit_rate_view,
    "iv-rv-spread": iv_rv_spread_view,
    "short-horizon-atr": atr_em_view,
    "spot-vs-sma": spot_vs_sma_view,
    "sma-trend-quality": sma_trend_view,
}


def build_payload(kpi_id: str, state: RefreshResult) -> KpiPayload:
    """Turn a service state into the boundary payload"""
    if state.status != READY or state.data is None:
        return KpiPayload(kpi_id=kpi_id, status=state.status, error=state.error)

    view_fn = VIEWS.get(kpi_id)
    if view_fn is None:
        raise KeyError(f"Unknown KPI: {kpi_id}")
    view = view_fn(state.data)
    return KpiPayload(kpi_id=kpi_id, status=state.status, **view.model_dump())
