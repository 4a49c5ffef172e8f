"""
Refresh orchestration
Wires every engine into a `KpiService` and refreshes them in sequence with a
small delay between calls, so one dashboard refresh does not burst the
exchange's public rate limit.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from .basis import BasisEngine
from .condor import CondorCreditEngine
from .config import FundingConfig, RetryConfig, Settings, TermStructureConfig
from .dvol import IvRankEngine
from .errors import DataInsufficientError
from .expected_move import ExpectedMoveEngine
from .funding import FundingEngine
from .gamma import (
    GammaExposureEngine, bucket_center_of_mass, center_of_mass, gamma_gravity,
)
from .gateway import MarketGateway
from .kink import TermStructureKinkEngine
from .kpis import KpiPayload, build_payload
from .liquidity import LiquidityStressEngine
from .oi_concentration import OIConcentrationEngine
from .realized_vol import RealizedVolEngine
from .service import ERROR, KpiService, SharedCompute
from .skew import SkewEngine
from .term import AtmTerm, AtmTermBuilder
from .term_structure import term_structure_stats
from .trend import TrendEngine

logger = logging.getLogger(__name__)

KPI_IDS = (
    "atm-iv",
    "term-structure",
    "expected-move",
    "skew-25d",
    "ts-kink",
    "gamma-walls",
    "gamma-com",
    "oi-concentration",
    "liquidity-stress",
    "realized-vol",
    "rv-em-factor",
    "condor-credit",
    "funding",
    "ivr",
    "basis",
    "em-hit-rate",
    "iv-rv-spread",
    "short-horizon-atr",
    "spot-vs-sma",
    "sma-trend-quality",
)


class RefreshOrchestrator:
    """Sequences service refreshes; each service is its own failure boundary"""

    def __init__(self, services: List[KpiService], delay_ms: int = 250,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.services: Dict[str, KpiService] = {s.kpi_id: s for s in services}
        self.delay_ms = delay_ms
        self._sleep = sleep

    @property
    def kpi_ids(self) -> List[str]:
        return list(self.services)

    def payload(self, kpi_id: str) -> KpiPayload:
        state = self.services[kpi_id].state
        try:
            return build_payload(kpi_id, state)
        except Exception as e:
            logger.exception(f"{kpi_id}: could not build payload")
            return KpiPayload(kpi_id=kpi_id, status=ERROR, error=str(e) or type(e).__name__)

    async def refresh_one(self, kpi_id: str) -> KpiPayload:
        if kpi_id not in self.services:
            raise KeyError(kpi_id)
        await self.services[kpi_id].refresh()
        return self.payload(kpi_id)

    async def refresh_all(self) -> Dict[str, KpiPayload]:
        payloads: Dict[str, KpiPayload] = {}
        for i, kpi_id in enumerate(self.services):
            if i and self.delay_ms > 0:
                await self._sleep(self.delay_ms / 1000)
            payloads[kpi_id] = await self.refresh_one(kpi_id)
        failed = [k for k, p in payloads.items() if p.status == "error"]
        if failed:
            logger.warning(f"Refresh finished with {len(failed)} failed KPIs: {', '.join(failed)}")
        else:
            logger.info(f"Refreshed {len(payloads)} KPIs")
        return payloads

    def cancel_all(self):
        for service in self.services.values():
            service.cancel()


def build_default_services(gateway: MarketGateway, settings: Optional[Settings] = None) -> List[KpiService]:
    """One service per KPI, all sharing the gateway and retry budget"""
    settings = settings or Settings()
    currency = settings.currency
    perpetual = f"{currency}-PERPETUAL"
    retry = RetryConfig(limit=settings.max_concurrency)

    term_builder = AtmTermBuilder(gateway, retry=retry)
    ts_config = TermStructureConfig()
    em_engine = ExpectedMoveEngine()
    gamma_engine = GammaExposureEngine(gateway, retry=retry)
    rv_engine = RealizedVolEngine(gateway, term_builder=term_builder)
    trend_engine = TrendEngine(gateway)

    async def build_atm_term() -> AtmTerm:
        term = await term_builder.build(currency=currency)
        if not term.points:
            raise DataInsufficientError(f"No usable ATM IV for {currency}")
        return term

    atm_term = SharedCompute(build_atm_term)
    realized_vol = SharedCompute(lambda: rv_engine.compute(currency))
    gamma_walls = SharedCompute(lambda: gamma_engine.compute(currency))

    async def atm_iv():
        term = await atm_term()
        return term, term_structure_stats(term.points, ts_config.eps)

    async def term_structure():
        term = await atm_term()
        return term_structure_stats(term.points, ts_config.eps)

    async def expected_move():
        term = await atm_term()
        return em_engine.compute(term.index_price, term.nodes(), now=term.as_of)

    async def gamma_com():
        cfg = gamma_engine.config
        walls = await gamma_walls()
        com = bucket_center_of_mass(walls.legs, walls.index_price, cfg.bucket_min_dte,
                                    cfg.bucket_max_dte, cfg.decay_tau_days, cfg.pinned_pct)
        if not com.has_data:
            com = center_of_mass(walls.rows, walls.index_price, cfg.pinned_pct)
        if not com.has_data:
            raise DataInsufficientError("No gamma exposure near spot")
        return walls, com, gamma_gravity(walls.rows, walls.index_price, cfg.gravity_band_pct)

    computes = {
        "atm-iv": atm_iv,
        "term-structure": term_structure,
        "expected-move": expected_move,
        "skew-25d": lambda: SkewEngine(gateway, retry=retry).compute(currency),
        "ts-kink": lambda: TermStructureKinkEngine(gateway, retry=retry).compute(currency),
        "gamma-walls": gamma_walls,
        "gamma-com": gamma_com,
        "oi-concentration": lambda: OIConcentrationEngine(gateway).compute(currency),
        "liquidity-stress": lambda: LiquidityStressEngine(gateway).compute(currency),
        "realized-vol": realized_vol,
        "rv-em-factor": realized_vol,
        "condor-credit": lambda: CondorCreditEngine(gateway, retry=retry).compute(currency),
        "funding": lambda: FundingEngine(gateway, FundingConfig(instrument=perpetual)).compute(),
        "ivr": lambda: IvRankEngine(gateway).compute(currency),
        "basis": lambda: BasisEngine(gateway).compute(currency),
        "em-hit-rate": lambda: rv_engine.hit_rate(currency),
        "iv-rv-spread": lambda: rv_engine.iv_rv_spread(currency),
        "short-horizon-atr": lambda: rv_engine.atr_em(currency),
        "spot-vs-sma": lambda: trend_engine.spot_vs_sma(currency),
        "sma-trend-quality": lambda: trend_engine.trend_quality(currency),
    }
    return [KpiService(kpi_id, computes[kpi_id]) for kpi_id in KPI_IDS]
