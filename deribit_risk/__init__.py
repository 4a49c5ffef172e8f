"""
Deribit Risk Package
Options risk analytics over Deribit public market data: ATM term structure,
expected moves, skew, gamma exposure, OI concentration, liquidity stress,
realized vol, funding and basis.
"""

from .config import Settings
from .deribit import DeribitClient
from .errors import DataInsufficientError, GatewayError, RateLimitError
from .interpolation import ExtrapolationMode, interpolate_iv
from .kpis import KpiPayload, KpiPoint, build_payload
from .orchestrator import KPI_IDS, RefreshOrchestrator, build_default_services
from .service import KpiService, RefreshResult
from .term import AtmTermBuilder

__version__ = "1.0.0"
__all__ = [
    "Settings",
    "DeribitClient",
    "GatewayError",
    "RateLimitError",
    "DataInsufficientError",
    "ExtrapolationMode",
    "interpolate_iv",
    "KpiPayload",
    "KpiPoint",
    "build_payload",
    "KPI_IDS",
    "RefreshOrchestrator",
    "build_default_services",
    "KpiService",
    "RefreshResult",
    "AtmTermBuilder"
]
