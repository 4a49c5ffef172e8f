"""
Spot / perpetual and dated-future basis
"""

import math
from dataclasses import dataclass
from typing import Optional

from .errors import DataInsufficientError
from .expiries import now_ms
from .gateway import MarketGateway
from .records import DAY_MS, parse_instrument_name


@dataclass(frozen=True)
class BasisResult:
    instrument: str
    spot: float
    future: float
    basis_abs: float
    basis_pct: float                  # fraction, 0.0123 = 1.23%
    annualized_pct: Optional[float]   # fraction; None for perpetuals
    is_perp: bool


def compute_basis(instrument: str, spot: float, future: float, now: int) -> BasisResult:
    is_perp = instrument.upper().endswith("-PERPETUAL")
    basis_abs = future - spot
    basis_pct = basis_abs / spot

    annualized = None
    parsed = None if is_perp else parse_instrument_name(instrument)
    expiry_ts = parsed['expiry_ts'] if parsed else None
    if expiry_ts and expiry_ts > now:
        days = (expiry_ts - now) / DAY_MS
        annualized = basis_pct * 365 / max(days, 1 / 24)

    return BasisResult(instrument=instrument, spot=spot, future=future, basis_abs=basis_abs,
                       basis_pct=basis_pct, annualized_pct=annualized, is_perp=is_perp)


class BasisEngine:

    def __init__(self, gateway: MarketGateway):
        self.gateway = gateway

    async def compute(self, currency: str = "BTC", instrument: Optional[str] = None,
                      now: Optional[int] = None) -> BasisResult:
        now = now_ms() if now is None else now
        instrument = instrument or f"{currency}-PERPETUAL"
        spot = (await self.gateway.get_index_price(currency)).price
        ticker = await self.gateway.get_ticker(instrument)

        future = ticker.mid() or ticker.mark_price
        if not spot or spot <= 0 or future is None or not math.isfinite(future):
            raise DataInsufficientError(f"No usable price for {instrument}")
        return compute_basis(instrument, spot, future, now)
