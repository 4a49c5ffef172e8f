"""
Normalized market records
Every Deribit payload passes through these parsers exactly once, at the
gateway boundary, so engines never duck-type raw field names or IV units.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

DAY_MS = 86_400_000
MAX_IV_DECIMAL = 5.0

MONTHS = {'JAN': 1, 'FEB': 2, 'MAR': 3, 'APR': 4, 'MAY': 5, 'JUN': 6,
          'JUL': 7, 'AUG': 8, 'SEP': 9, 'OCT': 10, 'NOV': 11, 'DEC': 12}


# ============================================================
# RECORDS
# ============================================================

@dataclass(frozen=True)
class Instrument:
    name: str
    kind: str                          # 'option' | 'future'
    expiry_ts: Optional[int] = None    # ms epoch, None for perpetuals
    strike: Optional[float] = None
    option_type: Optional[str] = None  # 'call' | 'put'
    is_active: bool = True
    tick_size: Optional[float] = None

    @property
    def is_option(self) -> bool:
        return self.kind == 'option'

    @property
    def is_perpetual(self) -> bool:
        return self.kind == 'future' and self.name.upper().endswith('PERPETUAL')

    def dte(self, now_ms: int) -> Optional[float]:
        if self.expiry_ts is None:
            return None
        return (self.expiry_ts - now_ms) / DAY_MS


@dataclass(frozen=True)
class Ticker:
    name: str
    mark_iv: Optional[float] = None    # decimal, already normalized
    delta: Optional[float] = None
    gamma: Optional[float] = None
    best_bid: Optional[float] = None
    best_ask: Optional[float] = None
    last_price: Optional[float] = None
    mark_price: Optional[float] = None
    open_interest: Optional[float] = None
    underlying_price: Optional[float] = None

    def mid(self) -> Optional[float]:
        """Mid from best quotes, falling back to ask-only, then last"""
        if self.best_ask and self.best_ask > 0:
            if self.best_bid and self.best_bid > 0:
                return (self.best_bid + self.best_ask) / 2
            return self.best_ask
        if self.last_price and self.last_price > 0:
            return self.last_price
        return None


@dataclass(frozen=True)
class OrderBookLevel:
    price: float
    amount: float


@dataclass(frozen=True)
class OrderBook:
    name: str
    best_bid: Optional[float] = None
    best_ask: Optional[float] = None
    mark_price: Optional[float] = None
    bids: List[OrderBookLevel] = field(default_factory=list)
    asks: List[OrderBookLevel] = field(default_factory=list)

    def top_bid(self) -> Optional[float]:
        if self.best_bid:
            return self.best_bid
        return self.bids[0].price if self.bids else None

    def top_ask(self) -> Optional[float]:
        if self.best_ask:
            return self.best_ask
        return self.asks[0].price if self.asks else None


@dataclass(frozen=True)
class BookSummary:
    name: str
    open_interest: float = 0.0
    expiry_ts: Optional[int] = None
    strike: Optional[float] = None
    option_type: Optional[str] = None
    mark_iv: Optional[float] = None
    mark_price: Optional[float] = None


@dataclass(frozen=True)
class IndexPrice:
    price: float
    timestamp: int


@dataclass(frozen=True)
class FundingPoint:
    timestamp: int
    rate_8h: Optional[float] = None
    rate_1h: Optional[float] = None


@dataclass(frozen=True)
class Candle:
    ts: int
    close: float
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    volume: Optional[float] = None


# ============================================================
# NORMALIZATION
# ============================================================

def _finite(x: Any) -> Optional[float]:
    if isinstance(x, bool) or not isinstance(x, (int, float)):
        return None
    value = float(x)
    return value if math.isfinite(value) else None


def normalize_iv(raw: Any) -> Optional[float]:
    """
    Normalize an IV quote to a decimal in (0, 5].

    Deribit reports mark_iv in percent (45.8) on most endpoints, while some
    proxies hand back decimals (0.458). Anything above 5 (500%) is read as a
    percent; implausible values return None and are dropped by the caller.
    """
    value = _finite(raw)
    if value is None or value <= 0 or value >= 1000:
        return None
    if value > MAX_IV_DECIMAL:
        value = value / 100
    if not (0 < value <= MAX_IV_DECIMAL):
        return None
    return value


def normalize_vol_pct(raw: Any) -> Optional[float]:
    """Volatility-index values to percent scale (0.45 -> 45.0)"""
    value = _finite(raw)
    if value is None:
        return None
    return value * 100 if value < 1 else value


def normalize_delta(raw: Any) -> Optional[float]:
    value = _finite(raw)
    if value is None or value < -1 or value > 1:
        return None
    return value


def _positive(raw: Any) -> Optional[float]:
    value = _finite(raw)
    return value if value is not None and value > 0 else None


# ============================================================
# PARSERS
# ============================================================

def parse_expiry_code(code: str) -> Optional[int]:
    """'27DEC24' -> ms epoch at the 08:00 UTC settlement"""
    code = code.upper()
    if len(code) < 6:
        return None
    try:
        day = int(code[:-5])
        month = MONTHS[code[-5:-2]]
        year = 2000 + int(code[-2:])
        expiry = datetime(year, month, day, 8, 0, tzinfo=timezone.utc)
    except (KeyError, ValueError):
        return None
    return int(expiry.timestamp() * 1000)


def parse_instrument_name(name: str) -> Optional[Dict]:
    """
    Parse a Deribit instrument id.

    BTC-27DEC24-100000-C -> option, BTC-27DEC24 -> dated future,
    BTC-PERPETUAL -> perpetual.
    """
    parts = name.upper().split('-')
    if len(parts) < 2:
        return None

    if parts[1] == 'PERPETUAL':
        return {'kind': 'future', 'expiry_ts': None, 'strike': None, 'option_type': None}

    expiry_ts = parse_expiry_code(parts[1])
    if expiry_ts is None:
        return None

    if len(parts) == 2:
        return {'kind': 'future', 'expiry_ts': expiry_ts, 'strike': None, 'option_type': None}

    try:
        strike = float(parts[2].replace('D', '.'))
    except ValueError:
        return None
    if not math.isfinite(strike) or strike <= 0:
        return None

    side = parts[3] if len(parts) > 3 else ''
    option_type = {'C': 'call', 'P': 'put'}.get(side)
    return {'kind': 'option', 'expiry_ts': expiry_ts, 'strike': strike, 'option_type': option_type}


def parse_instrument(raw: Dict) -> Optional[Instrument]:
    name = raw.get('instrument_name')
    if not name:
        return None
    strike = _positive(raw.get('strike'))
    expiry_ts = raw.get('expiration_timestamp')
    option_type = raw.get('option_type')
    kind = raw.get('kind')

    parsed = parse_instrument_name(name)
    if parsed:
        kind = kind or parsed['kind']
        strike = strike if strike is not None else parsed['strike']
        option_type = option_type or parsed['option_type']
        if not isinstance(expiry_ts, (int, float)) or expiry_ts <= 0:
            expiry_ts = parsed['expiry_ts']

    if kind not in ('option', 'future'):
        return None
    if kind == 'option' and (strike is None or option_type not in ('call', 'put')):
        logger.debug(f"Dropping option without strike/side: {name}")
        return None
    if name.upper().endswith('PERPETUAL'):
        expiry_ts = None

    return Instrument(
        name=name,
        kind=kind,
        expiry_ts=int(expiry_ts) if isinstance(expiry_ts, (int, float)) and expiry_ts > 0 else None,
        strike=strike,
        option_type=option_type,
        is_active=bool(raw.get('is_active', True)),
        tick_size=_positive(raw.get('tick_size')),
    )


def parse_ticker(raw: Dict) -> Ticker:
    greeks = raw.get('greeks') or {}
    return Ticker(
        name=raw.get('instrument_name', ''),
        mark_iv=normalize_iv(raw.get('mark_iv')),
        delta=normalize_delta(greeks.get('delta')),
        gamma=_finite(greeks.get('gamma')),
        best_bid=_positive(raw.get('best_bid_price')),
        best_ask=_positive(raw.get('best_ask_price')),
        last_price=_positive(raw.get('last_price')),
        mark_price=_positive(raw.get('mark_price')),
        open_interest=_finite(raw.get('open_interest')),
        underlying_price=_positive(raw.get('underlying_price')),
    )


def _parse_levels(rows: Any) -> List[OrderBookLevel]:
    levels: List[OrderBookLevel] = []
    for row in rows or []:
        if isinstance(row, dict):
            price, amount = row.get('price'), row.get('amount')
        elif isinstance(row, (list, tuple)) and len(row) >= 2:
            price, amount = row[0], row[1]
        else:
            continue
        price, amount = _positive(price), _finite(amount)
        if price is None or amount is None or amount < 0:
            continue
        levels.append(OrderBookLevel(price=price, amount=amount))
    return levels


def parse_order_book(raw: Dict) -> OrderBook:
    return OrderBook(
        name=raw.get('instrument_name', ''),
        best_bid=_positive(raw.get('best_bid_price')),
        best_ask=_positive(raw.get('best_ask_price')),
        mark_price=_positive(raw.get('mark_price')),
        bids=_parse_levels(raw.get('bids')),
        asks=_parse_levels(raw.get('asks')),
    )


def parse_book_summary(raw: Dict) -> Optional[BookSummary]:
    name = raw.get('instrument_name')
    if not name:
        return None
    parsed = parse_instrument_name(name) or {}

    strike = _positive(raw.get('strike'))
    if strike is None:
        strike = parsed.get('strike')
    option_type = raw.get('option_type') or parsed.get('option_type')
    expiry_ts = raw.get('expiration_timestamp')
    if not isinstance(expiry_ts, (int, float)) or expiry_ts <= 0:
        expiry_ts = parsed.get('expiry_ts')

    oi = _finite(raw.get('open_interest'))
    return BookSummary(
        name=name,
        open_interest=oi if oi is not None and oi > 0 else 0.0,
        expiry_ts=int(expiry_ts) if expiry_ts else None,
        strike=strike,
        option_type=option_type,
        mark_iv=normalize_iv(raw.get('mark_iv')),
        mark_price=_positive(raw.get('mark_price')),
    )


def read_funding_8h(raw: Dict) -> Optional[float]:
    for key in ('interest_8h', 'rate_8h', 'funding_rate'):
        value = _finite(raw.get(key))
        if value is not None:
            return value
    return None


def read_funding_1h(raw: Dict) -> Optional[float]:
    for key in ('interest_1h', 'rate_1h'):
        value = _finite(raw.get(key))
        if value is not None:
            return value
    return None


def parse_funding_points(result: Any) -> List[FundingPoint]:
    """Accepts a bare list or {data|records|funding_rate_history: [...]}"""
    rows: Sequence = []
    if isinstance(result, list):
        rows = result
    elif isinstance(result, dict):
        for key in ('data', 'records', 'funding_rate_history'):
            if isinstance(result.get(key), list):
                rows = result[key]
                break

    points: List[FundingPoint] = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        ts = row.get('timestamp')
        points.append(FundingPoint(
            timestamp=int(ts) if isinstance(ts, (int, float)) else 0,
            rate_8h=read_funding_8h(row),
            rate_1h=read_funding_1h(row),
        ))
    return sorted(points, key=lambda p: p.timestamp)


def parse_vol_index_candles(result: Any) -> List[Candle]:
    """get_volatility_index_data: {'data': [[ts, o, h, l, c], ...]}"""
    data = result.get('data', []) if isinstance(result, dict) else []
    candles: List[Candle] = []
    for entry in data:
        if not isinstance(entry, (list, tuple)) or len(entry) < 5:
            continue
        close = _finite(entry[4])
        if close is None:
            continue
        candles.append(Candle(ts=int(entry[0]), open=_finite(entry[1]), high=_finite(entry[2]),
                              low=_finite(entry[3]), close=close))
    return sorted(candles, key=lambda c: c.ts)


def parse_chart_candles(result: Any) -> List[Candle]:
    """get_tradingview_chart_data: column arrays ticks/open/high/low/close/volume"""
    if not isinstance(result, dict) or result.get('status') == 'no_data':
        return []
    ticks = result.get('ticks') or []
    closes = result.get('close') or []
    opens = result.get('open') or []
    highs = result.get('high') or []
    lows = result.get('low') or []
    volumes = result.get('volume') or []

    def at(column: List, i: int) -> Optional[float]:
        return _finite(column[i]) if i < len(column) else None

    candles: List[Candle] = []
    for i, ts in enumerate(ticks):
        close = at(closes, i)
        if close is None or close <= 0:
            continue
        candles.append(Candle(ts=int(ts), close=close, open=at(opens, i), high=at(highs, i),
                              low=at(lows, i), volume=at(volumes, i)))
    return sorted(candles, key=lambda c: c.ts)
