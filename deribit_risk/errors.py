"""
Error taxonomy for the analytics engine
"""

from typing import Optional


class GatewayError(Exception):
    """Network, HTTP or API failure while talking to the exchange"""

    def __init__(self, message: str, method: Optional[str] = None, code: Optional[int] = None):
        super().__init__(message)
        self.method = method
        self.code = code


class RateLimitError(GatewayError):
    """HTTP 429 or Deribit `too_many_requests` (code 10028)"""


class DataInsufficientError(Exception):
    """
    Not enough usable data to compute a metric.

    Services report this as an `empty` KPI rather than an `error`.
    """
