"""
Stateful refresh service, one per KPI
Each service owns its own {status, data, error} state and is the failure
boundary for its engine. A monotonic request id discards results from
refreshes that were superseded while in flight.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from .errors import DataInsufficientError, GatewayError

logger = logging.getLogger(__name__)

LOADING = "loading"
READY = "ready"
ERROR = "error"
EMPTY = "empty"


@dataclass(frozen=True)
class RefreshResult:
    status: str
    data: Any = None
    error: Optional[str] = None
    request_id: int = 0
    stale: bool = False

    @property
    def ok(self) -> bool:
        return self.status == READY


class KpiService:

    def __init__(self, kpi_id: str, compute: Callable[[], Awaitable[Any]]):
        self.kpi_id = kpi_id
        self._compute = compute
        self._request_id = 0
        self._task: Optional[asyncio.Task] = None
        self.state = RefreshResult(status=LOADING)

    @property
    def request_id(self) -> int:
        return self._request_id

    async def refresh(self) -> RefreshResult:
        """Run the engine once; never raises for engine failures"""
        self._request_id += 1
        request_id = self._request_id
        previous = self.state
        loading = RefreshResult(status=LOADING, data=previous.data, request_id=request_id)
        self.state = loading

        try:
            data = await self._compute()
            result = RefreshResult(status=READY, data=data, request_id=request_id)
        except DataInsufficientError as e:
            logger.debug(f"{self.kpi_id}: no result ({e})")
            result = RefreshResult(status=EMPTY, error=str(e), request_id=request_id)
        except GatewayError as e:
            logger.warning(f"{self.kpi_id}: gateway failure: {e}")
            result = RefreshResult(status=ERROR, error=str(e), request_id=request_id)
        except asyncio.CancelledError:
            if self.state is loading:
                self.state = previous
            raise
        except Exception as e:
            logger.exception(f"{self.kpi_id}: refresh failed")
            result = RefreshResult(status=ERROR, error=str(e) or type(e).__name__, request_id=request_id)

        if request_id != self._request_id:
            logger.debug(f"{self.kpi_id}: discarding stale result {request_id} (latest {self._request_id})")
            return RefreshResult(status=result.status, data=result.data, error=result.error,
                                 request_id=request_id, stale=True)
        self.state = result
        return result

    def start_refresh(self) -> asyncio.Task:
        """Schedule a refresh on the running loop; supersedes any in-flight one"""
        self._task = asyncio.ensure_future(self.refresh())
        return self._task

    def cancel(self):
        """Invalidate the in-flight refresh and cancel its task if we own one"""
        self._request_id += 1
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None


class SharedCompute:
    """
    One engine result shared by several services.

    A settled result is reused for `max_age_s`, so KPIs refreshed back to
    back (RV and RV/IV, the ATM-term family) hit the exchange once.
    Failures are not cached.
    """

    def __init__(self, compute: Callable[[], Awaitable[Any]], max_age_s: float = 2.0,
                 clock: Callable[[], float] = time.monotonic):
        self._compute = compute
        self.max_age_s = max_age_s
        self._clock = clock
        self._value: Any = None
        self._settled_at: Optional[float] = None

    async def __call__(self) -> Any:
        if self._settled_at is not None and self._clock() - self._settled_at <= self.max_age_s:
            return self._value
        value = await self._compute()
        self._value, self._settled_at = value, self._clock()
        return value