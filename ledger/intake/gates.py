import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable

from ledger.constants import RATE_WINDOW_SECONDS
from ledger.intake.rails import CrawlRails
from ledger.logging import get_logger

_logger = get_logger(__name__)

type Clock = Callable[[], float]
type Sleep = Callable[[float], Awaitable[None]]


class HostGate:
    """Paces requests to a single host.

    Two limits apply together: at most ``max_per_minute`` grants in any
    sliding 60 second window, and at least ``min_delay`` seconds between
    consecutive grants. Waiters are served one at a time in arrival order.
    """

    def __init__(
        self,
        host: str,
        max_per_minute: int,
        min_delay: float,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        self.host = host
        self.max_per_minute = max_per_minute
        self.min_delay = min_delay
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._granted: deque[float] = deque()

    def _wait_time(self, now: float) -> float:
        while self._granted and now - self._granted[0] >= RATE_WINDOW_SECONDS:
            self._granted.popleft()

        wait = 0.0
        if self._granted:
            wait = self._granted[-1] + self.min_delay - now
        if len(self._granted) >= self.max_per_minute:
            wait = max(wait, self._granted[0] + RATE_WINDOW_SECONDS - now)
        return wait

    async def acquire(self) -> None:
        async with self._lock:
            while (wait := self._wait_time(self._clock())) > 0:
                _logger.debug("Rate gate for %s waiting %.2fs", self.host, wait)
                await self._sleep(wait)
            self._granted.append(self._clock())

    async def __aenter__(self) -> "HostGate":
        await self.acquire()
        return self

    async def __aexit__(self, *exc) -> None:
        return None


class HostGates:
    """One lazily created ``HostGate`` per host, shared for a run's lifetime."""

    def __init__(self, rails: CrawlRails, clock: Clock = time.monotonic, sleep: Sleep = asyncio.sleep):
        self.rails = rails
        self._clock = clock
        self._sleep = sleep
        self._gates: dict[str, HostGate] = {}

    def for_host(self, host: str) -> HostGate:
        host = host.lower()
        gate = self._gates.get(host)
        if gate is None:
            gate = HostGate(
                host,
                max_per_minute=self.rails.max_requests_per_host_per_minute,
                min_delay=self.rails.min_delay,
                clock=self._clock,
                sleep=self._sleep,
            )
            self._gates[host] = gate
        return gate
