"""
Repeated probing of one resolved address: sequential rounds with fixed spacing,
folded into a PingStat. Session I/O blocks, so it runs on a worker thread; pass an
executor sized to the sweep's concurrency so every address gets its own thread.
"""
import asyncio
import logging
from concurrent.futures import Executor
from typing import Callable, Optional

from ping_exporter.session import IN_FLIGHT_IDS, IdentifierPool, ProbeOutcome, ProbeSession
from ping_exporter.stats import PingStat, StatAccumulator

logger = logging.getLogger("ping_exporter.runner")

DEFAULT_ROUND_COUNT = 5
DEFAULT_ROUND_TIMEOUT = 3.0
DEFAULT_ROUND_DELAY = 0.8
DEFAULT_TTL = 254


class ProbeRunner:
    def __init__(
        self,
        round_count: int = DEFAULT_ROUND_COUNT,
        round_timeout: float = DEFAULT_ROUND_TIMEOUT,
        round_delay: float = DEFAULT_ROUND_DELAY,
        ttl: int = DEFAULT_TTL,
        session_factory: Callable[[], ProbeSession] = ProbeSession,
        executor: Optional[Executor] = None,
        id_pool: IdentifierPool = IN_FLIGHT_IDS,
    ):
        self.round_count = max(1, int(round_count))
        self.round_timeout = round_timeout
        self.round_delay = max(0.0, round_delay)
        self.ttl = ttl
        self._session_factory = session_factory
        self.executor = executor  # None: the loop's default executor
        self._id_pool = id_pool
        self._acc: Optional[StatAccumulator] = None

    @property
    def current(self) -> PingStat:
        """Running statistics of the run in progress (or the last finished run)."""
        if self._acc is None:
            return PingStat()
        return self._acc.snapshot()

    async def run(self, address: str) -> PingStat:
        loop = asyncio.get_running_loop()
        acc = StatAccumulator()
        self._acc = acc
        for seq in range(self.round_count):
            outcome = await loop.run_in_executor(self.executor, self._probe_once, address, seq)
            if outcome.success:
                acc.record_reply(outcome.rtt_ms or 0.0)
                logger.debug("%s seq=%d: %s %.3fms", address, seq, outcome.reason, outcome.rtt_ms or 0.0)
            else:
                acc.record_loss()
                logger.debug("%s seq=%d: %s", address, seq, outcome.reason)
            if seq + 1 < self.round_count and self.round_delay:
                await asyncio.sleep(self.round_delay)

        stat = acc.snapshot()
        logger.info(
            "Ping %s: sent=%d received=%d loss=%d%% min/avg/max=%.3f/%.3f/%.3f ms",
            address,
            stat.sent,
            stat.received,
            stat.loss_percent,
            stat.min_delay_ms,
            stat.avg_delay_ms,
            stat.max_delay_ms,
        )
        return stat

    def _probe_once(self, address: str, seq: int) -> ProbeOutcome:
        session = self._session_factory()
        with self._id_pool.reserve(seq) as identifier:
            return session.send(address, identifier, self.ttl, self.round_timeout)
