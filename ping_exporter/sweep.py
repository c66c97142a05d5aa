"""
One measurement cycle: resolve destinations, probe every unique address once
(concurrently, capped by a semaphore), fan the stats back out to every target
identity, publish the whole ResultSet in declaration order.
Overlapping triggers are skipped, not queued.
"""
import asyncio
import logging
import time
from typing import Callable, Iterable, Optional

from ping_exporter.config import Destination
from ping_exporter.errors import ResolutionFailure
from ping_exporter.publisher import ResultPublisher
from ping_exporter.runner import ProbeRunner
from ping_exporter.stats import PingStat, ResultSet, Target

logger = logging.getLogger("ping_exporter.sweep")


async def resolve_targets(destinations: Iterable[Destination], resolver) -> list[Target]:
    """Literals pass through; names expand to one Target per address. Failed names are dropped."""
    destinations = list(destinations)
    names = [d.name for d in destinations if not d.is_literal]
    lookups = await asyncio.gather(*(resolver.lookup(n) for n in names), return_exceptions=True)
    resolved = dict(zip(names, lookups))

    targets: list[Target] = []
    for dest in destinations:
        if dest.is_literal:
            targets.append(Target(dest.name, True, dest.name))
            continue
        result = resolved[dest.name]
        if isinstance(result, ResolutionFailure):
            logger.warning("Dropping %s from this cycle: %s", dest.name, result)
            continue
        if isinstance(result, BaseException):
            logger.error("Unexpected error resolving %s: %r", dest.name, result)
            continue
        for address in result:
            targets.append(Target(dest.name, False, address))
    return targets


class SweepCoordinator:
    def __init__(
        self,
        runner_factory: Callable[[], ProbeRunner],
        publisher: ResultPublisher,
        destinations: Iterable[Destination] = (),
        resolver=None,
        concurrency: Optional[int] = None,
    ):
        self.runner_factory = runner_factory
        self.publisher = publisher
        self.destinations = tuple(destinations)
        self.resolver = resolver
        self.concurrency = concurrency
        self.runners: dict[str, ProbeRunner] = {}  # address -> runner of the current cycle
        self._busy = False
        self.cycles_completed = 0
        self.cycles_skipped = 0

    @property
    def busy(self) -> bool:
        return self._busy

    async def run_cycle(self, targets: Optional[list[Target]] = None) -> Optional[ResultSet]:
        """Run one sweep and publish it. Returns None if a sweep is already running."""
        if self._busy:
            self.cycles_skipped += 1
            logger.warning("Previous cycle still running; skipping this trigger")
            return None
        self._busy = True
        try:
            started = time.monotonic()
            if targets is None:
                targets = await resolve_targets(self.destinations, self.resolver)
            result_set = await self._sweep(targets)
            self.publisher.publish(result_set)
            self.cycles_completed += 1
            logger.info(
                "Cycle done: %d targets, %d addresses in %.1fs",
                len(result_set),
                len(self.runners),
                time.monotonic() - started,
            )
            return result_set
        finally:
            self._busy = False

    async def _sweep(self, targets: list[Target]) -> ResultSet:
        addresses = list(dict.fromkeys(t.resolved_address for t in targets))
        self.runners = {a: self.runner_factory() for a in addresses}
        sem = asyncio.Semaphore(self.concurrency or max(1, len(addresses)))

        async def probe(address: str) -> PingStat:
            runner = self.runners[address]
            async with sem:
                try:
                    return await runner.run(address)
                except Exception as e:
                    logger.exception("Probe run for %s failed: %s", address, e)
                    return PingStat.all_lost(runner.round_count)

        stats = await asyncio.gather(*(probe(a) for a in addresses))
        by_address = dict(zip(addresses, stats))
        return ResultSet.from_pairs((t.key, by_address[t.resolved_address]) for t in targets)
