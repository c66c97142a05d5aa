"""
Fixed-cadence trigger: one cycle at startup, then one at every wall-clock multiple
of the interval (every minute at :00 by default). Each trigger is its own task, so
an overrunning cycle makes the coordinator skip the next one.
"""
import asyncio
import logging
import time
from typing import Callable

logger = logging.getLogger("ping_exporter.scheduler")


def seconds_until_next_tick(now: float, interval: float) -> float:
    return interval - (now % interval)


async def run_schedule(
    coordinator,
    interval: float,
    run_immediately: bool = True,
    clock: Callable[[], float] = time.time,
) -> None:
    """Run until cancelled."""
    tasks: set[asyncio.Task] = set()

    def on_done(task: asyncio.Task) -> None:
        tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Measurement cycle crashed: %r", task.exception())

    def fire() -> None:
        task = asyncio.create_task(coordinator.run_cycle())
        tasks.add(task)
        task.add_done_callback(on_done)

    logger.info("Scheduler started, interval %ss", interval)
    try:
        if run_immediately:
            fire()
        now = clock()
        next_tick = now + seconds_until_next_tick(now, interval)
        while True:
            # sleep() runs on the loop's monotonic clock and may wake a hair before
            # the wall-clock tick; the tick counts as reached either way
            delay = next_tick - clock()
            if delay > 0:
                await asyncio.sleep(delay)
            fire()
            next_tick += interval
            now = clock()
            if next_tick <= now:
                missed = int((now - next_tick) // interval) + 1
                logger.warning("Scheduler fell behind by %d tick(s)", missed)
                next_tick += missed * interval
    except asyncio.CancelledError:
        for t in list(tasks):
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Scheduler stopped")
        raise
