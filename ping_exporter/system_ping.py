"""
ICMP ping via the system ping binary, for hosts where raw sockets are not permitted.
One subprocess per address and cycle (ping -c <count>); the summary lines give the
received count and rtt min/avg/max. Windows: ping -n <count> -w <timeout_ms>.
"""
import asyncio
import logging
import re
import sys
from typing import Optional

from ping_exporter.runner import DEFAULT_ROUND_COUNT, DEFAULT_ROUND_DELAY, DEFAULT_ROUND_TIMEOUT, DEFAULT_TTL
from ping_exporter.stats import PingStat, loss_percent

logger = logging.getLogger("ping_exporter.system_ping")

# "5 packets transmitted, 4 received" (iputils), "5 packets transmitted, 5 packets received" (BSD, busybox)
_COUNTS_RE = re.compile(r"(\d+) packets transmitted, (\d+) (?:packets )?received")
# "Packets: Sent = 4, Received = 4, Lost = 0"
_COUNTS_WIN_RE = re.compile(r"Sent = (\d+), Received = (\d+)")
# "rtt min/avg/max/mdev = 0.345/0.545/1.089/0.277 ms", "round-trip min/avg/max/stddev = ..."
_RTT_RE = re.compile(r"(?:rtt|round-trip) min/avg/max(?:/\w+)? = ([\d.]+)/([\d.]+)/([\d.]+)")
# "Minimum = 1ms, Maximum = 3ms, Average = 2ms"
_RTT_WIN_RE = re.compile(r"Minimum = (\d+)ms, Maximum = (\d+)ms, Average = (\d+)ms")


def _timeout_seconds(timeout: float) -> int:
    return max(1, int(timeout + 0.999))


def build_command(
    address: str,
    count: int,
    timeout: float,
    interval: float,
    ttl: int,
    platform: Optional[str] = None,
) -> list[str]:
    platform = platform or sys.platform
    if platform == "win32":
        return ["ping", "-n", str(count), "-w", str(int(timeout * 1000)), "-i", str(ttl), address]
    if platform == "darwin":
        # unprivileged BSD ping refuses intervals under one second
        return [
            "ping", "-n", "-c", str(count), "-i", f"{max(1.0, interval):g}",
            "-W", str(int(timeout * 1000)), "-m", str(ttl), address,
        ]
    # iputils: unprivileged minimum interval is 0.2s
    return [
        "ping", "-n", "-c", str(count), "-i", f"{max(0.2, interval):g}",
        "-W", str(_timeout_seconds(timeout)), "-t", str(ttl), address,
    ]


def _parse_received(output: str) -> Optional[int]:
    m = _COUNTS_RE.search(output) or _COUNTS_WIN_RE.search(output)
    if m:
        return int(m.group(2))
    return None


def _parse_rtt(output: str) -> Optional[tuple[float, float, float]]:
    """(min, avg, max) in ms."""
    m = _RTT_RE.search(output)
    if m:
        return float(m.group(1)), float(m.group(2)), float(m.group(3))
    m = _RTT_WIN_RE.search(output)
    if m:
        return float(m.group(1)), float(m.group(3)), float(m.group(2))
    return None


def parse_summary(output: str, count: int) -> PingStat:
    """Fold ping's summary into a PingStat; `count` packets are always counted as sent."""
    received = min(count, _parse_received(output) or 0)
    rtt = _parse_rtt(output) if received else None
    if rtt is None:
        return PingStat(sent=count, received=received, loss_percent=loss_percent(count, received))
    lo, avg, hi = rtt
    return PingStat(
        sent=count,
        received=received,
        loss_percent=loss_percent(count, received),
        min_delay_ms=lo,
        avg_delay_ms=min(max(avg, lo), hi),
        max_delay_ms=hi,
    )


class SystemPingRunner:
    """Same interface as ProbeRunner; `current` only changes once the subprocess finishes."""

    def __init__(
        self,
        round_count: int = DEFAULT_ROUND_COUNT,
        round_timeout: float = DEFAULT_ROUND_TIMEOUT,
        round_delay: float = DEFAULT_ROUND_DELAY,
        ttl: int = DEFAULT_TTL,
    ):
        self.round_count = max(1, int(round_count))
        self.round_timeout = round_timeout
        self.round_delay = max(0.0, round_delay)
        self.ttl = ttl
        self._last = PingStat()

    @property
    def current(self) -> PingStat:
        return self._last

    async def run(self, address: str) -> PingStat:
        cmd = build_command(address, self.round_count, self.round_timeout, self.round_delay, self.ttl)
        budget = self.round_count * (self.round_timeout + max(1.0, self.round_delay)) + 2.0
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.warning("Cannot run %s for %s: %s", cmd[0], address, e)
            stat = PingStat.all_lost(self.round_count)
        else:
            try:
                stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=budget)
            except asyncio.TimeoutError:
                logger.warning("ping for %s did not finish within %.0fs", address, budget)
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                stat = PingStat.all_lost(self.round_count)
            else:
                stat = parse_summary(stdout.decode("utf-8", errors="replace"), self.round_count)

        self._last = stat
        logger.info(
            "Ping %s (system): sent=%d received=%d loss=%d%% min/avg/max=%.3f/%.3f/%.3f ms",
            address,
            stat.sent,
            stat.received,
            stat.loss_percent,
            stat.min_delay_ms,
            stat.avg_delay_ms,
            stat.max_delay_ms,
        )
        return stat
