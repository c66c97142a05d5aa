"""
Data model: resolved targets, per-address ping statistics and the per-cycle result set.
"""
import math
from dataclasses import dataclass
from typing import Iterator, Mapping, NamedTuple, Optional


class TargetKey(NamedTuple):
    """Result identity: (configured name, resolved address)."""
    name: str
    address: str


@dataclass(frozen=True)
class Target:
    original_name: str
    is_literal_address: bool
    resolved_address: str

    @property
    def key(self) -> TargetKey:
        return TargetKey(self.original_name, self.resolved_address)


def loss_percent(sent: int, received: int) -> int:
    if sent <= 0:
        return 0
    return int(math.floor(100.0 * (sent - received) / sent + 0.5))


@dataclass(frozen=True)
class PingStat:
    sent: int = 0
    received: int = 0
    loss_percent: int = 0
    min_delay_ms: float = 0.0
    avg_delay_ms: float = 0.0
    max_delay_ms: float = 0.0

    @property
    def lost(self) -> int:
        return self.sent - self.received

    @classmethod
    def all_lost(cls, sent: int) -> "PingStat":
        return cls(sent=sent, received=0, loss_percent=100 if sent > 0 else 0)


class StatAccumulator:
    """
    Running totals for one ProbeRunner. Loss percent is recomputed on every record,
    so snapshot() is valid between rounds as well as at the end.
    """

    def __init__(self) -> None:
        self.sent = 0
        self.received = 0
        self.loss_percent = 0
        self._min: Optional[float] = None
        self._max = 0.0
        self._total = 0.0

    def record_reply(self, rtt_ms: float) -> None:
        rtt_ms = max(0.0, rtt_ms)
        self.sent += 1
        self.received += 1
        self._total += rtt_ms
        if self._min is None or rtt_ms < self._min:
            self._min = rtt_ms
        if rtt_ms > self._max:
            self._max = rtt_ms
        self.loss_percent = loss_percent(self.sent, self.received)

    def record_loss(self) -> None:
        self.sent += 1
        self.loss_percent = loss_percent(self.sent, self.received)

    def snapshot(self) -> PingStat:
        if self.received == 0:
            return PingStat(sent=self.sent, received=0, loss_percent=self.loss_percent)
        avg = self._total / self.received
        # keep min <= avg <= max despite float rounding in the running sum
        avg = min(max(avg, self._min), self._max)
        return PingStat(
            sent=self.sent,
            received=self.received,
            loss_percent=self.loss_percent,
            min_delay_ms=self._min,
            avg_delay_ms=avg,
            max_delay_ms=self._max,
        )


@dataclass(frozen=True)
class ResultSet:
    """One cycle's results in target declaration order. Never mutated after construction."""
    entries: tuple[tuple[TargetKey, PingStat], ...] = ()

    @classmethod
    def from_pairs(cls, pairs) -> "ResultSet":
        seen: dict[TargetKey, PingStat] = {}
        for key, stat in pairs:
            if key not in seen:
                seen[key] = stat
        return cls(tuple(seen.items()))

    def keys(self) -> list[TargetKey]:
        return [k for k, _ in self.entries]

    def as_dict(self) -> Mapping[TargetKey, PingStat]:
        return dict(self.entries)

    def get(self, key: TargetKey) -> Optional[PingStat]:
        for k, stat in self.entries:
            if k == key:
                return stat
        return None

    def __iter__(self) -> Iterator[tuple[TargetKey, PingStat]]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)
