"""
One ICMP echo conversation over a short-lived raw socket.
States: IDLE -> SENT -> REPLIED | TIMED_OUT | UNREACHABLE | FAILED.
Replies from other conversations (other id/sequence, or an echo reply from another
host) are discarded until the deadline.
Blocking; the runner calls it from a worker thread.
"""
import logging
import random
import socket
import threading
import time
from contextlib import closing, contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterator, NamedTuple, Optional

from ping_exporter.codec import decode, encode_echo_request, strip_ip_header
from ping_exporter.errors import MalformedPacket

logger = logging.getLogger("ping_exporter.session")

RECV_BUFFER = 1500


class SessionState(Enum):
    IDLE = "idle"
    SENT = "sent"
    REPLIED = "replied"
    TIMED_OUT = "timed_out"
    UNREACHABLE = "unreachable"
    FAILED = "failed"


class EchoIdentifier(NamedTuple):
    id: int
    sequence: int

    @classmethod
    def new(cls, sequence: int) -> "EchoIdentifier":
        return cls(random.randrange(0x10000), sequence & 0xFFFF)


class IdentifierPool:
    """
    Hands out echo ids that no other in-flight session holds. Every raw socket sees
    every inbound reply, so concurrent sessions must never share an id.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._in_use: set[int] = set()

    def __len__(self) -> int:
        with self._lock:
            return len(self._in_use)

    @contextmanager
    def reserve(self, sequence: int) -> Iterator[EchoIdentifier]:
        with self._lock:
            if len(self._in_use) >= 0x10000:
                raise RuntimeError("all ICMP echo identifiers are in use")
            ident = EchoIdentifier.new(sequence)
            while ident.id in self._in_use:
                ident = EchoIdentifier(random.randrange(0x10000), ident.sequence)
            self._in_use.add(ident.id)
        try:
            yield ident
        finally:
            with self._lock:
                self._in_use.discard(ident.id)


# shared by every runner in the process
IN_FLIGHT_IDS = IdentifierPool()


@dataclass(frozen=True)
class ProbeOutcome:
    state: SessionState
    rtt_ms: Optional[float] = None  # only set for REPLIED
    reason: str = ""  # "OK", "TIME_EXCEEDED", "TIMEOUT", "UNREACHABLE", "ERROR:<cause>"

    @property
    def success(self) -> bool:
        return self.state is SessionState.REPLIED


def open_icmp_socket() -> socket.socket:
    """Raw ICMP socket; needs root or CAP_NET_RAW."""
    return socket.socket(socket.AF_INET, socket.SOCK_RAW, socket.IPPROTO_ICMP)


class ProbeSession:
    """Single-use: one send() per instance."""

    def __init__(
        self,
        socket_factory: Callable[[], socket.socket] = open_icmp_socket,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._socket_factory = socket_factory
        self._clock = clock
        self.state = SessionState.IDLE

    def send(self, address: str, identifier: EchoIdentifier, ttl: int, timeout: float) -> ProbeOutcome:
        if self.state is not SessionState.IDLE:
            raise RuntimeError(f"probe session already used (state={self.state.value})")
        try:
            sock = self._socket_factory()
        except OSError as e:
            return self._fail(address, "open", e)

        with closing(sock):
            try:
                sock.setsockopt(socket.IPPROTO_IP, socket.IP_TTL, ttl)
                packet = encode_echo_request(identifier.id, identifier.sequence)
                sent_at = self._clock()
                deadline = sent_at + timeout
                sock.sendto(packet, (address, 0))
                self.state = SessionState.SENT
                return self._await_reply(sock, address, identifier, sent_at, deadline)
            except OSError as e:
                return self._fail(address, "io", e)

    def _await_reply(
        self,
        sock: socket.socket,
        address: str,
        identifier: EchoIdentifier,
        sent_at: float,
        deadline: float,
    ) -> ProbeOutcome:
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                return self._finish(SessionState.TIMED_OUT, reason="TIMEOUT")
            sock.settimeout(remaining)
            try:
                packet, source = sock.recvfrom(RECV_BUFFER)
            except socket.timeout:
                return self._finish(SessionState.TIMED_OUT, reason="TIMEOUT")
            received_at = self._clock()

            try:
                msg = decode(strip_ip_header(packet))
            except MalformedPacket as e:
                logger.debug("Discarding packet while probing %s: %s", address, e)
                continue
            if not msg.matches(identifier.id, identifier.sequence):
                continue

            rtt_ms = (received_at - sent_at) * 1000.0
            if msg.is_echo_reply:
                if source[0] != address:
                    logger.debug("Discarding echo reply from %s while probing %s", source[0], address)
                    continue
                return self._finish(SessionState.REPLIED, rtt_ms, "OK")
            if msg.is_time_exceeded:
                return self._finish(SessionState.REPLIED, rtt_ms, "TIME_EXCEEDED")
            if msg.is_unreachable:
                return self._finish(SessionState.UNREACHABLE, reason="UNREACHABLE")
            # our own echo request looped back on a local raw socket

    def _finish(self, state: SessionState, rtt_ms: Optional[float] = None, reason: str = "") -> ProbeOutcome:
        self.state = state
        return ProbeOutcome(state, rtt_ms, reason)

    def _fail(self, address: str, stage: str, error: OSError) -> ProbeOutcome:
        logger.warning("Socket %s error probing %s: %s", stage, address, error)
        self.state = SessionState.FAILED
        return ProbeOutcome(SessionState.FAILED, None, f"ERROR:{type(error).__name__}")


def raw_socket_permitted(socket_factory: Callable[[], socket.socket] = open_icmp_socket) -> bool:
    """True if this process may open raw ICMP sockets."""
    try:
        sock = socket_factory()
    except PermissionError:
        return False
    except OSError as e:
        logger.warning("Cannot open raw ICMP socket: %s", e)
        return False
    sock.close()
    return True
