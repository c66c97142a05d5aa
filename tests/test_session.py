"""Unit tests for the probe session state machine (ping_exporter.session); fake raw socket."""
import socket
import struct

import pytest
from unittest.mock import patch

from ping_exporter.codec import ICMP_DEST_UNREACHABLE, ICMP_TIME_EXCEEDED, encode_echo_request
from ping_exporter.session import EchoIdentifier, IdentifierPool, ProbeSession, SessionState, raw_socket_permitted

IP_HEADER = b"\x45" + b"\x00" * 19


def echo_reply(identifier, seq):
    return IP_HEADER + struct.pack("!BBHHH", 0, 0, 0, identifier, seq)


def icmp_error(icmp_type, identifier, seq):
    body = struct.pack("!BBHI", icmp_type, 0, 0, 0) + IP_HEADER + encode_echo_request(identifier, seq)
    return IP_HEADER + body


class FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


class FakeSocket:
    """Delivers (delay_s, packet[, source]) in order, advancing the clock; then times out."""

    def __init__(self, clock, packets=(), fail_on=None):
        self.clock = clock
        self.packets = list(packets)
        self.fail_on = fail_on
        self.sent = []
        self.options = []
        self.timeouts = []
        self.closed = False

    def setsockopt(self, level, option, value):
        self.options.append((level, option, value))

    def settimeout(self, value):
        self.timeouts.append(value)

    def sendto(self, data, addr):
        if self.fail_on == "send":
            raise OSError("Network is unreachable")
        self.sent.append((data, addr))
        return len(data)

    def recvfrom(self, size):
        if self.fail_on == "recv":
            raise ConnectionRefusedError("boom")
        if not self.packets:
            self.clock.now += self.timeouts[-1]
            raise socket.timeout("timed out")
        delay, packet, *source = self.packets.pop(0)
        self.clock.now += delay
        return packet, (source[0] if source else "10.0.0.1", 0)

    def close(self):
        self.closed = True


def make_session(packets=(), fail_on=None):
    clock = FakeClock()
    sock = FakeSocket(clock, packets, fail_on)
    return ProbeSession(socket_factory=lambda: sock, clock=clock), sock


def test_matching_reply():
    session, sock = make_session([(0.002, echo_reply(10, 1))])
    outcome = session.send("10.0.0.1", EchoIdentifier(10, 1), 64, 3.0)
    assert outcome.state == SessionState.REPLIED
    assert outcome.success is True
    assert outcome.reason == "OK"
    assert outcome.rtt_ms == pytest.approx(2.0)
    assert session.state == SessionState.REPLIED
    assert sock.closed


def test_writes_encoded_request_with_ttl():
    session, sock = make_session([(0.001, echo_reply(10, 1))])
    session.send("10.0.0.1", EchoIdentifier(10, 1), 64, 3.0)
    assert sock.sent == [(encode_echo_request(10, 1), ("10.0.0.1", 0))]
    assert (socket.IPPROTO_IP, socket.IP_TTL, 64) in sock.options


def test_foreign_and_malformed_packets_are_skipped():
    packets = [
        (0.001, echo_reply(11, 1)),  # other conversation
        (0.001, echo_reply(10, 0)),  # stale sequence
        (0.001, b"\x45\x00"),  # truncated
        (0.001, IP_HEADER + encode_echo_request(10, 1)),  # our own request looped back
        (0.001, echo_reply(10, 1)),
    ]
    session, sock = make_session(packets)
    outcome = session.send("10.0.0.1", EchoIdentifier(10, 1), 64, 3.0)
    assert outcome.state == SessionState.REPLIED
    assert outcome.rtt_ms == pytest.approx(5.0)


def test_timeout_when_nothing_arrives():
    session, sock = make_session()
    outcome = session.send("10.255.255.1", EchoIdentifier(10, 1), 64, 1.5)
    assert outcome.state == SessionState.TIMED_OUT
    assert outcome.rtt_ms is None
    assert outcome.reason == "TIMEOUT"
    assert sock.timeouts == [pytest.approx(1.5)]
    assert sock.closed


def test_deadline_bounds_stream_of_unrelated_traffic():
    packets = [(0.4, echo_reply(99, 1)) for _ in range(10)]
    session, sock = make_session(packets)
    outcome = session.send("10.0.0.1", EchoIdentifier(10, 1), 64, 1.0)
    assert outcome.state == SessionState.TIMED_OUT
    # remaining time shrinks with each read
    assert sock.timeouts == sorted(sock.timeouts, reverse=True)
    assert len(sock.packets) == 7


def test_time_exceeded_counts_as_reply():
    session, _ = make_session([(0.004, icmp_error(ICMP_TIME_EXCEEDED, 10, 1))])
    outcome = session.send("10.0.0.1", EchoIdentifier(10, 1), 1, 3.0)
    assert outcome.state == SessionState.REPLIED
    assert outcome.reason == "TIME_EXCEEDED"
    assert outcome.rtt_ms == pytest.approx(4.0)


def test_destination_unreachable():
    session, _ = make_session([(0.001, icmp_error(ICMP_DEST_UNREACHABLE, 10, 1))])
    outcome = session.send("10.0.0.1", EchoIdentifier(10, 1), 64, 3.0)
    assert outcome.state == SessionState.UNREACHABLE
    assert outcome.success is False
    assert outcome.rtt_ms is None


def test_unreachable_for_other_conversation_is_ignored():
    packets = [(0.001, icmp_error(ICMP_DEST_UNREACHABLE, 11, 1)), (0.001, echo_reply(10, 1))]
    session, _ = make_session(packets)
    assert session.send("10.0.0.1", EchoIdentifier(10, 1), 64, 3.0).state == SessionState.REPLIED


def test_socket_open_failure():
    def factory():
        raise PermissionError("Operation not permitted")

    session = ProbeSession(socket_factory=factory)
    outcome = session.send("10.0.0.1", EchoIdentifier(1, 1), 64, 1.0)
    assert outcome.state == SessionState.FAILED
    assert outcome.reason == "ERROR:PermissionError"


@pytest.mark.parametrize("fail_on", ["send", "recv"])
def test_io_failure_closes_socket(fail_on):
    session, sock = make_session(fail_on=fail_on)
    outcome = session.send("10.0.0.1", EchoIdentifier(1, 1), 64, 1.0)
    assert outcome.state == SessionState.FAILED
    assert outcome.reason.startswith("ERROR:")
    assert sock.closed


def test_session_is_single_use():
    session, _ = make_session([(0.001, echo_reply(10, 1))])
    session.send("10.0.0.1", EchoIdentifier(10, 1), 64, 1.0)
    with pytest.raises(RuntimeError):
        session.send("10.0.0.1", EchoIdentifier(10, 2), 64, 1.0)


def test_new_identifier_is_16_bit():
    for seq in (0, 1, 70000):
        ident = EchoIdentifier.new(seq)
        assert 0 <= ident.id <= 0xFFFF
        assert ident.sequence == seq & 0xFFFF


def test_echo_reply_from_other_host_is_discarded():
    packets = [(0.001, echo_reply(10, 0), "192.0.2.99"), (0.003, echo_reply(10, 0), "192.0.2.1")]
    session, _ = make_session(packets)
    outcome = session.send("192.0.2.1", EchoIdentifier(10, 0), 64, 3.0)
    assert outcome.state == SessionState.REPLIED
    assert outcome.rtt_ms == pytest.approx(4.0)


def test_only_echo_reply_from_other_host_times_out():
    session, _ = make_session([(0.001, echo_reply(10, 0), "192.0.2.99")])
    outcome = session.send("192.0.2.1", EchoIdentifier(10, 0), 64, 1.0)
    assert outcome.state == SessionState.TIMED_OUT


def test_time_exceeded_from_router_is_accepted():
    session, _ = make_session([(0.002, icmp_error(ICMP_TIME_EXCEEDED, 10, 1), "198.51.100.1")])
    outcome = session.send("192.0.2.1", EchoIdentifier(10, 1), 1, 3.0)
    assert outcome.state == SessionState.REPLIED
    assert outcome.reason == "TIME_EXCEEDED"


def test_identifier_pool_never_shares_in_flight_ids():
    pool = IdentifierPool()
    with patch("ping_exporter.session.random.randrange", side_effect=[7, 7, 7, 8]):
        with pool.reserve(0) as first, pool.reserve(0) as second:
            assert first.id == 7
            assert second.id == 8
            assert len(pool) == 2
    assert len(pool) == 0


def test_identifier_pool_releases_on_error():
    pool = IdentifierPool()
    with pytest.raises(ValueError):
        with pool.reserve(3) as ident:
            assert ident.sequence == 3
            raise ValueError("boom")
    assert len(pool) == 0


def test_raw_socket_permitted():
    sock = FakeSocket(FakeClock())
    assert raw_socket_permitted(lambda: sock) is True
    assert sock.closed

    def denied():
        raise PermissionError("Operation not permitted")

    assert raw_socket_permitted(denied) is False
