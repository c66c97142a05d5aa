"""
ICMP echo framing for IPv4.
Encode: type 8 / code 0 echo request with checksum. Decode: type, code and the
(identifier, sequence) pair used to correlate replies, including the copy embedded
in Destination-Unreachable and Time-Exceeded errors.
"""
import struct
from dataclasses import dataclass
from typing import Optional

from ping_exporter.errors import MalformedPacket

ICMP_ECHO_REPLY = 0
ICMP_DEST_UNREACHABLE = 3
ICMP_ECHO_REQUEST = 8
ICMP_TIME_EXCEEDED = 11

ICMP_HEADER = struct.Struct("!BBHHH")  # type, code, checksum, id, seq
ICMP_HEADER_LEN = ICMP_HEADER.size
IPV4_MIN_HEADER_LEN = 20

# Error messages carry 4 unused bytes, the original IP header, then the first
# 8 bytes of the original ICMP header. The id/seq of that header sit 4 bytes in.
EMBEDDED_ID_OFFSET = ICMP_HEADER_LEN + IPV4_MIN_HEADER_LEN + 4


@dataclass(frozen=True)
class DecodedMessage:
    type: int
    code: int
    identifier: Optional[int] = None
    sequence: Optional[int] = None

    @property
    def is_echo_reply(self) -> bool:
        return self.type == ICMP_ECHO_REPLY

    @property
    def is_unreachable(self) -> bool:
        return self.type == ICMP_DEST_UNREACHABLE

    @property
    def is_time_exceeded(self) -> bool:
        return self.type == ICMP_TIME_EXCEEDED

    def matches(self, identifier: int, sequence: int) -> bool:
        return self.identifier == identifier and self.sequence == sequence


def checksum(data: bytes) -> int:
    """RFC 1071 Internet checksum."""
    if len(data) % 2:
        data += b"\x00"
    total = sum(struct.unpack("!%dH" % (len(data) // 2), data))
    total = (total >> 16) + (total & 0xFFFF)
    total += total >> 16
    return ~total & 0xFFFF


def encode_echo_request(identifier: int, sequence: int, payload: bytes = b"") -> bytes:
    identifier &= 0xFFFF
    sequence &= 0xFFFF
    header = ICMP_HEADER.pack(ICMP_ECHO_REQUEST, 0, 0, identifier, sequence)
    csum = checksum(header + payload)
    return ICMP_HEADER.pack(ICMP_ECHO_REQUEST, 0, csum, identifier, sequence) + payload


def strip_ip_header(packet: bytes) -> bytes:
    """Raw IPv4 sockets hand us the IP header too; drop it using the IHL field."""
    if len(packet) < IPV4_MIN_HEADER_LEN:
        raise MalformedPacket(f"IPv4 header truncated ({len(packet)} bytes)")
    ihl = (packet[0] & 0x0F) * 4
    if ihl < IPV4_MIN_HEADER_LEN or len(packet) < ihl:
        raise MalformedPacket(f"bad IPv4 header length {ihl}")
    return packet[ihl:]


def decode(data: bytes) -> DecodedMessage:
    """Parse one ICMP message (IP header already removed)."""
    if len(data) < 4:
        raise MalformedPacket(f"ICMP message truncated ({len(data)} bytes)")
    icmp_type, code = data[0], data[1]

    if icmp_type in (ICMP_ECHO_REPLY, ICMP_ECHO_REQUEST):
        if len(data) < ICMP_HEADER_LEN:
            raise MalformedPacket(f"echo message truncated ({len(data)} bytes)")
        _, _, _, identifier, sequence = ICMP_HEADER.unpack_from(data)
        return DecodedMessage(icmp_type, code, identifier, sequence)

    if icmp_type in (ICMP_DEST_UNREACHABLE, ICMP_TIME_EXCEEDED):
        if len(data) < EMBEDDED_ID_OFFSET + 4:
            raise MalformedPacket(f"ICMP error type {icmp_type} truncated ({len(data)} bytes)")
        identifier, sequence = struct.unpack_from("!HH", data, EMBEDDED_ID_OFFSET)
        return DecodedMessage(icmp_type, code, identifier, sequence)

    return DecodedMessage(icmp_type, code)
