#!/usr/bin/env python3
"""
Name resolution strategies for outbound connections.

The dialer never looks up names itself; it is handed a resolver object
with a single coroutine, ``resolve(hostname) -> [ip, ...]``.

- SystemResolver: the host's resolver via getaddrinfo (DoH disabled)
- BridgeResolver: plain DNS over UDP, but every query goes to the local
  DoH bridge socket, whichever name is asked for. The bridge forwards the
  packet over HTTPS, so the query never touches the system resolver.
"""

import asyncio
import random
import socket
import struct
from typing import List, Optional, Protocol, Tuple

from log_config import get_logger

logger = get_logger(__name__)

# DNS constants
QTYPE_A = 1
QTYPE_AAAA = 28
QCLASS_IN = 1
DNS_TIMEOUT = 5.0
# Largest UDP payload; the bridge relays DoH bodies without trimming them
DNS_MAX_RESPONSE = 65535
FLAG_TC = 0x0200


class ResolveError(OSError):
    """A hostname could not be resolved."""


class Resolver(Protocol):
    async def resolve(self, hostname: str) -> List[str]:
        ...


class SystemResolver:
    """Resolve through the host's configured resolver."""

    async def resolve(self, hostname: str) -> List[str]:
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
        except socket.gaierror as e:
            raise ResolveError(f"Cannot resolve {hostname}: {e}") from e

        ips: List[str] = []
        for _family, _type, _proto, _canon, sockaddr in infos:
            if sockaddr[0] not in ips:
                ips.append(sockaddr[0])
        return ips


class BridgeResolver:
    """
    DNS client pinned to the DoH bridge.

    Queries for A and AAAA are sent in parallel to ``bridge_address``;
    IPv4 answers are listed first. There is no retry and no cache: a query
    the bridge drops surfaces here as a timeout.
    """

    def __init__(self, bridge_address: Tuple[str, int], timeout: float = DNS_TIMEOUT):
        self.bridge_address = bridge_address
        self.timeout = timeout

    async def resolve(self, hostname: str) -> List[str]:
        results = await asyncio.gather(
            self.query(hostname, QTYPE_A),
            self.query(hostname, QTYPE_AAAA),
            return_exceptions=True
        )

        ips: List[str] = []
        errors = []
        for result in results:
            if isinstance(result, BaseException):
                errors.append(result)
                continue
            ips.extend(ip for ip in result if ip not in ips)

        if not ips:
            detail = f": {errors[0]}" if errors else ""
            raise ResolveError(f"Cannot resolve {hostname} via DoH bridge{detail}")
        return ips

    async def query(self, hostname: str, qtype: int) -> List[str]:
        """Send one question to the bridge and return the addresses in the answer."""
        loop = asyncio.get_running_loop()
        txid = random.randint(0, 65535)
        packet = build_dns_query(hostname, txid, qtype)

        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.setblocking(False)
        try:
            # The bridge socket is the only nameserver this resolver knows
            await loop.sock_sendto(sock, packet, self.bridge_address)
            response, _ = await asyncio.wait_for(
                loop.sock_recvfrom(sock, DNS_MAX_RESPONSE),
                timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            raise ResolveError(f"DNS timeout for {hostname} (type {qtype})") from e
        finally:
            sock.close()

        return parse_dns_response(response, txid)


def build_dns_query(hostname: str, txid: int, qtype: int = QTYPE_A) -> bytes:
    """Build a recursive DNS query packet for one question."""
    flags = 0x0100  # Standard query, recursion desired
    header = struct.pack('!HHHHHH', txid, flags, 1, 0, 0, 0)

    question = b''
    for label in hostname.rstrip('.').split('.'):
        try:
            encoded = label.encode('idna')
        except UnicodeError:
            encoded = b''
        if not encoded or len(encoded) > 63:
            raise ResolveError(f"Invalid hostname: {hostname!r}")
        question += bytes([len(encoded)]) + encoded
    question += b'\x00'
    question += struct.pack('!HH', qtype, QCLASS_IN)

    return header + question


def _skip_name(data: bytes, offset: int) -> int:
    """Return the offset just past a (possibly compressed) domain name."""
    while offset < len(data):
        length = data[offset]
        if length & 0xC0 == 0xC0:
            return offset + 2
        if length == 0:
            return offset + 1
        offset += length + 1
    raise ResolveError("Truncated DNS name")


def parse_dns_response(data: bytes, expected_txid: Optional[int] = None) -> List[str]:
    """Extract A/AAAA addresses from a DNS response packet."""
    if len(data) < 12:
        raise ResolveError("DNS response too short")

    txid, flags, qdcount, ancount = struct.unpack('!HHHH', data[0:8])
    if expected_txid is not None and txid != expected_txid:
        raise ResolveError(f"DNS txid mismatch: expected {expected_txid}, got {txid}")

    if flags & FLAG_TC:
        raise ResolveError("DNS response truncated (TC set)")

    rcode = flags & 0x0F
    if rcode != 0:
        raise ResolveError(f"DNS error rcode={rcode}")

    offset = 12
    for _ in range(qdcount):
        offset = _skip_name(data, offset) + 4  # QTYPE + QCLASS

    ips = []
    for _ in range(ancount):
        offset = _skip_name(data, offset)
        if offset + 10 > len(data):
            break

        rtype, _rclass, _ttl, rdlength = struct.unpack('!HHIH', data[offset:offset + 10])
        offset += 10
        rdata = data[offset:offset + rdlength]

        if rtype == QTYPE_A and rdlength == 4:
            ips.append(socket.inet_ntoa(rdata))
        elif rtype == QTYPE_AAAA and rdlength == 16:
            ips.append(socket.inet_ntop(socket.AF_INET6, rdata))
        # CNAME and other records are skipped; the resolver follows them upstream

        offset += rdlength

    return ips
