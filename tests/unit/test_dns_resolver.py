"""
Unit tests for the resolver strategies and DNS wire helpers.
"""

import asyncio
import struct
import sys
from pathlib import Path

import pytest

# Add scripts directory to path
SCRIPTS_DIR = Path(__file__).parent.parent.parent / "scripts"
sys.path.insert(0, str(SCRIPTS_DIR))

from conftest import FakeDNSServer, build_dns_answer
from dns_resolver import (
    QTYPE_A,
    QTYPE_AAAA,
    BridgeResolver,
    ResolveError,
    SystemResolver,
    build_dns_query,
    parse_dns_response,
)


class TestDNSWire:
    """Query building and response parsing."""

    def test_query_layout(self):
        query = build_dns_query("www.example.com", 0x1234, QTYPE_A)
        txid, flags, qd, an, ns, ar = struct.unpack('!HHHHHH', query[:12])
        assert (txid, flags, qd, an, ns, ar) == (0x1234, 0x0100, 1, 0, 0, 0)
        assert query[12:] == b"\x03www\x07example\x03com\x00" + struct.pack('!HH', 1, 1)

    def test_trailing_dot_ignored(self):
        assert build_dns_query("example.com.", 1) == build_dns_query("example.com", 1)

    @pytest.mark.parametrize("name", ["", "a..b", "x" * 64 + ".com"])
    def test_invalid_names_rejected(self, name):
        with pytest.raises(ResolveError):
            build_dns_query(name, 1)

    def test_parse_a_and_aaaa(self):
        query_a = build_dns_query("example.com", 7, QTYPE_A)
        query_aaaa = build_dns_query("example.com", 8, QTYPE_AAAA)
        assert parse_dns_response(build_dns_answer(query_a, ["1.2.3.4", "5.6.7.8"]), 7) == ["1.2.3.4", "5.6.7.8"]
        assert parse_dns_response(build_dns_answer(query_aaaa, ips_v6=["2001:db8::5"]), 8) == ["2001:db8::5"]

    def test_txid_mismatch(self):
        query = build_dns_query("example.com", 7)
        with pytest.raises(ResolveError):
            parse_dns_response(build_dns_answer(query, ["1.2.3.4"]), 8)

    def test_error_rcode(self):
        response = struct.pack('!HHHHHH', 9, 0x8183, 0, 0, 0, 0)
        with pytest.raises(ResolveError):
            parse_dns_response(response, 9)

    def test_truncated_flag_rejected(self):
        query = build_dns_query("example.com", 9)
        response = bytearray(build_dns_answer(query, ["1.2.3.4"]))
        response[2] |= 0x02
        with pytest.raises(ResolveError, match="truncated"):
            parse_dns_response(bytes(response), 9)

    def test_short_response(self):
        with pytest.raises(ResolveError):
            parse_dns_response(b"\x00\x01")


class TestBridgeResolver:
    """Queries always go to the bridge address."""

    def test_resolves_through_bridge_address(self):
        async def go():
            loop = asyncio.get_running_loop()
            server = FakeDNSServer(ips_v4=("10.1.2.3",), ips_v6=("2001:db8::1",))
            transport, _ = await loop.create_datagram_endpoint(lambda: server, local_addr=("127.0.0.1", 0))
            try:
                resolver = BridgeResolver(transport.get_extra_info('sockname'))
                ips = await resolver.resolve("anything.example")
            finally:
                transport.close()
            return ips, server.queries

        ips, queries = asyncio.run(go())
        assert ips == ["10.1.2.3", "2001:db8::1"]
        assert len(queries) == 2
        assert all(b"\x08anything\x07example\x00" in q for q in queries)

    def test_response_larger_than_4096_bytes(self):
        many = tuple(f"10.0.{i // 256}.{i % 256}" for i in range(400))

        async def go():
            loop = asyncio.get_running_loop()
            server = FakeDNSServer(ips_v4=many)
            transport, _ = await loop.create_datagram_endpoint(lambda: server, local_addr=("127.0.0.1", 0))
            try:
                return await BridgeResolver(transport.get_extra_info('sockname')).resolve("big.example")
            finally:
                transport.close()

        assert asyncio.run(go()) == list(many)

    def test_silent_bridge_times_out(self):
        async def go():
            loop = asyncio.get_running_loop()
            transport, _ = await loop.create_datagram_endpoint(
                asyncio.DatagramProtocol, local_addr=("127.0.0.1", 0)
            )
            try:
                resolver = BridgeResolver(transport.get_extra_info('sockname'), timeout=0.2)
                await resolver.resolve("example.com")
            finally:
                transport.close()

        with pytest.raises(ResolveError):
            asyncio.run(go())


class TestSystemResolver:

    def test_ip_literal(self):
        assert asyncio.run(SystemResolver().resolve("127.0.0.1")) == ["127.0.0.1"]
