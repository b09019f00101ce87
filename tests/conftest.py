"""
Pytest configuration and fixtures for doh5 tests.
"""

import asyncio
import logging
import struct
import sys
from pathlib import Path
from typing import Tuple

import pytest

# Add scripts directory to path for imports
SCRIPTS_DIR = Path(__file__).parent.parent / "scripts"
sys.path.insert(0, str(SCRIPTS_DIR))


def build_dns_answer(query: bytes, ips_v4=(), ips_v6=()) -> bytes:
    """Answer a one-question query with A/AAAA records, echoing its id and question."""
    import socket

    txid = struct.unpack('!H', query[0:2])[0]
    question = query[12:]
    qtype = struct.unpack('!H', question[-4:-2])[0]

    answers = b''
    count = 0
    if qtype == 1:
        for ip in ips_v4:
            answers += b'\xc0\x0c' + struct.pack('!HHIH', 1, 1, 60, 4) + socket.inet_aton(ip)
            count += 1
    elif qtype == 28:
        for ip in ips_v6:
            answers += b'\xc0\x0c' + struct.pack('!HHIH', 28, 1, 60, 16) + socket.inet_pton(socket.AF_INET6, ip)
            count += 1

    header = struct.pack('!HHHHHH', txid, 0x8180, 1, count, 0, 0)
    return header + question + answers


class FakeDNSServer(asyncio.DatagramProtocol):
    """UDP DNS server answering every A query with fixed addresses."""

    def __init__(self, ips_v4=("127.0.0.1",), ips_v6=()):
        self.ips_v4 = ips_v4
        self.ips_v6 = ips_v6
        self.queries = []
        self.transport = None

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        self.queries.append(data)
        self.transport.sendto(build_dns_answer(data, self.ips_v4, self.ips_v6), addr)


async def start_echo_server() -> Tuple[asyncio.AbstractServer, int]:
    """TCP server that echoes everything back; returns (server, port)."""
    async def echo(reader, writer):
        try:
            while True:
                data = await reader.read(4096)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
        finally:
            writer.close()

    server = await asyncio.start_server(echo, '127.0.0.1', 0)
    return server, server.sockets[0].getsockname()[1]


@pytest.fixture(autouse=True)
def restore_logging():
    """Quiet mode disables logging process-wide; undo it after each test."""
    root_level = logging.getLogger().level
    yield
    logging.disable(logging.NOTSET)
    logging.getLogger().setLevel(root_level)
