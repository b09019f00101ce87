#!/usr/bin/env python3
"""
UDP to DNS-over-HTTPS bridge.

The bridge owns one UDP socket on the loopback interface and looks like an
ordinary DNS server to anything that sends it a packet. Every datagram is
POSTed unchanged to the DoH provider and the HTTP response body is sent
back, unchanged, to whoever sent the datagram.

Each datagram is handled in its own task, so slow queries do not hold up
the receive path. Failures are logged and the datagram is dropped; the DNS
client sees a timeout.
"""

import asyncio
from typing import Optional, Set, Tuple

import aiohttp
from aiohttp_socks import ProxyConnectionError, ProxyError, ProxyTimeoutError

from dns_resolver import BridgeResolver
from doh_providers import (
    DEFAULT_MAX_CONNS_PER_HOST,
    ProviderConfig,
    open_session,
    select_provider,
)
from log_config import get_logger

logger = get_logger(__name__)

DOH_CONTENT_TYPE = "application/dns-udpwireformat"
DOH_HEADERS = {
    "Accept": DOH_CONTENT_TYPE,
    "Content-Type": DOH_CONTENT_TYPE,
}
BRIDGE_HOST = "127.0.0.1"


class DoHBridge(asyncio.DatagramProtocol):
    """Forward UDP DNS packets to a DoH endpoint."""

    def __init__(self, provider: ProviderConfig, session: aiohttp.ClientSession):
        self.provider = provider
        self.session = session
        self.transport: Optional[asyncio.DatagramTransport] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def local_address(self) -> Tuple[str, int]:
        if self.transport is None:
            raise RuntimeError("DoH bridge is not started")
        sockname = self.transport.get_extra_info('sockname')
        return sockname[0], sockname[1]

    def resolver(self) -> BridgeResolver:
        """A resolver whose every query is answered through this bridge."""
        return BridgeResolver(self.local_address)

    async def start(self, host: str = BRIDGE_HOST, port: int = 0):
        loop = asyncio.get_running_loop()
        await loop.create_datagram_endpoint(lambda: self, local_addr=(host, port))
        logger.debug(f"DoH bridge listening on {self.local_address[0]}:{self.local_address[1]}")

    async def close(self):
        if self.transport is not None:
            self.transport.close()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.session.close()

    def connection_made(self, transport: asyncio.DatagramTransport):
        self.transport = transport

    def datagram_received(self, data: bytes, addr: Tuple[str, int]):
        task = asyncio.create_task(self._forward(data, addr))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def error_received(self, exc):
        logger.warning(f"DoH bridge socket error: {exc}")

    def connection_lost(self, exc):
        if exc is not None:
            logger.warning(f"DoH bridge socket closed: {exc}")

    async def _forward(self, data: bytes, addr: Tuple[str, int]):
        """One round trip: datagram -> HTTPS POST -> datagram back to addr."""
        try:
            async with self.session.post(self.provider.uri, data=data, headers=DOH_HEADERS) as response:
                body = await response.read()
                if response.status != 200:
                    logger.warning(
                        f"DoH provider {self.provider.name} answered HTTP {response.status}"
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError,
                ProxyError, ProxyConnectionError, ProxyTimeoutError) as e:
            logger.warning(f"DoH query for {addr[0]}:{addr[1]} failed: {e!r}")
            return

        if self.transport is None or self.transport.is_closing():
            logger.debug(f"DoH bridge closed, dropping response for {addr[0]}:{addr[1]}")
            return
        try:
            self.transport.sendto(body, addr)
        except OSError as e:
            logger.warning(f"DoH response to {addr[0]}:{addr[1]} not delivered: {e}")


async def create_bridge(
    provider_name: Optional[str],
    max_conns_per_host: int = DEFAULT_MAX_CONNS_PER_HOST
) -> Optional[DoHBridge]:
    """
    Start a bridge for the named provider.

    Returns None if DoH is disabled. Raises ProviderError for an unknown
    provider name before anything is opened.
    """
    provider = select_provider(provider_name)
    if provider is None:
        logger.info("DoH disabled.  Using system resolver for DNS")
        return None

    logger.info(f"using DoH provider {provider.name} ({provider.uri})")
    bridge = DoHBridge(provider, open_session(provider, max_conns_per_host))
    try:
        await bridge.start()
    except OSError:
        await bridge.session.close()
        raise
    return bridge
