#!/usr/bin/env python3
"""
Outbound TCP connections for the SOCKS5 proxy.

All destinations are reached through a Dialer: fixed connect timeout,
fixed local source address, and an injected resolver for hostnames.
"""

import asyncio
import ipaddress
import socket
from typing import List, Optional, Tuple

from dns_resolver import ResolveError, Resolver, SystemResolver
from log_config import get_logger

logger = get_logger(__name__)

DIAL_TIMEOUT = 16.0


def join_host_port(host: str, port: int) -> str:
    """host:port, with IPv6 literals in brackets."""
    if ':' in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def split_host_port(address: str) -> Tuple[str, int]:
    """Inverse of join_host_port. Raises ValueError on malformed input."""
    host, sep, port_str = address.rpartition(':')
    if not sep:
        raise ValueError(f"missing port in address {address!r}")
    if host.startswith('[') and host.endswith(']'):
        host = host[1:-1]
    elif ':' in host:
        raise ValueError(f"too many colons in address {address!r}")
    port = int(port_str)
    if not 0 <= port <= 65535:
        raise ValueError(f"invalid port in address {address!r}")
    return host, port


def _ip_family(host: str) -> Optional[socket.AddressFamily]:
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return None
    return socket.AF_INET6 if ip.version == 6 else socket.AF_INET


class Dialer:
    """Connects to "host:port" targets on behalf of SOCKS clients."""

    def __init__(
        self,
        resolver: Optional[Resolver] = None,
        source_ip: Optional[str] = None,
        timeout: float = DIAL_TIMEOUT
    ):
        self.resolver = resolver or SystemResolver()
        self.source_ip = source_ip or None
        self.timeout = timeout
        self._source_family = _ip_family(self.source_ip) if self.source_ip else None

    @property
    def local_description(self) -> str:
        return f"{self.source_ip or '0.0.0.0'}:0"

    async def dial(self, address: str) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """Open a TCP connection to ``address``; the whole attempt shares one timeout."""
        host, port = split_host_port(address)
        return await asyncio.wait_for(self._dial(host, port), timeout=self.timeout)

    async def _dial(self, host: str, port: int):
        candidates = await self._lookup(host)

        last_error: Optional[OSError] = None
        for ip in candidates:
            try:
                return await self._connect_ip(ip, port)
            except OSError as e:
                logger.debug(f"Connect to {join_host_port(ip, port)} failed: {e}")
                last_error = e

        if last_error is not None:
            raise last_error
        raise ResolveError(f"No usable address for {host} from source {self.source_ip}")

    async def _lookup(self, host: str) -> List[str]:
        if _ip_family(host) is not None:
            ips = [host]
        else:
            ips = await self.resolver.resolve(host)
            logger.debug(f"Resolved {host} -> {', '.join(ips)}")

        # A bound source address pins the address family
        if self._source_family is not None:
            ips = [ip for ip in ips if _ip_family(ip) == self._source_family]
        return ips

    async def _connect_ip(self, ip: str, port: int):
        loop = asyncio.get_running_loop()
        family = _ip_family(ip)

        sock = socket.socket(family, socket.SOCK_STREAM)
        sock.setblocking(False)
        try:
            if self.source_ip:
                sock.bind((self.source_ip, 0))
            await loop.sock_connect(sock, (ip, port))
        except BaseException:
            sock.close()
            raise

        return await asyncio.open_connection(sock=sock)
