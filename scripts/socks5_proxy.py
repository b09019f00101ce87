#!/usr/bin/env python3
"""
SOCKS5 proxy with DNS-over-HTTPS name resolution.

Features:
- TCP CONNECT command (RFC 1928), "no authentication" only
- Outbound hostnames resolved through a local DoH bridge (no plaintext DNS)
- Source IP binding for all outgoing connections
- TCP or Unix domain socket listener

Usage:
    python3 socks5_proxy.py -D 127.0.0.1:1080 -r cloudflare
    python3 socks5_proxy.py -U /tmp/doh5.sock -r cloudflare-tor -q
"""

import asyncio
import ipaddress
import os
import signal
import socket
import struct
import sys
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from doh_bridge import DoHBridge, create_bridge
from doh_providers import ProviderError
from log_config import DEBUG, disable_logging, get_logger, set_log_level, setup_logging
from outbound_dialer import Dialer, join_host_port
from proxy_config import ProxyConfig, build_arg_parser

logger = get_logger("socks5")

# SOCKS5 constants
SOCKS_VERSION = 0x05
AUTH_NONE = 0x00
CMD_CONNECT = 0x01
ATYP_IPV4 = 0x01
ATYP_DOMAIN = 0x03
ATYP_IPV6 = 0x04

METHOD_REPLY = bytes([SOCKS_VERSION, AUTH_NONE])
# The bound address is always reported as 0.0.0.0:0
CONNECT_REPLY = b"\x05\x00\x00\x01\x00\x00\x00\x00\x00\x00"

RELAY_BUFFER_SIZE = 32 * 1024
INTERRUPT_WINDOW = 10.0


class NegotiationError(Exception):
    """Malformed or unsupported SOCKS5 input from the client."""


class DialError(Exception):
    """The requested destination could not be reached."""


@dataclass
class NegotiationRequest:
    """What the client asked for, as read off the wire."""
    methods: bytes
    command: int
    atyp: int
    address: Optional[bytes]
    port: int

    @property
    def destination(self) -> Optional[str]:
        if self.address is None:
            return None
        if self.atyp == ATYP_IPV4:
            return socket.inet_ntoa(self.address)
        if self.atyp == ATYP_IPV6:
            ip = ipaddress.IPv6Address(self.address)
            # ::ffff:a.b.c.d is dialed as plain IPv4
            return str(ip.ipv4_mapped or ip)
        return self.address.decode('utf-8', errors='replace')

    @property
    def target(self) -> str:
        return join_host_port(self.destination or '', self.port)


async def _read(reader: asyncio.StreamReader, n: int, what: str) -> bytes:
    try:
        return await reader.readexactly(n)
    except asyncio.IncompleteReadError as e:
        raise NegotiationError(f"truncated {what}: got {len(e.partial)} of {n} bytes") from None


async def read_greeting(reader: asyncio.StreamReader) -> bytes:
    """Read VER NMETHODS METHODS; return the offered methods."""
    version, nmethods = await _read(reader, 2, "greeting")
    if version != SOCKS_VERSION:
        raise NegotiationError(f"bad socks version {version}")

    methods = await _read(reader, nmethods, "auth methods")
    if AUTH_NONE not in methods:
        raise NegotiationError("no supported methods found")
    return methods


async def read_request(reader: asyncio.StreamReader, methods: bytes = b"") -> NegotiationRequest:
    """Read VER CMD RSV ATYP DST.ADDR DST.PORT."""
    version, command, _rsv, atyp = await _read(reader, 4, "request header")
    if version != SOCKS_VERSION:
        raise NegotiationError(f"bad socks version {version} in request")
    if command != CMD_CONNECT:
        raise NegotiationError(f"unsupported command {command}")

    if atyp == ATYP_IPV4:
        address = await _read(reader, 4, "IPv4 address")
    elif atyp == ATYP_DOMAIN:
        length = (await _read(reader, 1, "domain length"))[0]
        address = await _read(reader, length, "domain name")
    elif atyp == ATYP_IPV6:
        address = await _read(reader, 16, "IPv6 address")
    else:
        # Left unset; the dial step rejects it
        address = None

    port = struct.unpack('!H', await _read(reader, 2, "port"))[0]
    return NegotiationRequest(methods=methods, command=command, atyp=atyp, address=address, port=port)


async def negotiate(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    dialer: Dialer,
    conn_id: int = 0
) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """
    Run the SOCKS5 handshake and connect to the requested destination.

    Returns the destination stream pair once the success reply has been
    written. Raises NegotiationError for bad client input (nothing is
    written back) and DialError when the destination cannot be reached
    (no failure reply is sent either; the connection is just closed).
    """
    methods = await read_greeting(reader)
    writer.write(METHOD_REPLY)
    await writer.drain()

    request = await read_request(reader, methods)
    if request.destination is None:
        raise DialError(f"unsupported address type {request.atyp}")

    logger.info(f"[{conn_id}] -> {request.destination} . {request.port}")

    try:
        remote_reader, remote_writer = await dialer.dial(request.target)
    except (OSError, asyncio.TimeoutError, ValueError) as e:
        raise DialError(f"dial {request.target}: {str(e) or type(e).__name__}") from e

    try:
        writer.write(CONNECT_REPLY)
        await writer.drain()
    except OSError:
        remote_writer.close()
        raise
    return remote_reader, remote_writer


async def pipe(reader: asyncio.StreamReader, writer: asyncio.StreamWriter, direction: str, conn_id: int = 0):
    """Copy until EOF or error on either side."""
    try:
        while True:
            data = await reader.read(RELAY_BUFFER_SIZE)
            if not data:
                break
            writer.write(data)
            await writer.drain()
    except OSError as e:
        logger.debug(f"[{conn_id}] {direction} pipe error: {e}")


async def relay(
    client_reader: asyncio.StreamReader,
    client_writer: asyncio.StreamWriter,
    remote_reader: asyncio.StreamReader,
    remote_writer: asyncio.StreamWriter,
    conn_id: int = 0
):
    """
    Shuttle bytes both ways until one side closes.

    client->remote runs in its own task and closes the remote leg when it
    ends; remote->client runs here and the client leg is closed after it.
    Closing either leg ends the copy reading from it, so both finish.
    """
    async def upstream():
        try:
            await pipe(client_reader, remote_writer, "client->remote", conn_id)
        finally:
            remote_writer.close()

    upstream_task = asyncio.create_task(upstream())
    try:
        await pipe(remote_reader, client_writer, "remote->client", conn_id)
    finally:
        client_writer.close()
        await asyncio.gather(upstream_task, return_exceptions=True)


def prompt_remove_stale_socket(path: str, input_fn: Callable[[str], str] = input) -> bool:
    """
    Ask before deleting an existing file at a Unix socket path.

    An empty answer or one starting with y/Y removes it. Returns True if
    the file was removed.
    """
    if not os.path.exists(path):
        return False
    answer = input_fn(f"warning:  file {path} exists.  OK to remove? [y] ").strip()
    if answer == "" or answer[0] in "yY":
        os.remove(path)
        return True
    return False


class InterruptHandler:
    """Exit only if two interrupts arrive within INTERRUPT_WINDOW seconds."""

    def __init__(self, on_exit: Callable[[], None], window: float = INTERRUPT_WINDOW):
        self.on_exit = on_exit
        self.window = window
        self._disarm: Optional[asyncio.TimerHandle] = None

    @property
    def armed(self) -> bool:
        return self._disarm is not None

    def __call__(self):
        if self._disarm is not None:
            self._disarm.cancel()
            self._disarm = None
            logger.warning("Exiting after second sigterm")
            self.on_exit()
            return
        logger.warning("Caught sigterm.  Send again to exit!")
        self._disarm = asyncio.get_running_loop().call_later(self.window, self._reset)

    def _reset(self):
        self._disarm = None


class SOCKS5Server:
    """SOCKS5 CONNECT proxy whose outbound DNS goes through DoH."""

    def __init__(self, config: ProxyConfig):
        self.config = config
        self.server: Optional[asyncio.AbstractServer] = None
        self.bridge: Optional[DoHBridge] = None
        self.dialer: Optional[Dialer] = None
        self.connections = 0
        self._stopped = asyncio.Event()

    @property
    def sockets(self) -> List[socket.socket]:
        return list(self.server.sockets) if self.server else []

    @property
    def listen_address(self):
        return self.sockets[0].getsockname() if self.sockets else None

    async def start(self):
        """Open the listener and the DoH bridge. Raises on configuration errors."""
        if self.config.unix_path:
            self.server = await asyncio.start_unix_server(self._handle_client, path=self.config.unix_path)
        else:
            self.server = await asyncio.start_server(
                self._handle_client,
                self.config.listen_host,
                self.config.listen_port
            )

        try:
            self.bridge = await create_bridge(self.config.provider, self.config.doh_max_conns_per_host)
        except BaseException:
            self._close_listener()
            raise

        resolver = self.bridge.resolver() if self.bridge else None
        self.dialer = Dialer(resolver=resolver, source_ip=self.config.source_ip)

        logger.info(
            f"SOCKS5 server listening on {self._describe_listener()} "
            f"with outgoing connections via {self.dialer.local_description}"
        )
        if self.config.quiet:
            logger.info("quiet mode enabled")
            disable_logging()

    async def serve(self):
        """Run until stop() is called."""
        await self._stopped.wait()

    async def stop(self):
        """Stop accepting. In-flight relays are left to the process exit."""
        if self._stopped.is_set():
            return
        self._stopped.set()
        self._close_listener()
        if self.bridge:
            await self.bridge.close()
        logger.info("SOCKS5 proxy stopped")

    def _close_listener(self):
        # Not wait_closed(): that would block on relays still in progress
        if self.server:
            self.server.close()
        if self.config.unix_path and os.path.exists(self.config.unix_path):
            os.remove(self.config.unix_path)

    def _describe_listener(self) -> str:
        addr = self.listen_address
        if isinstance(addr, tuple):
            return join_host_port(addr[0], addr[1])
        return str(addr or self.config.listen_description)

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """Handle a single client connection."""
        client_addr = writer.get_extra_info('peername')
        self.connections += 1
        conn_id = self.connections

        try:
            remote_reader, remote_writer = await negotiate(reader, writer, self.dialer, conn_id)
        except NegotiationError as e:
            logger.warning(f"[{conn_id}] Negotiation with {client_addr} failed: {e}")
        except DialError as e:
            logger.warning(f"[{conn_id}] {e}")
        except OSError as e:
            logger.debug(f"[{conn_id}] Connection error from {client_addr}: {e}")
        else:
            await relay(reader, writer, remote_reader, remote_writer, conn_id)
        finally:
            if not writer.is_closing():
                writer.close()


def _validate_source_ip(source_ip: Optional[str]):
    if source_ip:
        ipaddress.ip_address(source_ip)


async def main(argv: Optional[List[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    setup_logging(force=True)

    try:
        config = ProxyConfig.from_args(args)
        _validate_source_ip(config.source_ip)
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    if config.verbose:
        set_log_level(DEBUG)

    if config.unix_path:
        prompt_remove_stale_socket(config.unix_path)

    server = SOCKS5Server(config)
    try:
        await server.start()
    except ProviderError as e:
        logger.error(str(e))
        return 1
    except OSError as e:
        logger.error(f"Cannot listen on {config.listen_description}: {e}")
        return 1

    loop = asyncio.get_running_loop()
    def stop():
        asyncio.ensure_future(server.stop())

    loop.add_signal_handler(signal.SIGINT, InterruptHandler(stop))
    loop.add_signal_handler(signal.SIGTERM, stop)

    try:
        await server.serve()
    finally:
        await server.stop()
    return 0


def run():
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass


if __name__ == '__main__':
    run()
