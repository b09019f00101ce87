#!/usr/bin/env python3
"""
Runtime configuration for the doh5 proxy.

One ProxyConfig is built at startup, from command-line flags or the
environment, and handed to the server. Nothing below the entry point reads
flags or environment variables itself.
"""

import argparse
import os
from dataclasses import dataclass
from typing import Optional, Tuple

from doh_providers import DEFAULT_MAX_CONNS_PER_HOST

DEFAULT_LISTEN = "127.0.0.1:1080"
DEFAULT_LISTEN_HOST = "127.0.0.1"
DEFAULT_PROVIDER = "cloudflare"


def parse_listen_address(value: str, default_host: str = DEFAULT_LISTEN_HOST) -> Tuple[str, int]:
    """
    Parse an ``[address:]port`` argument.

    A bare port listens on ``default_host``. Raises ValueError for a port
    that is not a number in 0-65535.
    """
    host, sep, port_str = value.strip().rpartition(':')
    if not sep:
        host = default_host
    if host.startswith('[') and host.endswith(']'):
        host = host[1:-1]

    try:
        port = int(port_str)
    except ValueError:
        raise ValueError(f"invalid listen port in {value!r}") from None
    if not 0 <= port <= 65535:
        raise ValueError(f"listen port out of range in {value!r}")
    return host, port


@dataclass(frozen=True)
class ProxyConfig:
    """Configuration consumed by the proxy core"""
    listen_host: str = DEFAULT_LISTEN_HOST
    listen_port: int = 1080
    unix_path: Optional[str] = None
    source_ip: Optional[str] = None
    provider: str = DEFAULT_PROVIDER
    quiet: bool = False
    verbose: bool = False
    doh_max_conns_per_host: int = DEFAULT_MAX_CONNS_PER_HOST

    @property
    def listen_description(self) -> str:
        if self.unix_path:
            return self.unix_path
        return f"{self.listen_host}:{self.listen_port}"

    @classmethod
    def from_args(cls, args: argparse.Namespace, defaults: Optional["ProxyConfig"] = None) -> "ProxyConfig":
        """Create config from parsed command-line flags

        Flags left unset fall back to ``defaults``, which is read from the
        environment when not given.
        """
        if defaults is None:
            defaults = cls.from_env()

        if args.D is not None:
            host, port = parse_listen_address(args.D)
        else:
            host, port = defaults.listen_host, defaults.listen_port
        return cls(
            listen_host=host,
            listen_port=port,
            unix_path=(args.U if args.U is not None else defaults.unix_path) or None,
            source_ip=(args.s if args.s is not None else defaults.source_ip) or None,
            provider=args.r if args.r is not None else defaults.provider,
            quiet=args.q or defaults.quiet,
            verbose=args.verbose or defaults.verbose,
            doh_max_conns_per_host=(
                args.doh_max_conns if args.doh_max_conns is not None
                else defaults.doh_max_conns_per_host
            ),
        )

    @classmethod
    def from_env(cls) -> "ProxyConfig":
        """Create config from environment variables"""
        host, port = parse_listen_address(os.environ.get("DOH5_LISTEN", DEFAULT_LISTEN))
        return cls(
            listen_host=host,
            listen_port=port,
            unix_path=os.environ.get("DOH5_UNIX") or None,
            source_ip=os.environ.get("DOH5_SOURCE") or None,
            provider=os.environ.get("DOH5_PROVIDER", DEFAULT_PROVIDER),
            quiet=os.environ.get("DOH5_QUIET", "false").lower() in ("1", "true", "yes"),
            verbose=os.environ.get("DOH5_VERBOSE", "false").lower() in ("1", "true", "yes"),
            doh_max_conns_per_host=int(
                os.environ.get("DOH5_MAX_CONNS", str(DEFAULT_MAX_CONNS_PER_HOST))
            ),
        )


def build_arg_parser() -> argparse.ArgumentParser:
    """Flags default to None so that unset ones fall back to the DOH5_* environment."""
    parser = argparse.ArgumentParser(
        prog='doh5',
        description='SOCKS5 proxy that resolves names over DNS-over-HTTPS'
    )
    parser.add_argument('-D', metavar='[address:]port',
                        help=f'address to listen and serve on (default: {DEFAULT_LISTEN})')
    parser.add_argument('-U', metavar='file',
                        help='unix domain socket file to listen and serve on')
    parser.add_argument('-s', metavar='source',
                        help='source IP to bind to for outgoing connections')
    parser.add_argument('-q', action='store_true', help='enable quiet mode')
    parser.add_argument('-r', metavar='service',
                        help=f'DoH service to use: cloudflare, google, cloudflare-tor, or none (default: {DEFAULT_PROVIDER})')
    parser.add_argument('--doh-max-conns', type=int, metavar='N',
                        help=f'max concurrent connections to the DoH provider (default: {DEFAULT_MAX_CONNS_PER_HOST})')
    parser.add_argument('--verbose', '-v', action='store_true', help='enable verbose logging')
    return parser
