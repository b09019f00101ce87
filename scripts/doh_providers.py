#!/usr/bin/env python3
"""
DoH provider selection.

Maps a provider name to its endpoint and builds the HTTP transport used by
the bridge. ``cloudflare-tor`` reaches Cloudflare's onion service through
the local Tor SOCKS port; the rest connect directly.
"""

from dataclasses import dataclass
from typing import Optional

import aiohttp
from aiohttp_socks import ProxyConnector

CLOUDFLARE_URI = "https://cloudflare-dns.com/dns-query"
GOOGLE_URI = "https://dns.google.com/experimental"
CLOUDFLARE_TOR_URI = "https://dns4torpnlfs2ifuz2s2yf3fc7rdmsbhm6rw75euj35pac6ap25zgqad.onion/dns-query"

TOR_ADDRESS = "127.0.0.1:9050"
# Fixed placeholder credentials for the Tor SOCKS port
TOR_USERNAME = "doh5"
TOR_PASSWORD = "doh5"

DISABLED_NAMES = ("", "none")
PROVIDER_NAMES = ("cloudflare", "google", "cloudflare-tor", "none")

TLS_HANDSHAKE_TIMEOUT = 10.0
DOH_REQUEST_TIMEOUT = 30.0
DEFAULT_MAX_CONNS_PER_HOST = 16
MAX_IDLE_CONNS = 32


class ProviderError(ValueError):
    """Unknown DoH provider name."""


@dataclass(frozen=True)
class ProviderConfig:
    """A DoH endpoint and how to reach it."""
    name: str
    uri: str
    tor_proxy: Optional[str] = None

    @property
    def via_tor(self) -> bool:
        return self.tor_proxy is not None


def tor_proxy_url(address: str = TOR_ADDRESS) -> str:
    return f"socks5://{TOR_USERNAME}:{TOR_PASSWORD}@{address}"


def select_provider(name: Optional[str]) -> Optional[ProviderConfig]:
    """
    Resolve a provider name.

    Returns None when DoH is disabled ("none" or empty), meaning the system
    resolver is used unmodified. Raises ProviderError for unknown names.
    """
    name = (name or "").strip()

    if name in DISABLED_NAMES:
        return None
    if name == "cloudflare":
        return ProviderConfig(name=name, uri=CLOUDFLARE_URI)
    if name == "google":
        return ProviderConfig(name=name, uri=GOOGLE_URI)
    if name == "cloudflare-tor":
        return ProviderConfig(name=name, uri=CLOUDFLARE_TOR_URI, tor_proxy=tor_proxy_url())

    raise ProviderError(
        f"invalid DoH provider given: {name!r} (choose from {', '.join(PROVIDER_NAMES)})"
    )


def open_session(
    provider: ProviderConfig,
    max_conns_per_host: int = DEFAULT_MAX_CONNS_PER_HOST
) -> aiohttp.ClientSession:
    """
    Build the shared HTTP client for one provider.

    Must be called with a running event loop. The session keeps connections
    alive between queries; close it when the bridge shuts down.
    """
    connector_kwargs = dict(
        limit=MAX_IDLE_CONNS,
        limit_per_host=max_conns_per_host,
        keepalive_timeout=90,
    )
    if provider.via_tor:
        # rdns: the .onion name must be resolved by Tor, not locally
        connector = ProxyConnector.from_url(provider.tor_proxy, rdns=True, **connector_kwargs)
    else:
        connector = aiohttp.TCPConnector(**connector_kwargs)

    timeout = aiohttp.ClientTimeout(
        total=DOH_REQUEST_TIMEOUT,
        sock_connect=TLS_HANDSHAKE_TIMEOUT
    )
    return aiohttp.ClientSession(connector=connector, timeout=timeout)
