#!/usr/bin/env python3
"""
Outbound URL guard.

Every URL the service fetches on behalf of feed content (feeds, articles,
proxied images, redirect targets) passes through ``validate_url`` first.
The check resolves the host name and rejects the URL when any resolved
address is not publicly routable. ``GuardedResolver`` repeats the address
check inside aiohttp's connector, so the addresses actually connected to are
the ones that were vetted even if DNS answers change between the two steps.
"""

import ipaddress
import socket
from asyncio import get_running_loop
from typing import List, Union
from urllib.parse import urlsplit

from aiohttp import ThreadedResolver

from config import get_logger
from errors import SSRFError

logger = get_logger("ssrf")

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

ALLOWED_SCHEMES = ("http", "https")
BLOCKED_HOSTNAMES = {"localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback"}
BLOCKED_HOST_SUFFIXES = (".localhost", ".local", ".internal", ".home.arpa")

# Ranges not always covered by the ipaddress flags on older interpreters
_EXTRA_BLOCKED_NETWORKS = [
    ipaddress.ip_network("100.64.0.0/10"),   # shared address space (CGNAT)
    ipaddress.ip_network("192.0.0.0/24"),    # IETF protocol assignments
    ipaddress.ip_network("198.18.0.0/15"),   # benchmarking
    ipaddress.ip_network("255.255.255.255/32"),
    ipaddress.ip_network("fec0::/10"),       # deprecated site-local
]


def is_blocked_address(ip: IPAddress) -> bool:
    """Return True when an address must never be connected to."""
    mapped = getattr(ip, "ipv4_mapped", None)
    if mapped is not None:
        return is_blocked_address(mapped)
    if (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_reserved
        or ip.is_unspecified
        or not ip.is_global
    ):
        return True
    return any(ip.version == net.version and ip in net for net in _EXTRA_BLOCKED_NETWORKS)


def _is_blocked_hostname(host: str) -> bool:
    return host in BLOCKED_HOSTNAMES or host.endswith(BLOCKED_HOST_SUFFIXES)


def _literal_address(host: str):
    try:
        return ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        return None


async def resolve_addresses(host: str, port: int) -> List[str]:
    """Resolve a host name to the list of address strings it maps to."""
    loop = get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    return [info[4][0] for info in infos if info[4]]


def check_addresses(host: str, addresses: List[str], url: str = None) -> None:
    """Raise SSRFError if the host resolved to nothing or to any blocked address."""
    if not addresses:
        raise SSRFError(f"Host {host} did not resolve", url=url)
    for address in addresses:
        # Strip IPv6 scope ids (fe80::1%eth0)
        ip = _literal_address(address.split("%", 1)[0])
        if ip is None:
            raise SSRFError(f"Host {host} resolved to an unparseable address {address}", url=url)
        if is_blocked_address(ip):
            raise SSRFError(f"Host {host} resolves to non-public address {ip}", url=url)


async def validate_url(url: str) -> str:
    """Validate that a URL is safe to fetch.

    Args:
        url: Absolute URL taken from feed content or a redirect.

    Returns:
        The stripped URL.

    Raises:
        SSRFError: bad scheme, missing host, embedded credentials, local host
            names, or a host resolving to a non-public address.
    """
    candidate = (url or "").strip()
    if not candidate:
        raise SSRFError("Missing URL", url=url)
    try:
        parts = urlsplit(candidate)
        port = parts.port
    except ValueError as e:
        raise SSRFError(f"Invalid URL: {e}", url=url) from e

    if parts.scheme.lower() not in ALLOWED_SCHEMES:
        raise SSRFError(f"Scheme '{parts.scheme}' is not allowed", url=url)
    if parts.username or parts.password:
        raise SSRFError("Credentials in URL are not allowed", url=url)
    host = (parts.hostname or "").strip().lower().rstrip(".")
    if not host:
        raise SSRFError("URL has no host", url=url)
    if _is_blocked_hostname(host):
        raise SSRFError(f"Host {host} is not allowed", url=url)

    literal = _literal_address(host)
    if literal is not None:
        if is_blocked_address(literal):
            raise SSRFError(f"Address {literal} is not publicly routable", url=url)
        return candidate

    if port is None:
        port = 443 if parts.scheme.lower() == "https" else 80
    try:
        addresses = await resolve_addresses(host, port)
    except (socket.gaierror, UnicodeError) as e:
        raise SSRFError(f"Could not resolve {host}: {e}", url=url) from e
    check_addresses(host, addresses, url=url)
    return candidate


class GuardedResolver(ThreadedResolver):
    """aiohttp resolver that refuses to hand out non-public addresses."""

    async def resolve(self, host: str, port: int = 0, family: socket.AddressFamily = socket.AF_INET):
        if _is_blocked_hostname(host.lower().rstrip(".")):
            raise SSRFError(f"Host {host} is not allowed")
        results = await super().resolve(host, port, family)
        check_addresses(host, [result["host"] for result in results])
        return results
