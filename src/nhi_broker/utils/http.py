"""Shared HTTP utilities."""

from __future__ import annotations

import ipaddress
import socket
from urllib.parse import urlparse


def _is_internal(address: str) -> bool:
    ip = ipaddress.ip_address(address)
    return ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_reserved or ip.is_multicast


def validate_oidc_url(url: str, *, label: str = "URL") -> str:
    """Check that a URL learned from OIDC discovery is safe to fetch.

    The URL must be absolute HTTPS, and none of the addresses its host
    resolves to may be internal. Unresolvable hosts pass; the fetch itself
    then fails. Raises ``ValueError``; returns ``url`` unchanged otherwise.
    """
    parsed = urlparse(url)
    if parsed.scheme.lower() != "https" or not parsed.hostname:
        raise ValueError(f"{label} must be an absolute https URL: {url}")

    try:
        infos = socket.getaddrinfo(parsed.hostname, parsed.port or 443, type=socket.SOCK_STREAM)
    except socket.gaierror:
        return url

    internal = sorted({str(info[4][0]) for info in infos if _is_internal(str(info[4][0]))})
    if internal:
        raise ValueError(f"{label} resolves to internal address {', '.join(internal)}: {url}")
    return url


def first_forwarded_value(value: str | None) -> str | None:
    """First entry of a comma-separated forwarding header such as X-Forwarded-For."""
    if not value:
        return None
    first = value.split(",", 1)[0].strip()
    return first or None
