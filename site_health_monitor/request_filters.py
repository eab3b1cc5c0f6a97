"""
1.0 Request Filters
Pure checks that decide whether a not-found request is worth reporting.

Key features:
- Static asset detection by file extension (assets are ignored)
- Internal referrer check (same host as the site)
- Best-effort client IP from CDN/proxy headers

None of these touch the network or shared state.
"""

import ipaddress
import posixpath
from typing import Mapping, Optional
from urllib.parse import urlparse

from requests.structures import CaseInsensitiveDict

from site_health_monitor.models import UNKNOWN_IP

# 1.1 Extensions that mark a URL as a static asset
STATIC_EXTENSIONS = frozenset({
    "css", "js",
    "jpg", "jpeg", "png", "gif", "svg", "ico",
    "map",
    "woff", "woff2", "ttf", "eot",
})

# 1.2 Client IP sources, highest priority first
CLIENT_IP_HEADERS = (
    "CF-Connecting-IP",  # Cloudflare
    "X-Real-IP",         # Nginx proxy
    "X-Forwarded-For",   # Generic proxy chain
    "REMOTE_ADDR",       # Connection peer
)


def is_static_asset(url: str) -> bool:
    """
    2.0 Check if a URL points to a static asset (CSS, JS, image, font, source map).

    Only the path is inspected, so query strings like ?v=2 are ignored.
    A URL without a path, or a path without an extension, is never static.
    """
    if not url:
        return False
    path = urlparse(url).path
    if not path:
        return False

    # Last segment, trailing slash ignored; a leading dot counts (/.css is css)
    name = posixpath.basename(path.rstrip("/"))
    if "." not in name:
        return False
    return name.rsplit(".", 1)[1].lower() in STATIC_EXTENSIONS


def _host_of(url: str) -> Optional[str]:
    try:
        host = urlparse(url).hostname
    except ValueError:
        return None
    return host.lower() if host else None


def is_internal_referrer(referrer_url: str, site_url: str) -> bool:
    """
    3.0 Check if a referrer belongs to the same site.

    Hosts are compared case-insensitively for exact equality. Scheme and
    port are not compared, and subdomains do not match their parent.
    """
    if not referrer_url or not site_url:
        return False

    referrer_host = _host_of(referrer_url)
    site_host = _host_of(site_url)
    if not referrer_host or not site_host:
        return False
    return referrer_host == site_host


def _valid_ip(candidate: str) -> bool:
    try:
        ipaddress.ip_address(candidate)
    except ValueError:
        return False
    return True


def resolve_client_ip(headers: Mapping[str, str], remote_addr: Optional[str] = None) -> str:
    """
    4.0 Resolve the client IP from request headers.

    Tries CF-Connecting-IP, X-Real-IP, X-Forwarded-For and then the peer
    address, returning the first value that is a valid IPv4/IPv6 address.
    Forwarded chains contribute only their first entry. This value is for
    diagnostics only and is trivially spoofable.

    Args:
        headers: Request header map (any key case)
        remote_addr: Connection peer address, if not present in headers

    Returns:
        IP address string, or "Unknown" if nothing validates
    """
    lookup = CaseInsensitiveDict(headers or {})
    if remote_addr and not lookup.get("REMOTE_ADDR"):
        lookup["REMOTE_ADDR"] = remote_addr

    for header in CLIENT_IP_HEADERS:
        value = lookup.get(header)
        if not value:
            continue
        candidate = value.split(",")[0].strip()
        if _valid_ip(candidate):
            return candidate

    return UNKNOWN_IP
