"""Outbound request guard (SSRF prevention).

Two layers run before any network I/O from a flow:

1. ``sanitize_mock_value`` neutralizes interpolated values that look like URLs,
   so a template variable cannot smuggle an alternate target into a path.
2. ``parse_and_validate_url`` only admits http(s) URLs whose host is not
   loopback, link-local, private, unspecified, or a cloud metadata endpoint.
   The URL handed back is rebuilt from the parsed components, never the raw
   input string.

``check_resolved_addresses`` optionally applies the same IP checks to every
address a hostname resolves to.
"""

import ipaddress
import json
import logging
import re
import socket
from dataclasses import dataclass
from urllib.parse import urlsplit, urlunsplit

from toolflow.core.config import GuardSettings

logger = logging.getLogger(__name__)

BLOCKED_URL_SENTINEL = "[blocked-url]"

_URL_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)

ALLOWED_SCHEMES = ("http", "https")
DEFAULT_PORTS = {"http": 80, "https": 443}

METADATA_HOSTS = frozenset({"metadata.google.internal", "metadata.google"})
METADATA_IPS = frozenset(
    {
        ipaddress.ip_address("169.254.169.254"),
        ipaddress.ip_address("169.254.170.2"),
        ipaddress.ip_address("fd00:ec2::254"),
    }
)

# Checked in order; the first matching category names the error
BLOCKED_NETWORKS = [
    ("loopback", [ipaddress.ip_network("127.0.0.0/8"), ipaddress.ip_network("::1/128")]),
    ("unspecified", [ipaddress.ip_network("0.0.0.0/8"), ipaddress.ip_network("::/128")]),
    ("link-local", [ipaddress.ip_network("169.254.0.0/16"), ipaddress.ip_network("fe80::/10")]),
    (
        "private",
        [
            ipaddress.ip_network("10.0.0.0/8"),
            ipaddress.ip_network("172.16.0.0/12"),
            ipaddress.ip_network("192.168.0.0/16"),
            ipaddress.ip_network("fc00::/7"),
        ],
    ),
]

# IPv6 ranges that embed an IPv4 address
NAT64_NETWORK = ipaddress.ip_network("64:ff9b::/96")
IPV4_COMPATIBLE_NETWORK = ipaddress.ip_network("::/96")

_CATEGORY_MESSAGES = {
    "loopback": "Requests to loopback addresses are not allowed",
    "unspecified": "Requests to unspecified addresses are not allowed",
    "link-local": "Requests to link-local addresses are not allowed",
    "private": "Requests to private network addresses are not allowed",
}


class SSRFBlocked(Exception):
    """An outbound URL or interpolated value failed the request guard."""

    pass


@dataclass(frozen=True)
class UrlValidation:
    valid: bool
    url: str | None = None
    error: str | None = None


def sanitize_mock_value(value) -> str:
    """Stringify a value for interpolation, blocking anything URL-shaped."""
    if isinstance(value, str):
        text = value
    elif value is None or isinstance(value, (bool, dict, list)):
        text = json.dumps(value)
    else:
        text = str(value)

    stripped = text.lstrip()
    if _URL_SCHEME_RE.match(stripped) or stripped.startswith("//"):
        return BLOCKED_URL_SENTINEL
    return text


def _parse_ip(host: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    """Parse ``host`` as an IP literal, including legacy IPv4 spellings.

    ``2130706433``, ``0x7f.1`` and ``0177.0.0.1`` all name 127.0.0.1 for most
    HTTP stacks, so they are normalized through ``inet_aton`` before checking.
    """
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        pass
    if ":" in host or not re.fullmatch(r"[0-9a-fx.]+", host) or not any(c.isdigit() for c in host):
        return None
    try:
        return ipaddress.IPv4Address(socket.inet_aton(host))
    except OSError:
        return None


def _embedded_ipv4(ip: ipaddress.IPv6Address) -> ipaddress.IPv4Address | None:
    """IPv4 address carried by a mapped, 6to4, NAT64 or Teredo address."""
    if ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    if ip.sixtofour is not None:
        return ip.sixtofour
    if ip in NAT64_NETWORK:
        return ipaddress.IPv4Address(int(ip) & 0xFFFFFFFF)
    if ip.teredo is not None:
        return ip.teredo[1]
    return None


def _ip_block_reason(ip: ipaddress.IPv4Address | ipaddress.IPv6Address) -> str | None:
    if isinstance(ip, ipaddress.IPv6Address):
        embedded = _embedded_ipv4(ip)
        if embedded is not None:
            return _ip_block_reason(embedded)
    if ip in METADATA_IPS:
        return "Requests to cloud metadata endpoints are not allowed"
    for category, networks in BLOCKED_NETWORKS:
        if any(ip.version == net.version and ip in net for net in networks):
            return _CATEGORY_MESSAGES[category]
    # Deprecated ::a.b.c.d form; :: and ::1 are caught above
    if ip.version == 6 and ip in IPV4_COMPATIBLE_NETWORK:
        return "Requests to IPv4-compatible IPv6 addresses are not allowed"
    return None


def _host_block_reason(host: str, settings: GuardSettings) -> str | None:
    if host == "localhost" or host.endswith(".localhost"):
        return "Requests to localhost are not allowed"
    if host in METADATA_HOSTS:
        return "Requests to cloud metadata endpoints are not allowed"
    for blocked in settings.blocked_hosts:
        blocked = blocked.lower().rstrip(".")
        if host == blocked or host.endswith("." + blocked):
            return f"Requests to blocked host are not allowed: {blocked}"
    return None


def parse_and_validate_url(url: str, settings: GuardSettings | None = None) -> UrlValidation:
    """Validate an outbound URL.

    Returns a ``UrlValidation``; on success ``url`` is the normalized URL built
    from the parsed components (lowercase scheme and host, default port
    dropped, empty path as ``/``).
    """
    settings = settings or GuardSettings()

    if not isinstance(url, str) or not url.strip():
        return UrlValidation(valid=False, error="URL is empty")

    try:
        parts = urlsplit(url.strip())
        port = parts.port
    except ValueError as e:
        return UrlValidation(valid=False, error=f"Invalid URL: {e}")

    scheme = parts.scheme.lower()
    if scheme not in ALLOWED_SCHEMES:
        return UrlValidation(
            valid=False, error=f"Only HTTP/HTTPS URLs are allowed, got: {scheme or '(none)'}"
        )

    host = (parts.hostname or "").rstrip(".")
    if not host:
        return UrlValidation(valid=False, error="URL has no host")

    reason = _host_block_reason(host, settings)
    ip = _parse_ip(host)
    if reason is None and ip is not None:
        reason = _ip_block_reason(ip)
    if reason is not None:
        logger.warning(f"Blocked outbound URL to {host}: {reason}")
        return UrlValidation(valid=False, error=reason)

    if ip is not None:
        host = f"[{ip.compressed}]" if ip.version == 6 else str(ip)
    netloc = host
    if port is not None and port != DEFAULT_PORTS[scheme]:
        netloc = f"{netloc}:{port}"
    if parts.username is not None:
        userinfo = parts.username
        if parts.password is not None:
            userinfo = f"{userinfo}:{parts.password}"
        netloc = f"{userinfo}@{netloc}"

    normalized = urlunsplit((scheme, netloc, parts.path or "/", parts.query, parts.fragment))
    return UrlValidation(valid=True, url=normalized)


def check_resolved_addresses(hostname: str, settings: GuardSettings | None = None) -> list[str]:
    """Apply the IP checks to every address ``hostname`` resolves to.

    Returns the vetted addresses in resolver order. Callers connect to one of
    them instead of resolving the name again, so a second lookup cannot hand
    back a different (blocked) address. Returns an empty list when
    ``settings.resolve_hostnames`` is off or the hostname is already an IP
    literal (``parse_and_validate_url`` covers those).

    Raises:
        SSRFBlocked: If the name does not resolve or any address is blocked.
    """
    settings = settings or GuardSettings()
    host = hostname.strip("[]").rstrip(".")
    if not settings.resolve_hostnames or _parse_ip(host) is not None:
        return []

    try:
        infos = socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
    except socket.gaierror as e:
        raise SSRFBlocked(f"Could not resolve host {host}: {e}")

    addresses: list[str] = []
    for info in infos:
        address = info[4][0].split("%", 1)[0]
        reason = _ip_block_reason(ipaddress.ip_address(address))
        if reason is not None:
            raise SSRFBlocked(f"{reason} ({host} resolves to {address})")
        if address not in addresses:
            addresses.append(address)
    if not addresses:
        raise SSRFBlocked(f"Could not resolve host {host}: no addresses")
    return addresses
