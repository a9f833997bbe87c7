"""Preview URL resolution.

Turns the configured host prefix and a session's port into the URL a
browser uses to reach the dev server. Pure functions only, no I/O.
"""

import ipaddress
from urllib.parse import urlsplit

LOOPBACK_HOSTNAMES = {"localhost", "localhost.localdomain", "ip6-localhost"}


def _parse_ip(host: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        return None


def _normalize_domain(serve_domain: str) -> str:
    domain = serve_domain.strip()
    if "://" in domain:
        domain = domain.split("://", 1)[1]
    return domain.strip("/").lstrip(".")


def is_loopback_host(host: str) -> bool:
    """Return True if ``host`` names the local machine."""
    host = host.lower()
    if host in LOOPBACK_HOSTNAMES or host.endswith(".localhost"):
        return True
    ip = _parse_ip(host)
    return ip is not None and ip.is_loopback


def resolve_url(host_prefix: str, port: int, serve_domain: str = "") -> str:
    """Resolve the preview URL for a dev server.

    Rules:
    - Loopback prefix (``localhost``, ``127.x.x.x``, ``::1``): the port is
      appended, replacing any port already present in the prefix.
    - Plain IPv4 prefix: rewritten to ``https://<port>.<serve_domain>`` so the
      preview goes through the per-port proxy domain. The allocated port
      always wins over a port written in the prefix. Without a serve domain
      the URL falls back to ``<scheme>://<ip>:<port>``.
    - IPv6 literal: the port is appended to the bracketed address.
    - Domain name: returned unchanged (minus a trailing slash).

    Args:
        host_prefix: Configured prefix, e.g. ``http://localhost``.
        port: The port allocated to the session.
        serve_domain: Domain used to template raw-IPv4 prefixes.

    Returns:
        The externally reachable preview URL.

    Raises:
        ValueError: If the prefix has no host component.

    Examples:
        >>> resolve_url("http://localhost", 5173)
        'http://localhost:5173'
        >>> resolve_url("http://10.0.0.5", 5180, "example.dev")
        'https://5180.example.dev'
        >>> resolve_url("https://preview.example.com", 5173)
        'https://preview.example.com'
    """
    prefix = host_prefix.strip()
    if "://" not in prefix:
        prefix = f"http://{prefix}"

    parts = urlsplit(prefix)
    host = parts.hostname
    if not host:
        raise ValueError(f"Host prefix has no host: {host_prefix!r}")
    scheme = parts.scheme or "http"

    if is_loopback_host(host):
        display_host = f"[{host}]" if ":" in host else host
        return f"{scheme}://{display_host}:{port}"

    ip = _parse_ip(host)
    if isinstance(ip, ipaddress.IPv4Address):
        domain = _normalize_domain(serve_domain)
        if domain:
            return f"https://{port}.{domain}"
        return f"{scheme}://{host}:{port}"
    if isinstance(ip, ipaddress.IPv6Address):
        return f"{scheme}://[{host}]:{port}"

    return host_prefix.strip().rstrip("/")
