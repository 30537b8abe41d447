"""Rate limiting for the auth endpoints.

Keys on the client IP. ``X-Forwarded-For`` is honored only when the direct
peer is a trusted proxy, so clients cannot spoof their address.
"""

import ipaddress
import os
from functools import lru_cache

from slowapi import Limiter
from slowapi.util import get_remote_address

# Override with TRUSTED_PROXY_CIDRS (comma-separated)
DEFAULT_TRUSTED_CIDRS = "10.0.0.0/8,172.16.0.0/12,192.168.0.0/16,127.0.0.0/8,::1/128"

AUTH_RATE_LIMIT = "5/minute"


@lru_cache
def trusted_networks() -> tuple:
    raw = os.environ.get("TRUSTED_PROXY_CIDRS") or DEFAULT_TRUSTED_CIDRS
    networks = []
    for cidr in raw.split(","):
        cidr = cidr.strip()
        if not cidr:
            continue
        try:
            networks.append(ipaddress.ip_network(cidr, strict=False))
        except ValueError:
            continue
    return tuple(networks)


def _is_trusted_proxy(ip: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return any(addr in network for network in trusted_networks())


def get_client_ip(request) -> str:
    """Client address for rate-limit keys."""
    peer = get_remote_address(request)
    if _is_trusted_proxy(peer):
        forwarded = request.headers.get("x-forwarded-for", "")
        original = forwarded.split(",")[0].strip()
        if original:
            return original
    return peer


def rate_limit_enabled() -> bool:
    """RATE_LIMIT_ENABLED=false turns limits off (test runs, local tooling)."""
    return os.environ.get("RATE_LIMIT_ENABLED", "true").strip().lower() not in ("0", "false", "no")


limiter = Limiter(key_func=get_client_ip, enabled=rate_limit_enabled())
