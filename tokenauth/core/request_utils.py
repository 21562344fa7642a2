"""Request utility functions for resolving the requesting origin."""

import ipaddress
import logging

from fastapi import Request

from tokenauth.services.errors import InvalidOriginError

logger = logging.getLogger(__name__)

# Header consulted for each non-socket origin source
_ORIGIN_HEADERS = {
    "x-real-ip": "X-Real-IP",
    "cf-connecting-ip": "CF-Connecting-IP",
}


def _is_valid_ip(ip_str: str) -> bool:
    """Check if a string is a valid IP address."""
    try:
        ipaddress.ip_address(ip_str)
        return True
    except ValueError:
        return False


def split_host_port(address: str | None) -> str:
    """Split a ``host:port`` (or ``[v6]:port``) address and return the bare host.

    Raises:
        InvalidOriginError: if the address is missing, has no port,
            or the host part is not an IP address.
    """
    if not address:
        raise InvalidOriginError("Can not get client IP")

    if address.startswith("["):
        host, sep, port = address[1:].partition("]:")
    else:
        host, sep, port = address.rpartition(":")
        if ":" in host:
            # Unbracketed IPv6 with a port is ambiguous
            raise InvalidOriginError("Invalid client IP")

    if not sep or not host or not port.isdigit():
        raise InvalidOriginError("Invalid client IP")
    if not _is_valid_ip(host):
        raise InvalidOriginError("Invalid client IP")
    return host


def get_request_origin(request: Request, source: str = "socket") -> str:
    """Resolve the raw ``host:port`` address of a request.

    ``source`` selects where the origin comes from:
    - ``socket``: the direct peer of the connection
    - ``x-real-ip`` / ``cf-connecting-ip``: a header set by a trusted proxy;
      the port is taken from the socket since proxies only forward the host

    Returns an empty string when nothing is available so that
    split_host_port() reports it uniformly.
    """
    port = request.client.port if request.client else 0

    header = _ORIGIN_HEADERS.get(source)
    if header:
        value = (request.headers.get(header) or "").strip()
        if not value:
            logger.warning(f"Origin header {header} missing from request")
            return ""
        if ":" in value:
            return f"[{value}]:{port}"
        return f"{value}:{port}"

    if request.client is None or not request.client.host:
        return ""
    host = request.client.host
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"
