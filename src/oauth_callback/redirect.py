"""
Redirect URL parsing.

The redirect URL registered with the identity provider decides where the
local callback listener has to live: which port it binds and which path
it routes.
"""

import ipaddress
import logging
import socket
from dataclasses import dataclass
from urllib.parse import urlsplit

from .exceptions import InvalidRedirectURLError

logger = logging.getLogger(__name__)

DEFAULT_PORTS = {"https": 443}
FALLBACK_PORT = 80

LOOPBACK_ADDRESS = "127.0.0.1"
ALL_INTERFACES = {4: "0.0.0.0", 6: "::"}


@dataclass(frozen=True)
class RedirectTarget:
    """
    Listener location derived from a redirect URL.

    Attributes:
        scheme: URL scheme ("http" or "https")
        host: Host name from the URL (decides the interface, see listen_address)
        port: Port the callback listener binds
        path: URL path the callback listener routes
    """

    scheme: str
    host: str
    port: int
    path: str

    @property
    def is_https(self) -> bool:
        return self.scheme == "https"


def parse_redirect_url(redirect_url: str) -> RedirectTarget:
    """
    Derive the listen host, port and callback path from a redirect URL.

    An explicit port is used as-is. Without one the port defaults to 443
    for https and 80 for anything else.

    Args:
        redirect_url: Redirect URL (e.g., http://localhost:4567/callback)

    Returns:
        RedirectTarget with port and path

    Raises:
        InvalidRedirectURLError: If the URL is not syntactically valid
    """
    if not isinstance(redirect_url, str) or not redirect_url.strip():
        raise InvalidRedirectURLError("Redirect URL cannot be empty")

    try:
        parts = urlsplit(redirect_url)
        # .port validates the port lazily and raises ValueError
        explicit_port = parts.port
    except ValueError as e:
        logger.error(f"Failed to parse redirect URL {redirect_url!r}: {e}")
        raise InvalidRedirectURLError(
            f"Failed to parse redirect URL {redirect_url!r}: {e}"
        ) from e

    if not parts.scheme or not parts.hostname:
        logger.error(f"Redirect URL {redirect_url!r} has no scheme or host")
        raise InvalidRedirectURLError(
            f"Redirect URL must be absolute (scheme://host[:port]/path), got {redirect_url!r}"
        )

    scheme = parts.scheme.lower()
    if explicit_port is not None:
        port = explicit_port
    else:
        port = DEFAULT_PORTS.get(scheme, FALLBACK_PORT)

    if not 1 <= port <= 65535:
        raise InvalidRedirectURLError(
            f"Redirect URL port must be between 1 and 65535, got {port}"
        )

    return RedirectTarget(
        scheme=scheme,
        host=parts.hostname,
        port=port,
        path=parts.path or "/",
    )


def _is_local_address(address) -> bool:
    family = socket.AF_INET6 if address.version == 6 else socket.AF_INET
    try:
        with socket.socket(family, socket.SOCK_STREAM) as sock:
            sock.bind((str(address), 0))
    except OSError:
        return False
    return True


def listen_address(target: RedirectTarget) -> str:
    """
    Choose the interface the callback listener binds for a redirect target.

    "localhost" and loopback addresses bind loopback only. An IP address
    assigned to this machine is bound as-is. Any other host (a public
    name, or an address reached through NAT or a proxy) binds all
    interfaces.

    Args:
        target: Parsed redirect URL

    Returns:
        Address to pass to the listener
    """
    host = target.host
    if host.lower() == "localhost":
        return LOOPBACK_ADDRESS

    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        logger.debug(f"Redirect host {host!r} is a name; listening on all interfaces")
        return ALL_INTERFACES[4]

    if address.is_loopback or _is_local_address(address):
        return str(address)

    logger.debug(f"Redirect host {host} is not local; listening on all interfaces")
    return ALL_INTERFACES[address.version]
