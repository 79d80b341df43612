"""Address resolution, comparison and validation helpers for sockets."""

from __future__ import annotations

import ipaddress
import socket
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple, Union

SOCKET_BUF_SIZE = 16 * 1024 - 1
MAX_HOSTNAME_LEN = 256
MAX_PORT_STR_LEN = 6
INET_SIZE = 4
INET6_SIZE = 16
UPDATE_INTERVAL = 5
MPTCP_ENABLED_VALUES = (42, 26)

_SO_REUSEPORT = getattr(socket, "SO_REUSEPORT", 15)
_VALID_LABEL_BYTES = frozenset(
    "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"
)
_SOCKADDR_LEN = {socket.AF_INET: 16, socket.AF_INET6: 28}

PortLike = Union[str, int, None]


class AddressError(Exception):
    """Raised when an address cannot be parsed or resolved."""


@dataclass(frozen=True)
class SockAddr:
    """A resolved IPv4 or IPv6 socket address."""

    family: int
    host: str
    port: int = 0

    @property
    def packed(self) -> bytes:
        """The address in network byte order."""
        return socket.inet_pton(self.family, self.host)

    @property
    def endpoint(self) -> Tuple[str, int]:
        """The (host, port) pair accepted by socket calls."""
        return (self.host, self.port)


def _atoi(value: PortLike) -> int:
    """Parse a port the lenient way: leading digits only, 0 otherwise."""
    if value is None:
        return 0
    if isinstance(value, int):
        return value & 0xFFFF
    text = value.lstrip()
    sign = 1
    if text[:1] in ("+", "-"):
        sign = -1 if text[0] == "-" else 1
        text = text[1:]
    digits = ""
    for ch in text:
        if not ch.isdigit():
            break
        digits += ch
    return (sign * int(digits) if digits else 0) & 0xFFFF


def _ip_literal(host: Optional[str]):
    if host is None:
        return None
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        return None


def get_sockaddr_len(family: int) -> int:
    """Size of the native socket address structure for ``family``, 0 if unknown."""
    return _SOCKADDR_LEN.get(family, 0)


def resolve_sockaddr(host: str, port: PortLike = None, ipv6first: bool = False) -> SockAddr:
    """Turn a host and port into a SockAddr, resolving names when needed.

    IP literals are used as they are. Names are resolved and an address of the
    preferred family (IPv6 when ``ipv6first``, else IPv4) is chosen, falling
    back to the first address returned.
    """
    ip = _ip_literal(host)
    if ip is not None:
        family = socket.AF_INET if ip.version == 4 else socket.AF_INET6
        return SockAddr(family, str(ip), _atoi(port))

    service = None if port is None else str(port)
    try:
        results = socket.getaddrinfo(host, service, socket.AF_UNSPEC, socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError) as exc:
        raise AddressError(f"getaddrinfo: {exc}") from exc

    prefer = socket.AF_INET6 if ipv6first else socket.AF_INET
    chosen = next((r for r in results if r[0] == prefer), None)
    if chosen is None and results:
        chosen = results[0]
    if chosen is None or chosen[0] not in (socket.AF_INET, socket.AF_INET6):
        raise AddressError("failed to resolve remote addr")
    family, _, _, _, sockaddr = chosen
    return SockAddr(int(family), sockaddr[0], sockaddr[1])


def parse_local_addr(host: Optional[str]) -> SockAddr:
    """Build an outbound bind address (port 0) from an IP literal."""
    ip = _ip_literal(host)
    if ip is None:
        raise AddressError(f"not an IP address: {host!r}")
    family = socket.AF_INET if ip.version == 4 else socket.AF_INET6
    return SockAddr(family, str(ip), 0)


def _sign(a, b) -> int:
    return (a > b) - (a < b)


def sockaddr_cmp(addr1: SockAddr, addr2: SockAddr) -> int:
    """Order two addresses by family, then port, then address bytes."""
    result = _sign(addr1.family, addr2.family)
    if result:
        return result
    result = _sign(addr1.port, addr2.port)
    if result:
        return result
    return _sign(addr1.packed, addr2.packed)


def sockaddr_cmp_addr(addr1: SockAddr, addr2: SockAddr) -> int:
    """Order two addresses by family and address bytes, ignoring the port."""
    result = _sign(addr1.family, addr2.family)
    if result:
        return result
    return _sign(addr1.packed, addr2.packed)


def validate_hostname(hostname: Optional[str]) -> bool:
    """Check that ``hostname`` is a syntactically valid DNS name."""
    if hostname is None:
        return False
    if not 1 <= len(hostname) <= 255:
        return False
    if hostname.startswith("."):
        return False
    labels = hostname.split(".")
    if hostname.endswith("."):
        labels.pop()
    for label in labels:
        if not 1 <= len(label) <= 63:
            return False
        if label[0] == "-" or label[-1] == "-":
            return False
        if not set(label) <= _VALID_LABEL_BYTES:
            return False
    return True


def is_ipv6only(servers: Iterable[Tuple[str, PortLike]], ipv6first: bool = False) -> bool:
    """True when every server resolves to an IPv6 address."""
    return all(
        resolve_sockaddr(host, port, ipv6first).family == socket.AF_INET6
        for host, port in servers
    )


def set_reuseport(sock: socket.socket) -> None:
    """Enable SO_REUSEPORT on ``sock``."""
    sock.setsockopt(socket.SOL_SOCKET, _SO_REUSEPORT, 1)