"""Socket addresses: formatting, parsing, resolution and event-flag helpers."""

from __future__ import annotations

import enum
import ipaddress
import logging
import secrets
import socket
from dataclasses import dataclass
from typing import Union

log = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

# Socket option values that older C library headers may not define.
SOL_IP = getattr(socket, "SOL_IP", socket.IPPROTO_IP)
SOL_IPV6 = getattr(socket, "SOL_IPV6", socket.IPPROTO_IPV6)
IP_ORIGDSTADDR = getattr(socket, "IP_ORIGDSTADDR", 20)
IP_RECVORIGDSTADDR = getattr(socket, "IP_RECVORIGDSTADDR", IP_ORIGDSTADDR)
IPV6_ORIGDSTADDR = getattr(socket, "IPV6_ORIGDSTADDR", 74)
IPV6_RECVORIGDSTADDR = getattr(socket, "IPV6_RECVORIGDSTADDR", IPV6_ORIGDSTADDR)
IP_TRANSPARENT = getattr(socket, "IP_TRANSPARENT", 19)
IPV6_TRANSPARENT = getattr(socket, "IPV6_TRANSPARENT", 75)
INADDR_LOOPBACK = 0x7F000001

PLACEHOLDER = "???:???"


@dataclass(frozen=True)
class SockAddr:
    """An IPv4 or IPv6 address together with a port."""

    host: IPAddress
    port: int = 0

    def __post_init__(self) -> None:
        if not isinstance(self.host, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
            object.__setattr__(self, "host", ipaddress.ip_address(self.host))
        if not 0 <= self.port <= 0xFFFF:
            raise ValueError(f"port out of range: {self.port}")

    @property
    def family(self) -> socket.AddressFamily:
        if self.host.version == 4:
            return socket.AF_INET
        return socket.AF_INET6

    def with_port(self, port: int) -> SockAddr:
        """Return a copy of this address with another port."""
        return SockAddr(self.host, port)

    def to_tuple(self) -> tuple:
        """Return the address in the form the socket module expects."""
        if self.host.version == 4:
            return (str(self.host), self.port)
        return (str(self.host), self.port, 0, 0)

    @classmethod
    def from_tuple(cls, value: tuple) -> SockAddr:
        """Build an address from a socket-module address tuple."""
        return cls(ipaddress.ip_address(value[0]), int(value[1]))

    def __str__(self) -> str:
        return format_sockaddr(self)


def format_sockaddr(addr: object) -> str:
    """Render an address as ``a.b.c.d:port`` or ``[v6]:port``."""
    if not isinstance(addr, SockAddr):
        return PLACEHOLDER
    if addr.host.version == 6:
        return f"[{addr.host}]:{addr.port}"
    return f"{addr.host}:{addr.port}"


def _parse_port(port_text: str, text: str) -> int:
    if not port_text.isdigit():
        raise ValueError(f"invalid port in address: {text!r}")
    port = int(port_text)
    if not 0 < port <= 0xFFFF:
        raise ValueError(f"port out of range in address: {text!r}")
    return port


def parse_sockaddr_port(text: str, default_port: int = 0) -> SockAddr:
    """Parse ``host``, ``host:port``, ``[v6]`` or ``[v6]:port``.

    A missing port becomes ``default_port``. Raises ValueError on bad input.
    """
    port_text = None
    if text.startswith("["):
        end = text.find("]")
        if end < 0:
            raise ValueError(f"unterminated bracket in address: {text!r}")
        host_text = text[1:end]
        rest = text[end + 1:]
        if rest:
            if not rest.startswith(":"):
                raise ValueError(f"unexpected text after address: {text!r}")
            port_text = rest[1:]
        try:
            host = ipaddress.IPv6Address(host_text)
        except ValueError as exc:
            raise ValueError(f"invalid IPv6 address: {text!r}") from exc
    else:
        if text.count(":") == 1:
            host_text, port_text = text.split(":")
        else:
            host_text = text
        try:
            host = ipaddress.ip_address(host_text)
        except ValueError as exc:
            raise ValueError(f"invalid address: {text!r}") from exc
    port = default_port if port_text is None else _parse_port(port_text, text)
    return SockAddr(host, port)


def random_u32() -> int:
    """Return a cryptographically random unsigned 32-bit integer."""
    return secrets.randbits(32)


def resolve_hostname(hostname: str, family: int) -> SockAddr:
    """Resolve ``hostname`` to one address of ``family``, picked at random.

    The returned address carries port 0. Resolution failures raise OSError.
    """
    try:
        infos = socket.getaddrinfo(
            hostname,
            None,
            family,
            socket.SOCK_STREAM,
            socket.IPPROTO_TCP,
            socket.AI_ADDRCONFIG,
        )
    except OSError:
        log.info(
            "Unable to resolve hostname (%s): %s",
            "IPv6" if family == socket.AF_INET6 else "IPv4",
            hostname,
        )
        raise
    if not infos:
        raise OSError(f"{hostname} resolves to no addresses")
    chosen = infos[random_u32() % len(infos)]
    result = SockAddr(ipaddress.ip_address(chosen[4][0]), 0)
    if len(infos) != 1:
        log.warning(
            "%s resolves to %d addresses, using %s",
            hostname,
            len(infos),
            format_sockaddr(result),
        )
    return result


class BufferEventFlag(enum.IntFlag):
    """Event bits reported on buffered connections."""

    READING = 0x01
    WRITING = 0x02
    EOF = 0x10
    ERROR = 0x20
    TIMEOUT = 0x40
    CONNECTED = 0x80


_FLAG_ORDER = (
    BufferEventFlag.READING,
    BufferEventFlag.WRITING,
    BufferEventFlag.EOF,
    BufferEventFlag.ERROR,
    BufferEventFlag.TIMEOUT,
    BufferEventFlag.CONNECTED,
)
_KNOWN_MASK = sum(int(flag) for flag in _FLAG_ORDER)


def format_event_flags(what: int) -> str:
    """Describe event bits as ``READING|0|EOF|...|0x<unknown bits>``."""
    what = int(what)
    parts = [flag.name if what & flag else "0" for flag in _FLAG_ORDER]
    parts.append(f"0x{what & ~_KNOWN_MASK:x}")
    return "|".join(parts)