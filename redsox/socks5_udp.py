"""SOCKS5 UDP ASSOCIATE: control-channel handshake and datagram framing."""

from __future__ import annotations

import enum
import ipaddress
import logging
import socket
from typing import Optional, Tuple, Union

from redsox.addresses import SockAddr, format_sockaddr
from redsox.socks5 import (
    PASSWORD_PASSED,
    PASSWORD_VERSION,
    SOCKS5_VERSION,
    AddressType,
    AuthMethod,
    Command,
    Socks5Error,
    Socks5Status,
    build_command,
    build_methods,
    build_password,
    check_auth_method,
    is_valid_cred,
    status_to_str,
)

log = logging.getLogger(__name__)

REPLY_HEADER_SIZE = 4
PREAMBLE_HEADER_SIZE = 4
_ADDR_SIZES = {AddressType.IPV4: 4, AddressType.IPV6: 16}


class Socks5UdpError(Socks5Error):
    """The UDP association failed or a datagram could not be framed."""


def build_udp_preamble(addr: SockAddr) -> bytes:
    """Build the header put in front of every datagram sent through the relay."""
    if not isinstance(addr, SockAddr):
        raise Socks5UdpError(f"Unknown address type: {addr!r}")
    addrtype = AddressType.IPV4 if addr.host.version == 4 else AddressType.IPV6
    # Reserved (2 bytes), fragment number 0: fragmentation is not supported.
    head = bytes([0, 0, 0, addrtype])
    return head + addr.host.packed + addr.port.to_bytes(2, "big")


def _decode_addr(addrtype: int, data: bytes) -> SockAddr:
    addr_len = _ADDR_SIZES[AddressType(addrtype)]
    raw = bytes(data[:addr_len])
    host = ipaddress.IPv4Address(raw) if addr_len == 4 else ipaddress.IPv6Address(raw)
    port = int.from_bytes(data[addr_len:addr_len + 2], "big")
    return SockAddr(host, port)


def parse_udp_packet(data: bytes) -> Tuple[SockAddr, bytes]:
    """Split a datagram from the relay into its source address and payload."""
    if len(data) < PREAMBLE_HEADER_SIZE:
        raise Socks5UdpError("Packet too short.")
    frag_no, addrtype = data[2], data[3]
    if frag_no != 0:
        raise Socks5UdpError(
            f"Got fragment #{frag_no}. Packet fragmentation is not supported!"
        )
    if addrtype not in (AddressType.IPV4, AddressType.IPV6):
        raise Socks5UdpError(f"Got address type #{addrtype}.")
    header_size = PREAMBLE_HEADER_SIZE + _ADDR_SIZES[AddressType(addrtype)] + 2
    if len(data) < header_size:
        raise Socks5UdpError("Packet too short.")
    source = _decode_addr(addrtype, data[PREAMBLE_HEADER_SIZE:header_size])
    return source, bytes(data[header_size:])


def associate_reply_size(family: int) -> int:
    """Return the size of an associate reply carrying an address of ``family``."""
    size = REPLY_HEADER_SIZE
    if family == socket.AF_INET:
        size += _ADDR_SIZES[AddressType.IPV4] + 2
    elif family == socket.AF_INET6:
        size += _ADDR_SIZES[AddressType.IPV6] + 2
    return size


def parse_associate_reply(data: bytes) -> Optional[Tuple[SockAddr, int]]:
    """Parse a UDP ASSOCIATE reply.

    Returns the bound address and the reply's length, or None when more bytes
    are needed. Raises Socks5UdpError on a bad version, status or address type.
    """
    if len(data) < REPLY_HEADER_SIZE:
        return None
    version, status, _reserved, addrtype = data[:REPLY_HEADER_SIZE]
    if version != SOCKS5_VERSION:
        raise Socks5UdpError(
            f"Socks5 server reported unexpected reply version: {version}"
        )
    if status != Socks5Status.SUCCEEDED:
        raise Socks5UdpError(
            f'Socks5 server status: "{status_to_str(status)}" ({status})', status
        )
    if addrtype == AddressType.IPV4:
        size = associate_reply_size(socket.AF_INET)
    elif addrtype == AddressType.IPV6:
        size = associate_reply_size(socket.AF_INET6)
    else:
        raise Socks5UdpError(f"Socks5 server replies bad address type: {addrtype}")
    if len(data) < size:
        return None
    return _decode_addr(addrtype, data[REPLY_HEADER_SIZE:size]), size


class _State(enum.Enum):
    NEW = enum.auto()
    METHOD_SENT = enum.auto()
    AUTH_SENT = enum.auto()
    ASSOC_SENT = enum.auto()
    READY = enum.auto()


class Socks5UdpAssociation:
    """Client side of a SOCKS5 UDP association, independent of any socket.

    ``start()`` and ``feed()`` drive the TCP control channel to the relay at
    ``relayaddr``. Once ``ready`` is true, ``udp_relay`` is where datagrams go:
    the relay's host with the port from the associate reply. ``wrap()`` frames
    outgoing datagrams and ``unwrap()`` checks and unframes incoming ones.
    """

    def __init__(self, relayaddr: SockAddr, destaddr: SockAddr,
                 login: Optional[Union[str, bytes]] = None,
                 password: Optional[Union[str, bytes]] = None) -> None:
        self.relayaddr = relayaddr
        self.destaddr = destaddr
        self.login = login
        self.password = password
        self.do_password = is_valid_cred(login, password)
        self.udp_relay: Optional[SockAddr] = None
        self._state = _State.NEW
        self._buffer = bytearray()

    @property
    def ready(self) -> bool:
        return self._state is _State.READY

    def start(self) -> bytes:
        """Return the method-selection request for the control channel."""
        if self._state is not _State.NEW:
            raise Socks5UdpError("association already started")
        log.debug("via %s", format_sockaddr(self.relayaddr))
        self._state = _State.METHOD_SENT
        return build_methods(self.do_password)

    def feed(self, data: bytes) -> bytes:
        """Consume control-channel bytes; return what must be sent next."""
        if self._state is _State.NEW:
            raise Socks5UdpError("data received before the association started")
        self._buffer += data
        out = bytearray()
        while not self.ready:
            step = self._step()
            if step is None:
                break
            out += step
        return bytes(out)

    def _associate_request(self) -> bytes:
        any_host = (ipaddress.IPv4Address(0) if self.destaddr.host.version == 4
                    else ipaddress.IPv6Address(0))
        self._state = _State.ASSOC_SENT
        return build_command(Command.UDP_ASSOCIATE, SockAddr(any_host, 0))

    def _take(self, count: int) -> Optional[bytes]:
        if len(self._buffer) < count:
            return None
        chunk = bytes(self._buffer[:count])
        del self._buffer[:count]
        return chunk

    def _step(self) -> Optional[bytes]:
        state = self._state
        if state is _State.METHOD_SENT:
            chunk = self._take(2)
            if chunk is None:
                return None
            version, method = chunk
            try:
                check_auth_method(version, method, self.do_password)
            except Socks5Error as exc:
                raise Socks5UdpError(f"socks5_is_known_auth_method: {exc}") from exc
            if method == AuthMethod.NONE:
                return self._associate_request()
            self._state = _State.AUTH_SENT
            return build_password(self.login, self.password)
        if state is _State.AUTH_SENT:
            chunk = self._take(2)
            if chunk is None:
                return None
            version, status = chunk
            if version != PASSWORD_VERSION or status != PASSWORD_PASSED:
                raise Socks5UdpError(
                    f"Socks5 authentication error. Version: {version}, "
                    f"error code: {status}",
                    status,
                )
            return self._associate_request()
        if state is _State.ASSOC_SENT:
            parsed = parse_associate_reply(bytes(self._buffer))
            if parsed is None:
                return None
            bound, size = parsed
            del self._buffer[:size]
            # The relay's own host is used; only the port comes from the reply.
            self.udp_relay = self.relayaddr.with_port(bound.port)
            self._state = _State.READY
            return b""
        raise Socks5UdpError(f"unexpected data in state {state.name}")

    def wrap(self, addr: SockAddr, payload: bytes) -> bytes:
        """Frame a datagram for ``addr`` to be sent to ``udp_relay``."""
        if not self.ready:
            raise Socks5UdpError("association is not ready")
        return build_udp_preamble(addr) + bytes(payload)

    def unwrap(self, source: SockAddr, data: bytes) -> Tuple[SockAddr, bytes]:
        """Check a datagram received from ``source`` and return its origin and payload."""
        if not self.ready:
            raise Socks5UdpError("association is not ready")
        if source != self.udp_relay:
            raise Socks5UdpError(
                f"Got packet from unexpected address {format_sockaddr(source)}."
            )
        return parse_udp_packet(data)