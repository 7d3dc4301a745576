"""Relay connections and socket helpers."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
import sys
from typing import Iterable, Optional, Tuple

from redsox.addresses import (
    IP_ORIGDSTADDR,
    IP_TRANSPARENT,
    IPV6_ORIGDSTADDR,
    IPV6_TRANSPARENT,
    SOL_IP,
    SOL_IPV6,
    SockAddr,
    format_sockaddr,
)

log = logging.getLogger(__name__)

CONTROL_SIZE = 1024
DEFAULT_BUFSIZE = 65507


class RelayError(Exception):
    """A relay connection or a socket operation failed."""


async def connect_relay(addr: SockAddr, timeout: Optional[float] = None,
                        first_data: bytes = b""
                        ) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Open a TCP connection to ``addr`` and queue ``first_data`` on it.

    ``timeout`` bounds the connection setup in seconds; None waits forever.
    """
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(str(addr.host), addr.port, family=addr.family),
            timeout,
        )
    except (OSError, asyncio.TimeoutError) as exc:
        log.info("connect: %s", exc)
        raise RelayError(f"connect to {format_sockaddr(addr)} failed: {exc!r}") from exc

    sock = writer.get_extra_info("socket")
    try:
        if sock is not None:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
        if first_data:
            writer.write(bytes(first_data))
            await writer.drain()
    except OSError as exc:
        writer.close()
        log.info("relay setup: %s", exc)
        raise RelayError(f"relay setup for {format_sockaddr(addr)} failed: {exc}") from exc
    return reader, writer


def socket_error(sock: socket.socket) -> int:
    """Return the pending error number of ``sock`` (0 when there is none)."""
    return sock.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)


def _decode_sockaddr(raw: bytes) -> Optional[SockAddr]:
    if len(raw) < 4:
        return None
    family = int.from_bytes(raw[0:2], sys.byteorder)
    port = int.from_bytes(raw[2:4], "big")
    if family == socket.AF_INET and len(raw) >= 8:
        return SockAddr(ipaddress.IPv4Address(bytes(raw[4:8])), port)
    if family == socket.AF_INET6 and len(raw) >= 24:
        return SockAddr(ipaddress.IPv6Address(bytes(raw[8:24])), port)
    log.warning("unexepcted socket address type: %d", family)
    return None


def _original_destination(ancdata) -> Optional[SockAddr]:
    for level, kind, raw in ancdata:
        if (level, kind) in ((SOL_IP, IP_ORIGDSTADDR), (SOL_IPV6, IPV6_ORIGDSTADDR)):
            return _decode_sockaddr(raw)
        log.warning("unexepcted cmsg (level,type) = (%d,%d)", level, kind)
    return None


def recv_udp_packet(sock: socket.socket, bufsize: int = DEFAULT_BUFSIZE
                    ) -> Tuple[bytes, SockAddr, Optional[SockAddr]]:
    """Receive one datagram.

    Returns the payload, its source and the original destination reported by
    the kernel (None when the socket does not receive it). A datagram that
    fills the whole buffer is treated as truncated and raises RelayError.
    """
    try:
        data, ancdata, flags, source = sock.recvmsg(bufsize, CONTROL_SIZE)
    except OSError as exc:
        log.warning("recvfrom: %s", exc)
        raise RelayError(f"recvfrom: {exc}") from exc
    source_addr = SockAddr.from_tuple(source)
    if len(data) >= bufsize or flags & getattr(socket, "MSG_TRUNC", 0):
        log.warning(
            "wow! Truncated udp packet of size %d from %s! impossible! dropping it...",
            len(data), format_sockaddr(source_addr),
        )
        raise RelayError(f"truncated udp packet from {format_sockaddr(source_addr)}")
    return data, source_addr, _original_destination(ancdata)


def _try_setsockopt(sock: socket.socket, level: int, option: int, value: int,
                    what: str) -> bool:
    try:
        sock.setsockopt(level, option, value)
    except OSError as exc:
        log.debug("%s: %s", what, exc)
        return False
    return True


def make_socket_transparent(sock: socket.socket) -> bool:
    """Enable transparent proxying on ``sock``; True if the IPv4 option was set."""
    ok4 = _try_setsockopt(sock, SOL_IP, IP_TRANSPARENT, 1,
                          "setsockopt(fd, SOL_IP, IP_TRANSPARENT)")
    ok6 = _try_setsockopt(sock, SOL_IPV6, IPV6_TRANSPARENT, 1,
                          "setsockopt(fd, SOL_IPV6, IPV6_TRANSPARENT)")
    if not ok4 and not ok6:
        log.error("Can not make socket transparent. See debug log for details.")
    return ok4


def apply_tcp_fastopen(sock: socket.socket) -> bool:
    """Enable TCP Fast Open on a listening socket; False if unavailable or refused."""
    option = getattr(socket, "TCP_FASTOPEN", None)
    if option is None:
        return False
    value = 1 if sys.platform == "darwin" else 5
    try:
        sock.setsockopt(socket.IPPROTO_TCP, option, value)
    except OSError as exc:
        log.error("setsockopt: %s", exc)
        return False
    return True


def copy_limited(chunks: Iterable[bytes], limit: int, skip: int = 0) -> bytes:
    """Join ``chunks``, dropping the first ``skip`` bytes and keeping at most ``limit``."""
    if limit < 0 or skip < 0:
        raise ValueError("limit and skip must not be negative")
    out = bytearray()
    for chunk in chunks:
        if len(out) >= limit:
            break
        if skip >= len(chunk):
            skip -= len(chunk)
            continue
        piece = chunk[skip:skip + (limit - len(out))]
        skip = 0
        out += piece
    return bytes(out)