"""SOCKS4 client handshake: request builder, reply parser and state machine."""

from __future__ import annotations

import enum
import ipaddress
import logging
from typing import Optional, Union

from redsox.addresses import SockAddr

log = logging.getLogger(__name__)

SOCKS4_VERSION = 4
SOCKS4_CMD_CONNECT = 1
SOCKS4_CMD_BIND = 2
REPLY_SIZE = 8


class Socks4Status(enum.IntEnum):
    """Reply codes sent by a SOCKS4 server."""

    OK = 90
    FAIL = 91
    NO_IDENT = 92
    FAKE_IDENT = 93


_STATUS_TEXT = {
    Socks4Status.FAIL: "fail",
    Socks4Status.NO_IDENT: "no ident",
    Socks4Status.FAKE_IDENT: "fake ident",
}


class Socks4Error(Exception):
    """The SOCKS4 server refused the request or sent a malformed reply."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


def build_connect_request(addr: SockAddr, login: Optional[Union[str, bytes]] = None) -> bytes:
    """Build a CONNECT request for the IPv4 address ``addr``."""
    if addr.host.version != 4:
        raise ValueError("SOCKS4 supports IPv4 destinations only")
    user = b"" if login is None else (login.encode("utf-8") if isinstance(login, str) else bytes(login))
    head = bytes([SOCKS4_VERSION, SOCKS4_CMD_CONNECT]) + addr.port.to_bytes(2, "big")
    return head + addr.host.packed + user + b"\x00"


def parse_reply(data: bytes) -> SockAddr:
    """Check an 8-byte reply and return the address it carries.

    Raises Socks4Error when the reply is short, has a wrong version or
    reports failure.
    """
    if len(data) < REPLY_SIZE:
        raise Socks4Error("Socks4 reply is too short")
    version, status = data[0], data[1]
    if version != 0:
        raise Socks4Error("Socks4 server reported unexpected reply version...")
    if status != Socks4Status.OK:
        text = _STATUS_TEXT.get(status, "?")
        raise Socks4Error(f"Socks4 server status: {text} ({status})", status)
    port = int.from_bytes(data[2:4], "big")
    return SockAddr(ipaddress.IPv4Address(bytes(data[4:8])), port)


class _State(enum.Enum):
    NEW = enum.auto()
    REQUEST_SENT = enum.auto()
    REPLY_CAME = enum.auto()


class Socks4Handshake:
    """Client side of a SOCKS4 CONNECT handshake, independent of any socket."""

    def __init__(self, destaddr: SockAddr,
                 login: Optional[Union[str, bytes]] = None,
                 password: Optional[Union[str, bytes]] = None) -> None:
        if password is not None:
            log.warning("password is ignored for socks4 connections")
        self.destaddr = destaddr
        self.login = login
        self.bound: Optional[SockAddr] = None
        self._state = _State.NEW
        self._buffer = bytearray()

    @property
    def done(self) -> bool:
        return self._state is _State.REPLY_CAME

    @property
    def leftover(self) -> bytes:
        return bytes(self._buffer) if self.done else b""

    def start(self) -> bytes:
        """Return the CONNECT request to send to the server."""
        if self._state is not _State.NEW:
            raise Socks4Error("handshake already started")
        request = build_connect_request(self.destaddr, self.login)
        self._state = _State.REQUEST_SENT
        return request

    def feed(self, data: bytes) -> bool:
        """Consume server bytes; return True once the relay can start."""
        if self._state is _State.NEW:
            raise Socks4Error("data received before the request was sent")
        self._buffer += data
        if self._state is _State.REQUEST_SENT and len(self._buffer) >= REPLY_SIZE:
            reply = bytes(self._buffer[:REPLY_SIZE])
            del self._buffer[:REPLY_SIZE]
            self.bound = parse_reply(reply)
            self._state = _State.REPLY_CAME
        return self.done