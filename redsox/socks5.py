"""SOCKS5 client handshake: message builders and a sans-IO state machine."""

from __future__ import annotations

import enum
import logging
from typing import Optional, Union

from redsox.addresses import SockAddr

log = logging.getLogger(__name__)

SOCKS5_VERSION = 5
PASSWORD_VERSION = 0x01
PASSWORD_PASSED = 0x00
REPLY_MAXLEN = 512

REPLY_HEADER_SIZE = 4
ADDR_IPV4_SIZE = 4 + 2
ADDR_IPV6_SIZE = 16 + 2
PORT_SIZE = 2
MAX_CRED_LEN = 255


class Socks5Status(enum.IntEnum):
    """Reply codes sent by a SOCKS5 server."""

    SUCCEEDED = 0
    SERVER_FAILURE = 1
    CONNECTION_NOT_ALLOWED = 2
    NETWORK_UNREACHABLE = 3
    HOST_UNREACHABLE = 4
    CONNECTION_REFUSED = 5
    TTL_EXPIRED = 6
    COMMAND_NOT_SUPPORTED = 7
    ADDRESS_TYPE_NOT_SUPPORTED = 8


class AuthMethod(enum.IntEnum):
    """Authentication methods negotiated at the start of a session."""

    NONE = 0x00
    GSSAPI = 0x01
    PASSWORD = 0x02
    INVALID = 0xFF


class AddressType(enum.IntEnum):
    """Address kinds carried in requests and replies."""

    IPV4 = 1
    DOMAIN = 3
    IPV6 = 4


class Command(enum.IntEnum):
    """Request commands."""

    CONNECT = 1
    BIND = 2
    UDP_ASSOCIATE = 3


class Socks5Error(Exception):
    """The SOCKS5 server sent something the client cannot accept."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


_STATUS_TEXT = (
    "ok",
    "server failure",
    "connection not allowed by ruleset",
    "network unreachable",
    "host unreachable",
    "connection refused",
    "TTL expired",
    "command not supported",
    "address type not supported",
)


def status_to_str(status: int) -> str:
    """Return the description of a reply code, or an empty string."""
    if 0 <= status < len(_STATUS_TEXT):
        return _STATUS_TEXT[status]
    return ""


def _to_bytes(value: Union[str, bytes]) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else bytes(value)


def is_valid_cred(login: Optional[Union[str, bytes]],
                  password: Optional[Union[str, bytes]]) -> bool:
    """Tell whether login and password can be used for password authentication."""
    if login is None or password is None:
        return False
    if len(_to_bytes(login)) > MAX_CRED_LEN:
        log.warning("Socks5 login can't be more than 255 chars, <%s> is too long", login)
        return False
    if len(_to_bytes(password)) > MAX_CRED_LEN:
        log.warning("Socks5 password can't be more than 255 chars, <%s> is too long", password)
        return False
    return True


def build_methods(do_password: bool) -> bytes:
    """Build the method-selection request."""
    methods = [AuthMethod.NONE]
    if do_password:
        methods.append(AuthMethod.PASSWORD)
    return bytes([SOCKS5_VERSION, len(methods), *methods])


def build_password(login: Union[str, bytes], password: Union[str, bytes]) -> bytes:
    """Build a username/password authentication request."""
    user = _to_bytes(login)
    secret = _to_bytes(password)
    if len(user) > MAX_CRED_LEN or len(secret) > MAX_CRED_LEN:
        raise ValueError("login and password must be at most 255 bytes")
    return bytes([PASSWORD_VERSION, len(user)]) + user + bytes([len(secret)]) + secret


def build_command(command: int, addr: SockAddr) -> bytes:
    """Build a request carrying ``command`` for the IPv4 or IPv6 address ``addr``."""
    addrtype = AddressType.IPV4 if addr.host.version == 4 else AddressType.IPV6
    head = bytes([SOCKS5_VERSION, int(command), 0, addrtype])
    return head + addr.host.packed + addr.port.to_bytes(2, "big")


def check_auth_method(version: int, method: int, do_password: bool) -> None:
    """Raise Socks5Error unless the server's chosen method is acceptable."""
    if version != SOCKS5_VERSION:
        raise Socks5Error("Socks5 server reported unexpected auth methods reply version...")
    if method == AuthMethod.INVALID:
        raise Socks5Error("Socks5 server refused all our auth methods.")
    if method != AuthMethod.NONE and not (method == AuthMethod.PASSWORD and do_password):
        raise Socks5Error("Socks5 server requested unexpected auth method...")


class _State(enum.Enum):
    NEW = enum.auto()
    METHOD_SENT = enum.auto()
    AUTH_SENT = enum.auto()
    REQUEST_SENT = enum.auto()
    SKIP_DOMAIN = enum.auto()
    SKIP_ADDRESS = enum.auto()
    DONE = enum.auto()


class Socks5Handshake:
    """Client side of a SOCKS5 CONNECT handshake, independent of any socket.

    ``start()`` gives the first bytes to send; ``feed()`` takes bytes from the
    server and returns the bytes to send next. Once ``done`` is true, data
    received past the handshake is in ``leftover``.
    """

    def __init__(self, destaddr: SockAddr,
                 login: Optional[Union[str, bytes]] = None,
                 password: Optional[Union[str, bytes]] = None) -> None:
        self.destaddr = destaddr
        self.login = login
        self.password = password
        self.do_password = is_valid_cred(login, password)
        self._state = _State.NEW
        self._expected = 0
        self._buffer = bytearray()

    @property
    def done(self) -> bool:
        return self._state is _State.DONE

    @property
    def leftover(self) -> bytes:
        return bytes(self._buffer) if self.done else b""

    def start(self) -> bytes:
        """Return the method-selection request and wait for its reply."""
        if self._state is not _State.NEW:
            raise Socks5Error("handshake already started")
        self._state = _State.METHOD_SENT
        self._expected = 2
        return build_methods(self.do_password)

    def feed(self, data: bytes) -> bytes:
        """Consume server bytes; return what must be sent to the server next."""
        if self._state is _State.NEW:
            raise Socks5Error("data received before the handshake started")
        self._buffer += data
        out = bytearray()
        while not self.done and len(self._buffer) >= self._expected:
            chunk = bytes(self._buffer[:self._expected])
            del self._buffer[:self._expected]
            out += self._step(chunk)
        return bytes(out)

    def _send_connect(self) -> bytes:
        self._state = _State.REQUEST_SENT
        self._expected = REPLY_HEADER_SIZE
        return build_command(Command.CONNECT, self.destaddr)

    def _step(self, chunk: bytes) -> bytes:
        state = self._state
        if state is _State.METHOD_SENT:
            version, method = chunk
            check_auth_method(version, method, self.do_password)
            if method == AuthMethod.NONE:
                return self._send_connect()
            self._state = _State.AUTH_SENT
            self._expected = 2
            return build_password(self.login, self.password)
        if state is _State.AUTH_SENT:
            version, status = chunk
            if version != PASSWORD_VERSION:
                raise Socks5Error("Socks5 server reported unexpected auth reply version...")
            if status != PASSWORD_PASSED:
                raise Socks5Error("Socks5 authentication failed", status)
            return self._send_connect()
        if state is _State.REQUEST_SENT:
            return self._read_reply(chunk)
        if state is _State.SKIP_DOMAIN:
            self._state = _State.SKIP_ADDRESS
            self._expected = chunk[0] + PORT_SIZE
            return b""
        if state is _State.SKIP_ADDRESS:
            self._state = _State.DONE
            self._expected = 0
            return b""
        raise Socks5Error(f"unexpected data in state {state.name}")

    def _read_reply(self, chunk: bytes) -> bytes:
        version, status, _reserved, addrtype = chunk
        if version != SOCKS5_VERSION:
            raise Socks5Error("Socks5 server reported unexpected reply version...")
        if status != Socks5Status.SUCCEEDED:
            text = status_to_str(status) or "?"
            raise Socks5Error(f"Socks5 server status: {text} ({status})", status)
        if addrtype == AddressType.IPV4:
            self._state = _State.SKIP_ADDRESS
            self._expected = ADDR_IPV4_SIZE
        elif addrtype == AddressType.IPV6:
            self._state = _State.SKIP_ADDRESS
            self._expected = ADDR_IPV6_SIZE
        elif addrtype == AddressType.DOMAIN:
            self._state = _State.SKIP_DOMAIN
            self._expected = 1
        else:
            raise Socks5Error("Socks5 server reported unexpected address type...")
        return b""