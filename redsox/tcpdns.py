"""DNS forwarder: answers UDP queries by asking upstream resolvers over TCP."""

from __future__ import annotations

import asyncio
import contextlib
import ipaddress
import itertools
import logging
import socket
import struct
import time
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Set, Tuple

from redsox.addresses import (
    INADDR_LOOPBACK,
    SockAddr,
    format_sockaddr,
    parse_sockaddr_port,
)
from redsox.relay import RelayError, connect_relay

log = logging.getLogger(__name__)

DNS_PORT = 53
DEFAULT_TIMEOUT_SECONDS = 4
MAX_REQUEST_SIZE = 512
MAX_RESPONSE_SIZE = 4096

DNS_QR = 0x80
DNS_TC = 0x02
DNS_Z = 0x40
DNS_RC_MASK = 0x0F

DNS_RC_NOERROR = 0
DNS_RC_FORMERR = 1
DNS_RC_SERVFAIL = 2
DNS_RC_NXDOMAIN = 3
DNS_RC_NOTIMP = 4
DNS_RC_REFUSED = 5

_ACCEPTED_RCODES = frozenset({DNS_RC_NOERROR, DNS_RC_FORMERR, DNS_RC_NXDOMAIN})
_HEADER = struct.Struct("!HBBHHHH")
DNS_HEADER_SIZE = _HEADER.size
_CONFIG_KEYS = ("bind", "tcpdns1", "tcpdns2", "timeout")


@dataclass(frozen=True)
class DnsHeader:
    """The fixed 12-byte header of a DNS message."""

    id: int
    qr_opcode_aa_tc_rd: int
    ra_z_rcode: int
    qdcount: int
    ancount: int
    nscount: int
    arcount: int

    @classmethod
    def parse(cls, data: bytes) -> DnsHeader:
        """Read the header from the start of ``data``; raise ValueError if short."""
        if len(data) < DNS_HEADER_SIZE:
            raise ValueError("DNS message is shorter than its header")
        return cls(*_HEADER.unpack_from(bytes(data[:DNS_HEADER_SIZE])))

    def is_query(self) -> bool:
        """True when the QR bit marks the message as a query."""
        return not self.qr_opcode_aa_tc_rd & DNS_QR

    def rcode(self) -> int:
        """Return the response code."""
        return self.ra_z_rcode & DNS_RC_MASK


def is_valid_request(data: bytes) -> bool:
    """Tell whether ``data`` is a well-formed DNS query worth forwarding."""
    if len(data) <= DNS_HEADER_SIZE or len(data) > MAX_REQUEST_SIZE:
        return False
    header = DnsHeader.parse(data)
    return (
        header.is_query()
        and not header.ra_z_rcode & DNS_Z
        and header.qdcount != 0
        and header.ancount == 0
        and header.nscount == 0
    )


def _default_bind() -> SockAddr:
    return SockAddr(ipaddress.IPv4Address(INADDR_LOOPBACK), DNS_PORT)


@dataclass
class TcpDnsConfig:
    """Listening address, upstream TCP resolvers and the response timeout."""

    bind: SockAddr = field(default_factory=_default_bind)
    tcpdns1: Optional[SockAddr] = None
    tcpdns2: Optional[SockAddr] = None
    timeout: int = DEFAULT_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        if self.tcpdns1 is None and self.tcpdns2 is None:
            raise ValueError("At least one TCP DNS resolver must be configured.")
        if not 0 <= self.timeout <= 0xFFFF:
            raise ValueError(f"timeout out of range: {self.timeout}")
        if self.timeout == 0:
            self.timeout = DEFAULT_TIMEOUT_SECONDS

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> TcpDnsConfig:
        """Build a configuration from a section of key/value settings."""
        unknown = set(mapping) - set(_CONFIG_KEYS)
        if unknown:
            raise ValueError(f"unknown keys in tcpdns section: {sorted(unknown)}")
        kwargs: dict = {}
        if mapping.get("bind") is not None:
            try:
                kwargs["bind"] = parse_sockaddr_port(str(mapping["bind"]), 0)
            except ValueError as exc:
                raise ValueError("invalid bind address") from exc
        for key in ("tcpdns1", "tcpdns2"):
            if mapping.get(key) is not None:
                try:
                    kwargs[key] = parse_sockaddr_port(str(mapping[key]), DNS_PORT)
                except ValueError as exc:
                    raise ValueError(f"invalid {key} address") from exc
        if mapping.get("timeout") is not None:
            try:
                kwargs["timeout"] = int(mapping["timeout"])
            except (TypeError, ValueError) as exc:
                raise ValueError("invalid timeout") from exc
        return cls(**kwargs)


@dataclass(eq=False)
class ResolverSlot:
    """An upstream resolver and its last measured delay.

    A delay of 0 means unmeasured, a negative delay means it did not answer.
    """

    name: str
    addr: SockAddr
    delay_ms: int = 0


class TcpDnsInstance:
    """Resolver selection and response handling for one configured section."""

    def __init__(self, config: TcpDnsConfig) -> None:
        self.config = config
        self.tcp1 = ResolverSlot("tcpdns1", config.tcpdns1) if config.tcpdns1 else None
        self.tcp2 = ResolverSlot("tcpdns2", config.tcpdns2) if config.tcpdns2 else None
        self._turn = itertools.count(1)

    def choose_resolver(self) -> Optional[ResolverSlot]:
        """Pick the resolver with the smaller known delay, alternating when unknown."""
        first, second = self.tcp1, self.tcp2
        log.debug(
            "Delay of TCP DNS resolvers: %d, %d",
            first.delay_ms if first else 0,
            second.delay_ms if second else 0,
        )
        if first and second:
            d1, d2 = first.delay_ms, second.delay_ms
            if d1 <= 0 and d2 <= 0:
                return first if next(self._turn) % 2 else second
            if d1 > d2:
                return first if d2 < 0 else second
            return second if d1 < 0 else first
        return first or second

    def update_delay(self, slot: Optional[ResolverSlot], delay_ms: int) -> None:
        """Record the delay measured for ``slot``."""
        if slot is not None:
            slot.delay_ms = delay_ms

    @property
    def penalty_ms(self) -> int:
        return (self.config.timeout + 1) * 1000

    def handle_response(self, slot: Optional[ResolverSlot], response: bytes,
                        elapsed_ms: int) -> Optional[bytes]:
        """Check a length-prefixed TCP response; return the UDP answer or None.

        Usable answers record ``elapsed_ms`` as the resolver's delay; a server
        failure penalizes the resolver.
        """
        log.debug("response size: %d", len(response))
        if not response or len(response) > MAX_RESPONSE_SIZE:
            return None
        if len(response) <= 2 + DNS_HEADER_SIZE:
            return None
        message = bytes(response[2:])
        if DnsHeader.parse(message).rcode() in _ACCEPTED_RCODES:
            self.update_delay(slot, elapsed_ms)
            return message
        self.update_delay(slot, self.penalty_ms)
        return None

    def dump(self) -> List[str]:
        """Log and return a description of the resolvers' delays."""
        lines = [f"Dumping data for instance (tcpdns @ {format_sockaddr(self.config.bind)}):"]
        for slot in (self.tcp1, self.tcp2):
            addr = format_sockaddr(slot.addr if slot else None)
            delay = slot.delay_ms if slot else 0
            lines.append(f"Delay of TCP DNS [{addr}]: {delay}ms")
        lines.append("End of data dumping.")
        for line in lines:
            log.info("%s", line)
        return lines


async def _read_response(reader: asyncio.StreamReader) -> Optional[bytes]:
    prefix = await reader.readexactly(2)
    length = int.from_bytes(prefix, "big")
    if length + 2 > MAX_RESPONSE_SIZE:
        return None
    return prefix + await reader.readexactly(length)


class _Listener(asyncio.DatagramProtocol):
    def __init__(self, server: TcpDnsServer) -> None:
        self._server = server

    def datagram_received(self, data: bytes, addr: Tuple) -> None:
        self._server._on_request(data, addr)

    def error_received(self, exc: Exception) -> None:
        log.warning("recvfrom: %s", exc)


class TcpDnsServer:
    """UDP listener that forwards each query to a TCP resolver."""

    def __init__(self, config: TcpDnsConfig) -> None:
        self.instance = TcpDnsInstance(config)
        self.address: Optional[SockAddr] = None
        self._transport: Optional[asyncio.DatagramTransport] = None
        self._tasks: Set[asyncio.Task] = set()

    async def start(self) -> SockAddr:
        """Bind the UDP listener and return the address it is bound to."""
        if self._transport is not None:
            raise RuntimeError("server already started")
        bind = self.instance.config.bind
        sock = socket.socket(bind.family, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            reuseport = getattr(socket, "SO_REUSEPORT", None)
            try:
                if reuseport is None:
                    raise OSError("SO_REUSEPORT is unavailable")
                sock.setsockopt(socket.SOL_SOCKET, reuseport, 1)
            except OSError:
                log.warning("Continue without SO_REUSEPORT enabled")
            sock.bind(bind.to_tuple())
            sock.setblocking(False)
            loop = asyncio.get_running_loop()
            transport, _ = await loop.create_datagram_endpoint(
                lambda: _Listener(self), sock=sock)
        except OSError:
            sock.close()
            raise
        self._transport = transport
        self.address = SockAddr.from_tuple(sock.getsockname())
        log.info("tcpdns @ %s", format_sockaddr(self.address))
        return self.address

    def close(self) -> None:
        """Stop listening and abandon pending requests."""
        if self._transport is not None:
            self._transport.close()
            self._transport = None
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    async def __aenter__(self) -> TcpDnsServer:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()

    def _on_request(self, data: bytes, client: Tuple) -> None:
        if len(data) <= DNS_HEADER_SIZE:
            log.info("incomplete DNS request")
            return
        if not is_valid_request(data):
            log.info("malformed DNS request")
            return
        task = asyncio.get_running_loop().create_task(self._answer(data, client))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _answer(self, data: bytes, client: Tuple) -> None:
        response = await self.resolve(data)
        if response is not None and self._transport is not None:
            self._transport.sendto(response, client)

    async def resolve(self, request: bytes) -> Optional[bytes]:
        """Forward one DNS query over TCP and return the answer.

        Raises ValueError for a malformed query; returns None when the
        resolver fails, times out or sends an unusable answer.
        """
        started = time.monotonic()
        request = bytes(request)
        if not is_valid_request(request):
            raise ValueError("malformed DNS request")
        instance = self.instance
        slot = instance.choose_resolver()
        if slot is None:
            log.warning("No valid DNS resolver configured")
            return None
        timeout = instance.config.timeout
        try:
            reader, writer = await connect_relay(slot.addr, timeout)
        except RelayError as exc:
            cause = exc.__cause__
            if isinstance(cause, asyncio.TimeoutError):
                instance.update_delay(slot, -1)
            elif isinstance(cause, ConnectionResetError):
                instance.update_delay(slot, instance.penalty_ms)
            log.debug("dropping request: %s", exc)
            return None
        try:
            writer.write(len(request).to_bytes(2, "big") + request)
            await writer.drain()
            remaining = timeout - (time.monotonic() - started)
            if remaining <= 0:
                instance.update_delay(slot, timeout * 1000)
                return None
            response = await asyncio.wait_for(_read_response(reader), remaining)
            if response is None:
                return None
            elapsed_ms = int((time.monotonic() - started) * 1000)
            return instance.handle_response(slot, response, elapsed_ms)
        except ConnectionResetError:
            instance.update_delay(slot, instance.penalty_ms)
            return None
        except (asyncio.TimeoutError, asyncio.IncompleteReadError, OSError) as exc:
            log.debug("dropping request: %r", exc)
            return None
        finally:
            writer.close()
            with contextlib.suppress(Exception):
                await writer.wait_closed()