import asyncio
import contextlib
import socket
import struct

import pytest

from redsox.addresses import SockAddr
from redsox.tcpdns import (
    DnsHeader,
    ResolverSlot,
    TcpDnsConfig,
    TcpDnsInstance,
    TcpDnsServer,
    is_valid_request,
)

QUESTION = b"\x07example\x03com\x00\x00\x01\x00\x01"


def make_query(ident=0x1234, flags1=0x01, flags2=0x00, qd=1, an=0, ns=0):
    return struct.pack("!HBBHHHH", ident, flags1, flags2, qd, an, ns, 0) + QUESTION


def make_answer(ident=0x1234, rcode=0):
    return struct.pack("!HBBHHHH", ident, 0x81, 0x80 | rcode, 1, 0, 0, 0) + QUESTION


def framed(message):
    return len(message).to_bytes(2, "big") + message


def two_resolver_instance():
    config = TcpDnsConfig(tcpdns1=SockAddr("10.0.0.1", 53),
                          tcpdns2=SockAddr("10.0.0.2", 53))
    return TcpDnsInstance(config)


@contextlib.asynccontextmanager
async def fake_resolver(rcode=0):
    async def handle(reader, writer):
        prefix = await reader.readexactly(2)
        request = await reader.readexactly(int.from_bytes(prefix, "big"))
        ident = struct.unpack("!H", request[:2])[0]
        writer.write(framed(make_answer(ident, rcode)))
        await writer.drain()
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    try:
        yield server.sockets[0].getsockname()[1]
    finally:
        server.close()
        await server.wait_closed()


def test_header_parse_fields():
    header = DnsHeader.parse(make_query(ident=0xABCD))
    assert header.id == 0xABCD
    assert header.qdcount == 1
    assert header.is_query()
    assert header.rcode() == 0


def test_header_parse_short_raises():
    with pytest.raises(ValueError):
        DnsHeader.parse(b"\x00" * 11)


def test_header_rcode_of_answer():
    header = DnsHeader.parse(make_answer(rcode=3))
    assert not header.is_query()
    assert header.rcode() == 3


def test_valid_request_accepted():
    assert is_valid_request(make_query())


@pytest.mark.parametrize("data", [
    make_query(flags1=0x81),
    make_query(flags2=0x40),
    make_query(qd=0),
    make_query(an=1),
    make_query(ns=1),
    make_query()[:12],
    make_query() + b"\x00" * 600,
])
def test_invalid_requests_rejected(data):
    assert not is_valid_request(data)


def test_config_defaults():
    config = TcpDnsConfig.from_mapping({"tcpdns1": "8.8.8.8"})
    assert config.bind == SockAddr("127.0.0.1", 53)
    assert config.tcpdns1 == SockAddr("8.8.8.8", 53)
    assert config.tcpdns2 is None
    assert config.timeout == 4


def test_config_explicit_values():
    config = TcpDnsConfig.from_mapping({
        "bind": "0.0.0.0:5353",
        "tcpdns1": "[::1]:5300",
        "tcpdns2": "1.1.1.1",
        "timeout": "7",
    })
    assert config.bind == SockAddr("0.0.0.0", 5353)
    assert config.tcpdns1 == SockAddr("::1", 5300)
    assert config.tcpdns2.port == 53
    assert config.timeout == 7


def test_config_zero_timeout_uses_default():
    config = TcpDnsConfig.from_mapping({"tcpdns2": "9.9.9.9", "timeout": 0})
    assert config.timeout == 4


def test_config_requires_resolver():
    with pytest.raises(ValueError, match="At least one TCP DNS resolver"):
        TcpDnsConfig.from_mapping({"bind": "127.0.0.1:53"})


@pytest.mark.parametrize("mapping,message", [
    ({"tcpdns1": "not-an-address"}, "invalid tcpdns1 address"),
    ({"tcpdns1": "8.8.8.8", "tcpdns2": "x"}, "invalid tcpdns2 address"),
    ({"tcpdns1": "8.8.8.8", "bind": "bad"}, "invalid bind address"),
    ({"tcpdns1": "8.8.8.8", "colour": "red"}, "unknown keys"),
])
def test_config_errors(mapping, message):
    with pytest.raises(ValueError, match=message):
        TcpDnsConfig.from_mapping(mapping)


def test_choose_alternates_when_unmeasured():
    instance = two_resolver_instance()
    assert instance.choose_resolver() is instance.tcp1
    assert instance.choose_resolver() is instance.tcp2
    assert instance.choose_resolver() is instance.tcp1


def test_choose_prefers_faster():
    instance = two_resolver_instance()
    instance.update_delay(instance.tcp1, 300)
    instance.update_delay(instance.tcp2, 100)
    assert instance.choose_resolver() is instance.tcp2
    instance.update_delay(instance.tcp1, 50)
    assert instance.choose_resolver() is instance.tcp1


def test_choose_avoids_failed_resolver():
    instance = two_resolver_instance()
    instance.update_delay(instance.tcp1, 200)
    instance.update_delay(instance.tcp2, -1)
    assert instance.choose_resolver() is instance.tcp1
    instance.update_delay(instance.tcp1, -1)
    instance.update_delay(instance.tcp2, 200)
    assert instance.choose_resolver() is instance.tcp2


def test_choose_single_resolver():
    instance = TcpDnsInstance(TcpDnsConfig(tcpdns2=SockAddr("10.0.0.2", 53)))
    assert instance.tcp1 is None
    assert instance.choose_resolver() is instance.tcp2


def test_update_delay_ignores_none():
    instance = two_resolver_instance()
    instance.update_delay(None, 10)
    assert instance.tcp1.delay_ms == 0 and instance.tcp2.delay_ms == 0


@pytest.mark.parametrize("rcode", [0, 1, 3])
def test_handle_response_accepts(rcode):
    instance = two_resolver_instance()
    answer = make_answer(rcode=rcode)
    result = instance.handle_response(instance.tcp1, framed(answer), 42)
    assert result == answer
    assert instance.tcp1.delay_ms == 42


def test_handle_response_penalizes_servfail():
    instance = two_resolver_instance()
    result = instance.handle_response(instance.tcp1, framed(make_answer(rcode=2)), 42)
    assert result is None
    assert instance.tcp1.delay_ms == (instance.config.timeout + 1) * 1000


@pytest.mark.parametrize("response", [b"", b"\x00\x05abc", b"\x00" * 5000])
def test_handle_response_drops_bad_sizes(response):
    instance = two_resolver_instance()
    assert instance.handle_response(instance.tcp1, response, 42) is None
    assert instance.tcp1.delay_ms == 0


def test_dump_lists_resolvers():
    instance = TcpDnsInstance(TcpDnsConfig(tcpdns1=SockAddr("10.0.0.1", 53)))
    instance.update_delay(instance.tcp1, 17)
    lines = instance.dump()
    assert lines[0] == "Dumping data for instance (tcpdns @ 127.0.0.1:53):"
    assert lines[1] == "Delay of TCP DNS [10.0.0.1:53]: 17ms"
    assert lines[2] == "Delay of TCP DNS [???:???]: 0ms"
    assert lines[-1] == "End of data dumping."


def test_resolver_slot_defaults():
    slot = ResolverSlot("tcpdns1", SockAddr("10.0.0.1", 53))
    assert slot.delay_ms == 0 and slot.addr.port == 53


@pytest.mark.asyncio
async def test_resolve_malformed_raises():
    server = TcpDnsServer(TcpDnsConfig(tcpdns1=SockAddr("127.0.0.1", 53)))
    with pytest.raises(ValueError):
        await server.resolve(make_query(qd=0))


@pytest.mark.asyncio
async def test_resolve_through_fake_resolver():
    async with fake_resolver() as port:
        server = TcpDnsServer(TcpDnsConfig(tcpdns1=SockAddr("127.0.0.1", port)))
        answer = await server.resolve(make_query(ident=0x4242))
    assert answer == make_answer(0x4242)
    assert server.instance.tcp1.delay_ms >= 0


@pytest.mark.asyncio
async def test_resolve_servfail_penalizes():
    async with fake_resolver(rcode=2) as port:
        server = TcpDnsServer(TcpDnsConfig(tcpdns1=SockAddr("127.0.0.1", port)))
        answer = await server.resolve(make_query())
    assert answer is None
    assert server.instance.tcp1.delay_ms == (server.instance.config.timeout + 1) * 1000


@pytest.mark.asyncio
async def test_resolve_refused_connection_returns_none():
    probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    probe.bind(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()
    server = TcpDnsServer(TcpDnsConfig(tcpdns1=SockAddr("127.0.0.1", port)))
    assert await server.resolve(make_query()) is None
    assert server.instance.tcp1.delay_ms == 0


@pytest.mark.asyncio
async def test_server_answers_udp_query():
    async with fake_resolver() as port:
        config = TcpDnsConfig(bind=SockAddr("127.0.0.1", 0),
                              tcpdns1=SockAddr("127.0.0.1", port))
        async with TcpDnsServer(config) as server:
            bound = server.address
            assert bound.port > 0
            assert bound.to_tuple()[0] == "127.0.0.1"
            loop = asyncio.get_running_loop()
            received = loop.create_future()

            class Client(asyncio.DatagramProtocol):
                def datagram_received(self, data, addr):
                    if not received.done():
                        received.set_result(data)

            transport, _ = await loop.create_datagram_endpoint(
                Client, remote_addr=bound.to_tuple())
            try:
                transport.sendto(make_query(ident=0x0707))
                reply = await asyncio.wait_for(received, 5)
            finally:
                transport.close()
    assert reply == make_answer(0x0707)
    assert server.instance.tcp1.delay_ms >= 0


@pytest.mark.asyncio
async def test_server_start_twice_raises():
    config = TcpDnsConfig(bind=SockAddr("127.0.0.1", 0),
                          tcpdns1=SockAddr("127.0.0.1", 53))
    server = TcpDnsServer(config)
    await server.start()
    try:
        with pytest.raises(RuntimeError):
            await server.start()
    finally:
        server.close()