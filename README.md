# redsox

`redsox` is a library of the pieces that a transparent proxy redirector is built
from. It speaks the upstream proxy protocols and provides the socket plumbing
around them:

- **SOCKS4** (`redsox.socks4`): `build_connect_request`, `parse_reply` and the
  `Socks4Handshake` state machine. Only IPv4 destinations are supported.
- **SOCKS5** (`redsox.socks5`): `build_methods`, `build_password`,
  `build_command`, `check_auth_method`, `status_to_str`, `is_valid_cred` and
  the `Socks5Handshake` state machine for CONNECT. It covers method negotiation
  and username/password authentication.
- **SOCKS5 UDP** (`redsox.socks5_udp`): `Socks5UdpAssociation` drives the UDP
  ASSOCIATE control channel and frames datagrams with `wrap()` and `unwrap()`.
  `build_udp_preamble`, `parse_udp_packet`, `associate_reply_size` and
  `parse_associate_reply` are also available as plain functions. Fragmented
  datagrams and domain-name addresses are rejected.
- **Shadowsocks** (`redsox.shadowsocks`): address headers (`encode_header`,
  `decode_header`), the stream `Cipher` for the `table`, `rc4` and `rc4-md5`
  methods, and `ShadowsocksStream` for a TCP connection. `redsox.shadowsocks_udp`
  packs and unpacks single datagrams with `pack_packet` and `unpack_packet`.
- **DNS over TCP** (`redsox.tcpdns`): an asyncio server that accepts UDP DNS
  queries and forwards each one over TCP to one of two upstream resolvers.
- **Plumbing**: `redsox.addresses` holds `SockAddr`, `parse_sockaddr_port`,
  `format_sockaddr`, `resolve_hostname`, `format_event_flags` and `random_u32`.
  `redsox.relay` holds `connect_relay` (an asyncio TCP connection with
  keep-alive and optional first data), `recv_udp_packet` (receives a datagram
  together with its original destination when the kernel reports it),
  `make_socket_transparent`, `apply_tcp_fastopen`, `socket_error` and
  `copy_limited`.

The package has no runtime dependencies beyond the standard library.

## Protocol state machines

The handshakes do no I/O of their own. `start()` returns the first bytes to
send. `feed(data)` takes the bytes the proxy sent back. For SOCKS5 and SOCKS5
UDP, it returns the bytes to send next. For SOCKS4, it returns whether the
handshake has finished. Check `done` (or `ready` for the UDP association)
to see when the relay can start. Bytes that arrive after the handshake are
available in `leftover`.

When the proxy refuses or answers with something malformed, the state machine
raises `Socks4Error`, `Socks5Error` or `Socks5UdpError`. Where the proxy
supplied a status code, it is stored on the exception's `status` attribute.

```python
from redsox.addresses import parse_sockaddr_port
from redsox.socks5 import Socks5Handshake

dest = parse_sockaddr_port("192.0.2.10:443", 80)
handshake = Socks5Handshake(dest)
to_send = handshake.start()            # b"\x05\x01\x00"
to_send = handshake.feed(b"\x05\x00")  # the CONNECT request
handshake.feed(b"\x05\x00\x00\x01" + bytes(6))
assert handshake.done
```

## Building messages directly

```python
from redsox import socks5
from redsox.addresses import parse_sockaddr_port, format_sockaddr

dest = parse_sockaddr_port("192.0.2.10:443", 80)
print(format_sockaddr(dest))            # 192.0.2.10:443

greeting = socks5.build_methods(True)   # offer "no auth" and "username/password"
password = "password"
auth = socks5.build_password("user", password)
connect = socks5.build_command(socks5.Command.CONNECT, dest)

print(socks5.status_to_str(5))          # connection refused
```

SOCKS5 cannot carry a login or password longer than 255 bytes.
`socks5.is_valid_cred` reports this, and the handshakes offer password
authentication only when both the login and the password are valid.

## Shadowsocks

```python
from redsox.addresses import parse_sockaddr_port
from redsox.shadowsocks import ShadowsocksStream, decode_header, encode_header

addr = parse_sockaddr_port("[2001:db8::1]:8080", 0)
header = encode_header(addr)
decoded, size = decode_header(header + b"payload")   # size == len(header)

password = "password"
stream = ShadowsocksStream(addr, "rc4-md5", password)
first = stream.first_packet()      # IV followed by the encrypted header
body = stream.encrypt(b"hello")
```

An encrypting `Cipher` puts its IV in front of its first output. A decrypting
`Cipher` takes the IV from the first bytes it receives. For UDP, every datagram
uses a fresh `Cipher`.

## DNS over TCP

`TcpDnsConfig.from_mapping` accepts these keys:

| key       | meaning                                                  | default        |
|-----------|----------------------------------------------------------|----------------|
| `bind`    | local UDP address to listen on                           | `127.0.0.1:53` |
| `tcpdns1` | first TCP resolver (port defaults to 53)                 | none           |
| `tcpdns2` | second TCP resolver (port defaults to 53)                | none           |
| `timeout` | seconds to wait for a resolver; 0 means the default      | `4`            |

At least one resolver must be configured. The server forwards only
well-formed queries: QR clear, Z clear, at least one question, no answer or
authority records, and at most 512 bytes.

An answer goes back to the client only when its rcode is NOERROR, FORMERR or
NXDOMAIN. Any other rcode records a penalty delay against that resolver.
`TcpDnsInstance.choose_resolver` prefers the resolver with the smaller known
delay, and alternates between the two while neither has been measured.

```python
import asyncio
from redsox.tcpdns import TcpDnsConfig, TcpDnsServer

async def main():
    config = TcpDnsConfig.from_mapping({"bind": "127.0.0.1:5353", "tcpdns1": "192.0.2.53"})
    async with TcpDnsServer(config) as server:
        print(server.address)
        await asyncio.sleep(3600)

asyncio.run(main())
```

`TcpDnsServer.resolve(request)` forwards a single query and returns the
answer, or `None`. `TcpDnsServer.close()` stops the listener.

## What the package does not do

The package provides protocol handling and helpers only. It has:

- no command-line program;
- no configuration-file reader;
- no firewall or redirect-rule setup;
- no listener that accepts intercepted TCP connections and relays them
  through a proxy.

You write the event loop that connects these pieces. Shadowsocks support
covers only the `table`, `rc4` and `rc4-md5` methods.

## Running the tests

Install the `test` extra, then run `pytest` from the project root.