"""Shadowsocks client side: address headers, stream ciphers and a TCP stream codec."""

from __future__ import annotations

import enum
import functools
import hashlib
import ipaddress
import logging
import os
from dataclasses import dataclass
from typing import Optional, Tuple, Union

from redsox.addresses import SockAddr

log = logging.getLogger(__name__)

MAX_CRED_LEN = 255
HEADER_IPV4_SIZE = 1 + 4 + 2
HEADER_IPV6_SIZE = 1 + 16 + 2


class AddrType(enum.IntEnum):
    """Address kinds carried in a shadowsocks header."""

    IPV4 = 1
    DOMAIN = 3
    IPV6 = 4


class ShadowsocksError(Exception):
    """Bad configuration, bad header or a misuse of a shadowsocks stream."""


def _to_bytes(value: Union[str, bytes]) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else bytes(value)


def is_valid_cred(method: Optional[Union[str, bytes]],
                  password: Optional[Union[str, bytes]]) -> bool:
    """Tell whether an encryption method name and password are usable."""
    if method is None or password is None:
        return False
    if len(_to_bytes(method)) > MAX_CRED_LEN:
        log.warning("Shadowsocks encryption method can't be more than 255 chars.")
        return False
    if len(_to_bytes(password)) > MAX_CRED_LEN:
        log.warning("Shadowsocks encryption password can't be more than 255 chars.")
        return False
    return True


def encode_header(addr: SockAddr) -> bytes:
    """Encode the destination address header sent ahead of the payload."""
    if not isinstance(addr, SockAddr):
        raise ShadowsocksError(f"Unsupported address: {addr!r}")
    addrtype = AddrType.IPV4 if addr.host.version == 4 else AddrType.IPV6
    return bytes([addrtype]) + addr.host.packed + addr.port.to_bytes(2, "big")


def decode_header(data: bytes) -> Tuple[SockAddr, int]:
    """Decode an IPv4 or IPv6 address header.

    Returns the address and the number of bytes the header occupies.
    """
    if not data:
        raise ShadowsocksError("Packet too short.")
    addrtype = data[0]
    if addrtype == AddrType.IPV4:
        size, addr_len = HEADER_IPV4_SIZE, 4
        make = ipaddress.IPv4Address
    elif addrtype == AddrType.IPV6:
        size, addr_len = HEADER_IPV6_SIZE, 16
        make = ipaddress.IPv6Address
    else:
        raise ShadowsocksError(
            f"Got address type #{addrtype} instead of expected "
            f"#{int(AddrType.IPV4)} (IPv4/IPv6)."
        )
    if len(data) < size:
        raise ShadowsocksError("Packet too short.")
    host = make(bytes(data[1:1 + addr_len]))
    port = int.from_bytes(data[1 + addr_len:size], "big")
    return SockAddr(host, port), size


@dataclass(frozen=True)
class _MethodSpec:
    key_len: int
    iv_len: int


_METHODS = {
    "table": _MethodSpec(0, 0),
    "rc4": _MethodSpec(16, 0),
    "rc4-md5": _MethodSpec(16, 16),
}


def _bytes_to_key(password: bytes, key_len: int) -> bytes:
    """Derive a key from a password the way EVP_BytesToKey does with MD5."""
    out = b""
    block = b""
    while len(out) < key_len:
        block = hashlib.md5(block + password).digest()
        out += block
    return out[:key_len]


@functools.lru_cache(maxsize=16)
def _tables(password: bytes) -> Tuple[bytes, bytes]:
    seed = int.from_bytes(hashlib.md5(password).digest()[:8], "little")
    table = list(range(256))
    for i in range(1, 1024):
        table.sort(key=lambda x, i=i: seed % (x + i))
    inverse = [0] * 256
    for position, value in enumerate(table):
        inverse[value] = position
    return bytes(table), bytes(inverse)


class _RC4:
    def __init__(self, key: bytes) -> None:
        state = list(range(256))
        j = 0
        for i in range(256):
            j = (j + state[i] + key[i % len(key)]) & 0xFF
            state[i], state[j] = state[j], state[i]
        self._state = state
        self._i = 0
        self._j = 0

    def process(self, data: bytes) -> bytes:
        state = self._state
        i, j = self._i, self._j
        out = bytearray(len(data))
        for n, byte in enumerate(data):
            i = (i + 1) & 0xFF
            j = (j + state[i]) & 0xFF
            state[i], state[j] = state[j], state[i]
            out[n] = byte ^ state[(state[i] + state[j]) & 0xFF]
        self._i, self._j = i, j
        return bytes(out)


class Cipher:
    """One direction of a shadowsocks stream cipher.

    An encryptor puts its IV in front of the first output; a decryptor
    takes the IV from the first bytes it is given.
    """

    def __init__(self, method: Union[str, bytes], password: Union[str, bytes],
                 encrypt: bool = True, iv: Optional[bytes] = None) -> None:
        if not is_valid_cred(method, password):
            raise ShadowsocksError("Invalided encrytion method or password.")
        name = _to_bytes(method).decode("utf-8", "replace").lower()
        spec = _METHODS.get(name)
        if spec is None:
            raise ShadowsocksError("Invalided encrytion method or password.")
        self.method = name
        self.encrypting = encrypt
        self._spec = spec
        self._password = _to_bytes(password)
        self._key = _bytes_to_key(self._password, spec.key_len)
        self._pending = bytearray()
        self._rc4: Optional[_RC4] = None
        self._table: Optional[bytes] = None
        self.iv: Optional[bytes] = None
        self._iv_sent = False

        if encrypt:
            if iv is None:
                iv = os.urandom(spec.iv_len)
            if len(iv) != spec.iv_len:
                raise ShadowsocksError(
                    f"IV for {name} must be {spec.iv_len} bytes, got {len(iv)}"
                )
            self._setup(bytes(iv))
        elif iv is not None:
            raise ShadowsocksError("a decryptor takes its IV from the stream")
        elif spec.iv_len == 0:
            self._setup(b"")

    def _setup(self, iv: bytes) -> None:
        self.iv = iv
        if self.method == "table":
            encode, decode = _tables(self._password)
            self._table = encode if self.encrypting else decode
        elif self.method == "rc4":
            self._rc4 = _RC4(self._key)
        else:
            self._rc4 = _RC4(hashlib.md5(self._key + iv).digest())

    def _transform(self, data: bytes) -> bytes:
        if self._table is not None:
            return bytes(data).translate(self._table)
        return self._rc4.process(data)

    def update(self, data: bytes) -> bytes:
        """Encrypt or decrypt the next piece of the stream."""
        if self.encrypting:
            body = self._transform(data)
            if not self._iv_sent:
                self._iv_sent = True
                return self.iv + body
            return body
        if self.iv is None:
            self._pending += data
            if len(self._pending) < self._spec.iv_len:
                return b""
            iv = bytes(self._pending[:self._spec.iv_len])
            data = bytes(self._pending[self._spec.iv_len:])
            self._pending.clear()
            self._setup(iv)
        return self._transform(data)


class _State(enum.Enum):
    NEW = enum.auto()
    CONNECTED = enum.auto()


class ShadowsocksStream:
    """Client end of a shadowsocks TCP connection, independent of any socket.

    ``first_packet()`` gives the encrypted destination header to send when
    connecting; afterwards ``encrypt()`` handles client-to-server data and
    ``decrypt()`` server-to-client data.
    """

    def __init__(self, destaddr: SockAddr, method: Union[str, bytes],
                 password: Union[str, bytes], iv: Optional[bytes] = None) -> None:
        self.destaddr = destaddr
        self._encryptor = Cipher(method, password, encrypt=True, iv=iv)
        self._decryptor = Cipher(method, password, encrypt=False)
        self._state = _State.NEW
        log.info("encryption method: %s", self._encryptor.method)

    @property
    def connected(self) -> bool:
        return self._state is _State.CONNECTED

    def first_packet(self) -> bytes:
        """Return the encrypted destination header."""
        if self._state is not _State.NEW:
            raise ShadowsocksError("header already sent")
        packet = self._encryptor.update(encode_header(self.destaddr))
        self._state = _State.CONNECTED
        return packet

    def encrypt(self, data: bytes) -> bytes:
        """Encrypt data going to the server."""
        if self._state is not _State.CONNECTED:
            raise ShadowsocksError("stream is not connected")
        if not data:
            return b""
        return self._encryptor.update(data)

    def decrypt(self, data: bytes) -> bytes:
        """Decrypt data coming from the server."""
        if self._state is not _State.CONNECTED:
            raise ShadowsocksError("stream is not connected")
        if not data:
            return b""
        return self._decryptor.update(data)