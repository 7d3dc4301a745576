"""Shadowsocks UDP framing: one encrypted datagram per packet, each with its own IV."""

from __future__ import annotations

import logging
from typing import Tuple

from redsox.addresses import SockAddr
from redsox.shadowsocks import Cipher, ShadowsocksError, decode_header, encode_header

log = logging.getLogger(__name__)

MAX_UDP_PACKET_SIZE = 65507


class ShadowsocksUdpError(ShadowsocksError):
    """A datagram could not be encrypted, decrypted or decoded."""


def pack_packet(encryptor: Cipher, addr: SockAddr, payload: bytes) -> bytes:
    """Encrypt the address header and ``payload`` into one datagram.

    ``encryptor`` must be a fresh encrypting Cipher: every datagram starts a
    new stream with its own IV.
    """
    if not encryptor.encrypting:
        raise ShadowsocksUdpError("a datagram must be packed with an encrypting cipher")
    try:
        header = encode_header(addr)
    except ShadowsocksError as exc:
        raise ShadowsocksUdpError(f"Unsupported address family: {exc}") from exc
    encrypted_header = encryptor.update(header)
    payload = bytes(payload)
    if len(encrypted_header) + len(payload) >= MAX_UDP_PACKET_SIZE:
        log.debug("Can't encrypt packet, dropping it")
        raise ShadowsocksUdpError("Can't encrypt packet, dropping it")
    return encrypted_header + encryptor.update(payload)


def unpack_packet(decryptor: Cipher, data: bytes) -> Tuple[SockAddr, bytes]:
    """Decrypt a datagram from the server and return its source address and payload.

    ``decryptor`` must be a fresh decrypting Cipher.
    """
    if decryptor.encrypting:
        raise ShadowsocksUdpError("a datagram must be unpacked with a decrypting cipher")
    plain = decryptor.update(bytes(data))
    try:
        addr, size = decode_header(plain)
    except ShadowsocksError as exc:
        log.debug("%s", exc)
        raise ShadowsocksUdpError(str(exc)) from exc
    return addr, plain[size:]