import pytest

from redsox.addresses import SockAddr
from redsox.shadowsocks import (
    AddrType,
    Cipher,
    ShadowsocksError,
    ShadowsocksStream,
    decode_header,
    encode_header,
    is_valid_cred,
)

METHODS = ["table", "rc4", "rc4-md5"]
PAYLOAD = b"GET / HTTP/1.1\r\nHost: example.com\r\n\r\n"


def test_addr_type_values_match_wire_format():
    assert encode_header(SockAddr("1.2.3.4", 80))[0] == AddrType.IPV4 == 1
    assert encode_header(SockAddr("::1", 80))[0] == AddrType.IPV6 == 4
    with pytest.raises(ShadowsocksError):
        decode_header(bytes([AddrType.DOMAIN]) + b"\x04abcd\x00\x50")


def test_is_valid_cred_rejects_missing_values():
    password = "password"
    assert is_valid_cred(None, password) is False
    assert is_valid_cred("rc4-md5", None) is False
    assert is_valid_cred("rc4-md5", password) is True


def test_is_valid_cred_rejects_long_values():
    password = "password"
    assert is_valid_cred("x" * 256, password) is False
    assert is_valid_cred("rc4-md5", "p" * 256) is False
    assert is_valid_cred("rc4-md5", "p" * 255) is True


def test_encode_header_ipv4_wire_bytes():
    header = encode_header(SockAddr("1.2.3.4", 80))
    assert header == b"\x01\x01\x02\x03\x04\x00\x50"


def test_encode_header_ipv6_layout():
    header = encode_header(SockAddr("::1", 443))
    assert len(header) == 19
    assert header[0] == AddrType.IPV6
    assert header[-2:] == (443).to_bytes(2, "big")


@pytest.mark.parametrize("addr", [SockAddr("10.0.0.1", 53), SockAddr("2001:db8::5", 8080)])
def test_header_round_trip(addr):
    encoded = encode_header(addr)
    decoded, size = decode_header(encoded + b"payload")
    assert decoded == addr
    assert size == len(encoded)


def test_decode_header_rejects_unknown_type():
    with pytest.raises(ShadowsocksError):
        decode_header(b"\x03\x04abcd\x00\x50")


def test_decode_header_rejects_short_data():
    with pytest.raises(ShadowsocksError):
        decode_header(b"\x01\x01\x02")
    with pytest.raises(ShadowsocksError):
        decode_header(b"")


def test_encode_header_rejects_non_address():
    with pytest.raises(ShadowsocksError):
        encode_header(("1.2.3.4", 80))


@pytest.mark.parametrize("method", METHODS)
def test_cipher_round_trip(method):
    password = "password"
    enc = Cipher(method, password, encrypt=True)
    dec = Cipher(method, password, encrypt=False)
    assert dec.update(enc.update(PAYLOAD)) == PAYLOAD


@pytest.mark.parametrize("method", METHODS)
def test_cipher_chunked_decrypt_matches_whole(method):
    password = "password"
    enc = Cipher(method, password, encrypt=True)
    wire = enc.update(PAYLOAD[:10]) + enc.update(PAYLOAD[10:])
    dec = Cipher(method, password, encrypt=False)
    pieces = [dec.update(wire[i:i + 3]) for i in range(0, len(wire), 3)]
    assert b"".join(pieces) == PAYLOAD


def test_rc4_md5_prefixes_iv_once():
    password = "password"
    iv = bytes(range(16))
    enc = Cipher("rc4-md5", password, encrypt=True, iv=iv)
    first = enc.update(b"abc")
    second = enc.update(b"def")
    assert first[:16] == iv
    assert len(first) == 19
    assert len(second) == 3


def test_same_iv_gives_same_ciphertext():
    password = "password"
    iv = b"\x07" * 16
    a = Cipher("rc4-md5", password, iv=iv).update(PAYLOAD)
    b = Cipher("rc4-md5", password, iv=iv).update(PAYLOAD)
    assert a == b
    assert a[16:] != PAYLOAD


def test_wrong_password_does_not_decrypt():
    enc = Cipher("rc4", "secret", encrypt=True)
    dec = Cipher("rc4", "token", encrypt=False)
    assert dec.update(enc.update(PAYLOAD)) != PAYLOAD


def test_unknown_method_raises():
    password = "password"
    with pytest.raises(ShadowsocksError):
        Cipher("no-such-cipher", password)


def test_bad_iv_length_raises():
    password = "password"
    with pytest.raises(ShadowsocksError):
        Cipher("rc4-md5", password, iv=b"short")


def test_stream_first_packet_carries_header():
    password = "password"
    dest = SockAddr("93.184.216.34", 80)
    stream = ShadowsocksStream(dest, "rc4-md5", password)
    server = Cipher("rc4-md5", password, encrypt=False)
    plain = server.update(stream.first_packet())
    addr, size = decode_header(plain)
    assert addr == dest
    assert size == len(plain)
    assert server.update(stream.encrypt(PAYLOAD)) == PAYLOAD


def test_stream_decrypts_server_data():
    password = "password"
    stream = ShadowsocksStream(SockAddr("::1", 22), "table", password)
    stream.first_packet()
    server = Cipher("table", password, encrypt=True)
    assert stream.decrypt(server.update(PAYLOAD)) == PAYLOAD


def test_stream_requires_header_first():
    password = "password"
    stream = ShadowsocksStream(SockAddr("10.1.1.1", 80), "rc4", password)
    with pytest.raises(ShadowsocksError):
        stream.encrypt(b"data")
    with pytest.raises(ShadowsocksError):
        stream.decrypt(b"data")


def test_stream_header_only_once_and_empty_data():
    password = "password"
    stream = ShadowsocksStream(SockAddr("10.1.1.1", 80), "rc4", password)
    stream.first_packet()
    assert stream.connected is True
    assert stream.encrypt(b"") == b""
    with pytest.raises(ShadowsocksError):
        stream.first_packet()


def test_stream_rejects_invalid_credentials():
    with pytest.raises(ShadowsocksError):
        ShadowsocksStream(SockAddr("10.1.1.1", 80), "rc4", None)