#!/usr/bin/env python3
"""
SOCKS5 报文编解码测试

测试内容:
1. 问候解析（方法数量范围、版本号、截断）
2. 方法选择应答
3. 请求头部和地址解析
4. 应答编码与解析
5. 流式读取（截断时抛出 ConnectionClosedError）

使用方法:
    python3 -m pytest test_protocol.py
"""

import asyncio
import ipaddress

import pytest

from protocol import (
    AddressType,
    Command,
    ConnectionClosedError,
    Method,
    ProtocolError,
    Reply,
    Socks5Codec,
    UnsupportedAddressType,
)

codec = Socks5Codec()


def _reader(data: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader


# ============================================================================
# 问候
# ============================================================================

@pytest.mark.parametrize("nmethods", [1, 2, 127, 255])
def test_greeting_accepts_every_valid_method_count(nmethods):
    """1 <= NMETHODS <= 255 时解析成功，服务器应答总是 05 00"""
    methods = bytes(i % 256 for i in range(nmethods))
    greeting = codec.decode_greeting(bytes([5, nmethods]) + methods)

    assert greeting.version == 5
    assert greeting.methods == tuple(methods)
    assert codec.encode_method_selection() == b'\x05\x00'


def test_greeting_with_zero_methods_is_rejected():
    with pytest.raises(ProtocolError):
        codec.decode_greeting(b'\x05\x00')


def test_greeting_with_wrong_version_is_rejected():
    with pytest.raises(ProtocolError):
        codec.decode_greeting(b'\x04\x01\x00')


def test_greeting_with_truncated_method_list_is_rejected():
    with pytest.raises(ProtocolError):
        codec.decode_greeting(b'\x05\x03\x00\x02')


def test_method_selection_ignores_offered_authentication():
    """客户端只提供用户名/密码认证时，仍然选择无需认证"""
    greeting = codec.decode_greeting(b'\x05\x01\x02')
    assert greeting.methods == (Method.USERNAME_PASSWORD,)
    assert codec.encode_method_selection(Method.NO_AUTH) == b'\x05\x00'


def test_codec_version_is_configurable():
    codec4 = Socks5Codec(version=4)
    assert codec4.decode_greeting(b'\x04\x01\x00').version == 4
    assert codec4.encode_method_selection() == b'\x04\x00'
    with pytest.raises(ProtocolError):
        codec4.decode_greeting(b'\x05\x01\x00')


# ============================================================================
# 请求
# ============================================================================

def test_request_header_fields():
    header = codec.decode_request_header(b'\x05\x01\xff\x03')
    assert header.command == Command.CONNECT
    assert header.address_type == AddressType.DOMAIN_NAME


def test_request_header_keeps_unknown_command():
    header = codec.decode_request_header(b'\x05\x09\x00\x01')
    assert header.command == 9


def test_request_header_with_wrong_version_is_rejected():
    with pytest.raises(ProtocolError):
        codec.decode_request_header(b'\x04\x01\x00\x01')


def test_request_header_with_wrong_length_is_rejected():
    with pytest.raises(ProtocolError):
        codec.decode_request_header(b'\x05\x01\x00')


def test_decode_ipv4_address():
    address, consumed = codec.decode_address(AddressType.IPV4, b'\x7f\x00\x00\x01\x1f\x90')
    assert address == ipaddress.IPv4Address('127.0.0.1')
    assert consumed == 4


def test_decode_ipv6_address():
    raw = ipaddress.IPv6Address('2001:db8::1').packed
    address, consumed = codec.decode_address(AddressType.IPV6, raw)
    assert address == ipaddress.IPv6Address('2001:db8::1')
    assert consumed == 16


def test_decode_domain_address():
    address, consumed = codec.decode_address(AddressType.DOMAIN_NAME, b'\x0bexample.com\x00\x50')
    assert address == 'example.com'
    assert consumed == 12


def test_decode_unknown_address_type():
    with pytest.raises(UnsupportedAddressType) as info:
        codec.decode_address(0x05, b'\x00' * 4)
    assert info.value.reply == Reply.ADDRESS_TYPE_NOT_SUPPORTED


def test_decode_truncated_address():
    with pytest.raises(ProtocolError):
        codec.decode_address(AddressType.IPV4, b'\x7f\x00')
    with pytest.raises(ProtocolError):
        codec.decode_address(AddressType.DOMAIN_NAME, b'\x0bexample')


def test_decode_invalid_utf8_hostname():
    with pytest.raises(ProtocolError):
        codec.decode_address(AddressType.DOMAIN_NAME, b'\x02\xff\xfe')


def test_decode_port_is_big_endian():
    assert codec.decode_port(b'\x1f\x90') == 8080
    assert codec.decode_port(b'\xff\xff') == 65535
    with pytest.raises(ProtocolError):
        codec.decode_port(b'\x1f')


def test_encode_request_picks_address_type():
    assert codec.encode_request(Command.CONNECT, '127.0.0.1', 8080) == \
        bytes.fromhex('05010001 7f000001 1f90'.replace(' ', ''))
    assert codec.encode_request(Command.CONNECT, 'example.com', 80) == \
        b'\x05\x01\x00\x03\x0bexample.com\x00\x50'
    assert codec.encode_request(Command.BIND, '::1', 1)[3] == AddressType.IPV6


# ============================================================================
# 应答
# ============================================================================

def test_reply_round_trip():
    data = codec.encode_reply(Reply.SUCCEEDED, AddressType.IPV4, bytes([127, 0, 0, 1]), 8080)
    assert data == b'\x05\x00\x00\x01\x7f\x00\x00\x01\x1f\x90'

    reply, address_type, address, port = codec.decode_reply(data)
    assert reply == Reply.SUCCEEDED
    assert address_type == AddressType.IPV4
    assert address == ipaddress.IPv4Address('127.0.0.1')
    assert port == 8080


def test_failure_reply_defaults_to_zero_address():
    assert codec.encode_reply(Reply.COMMAND_NOT_SUPPORTED) == \
        b'\x05\x07\x00\x01\x00\x00\x00\x00\x00\x00'


def test_reply_with_invalid_bound_address_falls_back_to_zero_address():
    assert codec.encode_reply(Reply.SUCCEEDED, None, 'not-an-ip', 1234) == \
        b'\x05\x00\x00\x01\x00\x00\x00\x00\x00\x00'


def test_ipv6_reply():
    data = codec.encode_reply(Reply.SUCCEEDED, None, '::1', 443)
    assert data[3] == AddressType.IPV6
    assert len(data) == 4 + 16 + 2
    assert codec.decode_reply(data)[2:] == (ipaddress.IPv6Address('::1'), 443)


def test_reply_address_type_follows_bound_address_family():
    data = codec.encode_reply(Reply.SUCCEEDED, AddressType.IPV6, '10.0.0.1', 1)
    assert data[3] == AddressType.IPV4
    assert len(data) == 10


# ============================================================================
# 流式读取
# ============================================================================

def test_read_request_from_stream():
    async def main():
        reader = _reader(b'\x05\x01\x00\x01\x7f\x00\x00\x01\x1f\x90')
        return await codec.read_request(reader)

    request = asyncio.run(main())
    assert request.command == Command.CONNECT
    assert request.address_type == AddressType.IPV4
    assert request.address == ipaddress.IPv4Address('127.0.0.1')
    assert request.port == 8080
    assert request.target == '127.0.0.1:8080'


def test_read_greeting_from_stream():
    async def main():
        return await codec.read_greeting(_reader(b'\x05\x02\x00\x02'))

    assert asyncio.run(main()).methods == (0, 2)


def test_truncated_stream_raises_connection_closed():
    async def main():
        await codec.read_request(_reader(b'\x05\x01\x00\x01\x7f\x00'))

    with pytest.raises(ConnectionClosedError) as info:
        asyncio.run(main())
    assert info.value.reply is None
    assert isinstance(info.value, ConnectionError)


def test_stream_greeting_with_zero_methods():
    async def main():
        await codec.read_greeting(_reader(b'\x05\x00'))

    with pytest.raises(ProtocolError):
        asyncio.run(main())


def test_stream_unknown_address_type():
    async def main():
        await codec.read_request(_reader(b'\x05\x01\x00\x07\x00\x00'))

    with pytest.raises(UnsupportedAddressType):
        asyncio.run(main())
