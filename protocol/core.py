"""
toy-socks5 - 核心协议模块
定义 SOCKS5 协议的常量、枚举、错误类型和报文编解码。

版本: 1.0.0

功能概述:
本模块实现 RFC 1928 中服务器端需要的全部报文格式，包括：
1. 协议常量定义 - 版本号、默认端口
2. 枚举定义 - 认证方法、命令、地址类型、应答码
3. 错误类型 - 每种错误携带应发送给客户端的应答码
4. 编解码器 - 纯字节编解码和基于 asyncio.StreamReader 的流式读取

报文格式（所有多字节字段使用大端序）:

问候请求:
┌─────────┬────────────┬─────────────────┐
│ VER     │ NMETHODS   │ METHODS         │
│ 1 字节  │ 1 字节     │ NMETHODS 字节   │
└─────────┴────────────┴─────────────────┘

连接请求 / 应答:
┌─────────┬────────────┬─────────┬─────────┬────────────┬──────────┐
│ VER     │ CMD / REP  │ RSV     │ ATYP    │ ADDR       │ PORT     │
│ 1 字节  │ 1 字节     │ 1 字节  │ 1 字节  │ 可变长度   │ 2 字节   │
└─────────┴────────────┴─────────┴─────────┴────────────┴──────────┘
"""

import asyncio
import ipaddress
import logging
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Iterable, Optional, Tuple, Union

logger = logging.getLogger('toy-socks5-protocol')


# ============================================================================
# 协议常量
# ============================================================================

SOCKS_VERSION = 5
DEFAULT_PORT = 1081
RESERVED = 0x00
REQUEST_HEADER_SIZE = 4
IPV4_ADDRESS_SIZE = 4
IPV6_ADDRESS_SIZE = 16
PORT_SIZE = 2


# ============================================================================
# 枚举定义
# ============================================================================

class Method(IntEnum):
    """
    认证方法

    服务器只会选择 NO_AUTH，其余值仅用于识别客户端提供的方法。
    """
    NO_AUTH = 0x00
    GSSAPI = 0x01
    USERNAME_PASSWORD = 0x02
    NO_ACCEPTABLE = 0xFF


class Command(IntEnum):
    """请求命令，只支持 CONNECT"""
    CONNECT = 0x01
    BIND = 0x02
    UDP_ASSOCIATE = 0x03


class AddressType(IntEnum):
    """目标地址类型"""
    IPV4 = 0x01
    DOMAIN_NAME = 0x03
    IPV6 = 0x04


class Reply(IntEnum):
    """
    应答码

    每个会话只会向客户端发送一次应答。
    """
    SUCCEEDED = 0x00
    GENERAL_FAILURE = 0x01
    CONNECTION_NOT_ALLOWED = 0x02
    NETWORK_UNREACHABLE = 0x03
    HOST_UNREACHABLE = 0x04
    CONNECTION_REFUSED = 0x05
    TTL_EXPIRED = 0x06
    COMMAND_NOT_SUPPORTED = 0x07
    ADDRESS_TYPE_NOT_SUPPORTED = 0x08


Address = Union[ipaddress.IPv4Address, ipaddress.IPv6Address, str]


# ============================================================================
# 错误类型
# ============================================================================

class Socks5Error(Exception):
    """
    SOCKS5 会话错误基类

    Attributes:
        reply: 应发送给客户端的应答码，None 表示无法再发送应答
    """
    reply: Optional[Reply] = Reply.GENERAL_FAILURE

    def __init__(self, message: str, reply: Optional[Reply] = None):
        super().__init__(message)
        if reply is not None:
            self.reply = reply


class ProtocolError(Socks5Error, ValueError):
    """报文格式错误：版本号、方法数量或字段长度不合法"""


class ConnectionClosedError(Socks5Error, ConnectionError):
    """读取时连接被关闭或发生 I/O 错误，此时不再发送应答"""
    reply = None


class ResolutionError(Socks5Error):
    """域名解析失败或没有返回任何地址"""


class DialError(Socks5Error):
    """到目标主机的连接失败，应答码由底层错误分类得出"""
    reply = Reply.HOST_UNREACHABLE


class UnsupportedFeature(Socks5Error):
    """不支持的功能"""
    reply = Reply.COMMAND_NOT_SUPPORTED


class UnsupportedCommand(UnsupportedFeature):
    """BIND、UDP ASSOCIATE 或未知命令"""
    reply = Reply.COMMAND_NOT_SUPPORTED


class UnsupportedAddressType(UnsupportedFeature):
    """未知的地址类型"""
    reply = Reply.ADDRESS_TYPE_NOT_SUPPORTED


# ============================================================================
# 报文数据类
# ============================================================================

@dataclass(frozen=True)
class Greeting:
    """
    客户端问候

    Attributes:
        version: 协议版本号
        methods: 客户端提供的认证方法列表
    """
    version: int
    methods: Tuple[int, ...]


@dataclass(frozen=True)
class RequestHeader:
    """
    请求头部（VER CMD RSV ATYP）

    command 和 address_type 保留原始数值，未知命令需要原样保留
    以便回复 COMMAND_NOT_SUPPORTED。
    """
    version: int
    command: int
    address_type: int


@dataclass(frozen=True)
class Request:
    """
    完整的客户端请求

    Attributes:
        command: 请求命令（原始数值）
        address_type: 地址类型
        address: IPv4Address / IPv6Address 或域名字符串
        port: 目标端口
    """
    command: int
    address_type: AddressType
    address: Address
    port: int

    @property
    def target(self) -> str:
        """用于日志的目标地址字符串"""
        if self.address_type == AddressType.IPV6:
            return f"[{self.address}]:{self.port}"
        return f"{self.address}:{self.port}"


# ============================================================================
# 编解码器
# ============================================================================

def _ip_from(address) -> Union[ipaddress.IPv4Address, ipaddress.IPv6Address]:
    """将原始字节、文本或 ipaddress 对象转换为 ipaddress 对象"""
    if isinstance(address, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return address
    if isinstance(address, (bytes, bytearray)):
        return ipaddress.ip_address(bytes(address))
    return ipaddress.ip_address(address)


def _address_type_of(ip) -> AddressType:
    return AddressType.IPV4 if ip.version == 4 else AddressType.IPV6


class Socks5Codec:
    """
    SOCKS5 报文编解码器

    版本号作为构造参数传入，而不是直接使用全局常量，
    这样编解码器可以脱离网络单独测试。

    纯编解码方法只处理字节；read_* 协程从 asyncio.StreamReader 中
    精确读取所需字节数，读取不足时抛出 ConnectionClosedError。

    Attributes:
        version: 期望的协议版本号（默认: 5）
    """

    def __init__(self, version: int = SOCKS_VERSION):
        self.version = version

    # ------------------------------------------------------------------
    # 问候
    # ------------------------------------------------------------------

    def decode_greeting(self, data: bytes) -> Greeting:
        """
        解析客户端问候

        Args:
            data: VER + NMETHODS + METHODS

        Returns:
            Greeting: 解析出的问候

        Raises:
            ProtocolError: 版本号不匹配、方法数量为 0 或方法列表不完整
        """
        if len(data) < 2:
            raise ProtocolError("问候报文太短")

        version, nmethods = data[0], data[1]
        self._ensure_version(version)
        if not 1 <= nmethods <= 255:
            raise ProtocolError(f"认证方法数量不合法: {nmethods}")

        methods = bytes(data[2:2 + nmethods])
        if len(methods) != nmethods:
            raise ProtocolError(f"认证方法列表不完整: 需要 {nmethods} 字节，实际 {len(methods)} 字节")

        return Greeting(version=version, methods=tuple(methods))

    def encode_method_selection(self, method: int = Method.NO_AUTH) -> bytes:
        """生成方法选择应答: VER + METHOD"""
        return bytes([self.version, method])

    def encode_greeting(self, methods: Iterable[int] = (Method.NO_AUTH,)) -> bytes:
        """生成客户端问候（客户端和测试使用）"""
        methods = bytes(methods)
        return bytes([self.version, len(methods)]) + methods

    # ------------------------------------------------------------------
    # 请求
    # ------------------------------------------------------------------

    def decode_request_header(self, data: bytes) -> RequestHeader:
        """
        解析请求头部: VER CMD RSV ATYP

        保留字段被忽略。

        Raises:
            ProtocolError: 长度不是 4 字节或版本号不匹配
        """
        if len(data) != REQUEST_HEADER_SIZE:
            raise ProtocolError(f"请求头部长度错误: {len(data)} 字节，需要 {REQUEST_HEADER_SIZE} 字节")

        version, command, _, address_type = data
        self._ensure_version(version)
        return RequestHeader(version=version, command=command, address_type=address_type)

    def decode_address(self, address_type: int, data: bytes) -> Tuple[Address, int]:
        """
        解析目标地址

        Args:
            address_type: 地址类型
            data: 从地址字段开始的字节

        Returns:
            Tuple[Address, int]: (地址, 消耗的字节数)

        Raises:
            UnsupportedAddressType: 未知的地址类型
            ProtocolError: 数据不完整或域名无法解码
        """
        if address_type == AddressType.IPV4:
            raw = self._take(data, 0, IPV4_ADDRESS_SIZE, "IPv4 地址")
            return ipaddress.IPv4Address(raw), IPV4_ADDRESS_SIZE

        if address_type == AddressType.IPV6:
            raw = self._take(data, 0, IPV6_ADDRESS_SIZE, "IPv6 地址")
            return ipaddress.IPv6Address(raw), IPV6_ADDRESS_SIZE

        if address_type == AddressType.DOMAIN_NAME:
            length = self._take(data, 0, 1, "域名长度")[0]
            raw = self._take(data, 1, length, "域名")
            return self._decode_hostname(raw), 1 + length

        raise UnsupportedAddressType(f"不支持的地址类型: {address_type}")

    def decode_port(self, data: bytes) -> int:
        """解析 2 字节大端序端口"""
        if len(data) < PORT_SIZE:
            raise ProtocolError("端口字段不完整")
        return struct.unpack('>H', data[:PORT_SIZE])[0]

    def encode_request(self, command: int, address: Address, port: int) -> bytes:
        """
        生成客户端请求（客户端和测试使用）

        IP 地址对象或 IP 文本编码为 IPv4/IPv6，其余文本编码为域名。
        """
        try:
            ip = _ip_from(address)
        except ValueError:
            hostname = address.encode('utf-8')
            body = bytes([AddressType.DOMAIN_NAME, len(hostname)]) + hostname
        else:
            body = bytes([_address_type_of(ip)]) + ip.packed
        return bytes([self.version, command, RESERVED]) + body + struct.pack('>H', port)

    # ------------------------------------------------------------------
    # 应答
    # ------------------------------------------------------------------

    def encode_reply(self, reply: int, address_type: Optional[int] = None,
                     address=None, port: int = 0) -> bytes:
        """
        生成应答: VER REP RSV ATYP BND.ADDR BND.PORT

        Args:
            reply: 应答码
            address_type: 地址类型（为 None 时由地址的协议族决定）
            address: 绑定地址，可以是 ipaddress 对象、IP 文本或原始字节
            port: 绑定端口

        Note:
            - 没有可用的绑定地址时（失败应答），使用 IPv4 0.0.0.0:0
        """
        ip = None
        if address is not None:
            try:
                ip = _ip_from(address)
            except ValueError:
                logger.debug(f"绑定地址无效，使用 0.0.0.0: {address!r}")

        if ip is None:
            ip, port = ipaddress.IPv4Address(0), 0

        actual_type = _address_type_of(ip)
        if address_type is not None and address_type != actual_type:
            logger.debug(f"地址类型与绑定地址不符，使用 {actual_type.name}: {ip}")
        address_type = actual_type

        header = struct.pack('>BBBB', self.version, reply, RESERVED, address_type)
        return header + ip.packed + struct.pack('>H', port)

    def decode_reply(self, data: bytes) -> Tuple[Reply, AddressType, Address, int]:
        """
        解析应答（encode_reply 的逆操作，客户端和测试使用）

        Returns:
            Tuple: (应答码, 地址类型, 绑定地址, 绑定端口)
        """
        if len(data) < REQUEST_HEADER_SIZE:
            raise ProtocolError("应答报文太短")

        version, reply, _, address_type = data[:REQUEST_HEADER_SIZE]
        self._ensure_version(version)
        address, consumed = self.decode_address(address_type, data[REQUEST_HEADER_SIZE:])
        port = self.decode_port(data[REQUEST_HEADER_SIZE + consumed:])
        return Reply(reply), AddressType(address_type), address, port

    # ------------------------------------------------------------------
    # 流式读取
    # ------------------------------------------------------------------

    async def read_greeting(self, reader: asyncio.StreamReader) -> Greeting:
        """从流中读取并解析问候"""
        head = await self._read_exactly(reader, 2)
        self._ensure_version(head[0])
        nmethods = head[1]
        if not 1 <= nmethods <= 255:
            raise ProtocolError(f"认证方法数量不合法: {nmethods}")
        methods = await self._read_exactly(reader, nmethods)
        return self.decode_greeting(head + methods)

    async def read_request_header(self, reader: asyncio.StreamReader) -> RequestHeader:
        """从流中读取请求头部"""
        return self.decode_request_header(await self._read_exactly(reader, REQUEST_HEADER_SIZE))

    async def read_address(self, reader: asyncio.StreamReader, address_type: int) -> Address:
        """从流中读取目标地址"""
        if address_type == AddressType.IPV4:
            return ipaddress.IPv4Address(await self._read_exactly(reader, IPV4_ADDRESS_SIZE))
        if address_type == AddressType.IPV6:
            return ipaddress.IPv6Address(await self._read_exactly(reader, IPV6_ADDRESS_SIZE))
        if address_type == AddressType.DOMAIN_NAME:
            length = (await self._read_exactly(reader, 1))[0]
            return self._decode_hostname(await self._read_exactly(reader, length))
        raise UnsupportedAddressType(f"不支持的地址类型: {address_type}")

    async def read_port(self, reader: asyncio.StreamReader) -> int:
        """从流中读取端口"""
        return self.decode_port(await self._read_exactly(reader, PORT_SIZE))

    async def read_request(self, reader: asyncio.StreamReader) -> Request:
        """
        从流中读取完整请求

        先校验头部，再读取地址和端口。

        Returns:
            Request: 解析出的请求
        """
        header = await self.read_request_header(reader)
        address = await self.read_address(reader, header.address_type)
        port = await self.read_port(reader)
        return Request(
            command=header.command,
            address_type=AddressType(header.address_type),
            address=address,
            port=port
        )

    # ------------------------------------------------------------------
    # 内部工具
    # ------------------------------------------------------------------

    def _ensure_version(self, version: int):
        if version != self.version:
            raise ProtocolError(f"不支持的协议版本: {version}，期望: {self.version}")

    @staticmethod
    def _take(data: bytes, offset: int, size: int, what: str) -> bytes:
        chunk = bytes(data[offset:offset + size])
        if len(chunk) != size:
            raise ProtocolError(f"{what}不完整: 需要 {size} 字节，实际 {len(chunk)} 字节")
        return chunk

    @staticmethod
    def _decode_hostname(raw: bytes) -> str:
        try:
            return raw.decode('utf-8')
        except UnicodeDecodeError as e:
            raise ProtocolError(f"域名编码错误: {e}") from e

    @staticmethod
    async def _read_exactly(reader: asyncio.StreamReader, size: int) -> bytes:
        if size == 0:
            return b''
        try:
            return await reader.readexactly(size)
        except asyncio.IncompleteReadError as e:
            raise ConnectionClosedError(
                f"连接已关闭: 需要 {size} 字节，实际读取 {len(e.partial)} 字节"
            ) from e
        except (ConnectionError, OSError) as e:
            raise ConnectionClosedError(f"读取失败: {e}") from e
