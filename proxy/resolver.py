"""
地址解析模块

本模块把请求中的地址类型和原始地址转换为可以直接连接的端点（IP + 端口）。
域名通过外部提供的解析函数查询，总是取第一个结果。
"""

import asyncio
import ipaddress
import logging
import socket
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Union

from protocol import AddressType, ResolutionError, UnsupportedAddressType

logger = logging.getLogger('toy-socks5-resolver')

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
Lookup = Callable[[str], Awaitable[List[str]]]


@dataclass(frozen=True)
class ResolvedEndpoint:
    """
    已解析的目标端点

    Attributes:
        address_type: IPV4 或 IPV6（域名解析后按结果的协议族归一化）
        address: IP 地址
        port: 端口
    """
    address_type: AddressType
    address: IPAddress
    port: int

    @property
    def host(self) -> str:
        return str(self.address)

    def __str__(self) -> str:
        if self.address_type == AddressType.IPV6:
            return f"[{self.address}]:{self.port}"
        return f"{self.address}:{self.port}"


async def system_lookup(hostname: str) -> List[str]:
    """
    使用系统解析器查询域名

    Args:
        hostname: 要解析的域名

    Returns:
        List[str]: 按解析器返回顺序排列的 IP 地址（已去重）
    """
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
    addresses = []
    for info in infos:
        address = info[4][0]
        if address not in addresses:
            addresses.append(address)
    logger.debug(f"DNS 解析结果: {hostname} -> {addresses}")
    return addresses


class AddressResolver:
    """
    地址解析器

    IPv4/IPv6 地址直接转换，不访问网络；域名交给 lookup 查询。

    Attributes:
        lookup: 异步解析函数 hostname -> IP 地址列表（默认: system_lookup）
    """

    def __init__(self, lookup: Optional[Lookup] = None):
        self.lookup = lookup or system_lookup

    async def resolve(self, address_type: int, address, port: int) -> ResolvedEndpoint:
        """
        解析目标端点

        Args:
            address_type: 地址类型
            address: 原始字节、IP 文本、ipaddress 对象或域名
            port: 目标端口

        Returns:
            ResolvedEndpoint: 可以直接连接的端点

        Raises:
            ResolutionError: 域名解析失败或结果为空
            UnsupportedAddressType: 未知的地址类型
        """
        if address_type in (AddressType.IPV4, AddressType.IPV6):
            try:
                ip = self._to_ip(address)
            except ValueError as e:
                raise ResolutionError(f"无效的 IP 地址: {address!r}") from e
            expected = 4 if address_type == AddressType.IPV4 else 6
            if ip.version != expected:
                raise ResolutionError(f"地址与地址类型不符: {address}")
            return ResolvedEndpoint(AddressType(address_type), ip, port)

        if address_type == AddressType.DOMAIN_NAME:
            return await self._resolve_hostname(address, port)

        raise UnsupportedAddressType(f"不支持的地址类型: {address_type}")

    async def _resolve_hostname(self, hostname, port: int) -> ResolvedEndpoint:
        if isinstance(hostname, (bytes, bytearray)):
            hostname = bytes(hostname).decode('utf-8', errors='replace')

        try:
            addresses = await self.lookup(hostname)
        except (OSError, UnicodeError) as e:
            logger.warning(f"无法解析域名 {hostname}: {e}")
            raise ResolutionError(f"无法解析域名 {hostname}: {e}") from e

        if not addresses:
            logger.warning(f"域名 {hostname} 没有解析结果")
            raise ResolutionError(f"域名 {hostname} 没有解析结果")

        # 只取第一个结果，不做协议族偏好
        try:
            ip = self._to_ip(addresses[0])
        except ValueError as e:
            raise ResolutionError(f"解析结果不是有效的 IP 地址: {addresses[0]!r}") from e

        address_type = AddressType.IPV4 if ip.version == 4 else AddressType.IPV6
        logger.debug(f"域名 {hostname} 解析为 {ip} ({address_type.name})")
        return ResolvedEndpoint(address_type, ip, port)

    @staticmethod
    def _to_ip(address) -> IPAddress:
        if isinstance(address, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
            return address
        if isinstance(address, (bytes, bytearray)):
            return ipaddress.ip_address(bytes(address))
        return ipaddress.ip_address(str(address))
