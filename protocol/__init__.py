"""
SOCKS5 协议包

本包提供了 SOCKS5 代理服务器的协议定义和实现，包括：
- 协议常量和枚举（认证方法、命令、地址类型、应答码）
- 错误类型（携带应答码）
- 报文编解码器

使用示例：
    from protocol import Socks5Codec, Reply, AddressType

    codec = Socks5Codec()

    # 解析问候
    greeting = codec.decode_greeting(b'\\x05\\x01\\x00')

    # 生成应答
    data = codec.encode_reply(Reply.SUCCEEDED, AddressType.IPV4, '127.0.0.1', 8080)
"""

from .core import (
    # 协议常量
    SOCKS_VERSION,
    DEFAULT_PORT,
    RESERVED,

    # 枚举
    Method,
    Command,
    AddressType,
    Reply,

    # 错误类型
    Socks5Error,
    ProtocolError,
    ConnectionClosedError,
    ResolutionError,
    DialError,
    UnsupportedFeature,
    UnsupportedCommand,
    UnsupportedAddressType,

    # 报文
    Greeting,
    RequestHeader,
    Request,

    # 编解码器
    Socks5Codec,
)
