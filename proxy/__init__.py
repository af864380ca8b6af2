"""
SOCKS5 代理模块

本模块整合了代理服务器的核心组件：

- AddressResolver: 地址解析
- relay: 双向数据转发
- Socks5Session: 单个连接的会话状态机
- Socks5Server: 监听循环

使用示例：
    from proxy import Socks5Server
    server = Socks5Server(config)
    await server.start()
"""

from .resolver import AddressResolver, ResolvedEndpoint
from .relay import relay, RelayResult


# 延迟导入会话和服务器模块，避免导入 proxy 包时就加载配置和日志模块
def __getattr__(name):
    if name in ('Socks5Session', 'SessionState', 'classify_dial_error'):
        from . import session
        return getattr(session, name)
    if name == 'Socks5Server':
        from .server import Socks5Server
        return Socks5Server
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    'AddressResolver',
    'ResolvedEndpoint',
    'relay',
    'RelayResult',
    'Socks5Session',
    'SessionState',
    'classify_dial_error',
    'Socks5Server',
]
