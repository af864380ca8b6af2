"""
SOCKS5 服务器模块 - 服务器生命周期管理

此模块包含 Socks5Server 类，负责监听端口、接受客户端连接，
并为每个连接创建独立的 Socks5Session。

使用示例:
    >>> config = ServerConfig(host='127.0.0.1', port=1081)
    >>> server = Socks5Server(config)
    >>> asyncio.run(server.start())
"""

import asyncio
import logging
from typing import Optional, Tuple

from config import ServerConfig
from protocol import Socks5Codec

from .resolver import AddressResolver
from .session import Connector, Socks5Session

logger = logging.getLogger('toy-socks5-server')


class Socks5Server:
    """
    SOCKS5 服务器类 - 管理监听端口和客户端连接

    每个客户端连接在独立的协程中处理，会话之间不共享任何状态。
    会话内的错误由会话自己处理；这里只记录意外异常并继续接受连接。

    Attributes:
        config: ServerConfig，服务器配置对象
        codec: 所有会话共用的编解码器（无状态）
        resolver: 所有会话共用的地址解析器（无状态）
        connect: 出站连接函数（None 表示使用默认的 asyncio.open_connection）
    """

    def __init__(self, config: Optional[ServerConfig] = None,
                 resolver: Optional[AddressResolver] = None,
                 connect: Optional[Connector] = None):
        self.config = config or ServerConfig()
        self.codec = Socks5Codec(self.config.socks_version)
        self.resolver = resolver or AddressResolver()
        self.connect = connect
        self._server: Optional[asyncio.AbstractServer] = None

    async def handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """
        处理客户端连接

        由 asyncio.start_server 为每个连接调用。
        """
        session = Socks5Session(
            reader, writer,
            codec=self.codec,
            resolver=self.resolver,
            config=self.config,
            connect=self.connect
        )
        try:
            await session.run()
        except asyncio.CancelledError:
            logger.debug(f"会话被取消: {session.peer}")
            raise
        except Exception:
            logger.exception(f"会话 {session.session_id} 出现未处理的异常")

    async def listen(self) -> asyncio.AbstractServer:
        """
        绑定监听端口

        Returns:
            asyncio.AbstractServer: 已开始接受连接的服务器

        Raises:
            OSError: 无法绑定端口
        """
        self._server = await asyncio.start_server(
            self.handle_client,
            self.config.bind_host,
            self.config.port,
            backlog=self.config.backlog
        )
        host, port = self.bound_address
        logger.info(f"SOCKS5 代理运行于 {host}:{port}")
        return self._server

    @property
    def bound_address(self) -> Tuple[str, int]:
        """实际监听的地址和端口（端口为 0 时由系统分配）"""
        if self._server is None or not self._server.sockets:
            return self.config.bind_host, self.config.port
        sockname = self._server.sockets[0].getsockname()
        return sockname[0], sockname[1]

    async def start(self):
        """
        启动服务器并一直运行

        serve_forever 会阻塞直到服务器被关闭或任务被取消。
        """
        server = await self.listen()
        async with server:
            await server.serve_forever()

    def close(self):
        """
        停止接受新连接

        已建立的会话不受影响，由各自的对端关闭。
        """
        if self._server is not None:
            self._server.close()
            self._server = None
            logger.info("SOCKS5 代理已停止")
