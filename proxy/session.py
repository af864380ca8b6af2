"""
SOCKS5 会话模块

本模块定义了 Socks5Session 类，负责单个客户端连接从接受到关闭的完整生命周期：

    GREETING -> REQUEST_HEADER -> DIALING -> REPLYING -> RELAYING -> CLOSED

状态只能向前推进，任何阶段失败都会在尽力发送失败应答后直接进入 CLOSED。
每个阶段返回一个不可变的结果值交给下一个阶段，会话本身只记录当前状态
和它独占的两条连接。
"""

import asyncio
import errno
import itertools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Tuple

from config import ServerConfig
from logger import add_context
from protocol import (
    Command,
    ConnectionClosedError,
    DialError,
    Method,
    Reply,
    Request,
    Socks5Codec,
    Socks5Error,
    UnsupportedCommand,
)

from .relay import relay, RelayResult
from .resolver import AddressResolver, ResolvedEndpoint

logger = logging.getLogger('toy-socks5-session')

Connector = Callable[[str, int], Awaitable[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]]


class SessionState(Enum):
    """会话状态，数值越大越靠后"""
    GREETING = 1
    REQUEST_HEADER = 2
    DIALING = 3
    REPLYING = 4
    RELAYING = 5
    CLOSED = 6


@dataclass(frozen=True)
class Connection:
    """
    DIALING 阶段的结果：已建立的目标连接

    Attributes:
        request: 客户端请求
        endpoint: 实际连接的端点
        reader: 目标主机读取流
        writer: 目标主机写入流
        bound_host: 出站连接的本地地址
        bound_port: 出站连接的本地端口
    """
    request: Request
    endpoint: ResolvedEndpoint
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    bound_host: Optional[str]
    bound_port: int


def classify_dial_error(exc: BaseException) -> Reply:
    """
    将连接目标主机时的错误分类为应答码

    - 网络不可达 -> NETWORK_UNREACHABLE
    - 连接被拒绝 -> CONNECTION_REFUSED
    - 其他错误（包括超时） -> HOST_UNREACHABLE

    Args:
        exc: 连接时抛出的异常

    Returns:
        Reply: 对应的应答码
    """
    code = getattr(exc, 'errno', None)
    message = str(exc).lower()

    if code == errno.ENETUNREACH or 'network is unreachable' in message:
        return Reply.NETWORK_UNREACHABLE
    if isinstance(exc, ConnectionRefusedError) or code == errno.ECONNREFUSED or 'refused' in message:
        return Reply.CONNECTION_REFUSED
    return Reply.HOST_UNREACHABLE


async def open_tcp_connection(host: str, port: int):
    """默认的出站连接函数"""
    return await asyncio.open_connection(host, port)


class Socks5Session:
    """
    SOCKS5 会话类 - 处理单个客户端连接

    工作流程:
    1. GREETING: 读取问候，总是回复 "无需认证"
    2. REQUEST_HEADER: 读取命令、地址类型、地址和端口
    3. DIALING: 只支持 CONNECT；解析目标地址并建立 TCP 连接
    4. REPLYING: 发送且只发送一次应答
    5. RELAYING: 应答成功后双向转发数据，直到两个方向都结束
    6. CLOSED: 先关闭目标连接，再关闭客户端连接

    Attributes:
        reader: 客户端读取流
        writer: 客户端写入流
        codec: 报文编解码器
        resolver: 地址解析器
        config: 服务器配置
        state: 当前状态
        reply: 已发送的应答码（未发送时为 None）
        session_id: 会话编号（仅用于日志）
        peer: 客户端地址字符串
    """

    _ids = itertools.count(1)

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 codec: Optional[Socks5Codec] = None,
                 resolver: Optional[AddressResolver] = None,
                 config: Optional[ServerConfig] = None,
                 connect: Optional[Connector] = None):
        self.reader = reader
        self.writer = writer
        self.config = config or ServerConfig()
        self.codec = codec or Socks5Codec(self.config.socks_version)
        self.resolver = resolver or AddressResolver()
        self.connect = connect or open_tcp_connection

        self.state = SessionState.GREETING
        self.reply: Optional[Reply] = None
        self.relay_result: Optional[RelayResult] = None
        self._connection: Optional[Connection] = None

        self.session_id = next(self._ids)
        peer = writer.get_extra_info('peername')
        self.peer = f"{peer[0]}:{peer[1]}" if peer else "unknown"

    # ------------------------------------------------------------------
    # 状态管理
    # ------------------------------------------------------------------

    def _transition(self, state: SessionState):
        """
        切换状态

        Raises:
            RuntimeError: 试图回退状态或离开 CLOSED
        """
        if self.state is SessionState.CLOSED:
            raise RuntimeError(f"会话已关闭，无法切换到 {state.name}")
        if state is not SessionState.CLOSED and state.value <= self.state.value:
            raise RuntimeError(f"非法的状态切换: {self.state.name} -> {state.name}")
        logger.debug(f"状态切换: {self.state.name} -> {state.name}")
        self.state = state

    @property
    def closed(self) -> bool:
        return self.state is SessionState.CLOSED

    # ------------------------------------------------------------------
    # 主流程
    # ------------------------------------------------------------------

    async def run(self):
        """
        主会话处理器 - 处理完整的客户端连接生命周期

        所有会话内错误都在这里处理，不会传播到监听循环。
        """
        add_context(peer=self.peer, session_id=self.session_id)
        logger.info(f"接受来自 {self.peer} 的连接")

        try:
            await self.handle_greeting()
            request = await self.handle_request()
            connection = await self.handle_dial(request)
            await self.send_success_reply(connection)
            await self.handle_relay(connection)
        except Socks5Error as e:
            await self._fail(e)
        except (ConnectionError, OSError) as e:
            logger.warning(f"会话 I/O 错误: {e}")
        finally:
            await self.close()

    async def handle_greeting(self):
        """
        GREETING 阶段

        只校验版本号和方法数量，不做真正的协商：无论客户端提供了哪些方法，
        都回复 "无需认证"。
        """
        greeting = await self.codec.read_greeting(self.reader)
        if Method.NO_AUTH not in greeting.methods:
            logger.debug(f"客户端未提供无需认证方法: {list(greeting.methods)}，仍然选择无需认证")
        await self._write(self.codec.encode_method_selection(Method.NO_AUTH))
        self._transition(SessionState.REQUEST_HEADER)

    async def handle_request(self) -> Request:
        """REQUEST_HEADER 阶段：读取完整请求"""
        request = await self.codec.read_request(self.reader)
        logger.debug(f"解析请求: command={request.command}, atyp={request.address_type.name}, "
                     f"target={request.target}")
        self._transition(SessionState.DIALING)
        return request

    async def handle_dial(self, request: Request) -> Connection:
        """
        DIALING 阶段：校验命令，解析目标地址并建立连接

        Raises:
            UnsupportedCommand: BIND、UDP ASSOCIATE 或未知命令（不会发起连接）
            ResolutionError: 域名解析失败
            DialError: 连接失败，应答码由 classify_dial_error 决定
        """
        if request.command != Command.CONNECT:
            try:
                name = Command(request.command).name
            except ValueError:
                name = f"未知命令 {request.command}"
            raise UnsupportedCommand(f"不支持的命令: {name}")

        endpoint = await self.resolver.resolve(request.address_type, request.address, request.port)

        try:
            if self.config.connect_timeout:
                reader, writer = await asyncio.wait_for(
                    self.connect(endpoint.host, endpoint.port),
                    timeout=self.config.connect_timeout
                )
            else:
                reader, writer = await self.connect(endpoint.host, endpoint.port)
        except (OSError, asyncio.TimeoutError) as e:
            reply = classify_dial_error(e)
            logger.warning(f"连接目标失败: {endpoint}: {e!r} -> {reply.name}")
            raise DialError(f"连接 {endpoint} 失败: {e}", reply=reply) from e

        sockname = writer.get_extra_info('sockname')
        bound_host, bound_port = (sockname[0], sockname[1]) if sockname else (None, 0)
        connection = Connection(
            request=request,
            endpoint=endpoint,
            reader=reader,
            writer=writer,
            bound_host=bound_host,
            bound_port=bound_port
        )
        self._connection = connection
        logger.info(f"连接到 {request.target} ({endpoint})，本地绑定 {bound_host}:{bound_port}")
        return connection

    async def send_success_reply(self, connection: Connection):
        """REPLYING 阶段：成功应答携带出站连接的本地地址和端口"""
        await self._send_reply(Reply.SUCCEEDED, connection.bound_host, connection.bound_port)

    async def handle_relay(self, connection: Connection):
        """RELAYING 阶段：只在 CONNECT 成功应答后进入"""
        if self.reply is not Reply.SUCCEEDED or connection.request.command != Command.CONNECT:
            raise RuntimeError("只有 CONNECT 成功后才能进入转发阶段")

        self._transition(SessionState.RELAYING)
        self.relay_result = await relay(
            self.reader, self.writer,
            connection.reader, connection.writer,
            buffer_size=self.config.buffer_size
        )
        if not self.relay_result.ok:
            logger.warning(f"转发过程中出现错误: {self.relay_result.errors}")
        logger.info(f"转发结束: 上行 {self.relay_result.client_to_remote} 字节, "
                    f"下行 {self.relay_result.remote_to_client} 字节")

    # ------------------------------------------------------------------
    # 应答与关闭
    # ------------------------------------------------------------------

    async def _send_reply(self, reply: Reply, address=None, port: int = 0):
        """
        发送应答，每个会话只发送一次

        Raises:
            RuntimeError: 已经发送过应答
            ConnectionClosedError: 写入失败
        """
        if self.reply is not None:
            raise RuntimeError(f"应答已发送: {self.reply.name}")
        self._transition(SessionState.REPLYING)
        self.reply = reply
        await self._write(self.codec.encode_reply(reply, None, address, port))

    async def _fail(self, error: Socks5Error):
        """
        处理会话错误：尽力发送最具体的失败应答

        连接已断开（error.reply 为 None）或已经发送过应答时不再发送。
        """
        if error.reply is None or self.reply is not None:
            logger.info(f"会话终止: {error}")
            return

        logger.info(f"会话失败: {error} -> {error.reply.name}")
        try:
            await self._send_reply(error.reply)
        except (Socks5Error, ConnectionError, OSError) as e:
            logger.debug(f"发送失败应答出错: {e}")

    async def _write(self, data: bytes):
        try:
            self.writer.write(data)
            await self.writer.drain()
        except (ConnectionError, OSError) as e:
            raise ConnectionClosedError(f"写入客户端失败: {e}") from e

    async def close(self):
        """
        关闭会话：先关闭目标连接，再关闭客户端连接

        可重复调用，已关闭时直接返回。
        """
        if self.closed:
            return
        self._transition(SessionState.CLOSED)

        if self._connection is not None:
            await self._close_writer(self._connection.writer, "目标")
        await self._close_writer(self.writer, "客户端")
        logger.info(f"关闭来自 {self.peer} 的连接")

    @staticmethod
    async def _close_writer(writer: asyncio.StreamWriter, name: str):
        try:
            writer.close()
            await writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug(f"关闭{name}连接时出错: {e}")
