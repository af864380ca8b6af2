"""
数据转发模块

本模块在客户端和目标主机之间双向转发数据。

两个方向各由一个独立的任务负责：
- 客户端 -> 目标主机
- 目标主机 -> 客户端

每个方向读到 EOF 或出错后，对目标连接执行半关闭（write_eof），
让对端看到流结束，而另一个方向继续运行。只有两个方向都结束后
relay() 才返回；连接的最终关闭由调用方负责。
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

logger = logging.getLogger('toy-socks5-relay')

DEFAULT_BUFFER_SIZE = 32768


@dataclass
class RelayResult:
    """
    转发结果

    Attributes:
        client_to_remote: 客户端发往目标主机的字节数
        remote_to_client: 目标主机发往客户端的字节数
        errors: 转发过程中出现的 I/O 错误
    """
    client_to_remote: int = 0
    remote_to_client: int = 0
    errors: List[BaseException] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass
class _Direction:
    name: str
    transferred: int = 0
    error: Optional[BaseException] = None


async def _pipe(reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                direction: _Direction, buffer_size: int):
    """
    单方向复制数据，直到读到 EOF 或发生 I/O 错误

    结束时对目标连接执行半关闭。错误只结束本方向，不影响另一个方向。
    """
    try:
        while True:
            data = await reader.read(buffer_size)
            if not data:
                logger.debug(f"{direction.name}: 读取到 EOF")
                break
            writer.write(data)
            await writer.drain()
            direction.transferred += len(data)
    except (ConnectionError, OSError) as e:
        logger.debug(f"{direction.name}: 转发错误: {e}")
        direction.error = e
    finally:
        try:
            if writer.can_write_eof() and not writer.is_closing():
                writer.write_eof()
        except (ConnectionError, OSError, RuntimeError) as e:
            logger.debug(f"{direction.name}: 半关闭失败: {e}")


async def relay(client_reader: asyncio.StreamReader, client_writer: asyncio.StreamWriter,
                remote_reader: asyncio.StreamReader, remote_writer: asyncio.StreamWriter,
                buffer_size: int = DEFAULT_BUFFER_SIZE) -> RelayResult:
    """
    在客户端和目标主机之间全双工转发数据

    Args:
        client_reader: 客户端读取流
        client_writer: 客户端写入流
        remote_reader: 目标主机读取流
        remote_writer: 目标主机写入流
        buffer_size: 每次读取的最大字节数

    Returns:
        RelayResult: 两个方向的字节数和错误

    Note:
        - 等待两个方向都结束（join），而不是第一个结束就返回
        - 没有超时，由对端关闭或 I/O 错误驱动结束
        - 如果 relay 本身被取消，两个方向的任务也会被取消并等待完成
    """
    upstream = _Direction('client->remote')
    downstream = _Direction('remote->client')

    tasks = [
        asyncio.ensure_future(_pipe(client_reader, remote_writer, upstream, buffer_size)),
        asyncio.ensure_future(_pipe(remote_reader, client_writer, downstream, buffer_size)),
    ]

    try:
        await asyncio.gather(*tasks)
    finally:
        # 被取消或出现意外异常时，不留下仍在运行的方向任务
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    result = RelayResult(
        client_to_remote=upstream.transferred,
        remote_to_client=downstream.transferred,
        errors=[d.error for d in (upstream, downstream) if d.error is not None]
    )
    logger.debug(
        f"转发结束: client->remote={result.client_to_remote} 字节, "
        f"remote->client={result.remote_to_client} 字节, 错误={len(result.errors)}"
    )
    return result
